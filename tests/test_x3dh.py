"""
Cipherlink - X3DH handshake tests.

Created by orpheus497

Tests that both sides of the handshake agree on the shared secret and
that malformed or untrusted bundles abort establishment.
"""

import pytest

from cipherlink import x3dh
from cipherlink.errors import InvalidBundle, KeyAlreadyConsumed, UntrustedBundle


@pytest.mark.parametrize("curve", ["x25519", "x448"])
def test_handshake_symmetry(identity_factory, curve):
    """Test initiator and responder derive the same secret and associated data."""
    alice_ids = identity_factory(curve)
    bob_ids = identity_factory(curve)
    bundle = bob_ids.publish_bundle(count=1)

    initiated = x3dh.initiate_session(alice_ids.identity, bundle)
    responded = x3dh.respond(bob_ids, initiated.prekey_message)

    assert len(initiated.shared_secret) == 32
    assert initiated.shared_secret == responded.shared_secret
    assert initiated.associated_data == responded.associated_data
    assert initiated.associated_data == (
        alice_ids.identity.identity_key.public_bytes()
        + bob_ids.identity.identity_key.public_bytes()
    )
    assert initiated.used_one_time_prekey and responded.used_one_time_prekey


def test_handshake_without_one_time_key(alice_ids, bob_ids, caplog):
    """Test the three-DH fallback still agrees and logs a warning."""
    bundle = bob_ids.publish_bundle(count=0)

    with caplog.at_level("WARNING", logger="cipherlink.x3dh"):
        initiated = x3dh.initiate_session(alice_ids.identity, bundle)
    responded = x3dh.respond(bob_ids, initiated.prekey_message)

    assert initiated.prekey_message.one_time_prekey_id is None
    assert not initiated.used_one_time_prekey
    assert initiated.shared_secret == responded.shared_secret
    assert "three DH exchanges" in caplog.text


def test_one_time_key_changes_secret(alice_ids, bob_ids):
    """Test sessions from the same bundle use different one-time keys."""
    bundle = bob_ids.publish_bundle(count=2)

    first = x3dh.initiate_session(alice_ids.identity, bundle)
    second = x3dh.initiate_session(alice_ids.identity, bundle)

    assert first.prekey_message.one_time_prekey_id != second.prekey_message.one_time_prekey_id
    assert first.shared_secret != second.shared_secret
    assert bundle.one_time_prekeys == []


def test_replayed_prekey_message(alice_ids, bob_ids):
    """Test a one-time pre-key cannot be consumed by a replayed handshake."""
    bundle = bob_ids.publish_bundle(count=1)
    initiated = x3dh.initiate_session(alice_ids.identity, bundle)
    x3dh.respond(bob_ids, initiated.prekey_message)

    with pytest.raises(KeyAlreadyConsumed):
        x3dh.respond(bob_ids, initiated.prekey_message)


def test_trial_response_keeps_one_time_key(alice_ids, bob_ids):
    """Test a non-consuming response agrees on the secret and leaves the key available."""
    initiated = x3dh.initiate_session(alice_ids.identity, bob_ids.publish_bundle(count=1))

    trial = x3dh.respond(bob_ids, initiated.prekey_message, consume=False)
    assert bob_ids.one_time_key_count == 1
    assert trial.used_one_time_prekey

    final = x3dh.respond(bob_ids, initiated.prekey_message)
    assert trial.shared_secret == final.shared_secret == initiated.shared_secret
    assert bob_ids.one_time_key_count == 0


def test_untrusted_bundle(alice_ids, bob_ids):
    """Test a bundle with a forged signature aborts the handshake."""
    bundle = bob_ids.publish_bundle(count=1)
    bundle.signature = bytes(64)

    with pytest.raises(UntrustedBundle):
        x3dh.initiate_session(alice_ids.identity, bundle)


def test_bundle_missing_identity_key(alice_ids, bob_ids):
    bundle = bob_ids.publish_bundle(count=1)
    bundle.identity_key = None

    with pytest.raises(InvalidBundle):
        x3dh.initiate_session(alice_ids.identity, bundle)


def test_curve_mismatch(identity_factory):
    alice_ids = identity_factory("x25519")
    bob_ids = identity_factory("x448")

    with pytest.raises(InvalidBundle):
        x3dh.initiate_session(alice_ids.identity, bob_ids.publish_bundle(count=1))


def test_unknown_signed_prekey(alice_ids, bob_ids):
    bundle = bob_ids.publish_bundle(count=1)
    message = x3dh.initiate_session(alice_ids.identity, bundle).prekey_message
    message.signed_prekey_id = 4242

    with pytest.raises(InvalidBundle):
        x3dh.respond(bob_ids, message)


def test_ratchet_keys_are_crossed(alice_ids, bob_ids):
    """Test each side's first remote ratchet key is the other's local one."""
    bundle = bob_ids.publish_bundle(count=1)
    initiated = x3dh.initiate_session(alice_ids.identity, bundle)
    responded = x3dh.respond(bob_ids, initiated.prekey_message)

    assert initiated.remote_ratchet_key == responded.local_ratchet_key.public_bytes()
    assert responded.remote_ratchet_key == initiated.local_ratchet_key.public_bytes()


def test_prekey_message_serialization(alice_ids, bob_ids):
    message = x3dh.initiate_session(alice_ids.identity, bob_ids.publish_bundle(count=1)).prekey_message

    assert x3dh.PreKeyMessage.from_dict(message.to_dict()) == message


def test_malformed_prekey_message():
    with pytest.raises(InvalidBundle):
        x3dh.PreKeyMessage.from_dict({"initiator_id": "a"})


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
