"""
Cipherlink - Message codec tests.

Created by orpheus497

Tests envelope encryption, tamper detection and transactional decryption.
"""

import dataclasses

import pytest

from cipherlink import codec
from cipherlink.codec import EncryptedEnvelope
from cipherlink.errors import (
    CryptoError,
    DecryptionFailed,
    MessageKeyExhausted,
    ProtocolError,
)
from cipherlink.proofs import ProofReference


def flip_bit(data: bytes, index: int = 0) -> bytes:
    tampered = bytearray(data)
    tampered[index] ^= 0x01
    return bytes(tampered)


def test_encrypt_decrypt(session_pair):
    """Test a message round trip in both directions."""
    alice, bob = session_pair

    envelope = codec.encrypt(alice, b"hello bob")
    assert envelope.ciphertext != b"hello bob"
    assert len(envelope.nonce) == 12
    assert envelope.sender_id == alice.state.local_id
    assert not envelope.proof_attached
    assert codec.decrypt(bob, envelope) == b"hello bob"

    reply = codec.encrypt(bob, "héllo alice 🔒".encode("utf-8"))
    assert codec.decrypt(alice, reply).decode("utf-8") == "héllo alice 🔒"


def test_empty_message(session_pair):
    alice, bob = session_pair

    assert codec.decrypt(bob, codec.encrypt(alice, b"")) == b""


def test_nonces_are_fresh(session_pair):
    alice, _ = session_pair

    nonces = {codec.encrypt(alice, b"same").nonce for _ in range(10)}

    assert len(nonces) == 10


@pytest.mark.parametrize("field_name", ["ciphertext", "nonce"])
def test_tampering_detected_and_state_unchanged(session_pair, field_name):
    """Test a flipped bit fails authentication and leaves the session as it was."""
    alice, bob = session_pair
    envelope = codec.encrypt(alice, b"attack at dawn")
    before = bob.to_dict()

    tampered = dataclasses.replace(
        envelope, **{field_name: flip_bit(getattr(envelope, field_name))}
    )
    with pytest.raises(DecryptionFailed):
        codec.decrypt(bob, tampered)

    assert bob.to_dict() == before
    assert codec.decrypt(bob, envelope) == b"attack at dawn"


def test_tampered_header_detected(session_pair):
    """Test header fields are authenticated as associated data."""
    alice, bob = session_pair
    codec.encrypt(alice, b"first")
    envelope = codec.encrypt(alice, b"second")

    with pytest.raises(DecryptionFailed):
        codec.decrypt(bob, dataclasses.replace(envelope, previous_chain_length=1))
    with pytest.raises(DecryptionFailed):
        codec.decrypt(bob, dataclasses.replace(envelope, sender_id="mallory"))
    with pytest.raises(DecryptionFailed):
        codec.decrypt(bob, dataclasses.replace(envelope, peer_ratchet_key=b"\x02" * 32))

    assert codec.decrypt(bob, envelope) == b"second"


def test_replay_rejected(session_pair):
    """Test the same envelope cannot be decrypted twice."""
    alice, bob = session_pair
    envelope = codec.encrypt(alice, b"once")
    codec.decrypt(bob, envelope)

    with pytest.raises(MessageKeyExhausted):
        codec.decrypt(bob, envelope)


def test_out_of_order_envelopes(session_pair):
    alice, bob = session_pair
    envelopes = [codec.encrypt(alice, f"message {i}".encode()) for i in range(3)]

    assert codec.decrypt(bob, envelopes[2]) == b"message 2"
    assert codec.decrypt(bob, envelopes[0]) == b"message 0"
    assert codec.decrypt(bob, envelopes[1]) == b"message 1"


def test_foreign_session_cannot_decrypt(session_pair, session_pair_factory):
    alice, _ = session_pair
    _, eve = session_pair_factory()

    with pytest.raises(DecryptionFailed):
        codec.decrypt(eve, codec.encrypt(alice, b"private"))


def test_plaintext_size_limit(session_pair):
    alice, _ = session_pair

    with pytest.raises(CryptoError):
        codec.encrypt(alice, b"\x00" * (1024 * 1024 + 1))


def test_envelope_serialization(session_pair):
    alice, bob = session_pair
    envelope = codec.encrypt(alice, b"over the wire")
    envelope.proof = ProofReference("ab" * 16, "message_send", True)

    restored = EncryptedEnvelope.from_dict(envelope.to_dict())

    assert restored == envelope
    assert restored.proof_attached
    assert codec.decrypt(bob, restored) == b"over the wire"


@pytest.mark.parametrize("data", [
    {},
    {"ciphertext": "AAAA", "nonce": "AAAA", "ratchet_public_key": "AAAA",
     "peer_ratchet_key": "AAAA", "message_number": -1, "previous_chain_length": 0, "sender_id": "a"},
    {"ciphertext": "not base64!", "nonce": "AAAA", "ratchet_public_key": "AAAA",
     "peer_ratchet_key": "AAAA", "message_number": 0, "previous_chain_length": 0, "sender_id": "a"},
    {"ciphertext": "AAAA", "nonce": "AAAA", "ratchet_public_key": "AAAA",
     "peer_ratchet_key": None, "message_number": 0, "previous_chain_length": 0, "sender_id": "a"},
])
def test_malformed_envelope(data):
    with pytest.raises(ProtocolError):
        EncryptedEnvelope.from_dict(data)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
