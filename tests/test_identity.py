"""
Cipherlink - Identity and pre-key bundle tests.

Created by orpheus497

Tests identity creation, bundle signing, one-time pre-key consumption
and encrypted identity persistence.
"""

import json
import os

import pytest

from cipherlink.errors import (
    ErrorCode,
    IdentityError,
    InvalidBundle,
    KeyAlreadyConsumed,
    UntrustedBundle,
)
from cipherlink.identity import IdentityManager, PreKeyBundle


class TestIdentityCreation:
    """Test identity lifecycle."""

    def test_create_identity(self):
        """Test a new identity carries DH and signing keys."""
        manager = IdentityManager()
        identity = manager.create_identity()

        assert len(identity.uid) == 32
        assert len(identity.identity_key.public_bytes()) == 32
        assert len(identity.signing_key.public_bytes()) == 32
        assert len(identity.fingerprint) == 64
        assert manager.current_signed_prekey is not None

    def test_create_refuses_existing_identity(self, alice_ids):
        """Test an identity is never silently regenerated."""
        uid = alice_ids.identity.uid

        with pytest.raises(IdentityError) as exc_info:
            alice_ids.create_identity()

        assert exc_info.value.code == ErrorCode.E502_IDENTITY_ALREADY_EXISTS
        assert alice_ids.identity.uid == uid

    def test_wipe_then_create(self, alice_ids):
        old_uid = alice_ids.identity.uid

        alice_ids.wipe()
        assert alice_ids.identity is None
        assert alice_ids.one_time_key_count == 0

        assert alice_ids.create_identity().uid != old_uid

    def test_require_identity_without_identity(self):
        with pytest.raises(IdentityError) as exc_info:
            IdentityManager().require_identity()

        assert exc_info.value.code == ErrorCode.E501_IDENTITY_NOT_FOUND

    def test_x448_identity(self, identity_factory):
        manager = identity_factory("x448")

        assert manager.identity.curve == "x448"
        assert len(manager.identity.identity_key.public_bytes()) == 56

    def test_shareable_info_has_no_private_keys(self, alice_ids):
        info = alice_ids.identity.get_shareable_info()

        assert set(info) == {"uid", "identity_key", "signing_key", "fingerprint", "curve"}


class TestPreKeyBundle:
    """Test bundle publication and validation."""

    def test_publish_bundle(self, alice_ids):
        """Test the bundle advertises the requested number of one-time keys."""
        bundle = alice_ids.publish_bundle(count=5)

        assert len(bundle.one_time_prekeys) == 5
        assert len(set(bundle.one_time_key_ids())) == 5
        assert alice_ids.one_time_key_count == 5
        assert bundle.owner_id == alice_ids.identity.uid
        bundle.validate()

    def test_publish_default_count(self, alice_ids):
        assert len(alice_ids.publish_bundle().one_time_prekeys) == 10

    def test_pool_cap(self):
        manager = IdentityManager(max_one_time_keys=15)
        manager.create_identity()
        manager.publish_bundle(count=10)

        with pytest.raises(IdentityError) as exc_info:
            manager.publish_bundle(count=10)

        assert exc_info.value.code == ErrorCode.E506_PREKEY_POOL_FULL

    def test_negative_count_rejected(self, alice_ids):
        with pytest.raises(IdentityError):
            alice_ids.publish_bundle(count=-1)

    def test_tampered_signed_prekey_is_untrusted(self, alice_ids, bob_ids):
        """Test a bundle whose signed pre-key was swapped fails verification."""
        bundle = alice_ids.publish_bundle(count=1)
        bundle.signed_prekey = bob_ids.publish_bundle(count=0).signed_prekey

        with pytest.raises(UntrustedBundle):
            bundle.validate()

    def test_foreign_signing_key_is_untrusted(self, alice_ids, bob_ids):
        bundle = alice_ids.publish_bundle(count=1)
        bundle.signing_key = bob_ids.identity.signing_key.public_bytes()

        with pytest.raises(UntrustedBundle):
            bundle.validate()

    @pytest.mark.parametrize("field", ["identity_key", "signing_key", "signed_prekey", "signature"])
    def test_missing_field_is_invalid(self, alice_ids, field):
        bundle = alice_ids.publish_bundle(count=1)
        setattr(bundle, field, None)

        with pytest.raises(InvalidBundle):
            bundle.validate()

    def test_bundle_serialization(self, alice_ids):
        bundle = alice_ids.publish_bundle(count=3)

        restored = PreKeyBundle.from_dict(json.loads(json.dumps(bundle.to_dict())))

        assert restored.identity_key == bundle.identity_key
        assert restored.one_time_prekeys == bundle.one_time_prekeys
        restored.validate()

    def test_malformed_bundle_dict(self):
        with pytest.raises(InvalidBundle):
            PreKeyBundle.from_dict({"one_time_prekeys": [{"public_key": "AAAA"}]})


class TestOneTimeKeys:
    """Test single-use consumption of one-time pre-keys."""

    def test_consume_once(self, alice_ids):
        """Test a one-time key can be consumed exactly once."""
        bundle = alice_ids.publish_bundle(count=3)
        key_id, public = bundle.one_time_prekeys[1]

        key_pair = alice_ids.consume_one_time_key(bundle, key_id)

        assert key_pair.public_bytes() == public
        assert key_id not in bundle.one_time_key_ids()
        assert alice_ids.one_time_key_count == 2

        with pytest.raises(KeyAlreadyConsumed):
            alice_ids.consume_one_time_key(None, key_id)

    def test_consume_unknown_id(self, alice_ids):
        alice_ids.publish_bundle(count=1)

        with pytest.raises(InvalidBundle):
            alice_ids.consume_one_time_key(None, 9999)

    def test_consume_id_not_in_bundle(self, alice_ids):
        first = alice_ids.publish_bundle(count=1)
        second = alice_ids.publish_bundle(count=1)

        with pytest.raises(InvalidBundle):
            alice_ids.consume_one_time_key(second, first.one_time_key_ids()[0])

        # Still consumable through the bundle that advertised it
        alice_ids.consume_one_time_key(first, first.one_time_key_ids()[0])

    def test_failed_consume_leaves_bundle_intact(self, alice_ids):
        """Test a bundle advertising a key missing from the pool is not modified."""
        bundle = alice_ids.publish_bundle(count=1)
        bundle.one_time_prekeys.append((9999, b"\x00" * 32))
        advertised = list(bundle.one_time_prekeys)

        with pytest.raises(InvalidBundle):
            alice_ids.consume_one_time_key(bundle, 9999)

        assert bundle.one_time_prekeys == advertised
        assert alice_ids.one_time_key_count == 1

    def test_peek_does_not_consume(self, alice_ids):
        bundle = alice_ids.publish_bundle(count=1)
        key_id, public = bundle.one_time_prekeys[0]

        assert alice_ids.peek_one_time_key(bundle, key_id).public_bytes() == public
        assert alice_ids.one_time_key_count == 1
        assert key_id in bundle.one_time_key_ids()

        alice_ids.consume_one_time_key(bundle, key_id)
        with pytest.raises(KeyAlreadyConsumed):
            alice_ids.peek_one_time_key(None, key_id)


    def test_signed_prekey_rotation_keeps_previous(self, alice_ids):
        old = alice_ids.current_signed_prekey

        new = alice_ids.rotate_signed_prekey()
        assert alice_ids.get_signed_prekey(old.key_id) is old.key_pair

        alice_ids.rotate_signed_prekey()
        assert alice_ids.get_signed_prekey(new.key_id) is new.key_pair
        with pytest.raises(InvalidBundle):
            alice_ids.get_signed_prekey(old.key_id)

    def test_expired_signed_prekey_rotates_on_publish(self):
        manager = IdentityManager(signed_prekey_lifetime=0)
        manager.create_identity()
        old_id = manager.current_signed_prekey.key_id
        manager.current_signed_prekey.created_at -= 10

        bundle = manager.publish_bundle(count=0)

        assert bundle.signed_prekey_id != old_id


class TestIdentityPersistence:
    """Test encrypted identity storage."""

    def test_save_and_load(self, temp_dir):
        """Test identity, pre-keys and consumed ids survive a save/load cycle."""
        path = str(temp_dir / "identity.json")
        manager = IdentityManager(identity_file=path)
        manager.create_identity()
        bundle = manager.publish_bundle(count=3)
        consumed = bundle.one_time_key_ids()[0]
        manager.consume_one_time_key(bundle, consumed)
        manager.save_identity("hunter22")

        with open(path, encoding="utf-8") as f:
            assert "identity_key" not in f.read()

        restored = IdentityManager(identity_file=path)
        identity = restored.load_identity("hunter22")

        assert identity.uid == manager.identity.uid
        assert identity.identity_key.public_bytes() == manager.identity.identity_key.public_bytes()
        assert restored.one_time_key_count == 2
        with pytest.raises(KeyAlreadyConsumed):
            restored.consume_one_time_key(None, consumed)

    @pytest.mark.asyncio
    async def test_save_async(self, temp_dir):
        path = str(temp_dir / "identity.json")
        manager = IdentityManager(identity_file=path)
        manager.create_identity()

        await manager.save_identity_async("hunter22")

        assert os.path.exists(path)
        assert not os.path.exists(path + ".tmp")
        restored = IdentityManager(identity_file=path)
        assert restored.load_identity("hunter22").uid == manager.identity.uid

    def test_wrong_password(self, temp_dir):
        path = str(temp_dir / "identity.json")
        manager = IdentityManager(identity_file=path)
        manager.create_identity()
        manager.save_identity("hunter22")

        with pytest.raises(IdentityError) as exc_info:
            IdentityManager(identity_file=path).load_identity("wrong")

        assert exc_info.value.code == ErrorCode.E503_IDENTITY_LOAD_FAILED

    def test_load_missing_file(self, temp_dir):
        manager = IdentityManager(identity_file=str(temp_dir / "missing.json"))

        assert manager.load_identity("pw") is None
        assert not manager.identity_exists()

    def test_load_or_create(self, temp_dir):
        path = str(temp_dir / "identity.json")

        created = IdentityManager(identity_file=path).load_or_create("pw")
        loaded = IdentityManager(identity_file=path).load_or_create("pw")

        assert created.uid == loaded.uid

    def test_wipe_removes_file(self, temp_dir):
        path = str(temp_dir / "identity.json")
        manager = IdentityManager(identity_file=path)
        manager.load_or_create("pw")

        manager.wipe()

        assert not os.path.exists(path)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
