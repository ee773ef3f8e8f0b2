"""
Cipherlink - Identity and pre-key bundle management.

Created by orpheus497

Manages the long-term identity key, the Ed25519 signing key, the signed
pre-key and the pool of one-time pre-keys, and stores all of it encrypted
at rest. One-time pre-keys are single-use: once consumed they are removed
from the pool and their ids are remembered so a replayed handshake cannot
reuse them.
"""

import base64
import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import aiofiles

from . import crypto
from .constants import (
    DEFAULT_CURVE,
    DEFAULT_ONE_TIME_PREKEYS,
    IDENTITY_FILENAME,
    MAX_ONE_TIME_PREKEYS,
    SIGNED_PREKEY_LIFETIME,
)
from .errors import (
    DecryptionFailed,
    ErrorCode,
    IdentityError,
    InvalidBundle,
    KeyAlreadyConsumed,
    UntrustedBundle,
)

logger = logging.getLogger(__name__)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data)


class Identity:
    """Represents the local user's long-term keys."""

    def __init__(
        self,
        uid: str,
        identity_key: crypto.KeyPair,
        signing_key: crypto.SigningKeyPair,
    ):
        self.uid = uid
        self.identity_key = identity_key
        self.signing_key = signing_key
        self.created_at = datetime.now(timezone.utc).isoformat()
        self.fingerprint = crypto.generate_fingerprint(identity_key.public_bytes())

    @property
    def curve(self) -> str:
        return self.identity_key.curve

    def to_dict(self) -> Dict:
        """Export identity to dictionary."""
        return {
            "uid": self.uid,
            "identity_key": self.identity_key.to_dict(),
            "signing_key": self.signing_key.to_dict(),
            "created_at": self.created_at,
            "fingerprint": self.fingerprint,
        }

    @staticmethod
    def from_dict(data: Dict) -> "Identity":
        """Import identity from dictionary."""
        identity = Identity(
            data["uid"],
            crypto.KeyPair.from_dict(data["identity_key"]),
            crypto.SigningKeyPair.from_dict(data["signing_key"]),
        )
        identity.created_at = data["created_at"]
        identity.fingerprint = data["fingerprint"]
        return identity

    def get_shareable_info(self) -> Dict:
        """
        Get shareable identity information.
        Does not include private keys.
        """
        return {
            "uid": self.uid,
            "identity_key": _b64(self.identity_key.public_bytes()),
            "signing_key": _b64(self.signing_key.public_bytes()),
            "fingerprint": self.fingerprint,
            "curve": self.curve,
        }


class SignedPreKey:
    """Medium-term pre-key signed by the identity's signing key."""

    def __init__(self, key_id: int, key_pair: crypto.KeyPair, signature: bytes,
                 created_at: Optional[float] = None):
        self.key_id = key_id
        self.key_pair = key_pair
        self.signature = signature
        self.created_at = created_at if created_at is not None else time.time()

    def is_expired(self, lifetime: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at > lifetime

    def to_dict(self) -> Dict:
        return {
            "key_id": self.key_id,
            "key_pair": self.key_pair.to_dict(),
            "signature": _b64(self.signature),
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict) -> "SignedPreKey":
        return SignedPreKey(
            data["key_id"],
            crypto.KeyPair.from_dict(data["key_pair"]),
            _unb64(data["signature"]),
            data["created_at"],
        )


class PreKeyBundle:
    """Public material a peer needs to start a session with us offline.

    Attributes:
        identity_key: Long-term DH public key
        signing_key: Ed25519 public key that signed the signed pre-key
        signed_prekey: Signed pre-key public bytes
        signed_prekey_id: Id of the signed pre-key
        signature: Ed25519 signature over signed_prekey
        one_time_prekeys: Ordered list of (key_id, public_bytes)
        timestamp: Publication time (seconds since epoch)
        curve: DH curve name
        owner_id: UID of the publishing identity
    """

    REQUIRED_FIELDS = ("identity_key", "signing_key", "signed_prekey", "signed_prekey_id",
                       "signature")

    def __init__(
        self,
        identity_key: Optional[bytes],
        signing_key: Optional[bytes],
        signed_prekey: Optional[bytes],
        signed_prekey_id: Optional[int],
        signature: Optional[bytes],
        one_time_prekeys: Optional[List[Tuple[int, bytes]]] = None,
        timestamp: Optional[float] = None,
        curve: str = DEFAULT_CURVE,
        owner_id: str = "",
    ):
        self.identity_key = identity_key
        self.signing_key = signing_key
        self.signed_prekey = signed_prekey
        self.signed_prekey_id = signed_prekey_id
        self.signature = signature
        self.one_time_prekeys = list(one_time_prekeys or [])
        self.timestamp = timestamp if timestamp is not None else time.time()
        self.curve = curve
        self.owner_id = owner_id

    def one_time_key_ids(self) -> List[int]:
        return [key_id for key_id, _ in self.one_time_prekeys]

    def pop_one_time_key(self) -> Optional[Tuple[int, bytes]]:
        """Take the first advertised one-time pre-key, if any."""
        if not self.one_time_prekeys:
            return None
        return self.one_time_prekeys.pop(0)

    def validate(self) -> None:
        """Check that the bundle is complete and its signature verifies.

        Raises:
            InvalidBundle: If a required key is missing
            UntrustedBundle: If the signed pre-key signature does not verify
        """
        missing = [name for name in self.REQUIRED_FIELDS if getattr(self, name) in (None, b"")]
        if missing:
            raise InvalidBundle(
                f"Pre-key bundle is missing: {', '.join(missing)}",
                {"missing": missing, "owner_id": self.owner_id},
            )

        if not crypto.verify_signature(self.signing_key, self.signature, self.signed_prekey):
            logger.error(f"Untrusted pre-key bundle from {self.owner_id or 'unknown peer'}")
            raise UntrustedBundle(
                "Signed pre-key signature does not verify",
                {"owner_id": self.owner_id, "signed_prekey_id": self.signed_prekey_id},
            )

    def to_dict(self) -> Dict:
        return {
            "owner_id": self.owner_id,
            "curve": self.curve,
            "identity_key": _b64(self.identity_key) if self.identity_key else None,
            "signing_key": _b64(self.signing_key) if self.signing_key else None,
            "signed_prekey": _b64(self.signed_prekey) if self.signed_prekey else None,
            "signed_prekey_id": self.signed_prekey_id,
            "signature": _b64(self.signature) if self.signature else None,
            "one_time_prekeys": [
                {"id": key_id, "public_key": _b64(public)}
                for key_id, public in self.one_time_prekeys
            ],
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(data: Dict) -> "PreKeyBundle":
        """Import a bundle received from the network.

        Raises:
            InvalidBundle: If the encoding is malformed
        """
        def optional_bytes(name: str) -> Optional[bytes]:
            value = data.get(name)
            return _unb64(value) if value else None

        try:
            return PreKeyBundle(
                identity_key=optional_bytes("identity_key"),
                signing_key=optional_bytes("signing_key"),
                signed_prekey=optional_bytes("signed_prekey"),
                signed_prekey_id=data.get("signed_prekey_id"),
                signature=optional_bytes("signature"),
                one_time_prekeys=[
                    (int(entry["id"]), _unb64(entry["public_key"]))
                    for entry in data.get("one_time_prekeys", [])
                ],
                timestamp=data.get("timestamp"),
                curve=data.get("curve", DEFAULT_CURVE),
                owner_id=data.get("owner_id", ""),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidBundle(f"Malformed pre-key bundle: {e}", {"error": str(e)}) from e


class IdentityManager:
    """Manages the local identity, its pre-keys and their encrypted storage."""

    def __init__(
        self,
        identity_file: Optional[str] = None,
        curve: str = DEFAULT_CURVE,
        one_time_count: int = DEFAULT_ONE_TIME_PREKEYS,
        max_one_time_keys: int = MAX_ONE_TIME_PREKEYS,
        signed_prekey_lifetime: float = SIGNED_PREKEY_LIFETIME,
    ):
        self.identity_file = identity_file
        self.backend = crypto.get_backend(curve)
        self.one_time_count = one_time_count
        self.max_one_time_keys = max_one_time_keys
        self.signed_prekey_lifetime = signed_prekey_lifetime

        self.identity: Optional[Identity] = None
        self._signed_prekeys: Dict[int, SignedPreKey] = {}
        self._current_signed_prekey_id: Optional[int] = None
        self._one_time_prekeys: Dict[int, crypto.KeyPair] = {}
        self._consumed_ids: set = set()
        self._next_prekey_id = 1
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, identity_file: Optional[str] = None) -> "IdentityManager":
        """Build a manager from a Config instance.

        The identity file defaults to identity.json in the directory holding
        the configuration file.
        """
        if identity_file is None:
            identity_file = os.path.join(str(config.config_path.parent), IDENTITY_FILENAME)
        return cls(
            identity_file=identity_file,
            curve=config.get("crypto", "curve", DEFAULT_CURVE),
            one_time_count=config.get("prekeys", "one_time_count", DEFAULT_ONE_TIME_PREKEYS),
            max_one_time_keys=config.get("prekeys", "max_one_time_keys", MAX_ONE_TIME_PREKEYS),
            signed_prekey_lifetime=config.get(
                "prekeys", "signed_prekey_lifetime", SIGNED_PREKEY_LIFETIME
            ),
        )

    # Identity lifecycle

    def create_identity(self) -> Identity:
        """
        Create the local identity and its first signed pre-key.

        Raises:
            IdentityError: If an identity already exists (wipe() it first)
            EntropyFailure: If key generation fails
        """
        if self.identity is not None:
            raise IdentityError(
                ErrorCode.E502_IDENTITY_ALREADY_EXISTS,
                "Identity already exists; wipe it before creating a new one",
                {"uid": self.identity.uid},
            )

        self.identity = Identity(
            crypto.generate_uid(),
            crypto.KeyPair(self.backend),
            crypto.SigningKeyPair(),
        )
        self.rotate_signed_prekey()
        logger.info(f"Identity created: {self.identity.uid} ({self.backend.name})")
        return self.identity

    def require_identity(self) -> Identity:
        if self.identity is None:
            raise IdentityError(ErrorCode.E501_IDENTITY_NOT_FOUND, "No identity loaded")
        return self.identity

    def wipe(self) -> None:
        """Forget every key held by this manager and delete the identity file."""
        self.identity = None
        self._signed_prekeys.clear()
        self._current_signed_prekey_id = None
        self._one_time_prekeys.clear()
        self._consumed_ids.clear()
        self._next_prekey_id = 1

        if self.identity_file and os.path.exists(self.identity_file):
            os.remove(self.identity_file)
        logger.info("Identity wiped")

    def _allocate_id(self) -> int:
        key_id = self._next_prekey_id
        self._next_prekey_id += 1
        return key_id

    # Signed pre-keys

    def rotate_signed_prekey(self) -> SignedPreKey:
        """Generate and sign a new signed pre-key.

        The previous signed pre-key is kept so handshakes already in
        flight against the old bundle still complete; older ones are dropped.
        """
        identity = self.require_identity()
        key_pair = crypto.KeyPair(self.backend)
        signature = identity.signing_key.sign(key_pair.public_bytes())
        prekey = SignedPreKey(self._allocate_id(), key_pair, signature)

        previous = self._current_signed_prekey_id
        self._signed_prekeys = {
            key_id: spk for key_id, spk in self._signed_prekeys.items() if key_id == previous
        }
        self._signed_prekeys[prekey.key_id] = prekey
        self._current_signed_prekey_id = prekey.key_id
        logger.info(f"Signed pre-key rotated: #{prekey.key_id}")
        return prekey

    def rotate_signed_prekey_if_expired(self) -> bool:
        current = self.current_signed_prekey
        if current is None or current.is_expired(self.signed_prekey_lifetime):
            self.rotate_signed_prekey()
            return True
        return False

    @property
    def current_signed_prekey(self) -> Optional[SignedPreKey]:
        if self._current_signed_prekey_id is None:
            return None
        return self._signed_prekeys.get(self._current_signed_prekey_id)

    def get_signed_prekey(self, key_id: int) -> crypto.KeyPair:
        """
        Raises:
            InvalidBundle: If the id does not name a retained signed pre-key
        """
        prekey = self._signed_prekeys.get(key_id)
        if prekey is None:
            raise InvalidBundle(
                f"Unknown signed pre-key id: {key_id}",
                {"signed_prekey_id": key_id},
            )
        return prekey.key_pair

    # One-time pre-keys

    @property
    def one_time_key_count(self) -> int:
        return len(self._one_time_prekeys)

    def publish_bundle(self, count: Optional[int] = None) -> PreKeyBundle:
        """
        Generate `count` one-time pre-keys and export a bundle advertising them.

        Raises:
            IdentityError: If no identity exists or the pool would overflow
        """
        identity = self.require_identity()
        count = self.one_time_count if count is None else count

        if count < 0:
            raise IdentityError(
                ErrorCode.E002_INVALID_ARGUMENT, f"Invalid one-time key count: {count}"
            )
        if self.one_time_key_count + count > self.max_one_time_keys:
            raise IdentityError(
                ErrorCode.E506_PREKEY_POOL_FULL,
                f"One-time pre-key pool full: {self.one_time_key_count} + {count} "
                f"> {self.max_one_time_keys}",
                {"pool_size": self.one_time_key_count, "max": self.max_one_time_keys},
            )

        self.rotate_signed_prekey_if_expired()
        signed = self.current_signed_prekey

        published: List[Tuple[int, bytes]] = []
        with self._lock:
            for _ in range(count):
                key_id = self._allocate_id()
                key_pair = crypto.KeyPair(self.backend)
                self._one_time_prekeys[key_id] = key_pair
                published.append((key_id, key_pair.public_bytes()))

        logger.info(f"Published pre-key bundle with {count} one-time keys")
        return PreKeyBundle(
            identity_key=identity.identity_key.public_bytes(),
            signing_key=identity.signing_key.public_bytes(),
            signed_prekey=signed.key_pair.public_bytes(),
            signed_prekey_id=signed.key_id,
            signature=signed.signature,
            one_time_prekeys=published,
            curve=self.backend.name,
            owner_id=identity.uid,
        )

    def _check_one_time_key(self, bundle: Optional[PreKeyBundle], key_id: int) -> crypto.KeyPair:
        """Look up a one-time pre-key without consuming it. Caller holds the lock."""
        if key_id in self._consumed_ids:
            logger.warning(f"Rejected reuse of one-time pre-key #{key_id}")
            raise KeyAlreadyConsumed(
                f"One-time pre-key #{key_id} already consumed", {"key_id": key_id}
            )
        if bundle is not None and key_id not in bundle.one_time_key_ids():
            raise InvalidBundle(
                f"One-time pre-key #{key_id} is not in the bundle", {"key_id": key_id}
            )
        key_pair = self._one_time_prekeys.get(key_id)
        if key_pair is None:
            raise InvalidBundle(f"Unknown one-time pre-key #{key_id}", {"key_id": key_id})
        return key_pair

    def peek_one_time_key(self, bundle: Optional[PreKeyBundle], key_id: int) -> crypto.KeyPair:
        """
        Return the private half of a one-time pre-key, leaving it available.

        Used to trial a handshake before committing to it with
        consume_one_time_key.

        Raises:
            KeyAlreadyConsumed: If the key was consumed before
            InvalidBundle: If the id is unknown or not advertised in bundle
        """
        with self._lock:
            return self._check_one_time_key(bundle, key_id)

    def consume_one_time_key(self, bundle: Optional[PreKeyBundle], key_id: int) -> crypto.KeyPair:
        """
        Remove and return the private half of a one-time pre-key.

        Args:
            bundle: Bundle the key was advertised in (optional). When given,
                the id must be one it advertises and is removed from it.
            key_id: One-time pre-key id

        Raises:
            KeyAlreadyConsumed: If the key was consumed before
            InvalidBundle: If the id is unknown or not advertised in bundle
        """
        with self._lock:
            self._check_one_time_key(bundle, key_id)
            key_pair = self._one_time_prekeys.pop(key_id)
            self._consumed_ids.add(key_id)
            if bundle is not None:
                bundle.one_time_prekeys = [
                    entry for entry in bundle.one_time_prekeys if entry[0] != key_id
                ]

        logger.debug(f"Consumed one-time pre-key #{key_id}")
        return key_pair

    # Persistence

    def _export(self) -> Dict:
        return {
            "identity": self.require_identity().to_dict(),
            "signed_prekeys": [spk.to_dict() for spk in self._signed_prekeys.values()],
            "current_signed_prekey_id": self._current_signed_prekey_id,
            "one_time_prekeys": [
                {"key_id": key_id, "key_pair": key_pair.to_dict()}
                for key_id, key_pair in self._one_time_prekeys.items()
            ],
            "consumed_ids": sorted(self._consumed_ids),
            "next_prekey_id": self._next_prekey_id,
        }

    def _import(self, data: Dict) -> None:
        self.identity = Identity.from_dict(data["identity"])
        self.backend = self.identity.identity_key.backend
        self._signed_prekeys = {
            spk["key_id"]: SignedPreKey.from_dict(spk) for spk in data["signed_prekeys"]
        }
        self._current_signed_prekey_id = data["current_signed_prekey_id"]
        self._one_time_prekeys = {
            entry["key_id"]: crypto.KeyPair.from_dict(entry["key_pair"])
            for entry in data["one_time_prekeys"]
        }
        self._consumed_ids = set(data["consumed_ids"])
        self._next_prekey_id = data["next_prekey_id"]

    def _require_file(self) -> str:
        if not self.identity_file:
            raise IdentityError(ErrorCode.E002_INVALID_ARGUMENT, "No identity file configured")
        return self.identity_file

    def save_identity(self, password: str) -> None:
        """Save identity and pre-keys to the encrypted file (synchronous)."""
        identity_file = self._require_file()
        encrypted_data = crypto.seal_with_password(self._export(), password)

        try:
            # Write to a temp file first so a crash never leaves a torn file
            temp_file = identity_file + ".tmp"
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(encrypted_data, f, indent=2, ensure_ascii=False)
            os.replace(temp_file, identity_file)
        except OSError as e:
            logger.error(f"Failed to save identity: {e}", exc_info=True)
            raise IdentityError(
                ErrorCode.E504_IDENTITY_SAVE_FAILED,
                f"Failed to save identity: {e}",
                {"path": identity_file},
            ) from e
        logger.info(f"Identity saved: {self.identity.uid}")

    async def save_identity_async(self, password: str) -> None:
        """Save identity and pre-keys to the encrypted file asynchronously."""
        identity_file = self._require_file()
        encrypted_data = crypto.seal_with_password(self._export(), password)
        json_data = json.dumps(encrypted_data, indent=2, ensure_ascii=False)

        try:
            temp_file = identity_file + ".tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json_data)
            os.replace(temp_file, identity_file)
        except OSError as e:
            logger.error(f"Failed to save identity (async): {e}", exc_info=True)
            raise IdentityError(
                ErrorCode.E504_IDENTITY_SAVE_FAILED,
                f"Failed to save identity: {e}",
                {"path": identity_file},
            ) from e
        logger.info(f"Identity saved (async): {self.identity.uid}")

    def load_identity(self, password: str) -> Optional[Identity]:
        """
        Load identity from the encrypted file.
        Returns None if the file doesn't exist.

        Raises:
            IdentityError: If the password is wrong or the file is corrupted
        """
        identity_file = self._require_file()
        if not os.path.exists(identity_file):
            logger.debug(f"Identity file does not exist: {identity_file}")
            return None

        try:
            with open(identity_file, "r", encoding="utf-8") as f:
                encrypted_data = json.load(f)
            self._import(crypto.open_with_password(encrypted_data, password))
        except DecryptionFailed as e:
            logger.warning(f"Failed to decrypt identity (incorrect password?): {e}")
            raise IdentityError(
                ErrorCode.E503_IDENTITY_LOAD_FAILED,
                "Failed to decrypt identity. Incorrect password or corrupted file.",
                {"path": identity_file},
            ) from e
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Corrupted identity file: {e}")
            raise IdentityError(
                ErrorCode.E505_INVALID_IDENTITY,
                f"Corrupted identity file: {e}",
                {"path": identity_file},
            ) from e

        logger.info(f"Identity loaded: {self.identity.uid}")
        return self.identity

    def load_or_create(self, password: str) -> Identity:
        identity = self.load_identity(password)
        if identity is None:
            identity = self.create_identity()
            self.save_identity(password)
        return identity

    def identity_exists(self) -> bool:
        """Check if identity file exists."""
        return bool(self.identity_file) and os.path.exists(self.identity_file)
