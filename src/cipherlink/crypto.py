"""
Cipherlink - Cryptographic primitives.

Created by orpheus497

This module wraps the primitives the session core is built from:
- X25519 (default) or X448 Diffie-Hellman behind a pluggable backend
- Ed25519 signatures over signed pre-keys
- HKDF-SHA256 extract/expand and HMAC-SHA256 for key derivation
- ChaCha20-Poly1305 authenticated encryption with associated data
- Argon2id + AES-256-GCM sealing of identity material at rest

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import base64
import hmac as std_hmac
import json
import logging
import secrets
from typing import Dict, Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x448, x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF, HKDFExpand

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    DEFAULT_CURVE,
    KEY_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
)
from .errors import CryptoError, DecryptionFailed, EntropyFailure, ErrorCode

logger = logging.getLogger(__name__)


def random_bytes(length: int) -> bytes:
    """Read `length` bytes from the system CSPRNG.

    Raises:
        EntropyFailure: If the operating system cannot supply randomness
    """
    try:
        return secrets.token_bytes(length)
    except (OSError, NotImplementedError) as e:
        logger.critical(f"Entropy source failure: {e}")
        raise EntropyFailure(f"Failed to read {length} random bytes: {e}") from e


def sha256(data: bytes) -> bytes:
    """Return the SHA-256 digest of data."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    """Return HMAC-SHA256(key, data)."""
    mac = hmac.HMAC(bytes(key), hashes.SHA256())
    mac.update(data)
    return mac.finalize()


def hkdf(ikm: bytes, salt: Optional[bytes], info: bytes, length: int = KEY_SIZE) -> bytes:
    """Full HKDF-SHA256 (extract then expand).

    Args:
        ikm: Input key material
        salt: Extraction salt (None means a zero-filled salt)
        info: Context and application specific label
        length: Number of output bytes

    Returns:
        Derived key material
    """
    kdf = HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info)
    return kdf.derive(bytes(ikm))


def hkdf_expand(prk: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """HKDF-Expand only, for keys that are already uniformly random."""
    kdf = HKDFExpand(algorithm=hashes.SHA256(), length=length, info=info)
    return kdf.derive(bytes(prk))


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, associated_data: bytes) -> bytes:
    """Encrypt with ChaCha20-Poly1305.

    Returns:
        Ciphertext with the 16-byte tag appended

    Raises:
        CryptoError: If the key or nonce has the wrong size
    """
    if len(nonce) != NONCE_SIZE:
        raise CryptoError(
            ErrorCode.E101_ENCRYPTION_FAILED,
            f"Nonce must be {NONCE_SIZE} bytes",
            {"nonce_size": len(nonce)},
        )
    try:
        return ChaCha20Poly1305(bytes(key)).encrypt(nonce, plaintext, associated_data)
    except ValueError as e:
        raise CryptoError(
            ErrorCode.E101_ENCRYPTION_FAILED, f"Encryption failed: {e}", {"error": str(e)}
        ) from e


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: bytes) -> bytes:
    """Decrypt and authenticate a ChaCha20-Poly1305 ciphertext.

    Raises:
        DecryptionFailed: If the tag does not verify or the inputs are malformed
    """
    if len(nonce) != NONCE_SIZE:
        raise DecryptionFailed(
            f"Nonce must be {NONCE_SIZE} bytes", {"nonce_size": len(nonce)}
        )
    try:
        return ChaCha20Poly1305(bytes(key)).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as e:
        logger.error("Message authentication failed (possible tampering)")
        raise DecryptionFailed("Message authentication failed (possible tampering)") from e
    except ValueError as e:
        raise DecryptionFailed(f"Message decryption failed: {e}", {"error": str(e)}) from e


def constant_time_equal(a: bytes, b: bytes) -> bool:
    """Compare two byte strings without leaking timing."""
    return std_hmac.compare_digest(bytes(a), bytes(b))


class DHBackend:
    """Diffie-Hellman curve backend.

    Subclasses bind the private/public key classes of one curve. The
    session core only ever sees raw public key bytes.
    """

    name: str = ""
    key_size: int = 0
    private_cls = None
    public_cls = None

    def generate(self):
        """Generate a fresh private key."""
        try:
            return self.private_cls.generate()
        except (OSError, NotImplementedError) as e:
            raise EntropyFailure(f"{self.name} key generation failed: {e}") from e

    def load_private(self, data: bytes):
        try:
            return self.private_cls.from_private_bytes(bytes(data))
        except ValueError as e:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"Invalid {self.name} private key: {e}",
                {"curve": self.name},
            ) from e

    def load_public(self, data: bytes):
        try:
            return self.public_cls.from_public_bytes(bytes(data))
        except (ValueError, TypeError) as e:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"Invalid {self.name} public key: {e}",
                {"curve": self.name, "size": len(data) if data else 0},
            ) from e

    def exchange(self, private_key, remote_public: bytes) -> bytes:
        """Compute DH(private_key, remote_public).

        Raises:
            CryptoError: If the remote key is malformed or of low order
        """
        remote_key = self.load_public(remote_public)
        try:
            return private_key.exchange(remote_key)
        except ValueError as e:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"DH exchange failed: {e}",
                {"curve": self.name, "error": str(e)},
            ) from e


class X25519Backend(DHBackend):
    """Curve25519 (default)."""

    name = "x25519"
    key_size = 32
    private_cls = x25519.X25519PrivateKey
    public_cls = x25519.X25519PublicKey


class X448Backend(DHBackend):
    """Curve448, for deployments wanting a higher security margin."""

    name = "x448"
    key_size = 56
    private_cls = x448.X448PrivateKey
    public_cls = x448.X448PublicKey


_BACKENDS: Dict[str, DHBackend] = {
    X25519Backend.name: X25519Backend(),
    X448Backend.name: X448Backend(),
}


def get_backend(name: str = DEFAULT_CURVE) -> DHBackend:
    """Look up a DH backend by curve name.

    Raises:
        CryptoError: If the curve is not supported
    """
    try:
        return _BACKENDS[name.lower()]
    except (KeyError, AttributeError):
        raise CryptoError(
            ErrorCode.E002_INVALID_ARGUMENT,
            f"Unsupported curve: {name}",
            {"supported": sorted(_BACKENDS)},
        )


class KeyPair:
    """A Diffie-Hellman key pair on one curve."""

    def __init__(self, backend: Optional[DHBackend] = None, private_key=None):
        self.backend = backend or get_backend()
        self.private_key = private_key if private_key is not None else self.backend.generate()
        self.public_key = self.private_key.public_key()

    @property
    def curve(self) -> str:
        return self.backend.name

    def public_bytes(self) -> bytes:
        """Get public key as raw bytes."""
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
        )

    def private_bytes(self) -> bytes:
        """Get private key as raw bytes."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def exchange(self, remote_public: bytes) -> bytes:
        return self.backend.exchange(self.private_key, remote_public)

    def to_dict(self) -> Dict[str, str]:
        """Export key pair to dictionary for storage."""
        return {
            "curve": self.curve,
            "private": base64.b64encode(self.private_bytes()).decode("utf-8"),
            "public": base64.b64encode(self.public_bytes()).decode("utf-8"),
        }

    @staticmethod
    def from_dict(data: Dict[str, str]) -> "KeyPair":
        """Import key pair from dictionary."""
        backend = get_backend(data.get("curve", DEFAULT_CURVE))
        private_key = backend.load_private(base64.b64decode(data["private"]))
        return KeyPair(backend, private_key)

    @staticmethod
    def from_private_bytes(data: bytes, backend: Optional[DHBackend] = None) -> "KeyPair":
        backend = backend or get_backend()
        return KeyPair(backend, backend.load_private(data))


class SigningKeyPair:
    """Ed25519 key pair used to sign pre-keys."""

    def __init__(self, private_key: Optional[ed25519.Ed25519PrivateKey] = None):
        if private_key is None:
            try:
                private_key = ed25519.Ed25519PrivateKey.generate()
            except (OSError, NotImplementedError) as e:
                raise EntropyFailure(f"Ed25519 key generation failed: {e}") from e
        self.private_key = private_key
        self.public_key = self.private_key.public_key()

    def sign(self, data: bytes) -> bytes:
        return self.private_key.sign(data)

    def public_bytes(self) -> bytes:
        """Get public key as raw bytes."""
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
        )

    def private_bytes(self) -> bytes:
        """Get private key as raw bytes."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "private": base64.b64encode(self.private_bytes()).decode("utf-8"),
            "public": base64.b64encode(self.public_bytes()).decode("utf-8"),
        }

    @staticmethod
    def from_dict(data: Dict[str, str]) -> "SigningKeyPair":
        private_bytes = base64.b64decode(data["private"])
        return SigningKeyPair(ed25519.Ed25519PrivateKey.from_private_bytes(private_bytes))


def verify_signature(public_key_bytes: bytes, signature: bytes, data: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Returns False for a bad signature or a malformed key rather than raising,
    so callers can map the failure onto their own error type.
    """
    try:
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(bytes(public_key_bytes))
        public_key.verify(bytes(signature), bytes(data))
        return True
    except (InvalidSignature, ValueError, TypeError) as e:
        logger.debug(f"Signature verification failed: {e}")
        return False


def _derive_password_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def seal_with_password(data: Dict, password: str) -> Dict[str, str]:
    """
    Encrypt a JSON-serializable dictionary with a password.

    Argon2id derives a 256-bit key from the password and a fresh 16-byte
    salt; the JSON document is then sealed with AES-256-GCM under a fresh
    12-byte nonce.
    """
    salt = random_bytes(SALT_SIZE)
    key = _derive_password_key(password, salt)

    json_data = json.dumps(data, sort_keys=True)
    nonce = random_bytes(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, json_data.encode("utf-8"), None)

    return {
        "salt": base64.b64encode(salt).decode("utf-8"),
        "nonce": base64.b64encode(nonce).decode("utf-8"),
        "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
        "version": "1.0",
    }


def open_with_password(sealed: Dict[str, str], password: str) -> Dict:
    """
    Decrypt data produced by seal_with_password.

    Raises:
        DecryptionFailed: If the password is wrong or the blob is corrupted
    """
    try:
        salt = base64.b64decode(sealed["salt"])
        nonce = base64.b64decode(sealed["nonce"])
        ciphertext = base64.b64decode(sealed["ciphertext"])
    except (KeyError, ValueError, TypeError) as e:
        raise DecryptionFailed(f"Malformed sealed data: {e}") from e

    key = _derive_password_key(password, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError) as e:
        raise DecryptionFailed(
            "Failed to open sealed data. Incorrect password or corrupted file."
        ) from e
    return json.loads(plaintext.decode("utf-8"))


def generate_fingerprint(public_key_bytes: bytes) -> str:
    """
    Generate a fingerprint from a public key using SHA-256.

    Users should compare fingerprints through a trusted channel before
    trusting a peer's identity key.

    Returns a 64-character hexadecimal fingerprint.
    """
    return sha256(public_key_bytes).hex()


def generate_uid() -> str:
    """Generate a 128-bit random identifier as 32 hex characters."""
    return random_bytes(16).hex()
