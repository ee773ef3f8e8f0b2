"""
Cipherlink - Secure Session Protocol Core

End-to-end encrypted sessions between two peers: X3DH key agreement,
Double Ratchet message keys, an authenticated message codec and optional
zero-knowledge proof attachment.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

# Import core modules for easy access
from .codec import EncryptedEnvelope
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    CipherlinkError,
    ConfigError,
    CryptoError,
    DecryptionFailed,
    ErrorCode,
    HandshakeError,
    IdentityError,
    InvalidBundle,
    KeyAlreadyConsumed,
    MessageKeyExhausted,
    ProofUnavailable,
    ProtocolError,
    RatchetError,
    SessionError,
    TooManySkippedMessages,
    UnknownSession,
    UntrustedBundle,
)
from .identity import Identity, IdentityManager, PreKeyBundle
from .proofs import ProofAttacher, ProofResult, ZKProofEngine
from .ratchet import RatchetSession, RatchetSettings, RatchetState
from .session import MemoryPersistentStore, SessionManager, SessionStore
from .x3dh import PreKeyMessage

__all__ = [
    "APP_NAME",
    "VERSION",
    "CipherlinkError",
    "Config",
    "ConfigError",
    "CryptoError",
    "DecryptionFailed",
    "EncryptedEnvelope",
    "ErrorCode",
    "HandshakeError",
    "Identity",
    "IdentityError",
    "IdentityManager",
    "InvalidBundle",
    "KeyAlreadyConsumed",
    "MemoryPersistentStore",
    "MessageKeyExhausted",
    "PreKeyBundle",
    "PreKeyMessage",
    "ProofAttacher",
    "ProofResult",
    "ProofUnavailable",
    "ProtocolError",
    "RatchetError",
    "RatchetSession",
    "RatchetSettings",
    "RatchetState",
    "SessionError",
    "SessionManager",
    "SessionStore",
    "TooManySkippedMessages",
    "UnknownSession",
    "UntrustedBundle",
    "ZKProofEngine",
    "__author__",
    "__license__",
    "__version__",
]
