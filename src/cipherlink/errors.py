"""
Cipherlink - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used by the
session core. Each error has a unique code for logging and debugging.

Handshake errors abort session establishment. Ratchet and decryption
errors are scoped to a single message and never leave partially
mutated state behind. Proof errors are advisory and are reported through
ProofResult rather than raised from send paths.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Cipherlink error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E003_FILE_NOT_FOUND = "E003"
    E005_OPERATION_FAILED = "E005"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_ENTROPY_FAILURE = "E104"
    E105_SIGNATURE_FAILED = "E105"
    E106_VERIFICATION_FAILED = "E106"
    E107_RATCHET_ERROR = "E107"
    E108_KEY_DERIVATION_FAILED = "E108"
    E109_TOO_MANY_SKIPPED = "E109"
    E110_MESSAGE_KEY_EXHAUSTED = "E110"

    # Handshake Errors (E200-E299)
    E200_HANDSHAKE_ERROR = "E200"
    E201_INVALID_BUNDLE = "E201"
    E202_UNTRUSTED_BUNDLE = "E202"
    E203_KEY_ALREADY_CONSUMED = "E203"
    E204_UNKNOWN_PREKEY = "E204"

    # Session Errors (E300-E399)
    E300_SESSION_ERROR = "E300"
    E301_UNKNOWN_SESSION = "E301"
    E302_SESSION_TERMINATED = "E302"
    E303_SESSION_LOAD_FAILED = "E303"
    E304_SESSION_SAVE_FAILED = "E304"
    E305_INVALID_STATE = "E305"

    # Proof Errors (E400-E499)
    E400_PROOF_ERROR = "E400"
    E401_PROOF_UNAVAILABLE = "E401"
    E402_PROOF_TIMEOUT = "E402"
    E403_PROOF_REJECTED = "E403"

    # Identity Errors (E500-E599)
    E500_IDENTITY_ERROR = "E500"
    E501_IDENTITY_NOT_FOUND = "E501"
    E502_IDENTITY_ALREADY_EXISTS = "E502"
    E503_IDENTITY_LOAD_FAILED = "E503"
    E504_IDENTITY_SAVE_FAILED = "E504"
    E505_INVALID_IDENTITY = "E505"
    E506_PREKEY_POOL_FULL = "E506"

    # Protocol Errors (E600-E699)
    E600_PROTOCOL_ERROR = "E600"
    E601_INVALID_MESSAGE = "E601"
    E602_MESSAGE_TOO_LARGE = "E602"
    E603_UNSUPPORTED_VERSION = "E603"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class CipherlinkError(Exception):
    """Base exception class for all Cipherlink errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a Cipherlink error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(CipherlinkError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class EntropyFailure(CryptoError):
    """The system random source could not supply key material. Fatal."""

    def __init__(
        self,
        message: str = "System entropy source unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E104_ENTROPY_FAILURE, message, details)


class DecryptionFailed(CryptoError):
    """AEAD authentication failed: the message was tampered with or the key is wrong."""

    def __init__(
        self,
        message: str = "Message authentication failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


class RatchetError(CryptoError):
    """Exception raised for invalid ratchet operations or states."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E107_RATCHET_ERROR,
        message: str = "Ratchet operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TooManySkippedMessages(RatchetError):
    """A message number is further ahead than the skip bound allows."""

    def __init__(
        self,
        message: str = "Too many skipped messages",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E109_TOO_MANY_SKIPPED, message, details)


class MessageKeyExhausted(RatchetError):
    """The message key was already used, evicted or expired."""

    def __init__(
        self,
        message: str = "Message key no longer available",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E110_MESSAGE_KEY_EXHAUSTED, message, details)


class HandshakeError(CipherlinkError):
    """Exception raised when session establishment fails."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_HANDSHAKE_ERROR,
        message: str = "Session establishment failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class InvalidBundle(HandshakeError):
    """A pre-key bundle or handshake message is missing required keys."""

    def __init__(
        self,
        message: str = "Invalid pre-key bundle",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E201_INVALID_BUNDLE, message, details)


class UntrustedBundle(HandshakeError):
    """The signed pre-key signature does not verify."""

    def __init__(
        self,
        message: str = "Signed pre-key signature verification failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E202_UNTRUSTED_BUNDLE, message, details)


class KeyAlreadyConsumed(HandshakeError):
    """A one-time pre-key was requested a second time."""

    def __init__(
        self,
        message: str = "One-time pre-key already consumed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E203_KEY_ALREADY_CONSUMED, message, details)


class SessionError(CipherlinkError):
    """Exception raised for session store and lifecycle failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_SESSION_ERROR,
        message: str = "Session operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class UnknownSession(SessionError):
    """No active session exists for the requested peer."""

    def __init__(
        self,
        message: str = "No session for peer",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E301_UNKNOWN_SESSION, message, details)


class ProofError(CipherlinkError):
    """Exception raised for proof generation or verification failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_PROOF_ERROR,
        message: str = "Proof operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProofUnavailable(ProofError):
    """A proof could not be produced. Advisory, the message still goes out."""

    def __init__(
        self,
        message: str = "Proof unavailable",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E401_PROOF_UNAVAILABLE,
    ):
        super().__init__(code, message, details)


class IdentityError(CipherlinkError):
    """Exception raised for identity and pre-key management failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(CipherlinkError):
    """Exception raised for malformed or unsupported wire messages."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E600_PROTOCOL_ERROR,
        message: str = "Protocol violation",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(CipherlinkError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
