"""
Cipherlink - Global Constants and Configuration Values

This module defines all constants used throughout the Cipherlink session core.
All magic numbers, KDF labels and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Cipherlink"
AUTHOR = "orpheus497"
PROTOCOL_VERSION = 1

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for X25519 and chain keys
NONCE_SIZE = 12  # 96 bits for ChaCha20-Poly1305
SALT_SIZE = 16  # 128 bits
DEFAULT_CURVE = "x25519"
SUPPORTED_CURVES = ("x25519", "x448")
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1

# X3DH key agreement
X3DH_SALT = b"\xff" * KEY_SIZE
X3DH_INFO = b"cipherlink-x3dh-v1"
CHAIN_LABEL_INITIATOR = b"cipherlink-chain-initiator"
CHAIN_LABEL_RESPONDER = b"cipherlink-chain-responder"
ROOT_LABEL_INITIATOR = b"cipherlink-root-initiator"
ROOT_LABEL_RESPONDER = b"cipherlink-root-responder"

# Double Ratchet key derivation
ROOT_KDF_INFO = b"cipherlink-ratchet-root"
MESSAGE_KEY_CONSTANT = b"MSG"
CHAIN_KEY_CONSTANT = b"CHAIN"
RATCHET_MAX_SKIP = 1000  # Largest gap accepted within one chain
RATCHET_MAX_SKIPPED_KEYS = 2000  # Skipped-key cache capacity
RATCHET_SKIPPED_KEY_TTL = 86400  # 24 hours in seconds
RATCHET_ROTATION_THRESHOLD = 100  # Sent messages before proactive rotation
RATCHET_MAX_RETAINED_KEYS = 16  # Own ratchet key pairs the peer may still reference

# Pre-key management
DEFAULT_ONE_TIME_PREKEYS = 10
MAX_ONE_TIME_PREKEYS = 200
SIGNED_PREKEY_LIFETIME = 30 * 86400  # 30 days in seconds

# Zero-knowledge proofs
FIELD_ELEMENT_BYTES = 31  # Fits below the BN128 scalar field modulus
PROOF_TIMEOUT = 30.0  # seconds
PROOF_ID_SIZE = 16

# Message Limits
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_PLAINTEXT_SIZE = 1024 * 1024  # 1 MB

# File Paths
DEFAULT_DATA_DIR = "~/.cipherlink"
IDENTITY_FILENAME = "identity.json"
CONFIG_FILENAME = "config.toml"
LOG_FILENAME = "cipherlink.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
