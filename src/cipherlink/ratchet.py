"""
Cipherlink - Double Ratchet Implementation

This module implements the Double Ratchet key schedule for forward secrecy
and break-in recovery. It is seeded by the X3DH shared secret.

The Double Ratchet combines:
- Diffie-Hellman ratchet (X25519 or X448) mixed into one root chain per
  direction, so each side orders the steps of its own sending chains
- Symmetric ratchet (HMAC-SHA256) for per-message keys
- Message keys that are handed out once and then forgotten

Security properties:
- Bounded skipped-key cache with oldest-first eviction and expiry
- Transactional receive: derivations run on a forked state that is only
  committed once the message authenticates
- Proactive rotation of the sending ratchet key after a message threshold
- Headers name the receiver ratchet key a chain was derived against, so
  rotations and replies that cross in flight still agree
- Key material held in mutable buffers and zeroed on termination

Author: orpheus497
Version: 1.0.0
"""

import logging
import struct
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, List, Optional, Set, Tuple

from . import crypto
from .constants import (
    CHAIN_KEY_CONSTANT,
    CHAIN_LABEL_INITIATOR,
    CHAIN_LABEL_RESPONDER,
    DEFAULT_CURVE,
    KEY_SIZE,
    MESSAGE_KEY_CONSTANT,
    RATCHET_MAX_RETAINED_KEYS,
    RATCHET_MAX_SKIP,
    RATCHET_MAX_SKIPPED_KEYS,
    RATCHET_ROTATION_THRESHOLD,
    RATCHET_SKIPPED_KEY_TTL,
    ROOT_KDF_INFO,
    ROOT_LABEL_INITIATOR,
    ROOT_LABEL_RESPONDER,
)
from .errors import (
    CryptoError,
    DecryptionFailed,
    ErrorCode,
    MessageKeyExhausted,
    RatchetError,
    TooManySkippedMessages,
)
from .utils import b64decode, b64encode, short_id, zeroize

logger = logging.getLogger(__name__)


class SessionPhase(Enum):
    """Lifecycle phases of a ratchet session."""

    UNINITIALIZED = auto()  # No shared secret yet
    ESTABLISHED = auto()  # Seeded, nothing sent or received
    SENDING = auto()  # Last operation was a send
    RECEIVING = auto()  # Last operation was a receive
    TERMINATED = auto()  # Key material wiped


# Valid phase transitions
PHASE_TRANSITIONS: Dict[SessionPhase, Set[SessionPhase]] = {
    SessionPhase.UNINITIALIZED: {SessionPhase.ESTABLISHED, SessionPhase.TERMINATED},
    SessionPhase.ESTABLISHED: {
        SessionPhase.SENDING,
        SessionPhase.RECEIVING,
        SessionPhase.TERMINATED,
    },
    SessionPhase.SENDING: {
        SessionPhase.SENDING,
        SessionPhase.RECEIVING,
        SessionPhase.TERMINATED,
    },
    SessionPhase.RECEIVING: {
        SessionPhase.SENDING,
        SessionPhase.RECEIVING,
        SessionPhase.TERMINATED,
    },
    SessionPhase.TERMINATED: set(),
}


@dataclass(frozen=True)
class RatchetHeader:
    """Per-message ratchet header, sent in the clear and authenticated as AD.

    Attributes:
        ratchet_public_key: Sender's ratchet public key for this chain
        message_number: Index in the chain
        previous_chain_length: Messages sent on the sender's previous chain
        peer_ratchet_key: Receiver's ratchet public key the chain was derived against
    """

    ratchet_public_key: bytes
    message_number: int
    previous_chain_length: int
    peer_ratchet_key: bytes

    def encode(self) -> bytes:
        """Canonical byte form: key lengths (u16 each), n (u32), pn (u32), keys."""
        return struct.pack(
            "!HHII",
            len(self.ratchet_public_key),
            len(self.peer_ratchet_key),
            self.message_number,
            self.previous_chain_length,
        ) + bytes(self.ratchet_public_key) + bytes(self.peer_ratchet_key)


@dataclass
class RotationEvent:
    """Record of a proactive sending-key rotation.

    The commitments are SHA-256 digests of the sending chain key before and
    after the rotation, suitable as public inputs for a key-rotation proof.
    """

    index: int
    old_commitment: bytes
    new_commitment: bytes
    previous_chain_length: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class RatchetSettings:
    """Tunable limits of the ratchet engine."""

    max_skip: int = RATCHET_MAX_SKIP
    max_skipped_keys: int = RATCHET_MAX_SKIPPED_KEYS
    skipped_key_ttl: float = RATCHET_SKIPPED_KEY_TTL
    rotation_threshold: int = RATCHET_ROTATION_THRESHOLD

    @classmethod
    def from_config(cls, config) -> "RatchetSettings":
        return cls(
            max_skip=config.get("ratchet", "max_skip", RATCHET_MAX_SKIP),
            max_skipped_keys=config.get("ratchet", "max_skipped_keys", RATCHET_MAX_SKIPPED_KEYS),
            skipped_key_ttl=config.get("ratchet", "skipped_key_ttl", RATCHET_SKIPPED_KEY_TTL),
            rotation_threshold=config.get(
                "ratchet", "rotation_threshold", RATCHET_ROTATION_THRESHOLD
            ),
        )


class SkippedKeyCache:
    """Bounded store of message keys for messages not yet received.

    Entries are keyed by (ratchet public key, message number) and kept in
    insertion order. When the cache is full the oldest entry is evicted;
    entries older than the TTL are purged on every receive. Each key can
    be taken at most once.
    """

    def __init__(self, max_entries: int = RATCHET_MAX_SKIPPED_KEYS,
                 ttl: float = RATCHET_SKIPPED_KEY_TTL):
        self.max_entries = max_entries
        self.ttl = ttl
        self._entries: "OrderedDict[Tuple[bytes, int], Tuple[bytearray, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item: Tuple[bytes, int]) -> bool:
        return item in self._entries

    def put(self, ratchet_key: bytes, message_number: int, message_key: bytes,
            timestamp: Optional[float] = None) -> int:
        """Store a skipped message key, evicting the oldest entries if full.

        Returns:
            Number of entries evicted
        """
        self._entries[(bytes(ratchet_key), message_number)] = (
            bytearray(message_key),
            time.time() if timestamp is None else timestamp,
        )

        evicted = 0
        while len(self._entries) > self.max_entries:
            _, (old_key, _) = self._entries.popitem(last=False)
            zeroize(old_key)
            evicted += 1
        if evicted:
            logger.warning(
                f"Skipped-key cache full, evicted {evicted} oldest keys (limit {self.max_entries})"
            )
        return evicted

    def take(self, ratchet_key: bytes, message_number: int,
             now: Optional[float] = None) -> Optional[bytes]:
        """Remove and return a cached key, or None if absent or expired."""
        entry = self._entries.pop((bytes(ratchet_key), message_number), None)
        if entry is None:
            return None

        message_key, timestamp = entry
        now = time.time() if now is None else now
        if now - timestamp > self.ttl:
            zeroize(message_key)
            return None

        result = bytes(message_key)
        zeroize(message_key)
        return result

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop every entry older than the TTL.

        Returns:
            Number of entries removed
        """
        now = time.time() if now is None else now
        expired = [
            skip_key for skip_key, (_, timestamp) in self._entries.items()
            if now - timestamp > self.ttl
        ]
        for skip_key in expired:
            message_key, _ = self._entries.pop(skip_key)
            zeroize(message_key)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired skipped message keys")
        return len(expired)

    def copy(self) -> "SkippedKeyCache":
        clone = SkippedKeyCache(self.max_entries, self.ttl)
        for skip_key, (message_key, timestamp) in self._entries.items():
            clone._entries[skip_key] = (bytearray(message_key), timestamp)
        return clone

    def wipe(self) -> None:
        for message_key, _ in self._entries.values():
            zeroize(message_key)
        self._entries.clear()

    def to_list(self) -> List[Dict]:
        return [
            {
                "ratchet_key": b64encode(ratchet_key),
                "message_number": message_number,
                "message_key": b64encode(message_key),
                "timestamp": timestamp,
            }
            for (ratchet_key, message_number), (message_key, timestamp) in self._entries.items()
        ]

    @staticmethod
    def from_list(entries: List[Dict], max_entries: int = RATCHET_MAX_SKIPPED_KEYS,
                  ttl: float = RATCHET_SKIPPED_KEY_TTL) -> "SkippedKeyCache":
        cache = SkippedKeyCache(max_entries, ttl)
        for entry in entries:
            cache._entries[(b64decode(entry["ratchet_key"]), entry["message_number"])] = (
                bytearray(b64decode(entry["message_key"])),
                entry["timestamp"],
            )
        return cache


class RatchetState:
    """State for one Double Ratchet session with one peer.

    Each direction has its own root chain. A side's sending root only ever
    absorbs its own sending steps and the peer's receiving root mirrors it,
    so the two sides never have to agree on how their steps interleave.

    Attributes:
        peer_id: Remote peer identifier
        local_id: Local identity identifier
        backend: DH curve backend
        sending_root_key: Root chain feeding our sending chains
        receiving_root_key: Root chain feeding our receiving chains
        pre_step_root_key: Sending root from before the last sending step,
            kept until that step's first message goes out
        sending_chain_key: Sending chain key
        receiving_chain_key: Receiving chain key (None until one exists)
        sending_ratchet_key: Our current ratchet key pair
        ratchet_key_history: Our ratchet key pairs the peer may still derive
            against, oldest first, keyed by public bytes
        receiving_ratchet_key: Peer's current ratchet public key
        send_message_number: Next message number to send
        receive_message_number: Next message number expected
        previous_chain_length: Messages sent on our previous sending chain
        skipped_keys: Cache of keys for out-of-order messages
        associated_data: X3DH associated data (IK_initiator || IK_responder)
        send_ratchet_pending: A new peer ratchet key was seen; step on next send
        rotation_count: Number of proactive rotations performed
        accepted_handshake_key: Ephemeral key of the handshake an inbound
            session was accepted from, None for sessions we initiated
        phase: Lifecycle phase
        created_at: Creation time (seconds since epoch)
        last_used: Time of the last send or receive
    """

    def __init__(self, peer_id: str = "", local_id: str = "",
                 backend: Optional[crypto.DHBackend] = None):
        """Initialize an empty ratchet state."""
        self.peer_id = peer_id
        self.local_id = local_id
        self.backend = backend or crypto.get_backend(DEFAULT_CURVE)
        self.sending_root_key: Optional[bytearray] = None
        self.receiving_root_key: Optional[bytearray] = None
        self.pre_step_root_key: Optional[bytearray] = None
        self.sending_chain_key: Optional[bytearray] = None
        self.receiving_chain_key: Optional[bytearray] = None
        self.sending_ratchet_key: Optional[crypto.KeyPair] = None
        self.ratchet_key_history: "OrderedDict[bytes, crypto.KeyPair]" = OrderedDict()
        self.receiving_ratchet_key: Optional[bytes] = None
        self.send_message_number: int = 0
        self.receive_message_number: int = 0
        self.previous_chain_length: int = 0
        self.skipped_keys = SkippedKeyCache()
        self.associated_data: bytes = b""
        self.send_ratchet_pending: bool = False
        self.rotation_count: int = 0
        self.accepted_handshake_key: Optional[bytes] = None
        self.phase = SessionPhase.UNINITIALIZED
        self.created_at: float = time.time()
        self.last_used: float = self.created_at

    def copy(self) -> "RatchetState":
        """Independent copy with its own key buffers."""
        def clone_buffer(buffer: Optional[bytearray]) -> Optional[bytearray]:
            return bytearray(buffer) if buffer is not None else None

        clone = RatchetState(self.peer_id, self.local_id, self.backend)
        clone.sending_root_key = clone_buffer(self.sending_root_key)
        clone.receiving_root_key = clone_buffer(self.receiving_root_key)
        clone.pre_step_root_key = clone_buffer(self.pre_step_root_key)
        clone.sending_chain_key = clone_buffer(self.sending_chain_key)
        clone.receiving_chain_key = clone_buffer(self.receiving_chain_key)
        clone.sending_ratchet_key = self.sending_ratchet_key
        clone.ratchet_key_history = OrderedDict(self.ratchet_key_history)
        clone.receiving_ratchet_key = self.receiving_ratchet_key
        clone.send_message_number = self.send_message_number
        clone.receive_message_number = self.receive_message_number
        clone.previous_chain_length = self.previous_chain_length
        clone.skipped_keys = self.skipped_keys.copy()
        clone.associated_data = self.associated_data
        clone.send_ratchet_pending = self.send_ratchet_pending
        clone.rotation_count = self.rotation_count
        clone.accepted_handshake_key = self.accepted_handshake_key
        clone.phase = self.phase
        clone.created_at = self.created_at
        clone.last_used = self.last_used
        return clone

    def wipe(self) -> None:
        """Zero every key buffer and drop references to private keys."""
        zeroize(self.sending_root_key)
        zeroize(self.receiving_root_key)
        zeroize(self.pre_step_root_key)
        zeroize(self.sending_chain_key)
        zeroize(self.receiving_chain_key)
        self.skipped_keys.wipe()
        self.sending_ratchet_key = None
        self.ratchet_key_history.clear()

    def to_dict(self) -> Dict:
        """Get ratchet state as dictionary for serialization.

        Note:
            This includes sensitive key material and should be
            encrypted before storage.
        """
        return {
            "peer_id": self.peer_id,
            "local_id": self.local_id,
            "curve": self.backend.name,
            "sending_root_key": b64encode(self.sending_root_key),
            "receiving_root_key": b64encode(self.receiving_root_key),
            "pre_step_root_key": b64encode(self.pre_step_root_key),
            "sending_chain_key": b64encode(self.sending_chain_key),
            "receiving_chain_key": b64encode(self.receiving_chain_key),
            "sending_ratchet_key": (
                b64encode(self.sending_ratchet_key.private_bytes())
                if self.sending_ratchet_key is not None
                else None
            ),
            "ratchet_key_history": [
                b64encode(key_pair.private_bytes())
                for key_pair in self.ratchet_key_history.values()
            ],
            "receiving_ratchet_key": b64encode(self.receiving_ratchet_key),
            "send_message_number": self.send_message_number,
            "receive_message_number": self.receive_message_number,
            "previous_chain_length": self.previous_chain_length,
            "skipped_keys": self.skipped_keys.to_list(),
            "skipped_keys_limit": self.skipped_keys.max_entries,
            "skipped_keys_ttl": self.skipped_keys.ttl,
            "associated_data": b64encode(self.associated_data),
            "send_ratchet_pending": self.send_ratchet_pending,
            "rotation_count": self.rotation_count,
            "accepted_handshake_key": b64encode(self.accepted_handshake_key),
            "phase": self.phase.name,
            "created_at": self.created_at,
            "last_used": self.last_used,
        }

    @staticmethod
    def from_dict(data: Dict) -> "RatchetState":
        """Restore a state exported with to_dict.

        Raises:
            RatchetError: If the data is incomplete or malformed
        """
        def optional_buffer(name: str) -> Optional[bytearray]:
            value = b64decode(data.get(name))
            return bytearray(value) if value is not None else None

        try:
            backend = crypto.get_backend(data["curve"])
            state = RatchetState(data["peer_id"], data["local_id"], backend)
            state.sending_root_key = optional_buffer("sending_root_key")
            state.receiving_root_key = optional_buffer("receiving_root_key")
            state.pre_step_root_key = optional_buffer("pre_step_root_key")
            state.sending_chain_key = optional_buffer("sending_chain_key")
            state.receiving_chain_key = optional_buffer("receiving_chain_key")
            for private_key in data["ratchet_key_history"]:
                key_pair = crypto.KeyPair.from_private_bytes(b64decode(private_key), backend)
                state.ratchet_key_history[key_pair.public_bytes()] = key_pair
            sending_private = b64decode(data.get("sending_ratchet_key"))
            if sending_private is not None:
                sending = crypto.KeyPair.from_private_bytes(sending_private, backend)
                state.sending_ratchet_key = state.ratchet_key_history.get(
                    sending.public_bytes(), sending
                )
            state.receiving_ratchet_key = b64decode(data.get("receiving_ratchet_key"))
            state.send_message_number = data["send_message_number"]
            state.receive_message_number = data["receive_message_number"]
            state.previous_chain_length = data["previous_chain_length"]
            state.skipped_keys = SkippedKeyCache.from_list(
                data["skipped_keys"],
                data.get("skipped_keys_limit", RATCHET_MAX_SKIPPED_KEYS),
                data.get("skipped_keys_ttl", RATCHET_SKIPPED_KEY_TTL),
            )
            state.associated_data = b64decode(data["associated_data"]) or b""
            state.send_ratchet_pending = data["send_ratchet_pending"]
            state.rotation_count = data["rotation_count"]
            state.accepted_handshake_key = b64decode(data.get("accepted_handshake_key"))
            state.phase = SessionPhase[data["phase"]]
            state.created_at = data["created_at"]
            state.last_used = data["last_used"]
        except (KeyError, ValueError, TypeError, CryptoError) as e:
            raise RatchetError(
                ErrorCode.E303_SESSION_LOAD_FAILED,
                f"Invalid ratchet state: {e}",
                {"error": str(e)},
            ) from e
        return state


class RatchetSession:
    """Double Ratchet session for secure messaging.

    Hands out one message key per outgoing message and recovers the
    matching key for each incoming header. The session never touches
    plaintext; the message codec applies the keys.
    """

    def __init__(self, state: RatchetState, settings: Optional[RatchetSettings] = None):
        self.state = state
        if settings is None:
            # Keep the cache limits the state was saved with
            settings = RatchetSettings(
                max_skipped_keys=state.skipped_keys.max_entries,
                skipped_key_ttl=state.skipped_keys.ttl,
            )
        self.settings = settings
        self.state.skipped_keys.max_entries = settings.max_skipped_keys
        self.state.skipped_keys.ttl = settings.skipped_key_ttl
        self._rotation_events: List[RotationEvent] = []

    @classmethod
    def initialize(
        cls,
        shared_secret: bytes,
        associated_data: bytes,
        local_ratchet_key: crypto.KeyPair,
        remote_ratchet_key: bytes,
        initiator: bool,
        peer_id: str = "",
        local_id: str = "",
        settings: Optional[RatchetSettings] = None,
    ) -> "RatchetSession":
        """Seed a session from an X3DH shared secret.

        Both directions get their first root and chain keys by expanding the
        shared secret under distinct labels, so each side can send
        immediately. The responder performs a DH ratchet step before its
        first send.

        Args:
            shared_secret: 32-byte X3DH output
            associated_data: X3DH associated data
            local_ratchet_key: Our first ratchet key pair
            remote_ratchet_key: Peer's first ratchet public key
            initiator: True on the side that started the handshake
            peer_id: Remote peer identifier
            local_id: Local identity identifier
            settings: Ratchet limits

        Raises:
            CryptoError: If the shared secret has the wrong size
        """
        if len(shared_secret) != KEY_SIZE:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY, f"Shared secret must be {KEY_SIZE} bytes"
            )

        initiator_root = crypto.hkdf_expand(shared_secret, ROOT_LABEL_INITIATOR)
        responder_root = crypto.hkdf_expand(shared_secret, ROOT_LABEL_RESPONDER)
        initiator_chain = crypto.hkdf_expand(shared_secret, CHAIN_LABEL_INITIATOR)
        responder_chain = crypto.hkdf_expand(shared_secret, CHAIN_LABEL_RESPONDER)

        state = RatchetState(peer_id, local_id, local_ratchet_key.backend)
        state.associated_data = bytes(associated_data)
        state.sending_ratchet_key = local_ratchet_key
        state.ratchet_key_history[local_ratchet_key.public_bytes()] = local_ratchet_key
        state.receiving_ratchet_key = bytes(remote_ratchet_key)

        if initiator:
            state.sending_root_key = bytearray(initiator_root)
            state.receiving_root_key = bytearray(responder_root)
            state.sending_chain_key = bytearray(initiator_chain)
            state.receiving_chain_key = bytearray(responder_chain)
        else:
            state.sending_root_key = bytearray(responder_root)
            state.receiving_root_key = bytearray(initiator_root)
            state.sending_chain_key = bytearray(responder_chain)
            state.receiving_chain_key = bytearray(initiator_chain)
            state.send_ratchet_pending = True

        session = cls(state, settings)
        session._transition(SessionPhase.ESTABLISHED)
        logger.debug(
            f"Initialized ratchet session with {short_id(peer_id)} as "
            f"{'initiator' if initiator else 'responder'}"
        )
        return session

    # Key derivation

    @staticmethod
    def _kdf_rk(root_key: bytes, dh_output: bytes) -> Tuple[bytearray, bytearray]:
        """KDF for root key derivation.

        Returns:
            Tuple of (new_root_key, chain_key)
        """
        output = crypto.hkdf(dh_output, bytes(root_key), ROOT_KDF_INFO, 2 * KEY_SIZE)
        return bytearray(output[:KEY_SIZE]), bytearray(output[KEY_SIZE:])

    @staticmethod
    def _kdf_ck(chain_key: bytes) -> Tuple[bytearray, bytes]:
        """KDF for chain key derivation.

        Returns:
            Tuple of (new_chain_key, message_key)
        """
        message_key = crypto.hmac_sha256(chain_key, MESSAGE_KEY_CONSTANT)
        new_chain_key = bytearray(crypto.hmac_sha256(chain_key, CHAIN_KEY_CONSTANT))
        return new_chain_key, message_key

    @staticmethod
    def _commitment(key: Optional[bytes]) -> bytes:
        return crypto.sha256(bytes(key or b""))

    def _advance_sending_chain(self) -> bytes:
        old = self.state.sending_chain_key
        self.state.sending_chain_key, message_key = self._kdf_ck(old)
        zeroize(old)
        return message_key

    def _advance_receiving_chain(self) -> bytes:
        old = self.state.receiving_chain_key
        self.state.receiving_chain_key, message_key = self._kdf_ck(old)
        zeroize(old)
        return message_key

    # Lifecycle

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    @property
    def is_active(self) -> bool:
        return self.state.phase not in (SessionPhase.UNINITIALIZED, SessionPhase.TERMINATED)

    def _transition(self, to_phase: SessionPhase) -> None:
        if to_phase not in PHASE_TRANSITIONS[self.state.phase]:
            raise RatchetError(
                ErrorCode.E305_INVALID_STATE,
                f"Invalid ratchet transition {self.state.phase.name} -> {to_phase.name}",
                {"from": self.state.phase.name, "to": to_phase.name},
            )
        self.state.phase = to_phase

    def _require_active(self) -> None:
        if not self.is_active:
            raise RatchetError(
                ErrorCode.E302_SESSION_TERMINATED
                if self.state.phase == SessionPhase.TERMINATED
                else ErrorCode.E305_INVALID_STATE,
                f"Ratchet session is {self.state.phase.name.lower()}",
                {"peer_id": self.state.peer_id, "phase": self.state.phase.name},
            )

    def terminate(self) -> None:
        """Wipe all key material. The session cannot be used afterwards."""
        if self.state.phase == SessionPhase.TERMINATED:
            return
        self.state.wipe()
        self._rotation_events.clear()
        self._transition(SessionPhase.TERMINATED)
        logger.info(f"Ratchet session with {short_id(self.state.peer_id)} terminated")

    # DH ratchet

    def _remember_ratchet_key(self, key_pair: crypto.KeyPair) -> None:
        history = self.state.ratchet_key_history
        history[key_pair.public_bytes()] = key_pair
        while len(history) > RATCHET_MAX_RETAINED_KEYS:
            history.popitem(last=False)
            logger.warning(
                f"Dropped oldest ratchet key for {short_id(self.state.peer_id)} "
                f"(limit {RATCHET_MAX_RETAINED_KEYS})"
            )

    def _sending_step(self) -> Tuple[bytes, bytes]:
        """Replace our ratchet key pair and derive a new sending chain.

        A step that has not been used for a message yet is replaced rather
        than chained on, since the peer never learns its ratchet key.

        Returns:
            Tuple of (old_commitment, new_commitment) of the sending chain key
        """
        if self.state.receiving_ratchet_key is None:
            raise RatchetError(message="No peer ratchet key to ratchet against")

        old_commitment = self._commitment(self.state.sending_chain_key)

        if self.state.pre_step_root_key is not None:
            base_root = self.state.pre_step_root_key
            self.state.ratchet_key_history.pop(self.state.sending_ratchet_key.public_bytes(), None)
            zeroize(self.state.sending_root_key)
            logger.debug("Replacing unannounced sending step")
        else:
            base_root = bytearray(self.state.sending_root_key)
            zeroize(self.state.sending_root_key)
            self.state.pre_step_root_key = base_root
            self.state.previous_chain_length = self.state.send_message_number

        new_pair = crypto.KeyPair(self.state.backend)
        dh_output = new_pair.exchange(self.state.receiving_ratchet_key)

        old_chain = self.state.sending_chain_key
        self.state.sending_root_key, self.state.sending_chain_key = self._kdf_rk(
            base_root, dh_output
        )
        zeroize(old_chain)

        self.state.sending_ratchet_key = new_pair
        self._remember_ratchet_key(new_pair)
        self.state.send_message_number = 0
        self.state.send_ratchet_pending = False

        logger.debug("Performed sending DH ratchet step")
        return old_commitment, self._commitment(self.state.sending_chain_key)

    def _receiving_step(self, remote_public: bytes, reference: bytes) -> None:
        """Adopt a new peer ratchet key and derive a new receiving chain.

        Args:
            remote_public: Peer's new ratchet public key
            reference: Our ratchet public key the peer derived against
        """
        own_pair = self.state.ratchet_key_history.get(bytes(reference))
        if own_pair is None:
            raise DecryptionFailed(
                "Message references an unknown ratchet key",
                {"peer_id": self.state.peer_id},
            )

        try:
            dh_output = own_pair.exchange(remote_public)
        except CryptoError as e:
            raise DecryptionFailed(
                "Invalid ratchet key in message header", {"error": e.message}
            ) from e

        old_root, old_chain = self.state.receiving_root_key, self.state.receiving_chain_key
        self.state.receiving_root_key, self.state.receiving_chain_key = self._kdf_rk(
            old_root, dh_output
        )
        zeroize(old_root)
        zeroize(old_chain)

        # The peer has moved past every key older than the one it referenced
        history = self.state.ratchet_key_history
        while next(iter(history)) != bytes(reference):
            history.popitem(last=False)

        self.state.receiving_ratchet_key = bytes(remote_public)
        self.state.receive_message_number = 0
        self.state.send_ratchet_pending = True

        logger.debug("Performed receiving DH ratchet step")

    def rotate(self) -> RotationEvent:
        """Rotate the sending ratchet key now.

        The new key is announced in the header of the next message. The
        peer follows with a receiving step when it sees it. Rotating again
        before that message replaces the unannounced key.

        Returns:
            RotationEvent describing the rotation
        """
        self._require_active()
        old_commitment, new_commitment = self._sending_step()
        self.state.rotation_count += 1

        event = RotationEvent(
            index=self.state.rotation_count,
            old_commitment=old_commitment,
            new_commitment=new_commitment,
            previous_chain_length=self.state.previous_chain_length,
        )
        self._rotation_events.append(event)
        logger.info(
            f"Rotated ratchet key for {short_id(self.state.peer_id)} "
            f"(rotation #{event.index}, {event.previous_chain_length} messages on old chain)"
        )
        return event

    def pop_rotation_events(self) -> List[RotationEvent]:
        """Return and clear rotation events recorded since the last call."""
        events, self._rotation_events = self._rotation_events, []
        return events

    # Message keys

    def send_key(self) -> Tuple[bytes, RatchetHeader]:
        """Derive the key for the next outgoing message.

        Performs a pending DH step first, or a proactive rotation when the
        current sending chain has reached the rotation threshold.

        Returns:
            Tuple of (message_key, header)

        Raises:
            RatchetError: If the session is not active
        """
        self._require_active()

        if self.state.send_ratchet_pending:
            self._sending_step()
        elif (
            self.settings.rotation_threshold
            and self.state.send_message_number >= self.settings.rotation_threshold
        ):
            self.rotate()

        message_key = self._advance_sending_chain()
        # A pending step always runs before sending, so the current chain was
        # derived against the peer key we last received
        header = RatchetHeader(
            ratchet_public_key=self.state.sending_ratchet_key.public_bytes(),
            message_number=self.state.send_message_number,
            previous_chain_length=self.state.previous_chain_length,
            peer_ratchet_key=self.state.receiving_ratchet_key,
        )
        if self.state.pre_step_root_key is not None:
            zeroize(self.state.pre_step_root_key)
            self.state.pre_step_root_key = None
        self.state.send_message_number += 1
        self.state.last_used = time.time()
        self._transition(SessionPhase.SENDING)

        logger.debug(f"Derived send key #{header.message_number}")
        return message_key, header

    def receive_key(self, header: RatchetHeader) -> bytes:
        """Derive or look up the key for an incoming message.

        Mutates this session's state. Callers that need to keep the state
        unchanged on failure should run this on fork() and commit() after
        the message authenticates.

        Raises:
            TooManySkippedMessages: If the message is too far ahead
            MessageKeyExhausted: If the key was already used or evicted
            DecryptionFailed: If the header carries an unusable ratchet key
            RatchetError: If the session is not active
        """
        self._require_active()

        if header.message_number < 0 or header.previous_chain_length < 0:
            raise DecryptionFailed("Negative message number in header")

        now = time.time()
        self.state.skipped_keys.purge_expired(now)

        cached = self.state.skipped_keys.take(
            header.ratchet_public_key, header.message_number, now
        )
        if cached is not None:
            logger.debug(f"Using skipped message key for message {header.message_number}")
            self.state.last_used = now
            self._transition(SessionPhase.RECEIVING)
            return cached

        if not crypto.constant_time_equal(
            header.ratchet_public_key, self.state.receiving_ratchet_key or b""
        ):
            self._skip_message_keys(header.previous_chain_length)
            self._receiving_step(header.ratchet_public_key, header.peer_ratchet_key)

        if header.message_number < self.state.receive_message_number:
            raise MessageKeyExhausted(
                f"Message key #{header.message_number} already used or discarded",
                {
                    "message_number": header.message_number,
                    "receive_message_number": self.state.receive_message_number,
                },
            )

        self._skip_message_keys(header.message_number)
        message_key = self._advance_receiving_chain()
        self.state.receive_message_number += 1
        self.state.last_used = now
        self._transition(SessionPhase.RECEIVING)
        return message_key

    def _skip_message_keys(self, until: int) -> None:
        """Cache keys for messages up to (not including) `until` on the current chain.

        Raises:
            TooManySkippedMessages: If the gap exceeds max_skip
        """
        if self.state.receiving_chain_key is None:
            return

        skipped = until - self.state.receive_message_number
        if skipped <= 0:
            return
        if skipped > self.settings.max_skip:
            logger.warning(
                f"Rejecting message with excessive gap: {skipped} > {self.settings.max_skip}"
            )
            raise TooManySkippedMessages(
                f"Too many skipped messages: {skipped} > {self.settings.max_skip}",
                {"skipped": skipped, "max_allowed": self.settings.max_skip},
            )

        logger.debug(f"Skipping {skipped} message keys")
        timestamp = time.time()
        while self.state.receive_message_number < until:
            message_key = self._advance_receiving_chain()
            self.state.skipped_keys.put(
                self.state.receiving_ratchet_key,
                self.state.receive_message_number,
                message_key,
                timestamp,
            )
            self.state.receive_message_number += 1

    # Transactions

    def fork(self) -> "RatchetSession":
        """Trial copy of this session for a receive that may fail."""
        return RatchetSession(self.state.copy(), self.settings)

    def commit(self, trial: "RatchetSession") -> None:
        """Adopt the state of a successful trial and wipe the superseded one."""
        previous = self.state
        self.state = trial.state
        previous.wipe()

    # Introspection

    def get_stats(self) -> Dict:
        return {
            "peer_id": self.state.peer_id,
            "phase": self.state.phase.name,
            "curve": self.state.backend.name,
            "send_message_number": self.state.send_message_number,
            "receive_message_number": self.state.receive_message_number,
            "previous_chain_length": self.state.previous_chain_length,
            "skipped_keys": len(self.state.skipped_keys),
            "retained_ratchet_keys": len(self.state.ratchet_key_history),
            "rotation_count": self.state.rotation_count,
            "created_at": self.state.created_at,
            "last_used": self.state.last_used,
        }

    def to_dict(self) -> Dict:
        return self.state.to_dict()

    @classmethod
    def from_dict(cls, data: Dict, settings: Optional[RatchetSettings] = None) -> "RatchetSession":
        return cls(RatchetState.from_dict(data), settings)
