"""
Cipherlink - Secure Session Management

This module owns the per-peer ratchet sessions and wires the pieces of the
core together:

    IdentityManager -> X3DH -> RatchetSession -> codec -> ProofAttacher

Sessions live in an explicit SessionStore owned by the caller. The store
keeps at most one active session per peer and hands out one lock per
peer, so operations on the same peer are serialized while different peers
proceed in parallel.

Proofs are requested only after the ratchet advance is committed; a proof
that fails, times out or is cancelled never rolls a message back.

Author: orpheus497
Version: 1.0.0
"""

import json
import logging
import threading
from typing import Dict, List, Optional, Protocol as TypingProtocol, Tuple

from . import codec, crypto, x3dh
from .codec import EncryptedEnvelope
from .errors import ErrorCode, SessionError, UnknownSession
from .identity import IdentityManager, PreKeyBundle
from .proofs import (
    AuthenticateOperation,
    DeliveryAckOperation,
    ProofAttacher,
    ProofResult,
    RotateOperation,
    SendOperation,
    ZKProofEngine,
)
from .protocol import Protocol
from .ratchet import RatchetSession, RatchetSettings, RatchetState, RotationEvent
from .utils import short_id

logger = logging.getLogger(__name__)


class PersistentStore(TypingProtocol):
    """Storage backend for ratchet states."""

    def save_session(self, peer_id: str, state: RatchetState) -> None:
        ...

    def load_session(self, peer_id: str) -> Optional[RatchetState]:
        ...

    def delete_session(self, peer_id: str) -> None:
        ...


class Transport(TypingProtocol):
    """Delivers framed bytes to a peer. Returns False if delivery failed."""

    def send(self, peer_id: str, data: bytes) -> bool:
        ...


class MemoryPersistentStore:
    """PersistentStore keeping canonical JSON bytes in memory.

    Note:
        Records contain key material in the clear; a disk-backed store
        should encrypt them.
    """

    def __init__(self):
        self._records: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def save_session(self, peer_id: str, state: RatchetState) -> None:
        record = json.dumps(state.to_dict(), sort_keys=True).encode("utf-8")
        with self._lock:
            self._records[peer_id] = record

    def load_session(self, peer_id: str) -> Optional[RatchetState]:
        with self._lock:
            record = self._records.get(peer_id)
        if record is None:
            return None
        return RatchetState.from_dict(json.loads(record.decode("utf-8")))

    def delete_session(self, peer_id: str) -> None:
        with self._lock:
            self._records.pop(peer_id, None)

    def raw_record(self, peer_id: str) -> Optional[bytes]:
        with self._lock:
            return self._records.get(peer_id)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._records


class SessionStore:
    """Active ratchet sessions keyed by peer id."""

    def __init__(self):
        self._sessions: Dict[str, RatchetSession] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock(self, peer_id: str) -> threading.Lock:
        """Lock serializing operations on one peer's session."""
        with self._guard:
            lock = self._locks.get(peer_id)
            if lock is None:
                lock = self._locks[peer_id] = threading.Lock()
            return lock

    def get(self, peer_id: str) -> RatchetSession:
        """
        Raises:
            UnknownSession: If no active session exists for the peer
        """
        with self._guard:
            session = self._sessions.get(peer_id)
        if session is None:
            raise UnknownSession(f"No session for peer {peer_id}", {"peer_id": peer_id})
        return session

    def put(self, peer_id: str, session: RatchetSession) -> None:
        """Install a session, terminating any session it replaces."""
        with self._guard:
            previous = self._sessions.get(peer_id)
            self._sessions[peer_id] = session
        if previous is not None and previous is not session:
            previous.terminate()
            logger.info(f"Replaced existing session with {short_id(peer_id)}")

    def remove(self, peer_id: str) -> Optional[RatchetSession]:
        with self._guard:
            return self._sessions.pop(peer_id, None)

    def peers(self) -> List[str]:
        with self._guard:
            return list(self._sessions)

    def __contains__(self, peer_id: str) -> bool:
        with self._guard:
            return peer_id in self._sessions

    def __len__(self) -> int:
        with self._guard:
            return len(self._sessions)


class SessionManager:
    """Establishes, uses, persists and tears down sessions with peers."""

    def __init__(
        self,
        identity_manager: IdentityManager,
        store: Optional[SessionStore] = None,
        transport: Optional[Transport] = None,
        persistent_store: Optional[PersistentStore] = None,
        proof_attacher: Optional[ProofAttacher] = None,
        settings: Optional[RatchetSettings] = None,
    ):
        self.identity_manager = identity_manager
        self.store = store if store is not None else SessionStore()
        self.transport = transport
        self.persistent_store = persistent_store
        self.proofs = proof_attacher if proof_attacher is not None else ProofAttacher()
        self.settings = settings or RatchetSettings()

        # Handshake headers repeated on outgoing messages until the peer replies
        self._pending_prekey: Dict[str, x3dh.PreKeyMessage] = {}

    @classmethod
    def from_config(
        cls,
        config,
        identity_manager: IdentityManager,
        transport: Optional[Transport] = None,
        persistent_store: Optional[PersistentStore] = None,
        engine: Optional[ZKProofEngine] = None,
    ) -> "SessionManager":
        return cls(
            identity_manager,
            transport=transport,
            persistent_store=persistent_store,
            proof_attacher=ProofAttacher.from_config(config, engine),
            settings=RatchetSettings.from_config(config),
        )

    @property
    def local_id(self) -> str:
        return self.identity_manager.require_identity().uid

    # Establishment

    def initiate_session(self, peer_id: str, bundle: PreKeyBundle) -> x3dh.PreKeyMessage:
        """
        Start a session with a peer from its pre-key bundle.

        The returned PreKeyMessage is framed with every outgoing message
        until the peer's first reply arrives.

        Raises:
            InvalidBundle: If the bundle is incomplete
            UntrustedBundle: If the bundle signature does not verify
        """
        identity = self.identity_manager.require_identity()
        result = x3dh.initiate_session(identity, bundle)
        session = RatchetSession.initialize(
            result.shared_secret,
            result.associated_data,
            result.local_ratchet_key,
            result.remote_ratchet_key,
            initiator=True,
            peer_id=peer_id,
            local_id=identity.uid,
            settings=self.settings,
        )

        with self.store.lock(peer_id):
            self.store.put(peer_id, session)
            self._pending_prekey[peer_id] = result.prekey_message
            self._persist(peer_id, session)

        logger.info(f"Session initiated with {short_id(peer_id)}")
        return result.prekey_message

    def _respond(self, peer_id: str, prekey_message: x3dh.PreKeyMessage,
                 bundle: Optional[PreKeyBundle], consume: bool) -> RatchetSession:
        identity = self.identity_manager.require_identity()
        result = x3dh.respond(self.identity_manager, prekey_message, bundle, consume=consume)
        session = RatchetSession.initialize(
            result.shared_secret,
            result.associated_data,
            result.local_ratchet_key,
            result.remote_ratchet_key,
            initiator=False,
            peer_id=peer_id,
            local_id=identity.uid,
            settings=self.settings,
        )
        session.state.accepted_handshake_key = bytes(prekey_message.ephemeral_key)
        return session

    def _install_accepted(self, peer_id: str, session: RatchetSession) -> None:
        """Install a responder session. Caller holds the peer lock."""
        self.store.put(peer_id, session)
        self._pending_prekey.pop(peer_id, None)
        self._persist(peer_id, session)
        logger.info(f"Session accepted from {short_id(peer_id)}")

    def accept_session(self, peer_id: str, prekey_message: x3dh.PreKeyMessage,
                       bundle: Optional[PreKeyBundle] = None) -> RatchetSession:
        """
        Complete a session started by a peer.

        Raises:
            InvalidBundle: If the handshake references unknown keys
            KeyAlreadyConsumed: If its one-time pre-key was already used
        """
        session = self._respond(peer_id, prekey_message, bundle, consume=True)
        with self.store.lock(peer_id):
            self._install_accepted(peer_id, session)
        return session

    def _accept_and_decrypt(self, peer_id: str, prekey_message: x3dh.PreKeyMessage,
                            envelope: EncryptedEnvelope) -> bytes:
        """
        Trial a handshake against the envelope it arrived with.

        The one-time pre-key is consumed and the session installed only
        after the envelope authenticates. A forged handshake leaves the
        current session and the pre-key pool as they were.
        """
        candidate = self._respond(peer_id, prekey_message, None, consume=False)
        installed = False
        try:
            plaintext = codec.decrypt(candidate, envelope)
            with self.store.lock(peer_id):
                if not self._is_accepted(peer_id, prekey_message):
                    if prekey_message.one_time_prekey_id is not None:
                        self.identity_manager.consume_one_time_key(
                            None, prekey_message.one_time_prekey_id
                        )
                    self._install_accepted(peer_id, candidate)
                    installed = True
        finally:
            if not installed:
                candidate.terminate()

        if not installed:
            # Another frame of the same handshake was accepted first
            return self.decrypt(peer_id, envelope)
        return plaintext

    def has_session(self, peer_id: str) -> bool:
        return peer_id in self.store

    def get_session(self, peer_id: str) -> RatchetSession:
        return self.store.get(peer_id)

    # Messaging

    def encrypt(self, peer_id: str, plaintext: bytes) -> EncryptedEnvelope:
        """
        Raises:
            UnknownSession: If there is no session with the peer
            RatchetError: If the session is not active
        """
        with self.store.lock(peer_id):
            session = self.store.get(peer_id)
            envelope = codec.encrypt(session, plaintext)
            self._persist(peer_id, session)
        return envelope

    def decrypt(self, peer_id: str, envelope: EncryptedEnvelope) -> bytes:
        """
        Raises:
            UnknownSession: If there is no session with the peer
            DecryptionFailed: If the envelope does not authenticate
            MessageKeyExhausted: If the message key was already used
            TooManySkippedMessages: If the message is too far ahead
        """
        with self.store.lock(peer_id):
            session = self.store.get(peer_id)
            plaintext = codec.decrypt(session, envelope)
            # The peer answered, so it holds the session; stop repeating the handshake
            self._pending_prekey.pop(peer_id, None)
            self._persist(peer_id, session)
        return plaintext

    def transmit(self, peer_id: str, envelope: EncryptedEnvelope) -> bool:
        """
        Frame an envelope and hand it to the transport.

        Raises:
            SessionError: If no transport is configured
        """
        if self.transport is None:
            raise SessionError(ErrorCode.E005_OPERATION_FAILED, "No transport configured")

        prekey_message = self._pending_prekey.get(peer_id)
        if prekey_message is not None:
            data = Protocol.create_prekey_message(prekey_message, envelope)
        else:
            data = Protocol.create_ratchet_message(envelope)

        delivered = self.transport.send(peer_id, data)
        if not delivered:
            logger.warning(f"Transport failed to deliver message to {short_id(peer_id)}")
        return delivered

    def send(self, peer_id: str, plaintext: bytes) -> bool:
        """Encrypt and transmit a message. Returns the transport's delivery flag."""
        return self.transmit(peer_id, self.encrypt(peer_id, plaintext))

    def on_receive(self, peer_id: str, data: bytes) -> bytes:
        """
        Handle framed bytes from the transport.

        A handshake header starts a new session unless it is the one the
        current session was already accepted from. The new session replaces
        the current one only if the envelope decrypts under it.

        Returns:
            Decrypted plaintext

        Raises:
            ProtocolError: If the frame is malformed
            HandshakeError: If a new handshake cannot be completed
            CryptoError: If the message cannot be decrypted
        """
        _, prekey_message, envelope = Protocol.parse(data)

        if prekey_message is not None and not self._is_accepted(peer_id, prekey_message):
            return self._accept_and_decrypt(peer_id, prekey_message, envelope)

        return self.decrypt(peer_id, envelope)

    def _is_accepted(self, peer_id: str, prekey_message: x3dh.PreKeyMessage) -> bool:
        """Whether the current session was accepted from this handshake."""
        try:
            accepted = self.store.get(peer_id).state.accepted_handshake_key
        except UnknownSession:
            return False
        return accepted is not None and crypto.constant_time_equal(
            accepted, prekey_message.ephemeral_key
        )

    # Proof-carrying operations

    async def encrypt_with_proof(self, peer_id: str,
                                 plaintext: bytes) -> Tuple[EncryptedEnvelope, ProofResult]:
        """
        Encrypt a message, then try to attach a message_send proof.

        The envelope is returned whether or not the proof could be made.
        Automatic rotations performed by this send also get key_rotation proofs.
        """
        envelope = self.encrypt(peer_id, plaintext)
        await self._prove_rotations(peer_id)

        operation = SendOperation(
            message_hash=crypto.sha256(envelope.ciphertext),
            sender_public_key=self._local_identity_key(),
            recipient_public_key=self._peer_identity_key(peer_id),
            plaintext_hash=crypto.sha256(plaintext),
            key_commitment=crypto.sha256(envelope.header.encode()),
            nonce=envelope.nonce,
        )
        result = await self.proofs.attach(operation)
        if result.attached:
            envelope.proof = result.reference
        else:
            logger.info(f"Sending to {short_id(peer_id)} without proof: {result.error.message}")
        return envelope, result

    async def send_with_proof(self, peer_id: str, plaintext: bytes) -> Tuple[bool, ProofResult]:
        envelope, result = await self.encrypt_with_proof(peer_id, plaintext)
        return self.transmit(peer_id, envelope), result

    async def rotate_keys(self, peer_id: str) -> Tuple[RotationEvent, ProofResult]:
        """
        Rotate the sending ratchet key for a peer and request a key_rotation proof.

        Raises:
            UnknownSession: If there is no session with the peer
        """
        with self.store.lock(peer_id):
            session = self.store.get(peer_id)
            event = session.rotate()
            session.pop_rotation_events()
            self._persist(peer_id, session)

        result = await self.proofs.attach(self._rotation_operation(event))
        return event, result

    async def acknowledge_delivery(self, peer_id: str, envelope: EncryptedEnvelope) -> ProofResult:
        """Request a message_delivery proof for a received envelope."""
        self.store.get(peer_id)
        operation = DeliveryAckOperation(
            message_hash=crypto.sha256(envelope.ciphertext),
            recipient_public_key=self._local_identity_key(),
        )
        return await self.proofs.attach(operation)

    async def authenticate(self, external_nullifier: bytes) -> ProofResult:
        """Request an authentication proof bound to a verifier-chosen nullifier."""
        identity_commitment = crypto.sha256(self._local_identity_key())
        operation = AuthenticateOperation(
            identity_commitment=identity_commitment,
            nullifier_hash=crypto.sha256(identity_commitment + external_nullifier),
            external_nullifier=external_nullifier,
        )
        return await self.proofs.attach(operation)

    async def _prove_rotations(self, peer_id: str) -> List[ProofResult]:
        with self.store.lock(peer_id):
            events = self.store.get(peer_id).pop_rotation_events()
        results = []
        for event in events:
            results.append(await self.proofs.attach(self._rotation_operation(event)))
        return results

    @staticmethod
    def _rotation_operation(event: RotationEvent) -> RotateOperation:
        return RotateOperation(
            current_key_commitment=event.old_commitment,
            next_key_commitment=event.new_commitment,
            rotation_index=event.index,
        )

    def _local_identity_key(self) -> bytes:
        return self.identity_manager.require_identity().identity_key.public_bytes()

    def _peer_identity_key(self, peer_id: str) -> bytes:
        """Peer identity key, recovered from the session's associated data."""
        session = self.store.get(peer_id)
        associated_data = session.state.associated_data
        local_key = self._local_identity_key()
        if associated_data.startswith(local_key):
            return associated_data[len(local_key):]
        return associated_data[: len(associated_data) - len(local_key)]

    # Lifecycle

    def terminate(self, peer_id: str) -> None:
        """Wipe and forget the session with a peer, including its persisted copy."""
        with self.store.lock(peer_id):
            session = self.store.remove(peer_id)
            self._pending_prekey.pop(peer_id, None)
            if self.persistent_store is not None:
                self.persistent_store.delete_session(peer_id)
        if session is None:
            raise UnknownSession(f"No session for peer {peer_id}", {"peer_id": peer_id})
        session.terminate()

    def persist(self, peer_id: str) -> None:
        """
        Raises:
            SessionError: If no persistent store is configured
            UnknownSession: If there is no session with the peer
        """
        if self.persistent_store is None:
            raise SessionError(ErrorCode.E304_SESSION_SAVE_FAILED, "No persistent store configured")
        with self.store.lock(peer_id):
            self.persistent_store.save_session(peer_id, self.store.get(peer_id).state)

    def resume(self, peer_id: str) -> RatchetSession:
        """
        Load a persisted session into the store.

        Raises:
            SessionError: If no persistent store is configured
            UnknownSession: If nothing is persisted for the peer
        """
        if self.persistent_store is None:
            raise SessionError(ErrorCode.E303_SESSION_LOAD_FAILED, "No persistent store configured")

        state = self.persistent_store.load_session(peer_id)
        if state is None:
            raise UnknownSession(f"No persisted session for peer {peer_id}", {"peer_id": peer_id})

        session = RatchetSession(state, self.settings)
        with self.store.lock(peer_id):
            self.store.put(peer_id, session)
        logger.info(f"Session with {short_id(peer_id)} resumed")
        return session

    def _persist(self, peer_id: str, session: RatchetSession) -> None:
        if self.persistent_store is not None:
            self.persistent_store.save_session(peer_id, session.state)

    def get_stats(self) -> Dict[str, Dict]:
        return {peer_id: self.store.get(peer_id).get_stats() for peer_id in self.store.peers()}
