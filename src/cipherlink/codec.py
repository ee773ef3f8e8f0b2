"""
Cipherlink - Message codec.

Created by orpheus497

Turns plaintext into EncryptedEnvelopes and back using ratchet-derived
message keys and ChaCha20-Poly1305. The associated data binds each
ciphertext to the session (IK_initiator || IK_responder), the sender id and
the ratchet header, so tampering with any header field fails authentication.

Decryption is transactional: ratchet derivations run on a fork of the
session and are committed only after the tag verifies.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Dict, Optional

from . import crypto
from .constants import MAX_PLAINTEXT_SIZE, NONCE_SIZE
from .errors import CryptoError, ErrorCode, ProtocolError
from .proofs import ProofReference
from .ratchet import RatchetHeader, RatchetSession
from .utils import b64decode, b64encode

logger = logging.getLogger(__name__)


@dataclass
class EncryptedEnvelope:
    """An encrypted message as it travels between peers.

    Attributes:
        ciphertext: AEAD ciphertext with tag
        nonce: 96-bit AEAD nonce
        ratchet_public_key: Sender's current ratchet public key
        peer_ratchet_key: Recipient ratchet public key the sending chain was derived against
        message_number: Index in the sender's current chain
        previous_chain_length: Length of the sender's previous chain
        sender_id: Sender identifier
        proof: Reference to an attached proof, if any
    """

    ciphertext: bytes
    nonce: bytes
    ratchet_public_key: bytes
    peer_ratchet_key: bytes
    message_number: int
    previous_chain_length: int
    sender_id: str
    proof: Optional[ProofReference] = None

    @property
    def header(self) -> RatchetHeader:
        return RatchetHeader(
            self.ratchet_public_key,
            self.message_number,
            self.previous_chain_length,
            self.peer_ratchet_key,
        )

    @property
    def proof_attached(self) -> bool:
        return self.proof is not None

    def to_dict(self) -> Dict:
        data = {
            "ciphertext": b64encode(self.ciphertext),
            "nonce": b64encode(self.nonce),
            "ratchet_public_key": b64encode(self.ratchet_public_key),
            "peer_ratchet_key": b64encode(self.peer_ratchet_key),
            "message_number": self.message_number,
            "previous_chain_length": self.previous_chain_length,
            "sender_id": self.sender_id,
        }
        if self.proof is not None:
            data["proof"] = self.proof.to_dict()
        return data

    @staticmethod
    def from_dict(data: Dict) -> "EncryptedEnvelope":
        """
        Raises:
            ProtocolError: If a field is missing or malformed
        """
        try:
            message_number = int(data["message_number"])
            previous_chain_length = int(data["previous_chain_length"])
            if message_number < 0 or previous_chain_length < 0:
                raise ValueError("negative message counter")
            binary = {
                name: b64decode(data[name])
                for name in ("ciphertext", "nonce", "ratchet_public_key", "peer_ratchet_key")
            }
            missing = [name for name, value in binary.items() if value is None]
            if missing:
                raise ValueError(f"null fields: {', '.join(missing)}")
            proof = data.get("proof")
            return EncryptedEnvelope(
                **binary,
                message_number=message_number,
                previous_chain_length=previous_chain_length,
                sender_id=str(data["sender_id"]),
                proof=ProofReference.from_dict(proof) if proof else None,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ProtocolError(
                ErrorCode.E601_INVALID_MESSAGE,
                f"Malformed envelope: {e}",
                {"error": str(e)},
            ) from e


def _associated_data(session: RatchetSession, sender_id: str, header: RatchetHeader) -> bytes:
    sender = sender_id.encode("utf-8")
    return (
        bytes(session.state.associated_data)
        + struct.pack("!H", len(sender))
        + sender
        + header.encode()
    )


def encrypt(session: RatchetSession, plaintext: bytes) -> EncryptedEnvelope:
    """
    Encrypt one message under the next sending key of a session.

    Args:
        session: Active ratchet session
        plaintext: Message bytes

    Returns:
        EncryptedEnvelope ready for the transport

    Raises:
        RatchetError: If the session is not active
        CryptoError: If the plaintext is too large
    """
    if len(plaintext) > MAX_PLAINTEXT_SIZE:
        raise CryptoError(
            ErrorCode.E101_ENCRYPTION_FAILED,
            f"Plaintext too large: {len(plaintext)} > {MAX_PLAINTEXT_SIZE}",
            {"size": len(plaintext), "max_size": MAX_PLAINTEXT_SIZE},
        )

    message_key, header = session.send_key()
    sender_id = session.state.local_id
    nonce = crypto.random_bytes(NONCE_SIZE)
    ciphertext = crypto.aead_encrypt(
        message_key, nonce, bytes(plaintext), _associated_data(session, sender_id, header)
    )

    logger.debug(f"Encrypted message #{header.message_number}")
    return EncryptedEnvelope(
        ciphertext=ciphertext,
        nonce=nonce,
        ratchet_public_key=header.ratchet_public_key,
        peer_ratchet_key=header.peer_ratchet_key,
        message_number=header.message_number,
        previous_chain_length=header.previous_chain_length,
        sender_id=sender_id,
    )


def decrypt(session: RatchetSession, envelope: EncryptedEnvelope) -> bytes:
    """
    Decrypt an envelope, advancing the session only if it authenticates.

    Args:
        session: Active ratchet session
        envelope: Received envelope

    Returns:
        Plaintext bytes

    Raises:
        DecryptionFailed: If authentication fails
        MessageKeyExhausted: If the message key was already used or discarded
        TooManySkippedMessages: If the message is too far ahead
        RatchetError: If the session is not active
    """
    trial = session.fork()
    committed = False
    try:
        message_key = trial.receive_key(envelope.header)
        plaintext = crypto.aead_decrypt(
            message_key,
            envelope.nonce,
            envelope.ciphertext,
            _associated_data(session, envelope.sender_id, envelope.header),
        )
        session.commit(trial)
        committed = True
    finally:
        if not committed:
            trial.state.wipe()

    logger.debug(f"Decrypted message #{envelope.message_number}")
    return plaintext
