"""
Cipherlink - Zero-knowledge proof attachment.

Created by orpheus497

Maps security-sensitive operations onto proof circuits and asks an external
proving engine for a proof. The proving system itself (circuits, witness
generation, Groth16 proving and verification) lives outside this package
behind the ZKProofEngine interface.

Proofs are advisory. ProofAttacher.attach never raises for a failed,
rejected or timed-out proof; it returns a ProofResult that says whether a
proof was attached and, if not, why. Cryptographic state is always
committed before a proof is requested, so a missing proof never rolls a
message back.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional, Protocol, Tuple, Union, runtime_checkable

from . import crypto
from .constants import FIELD_ELEMENT_BYTES, PROOF_ID_SIZE, PROOF_TIMEOUT
from .errors import ErrorCode, ProofUnavailable

logger = logging.getLogger(__name__)


class CircuitName(str, Enum):
    """Circuits known to the proving engine."""

    AUTHENTICATION = "authentication"
    FORWARD_SECRECY = "forward_secrecy"
    GROUP_MESSAGE = "group_message"
    KEY_ROTATION = "key_rotation"
    MESSAGE_DELIVERY = "message_delivery"
    MESSAGE_SEND = "message_send"


def to_field_element(digest: bytes, size: int = FIELD_ELEMENT_BYTES) -> str:
    """
    Reduce a hash or commitment to a scalar-field element.

    Takes the first `size` bytes as a big-endian integer, which keeps the
    value below the BN128 scalar modulus, and returns it as a decimal
    string, the form circuit inputs are passed in.

    Args:
        digest: Hash or commitment bytes
        size: Number of leading bytes to keep

    Returns:
        Decimal string of the field element
    """
    return str(int.from_bytes(bytes(digest[:size]), "big"))


def hash_to_field(data: Union[bytes, str]) -> str:
    """SHA-256 the data, then reduce it with to_field_element."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return to_field_element(crypto.sha256(data))


# Operations


@dataclass(frozen=True)
class SendOperation:
    """A ratchet message was encrypted and is about to be sent."""

    message_hash: bytes
    sender_public_key: bytes
    recipient_public_key: bytes
    plaintext_hash: bytes
    key_commitment: bytes
    nonce: bytes
    timestamp: int = field(default_factory=lambda: int(time.time()))


@dataclass(frozen=True)
class RotateOperation:
    """The sending ratchet key was rotated."""

    current_key_commitment: bytes
    next_key_commitment: bytes
    rotation_index: int


@dataclass(frozen=True)
class ForwardSecrecyOperation:
    """An old key was deleted after a newer one replaced it."""

    old_key_commitment: bytes
    new_key_commitment: bytes
    deletion_proof: bytes


@dataclass(frozen=True)
class AuthenticateOperation:
    """Proof of identity ownership without revealing the identity secret."""

    identity_commitment: bytes
    nullifier_hash: bytes
    external_nullifier: bytes


@dataclass(frozen=True)
class GroupMessageOperation:
    """A message was sent to a group by a member."""

    group_id: str
    membership_root: bytes
    message_hash: bytes
    timestamp: int = field(default_factory=lambda: int(time.time()))


@dataclass(frozen=True)
class DeliveryAckOperation:
    """A received message was decrypted and is being acknowledged."""

    message_hash: bytes
    recipient_public_key: bytes
    delivery_timestamp: int = field(default_factory=lambda: int(time.time()))


Operation = Union[
    SendOperation,
    RotateOperation,
    ForwardSecrecyOperation,
    AuthenticateOperation,
    GroupMessageOperation,
    DeliveryAckOperation,
]


def build_circuit_inputs(operation: Operation) -> Tuple[CircuitName, Dict[str, str]]:
    """
    Select the circuit for an operation and encode its inputs.

    Every byte value is reduced to a field element; integers are passed
    through as decimal strings.

    Returns:
        Tuple of (circuit, inputs)

    Raises:
        TypeError: If the operation type is unknown
    """
    match operation:
        case SendOperation():
            return CircuitName.MESSAGE_SEND, {
                "messageHash": to_field_element(operation.message_hash),
                "senderPublicKey": hash_to_field(operation.sender_public_key),
                "recipientPublicKey": hash_to_field(operation.recipient_public_key),
                "timestamp": str(operation.timestamp),
                "plaintextHash": to_field_element(operation.plaintext_hash),
                "encryptionKey": to_field_element(operation.key_commitment),
                "nonce": to_field_element(operation.nonce),
            }
        case RotateOperation():
            return CircuitName.KEY_ROTATION, {
                "currentKeyCommitment": to_field_element(operation.current_key_commitment),
                "nextKeyCommitment": to_field_element(operation.next_key_commitment),
                "rotationIndex": str(operation.rotation_index),
            }
        case ForwardSecrecyOperation():
            return CircuitName.FORWARD_SECRECY, {
                "oldKeyCommitment": to_field_element(operation.old_key_commitment),
                "newKeyCommitment": to_field_element(operation.new_key_commitment),
                "deletionProof": to_field_element(operation.deletion_proof),
            }
        case AuthenticateOperation():
            return CircuitName.AUTHENTICATION, {
                "identityCommitment": to_field_element(operation.identity_commitment),
                "nullifierHash": to_field_element(operation.nullifier_hash),
                "externalNullifier": to_field_element(operation.external_nullifier),
            }
        case GroupMessageOperation():
            return CircuitName.GROUP_MESSAGE, {
                "groupId": hash_to_field(operation.group_id),
                "groupMembershipRoot": to_field_element(operation.membership_root),
                "messageHash": to_field_element(operation.message_hash),
                "timestamp": str(operation.timestamp),
            }
        case DeliveryAckOperation():
            return CircuitName.MESSAGE_DELIVERY, {
                "messageHash": to_field_element(operation.message_hash),
                "recipientPublicKey": hash_to_field(operation.recipient_public_key),
                "deliveryTimestamp": str(operation.delivery_timestamp),
            }
        case _:
            raise TypeError(f"Unsupported proof operation: {type(operation).__name__}")


# Proof artifacts


@dataclass
class Proof:
    """Proof artifact produced by an external engine."""

    id: str
    circuit_name: str
    public_inputs: Dict[str, str]
    proof_data: Any = None
    verified: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ProofReference:
    """What an envelope keeps of a proof: its id, circuit and verification flag."""

    proof_id: str
    circuit_name: str
    verified: bool = False

    @staticmethod
    def from_proof(proof: Proof) -> "ProofReference":
        return ProofReference(proof.id, proof.circuit_name, proof.verified)

    def to_dict(self) -> Dict:
        return {
            "proof_id": self.proof_id,
            "circuit_name": self.circuit_name,
            "verified": self.verified,
        }

    @staticmethod
    def from_dict(data: Dict) -> "ProofReference":
        return ProofReference(data["proof_id"], data["circuit_name"], bool(data["verified"]))


@runtime_checkable
class ZKProofEngine(Protocol):
    """Interface to an external zero-knowledge proving system."""

    async def generate_proof(self, circuit_name: str, inputs: Dict[str, str]) -> Proof:
        ...

    async def verify_proof(self, proof: Proof) -> bool:
        ...


class UnavailableProofEngine:
    """Engine stand-in for when no prover is reachable. Every request fails."""

    def __init__(self, reason: str = "No proving engine configured"):
        self.reason = reason

    async def generate_proof(self, circuit_name: str, inputs: Dict[str, str]) -> Proof:
        raise ProofUnavailable(self.reason, {"circuit": circuit_name})

    async def verify_proof(self, proof: Proof) -> bool:
        return False


def generate_proof_id() -> str:
    return crypto.random_bytes(PROOF_ID_SIZE).hex()


class ProofOutcome(Enum):
    """Why a proof was or was not attached."""

    ATTACHED = auto()
    DISABLED = auto()
    FAILED = auto()
    TIMED_OUT = auto()
    REJECTED = auto()


@dataclass(frozen=True)
class ProofResult:
    """Outcome of a proof request.

    Attributes:
        outcome: What happened
        circuit_name: Circuit that was requested (None if none was selected)
        reference: Reference to attach to the envelope, when attached
        error: ProofUnavailable describing the failure, when not attached
    """

    outcome: ProofOutcome
    circuit_name: Optional[str] = None
    reference: Optional[ProofReference] = None
    error: Optional[ProofUnavailable] = None

    @property
    def attached(self) -> bool:
        return self.outcome is ProofOutcome.ATTACHED

    @classmethod
    def ok(cls, reference: ProofReference) -> "ProofResult":
        return cls(ProofOutcome.ATTACHED, reference.circuit_name, reference)

    @classmethod
    def failed(cls, outcome: ProofOutcome, error: ProofUnavailable,
               circuit_name: Optional[str] = None) -> "ProofResult":
        return cls(outcome, circuit_name, None, error)


class ProofAttacher:
    """Requests proofs for operations with a timeout, never raising for proof failures."""

    def __init__(
        self,
        engine: Optional[ZKProofEngine] = None,
        timeout: float = PROOF_TIMEOUT,
        verify: bool = False,
        enabled: bool = True,
    ):
        self.engine = engine
        self.timeout = timeout
        self.verify = verify
        self.enabled = enabled

    @classmethod
    def from_config(cls, config, engine: Optional[ZKProofEngine] = None) -> "ProofAttacher":
        return cls(
            engine=engine,
            timeout=config.get("proofs", "timeout", PROOF_TIMEOUT),
            verify=config.get("proofs", "verify", False),
            enabled=config.get("proofs", "enabled", True),
        )

    async def attach(self, operation: Operation) -> ProofResult:
        """
        Generate (and optionally verify) a proof for an operation.

        Cancellation of the awaiting task propagates; every other failure
        is logged and reported in the returned ProofResult.

        Args:
            operation: Operation to prove

        Returns:
            ProofResult with a ProofReference when attached
        """
        if not self.enabled or self.engine is None:
            return ProofResult.failed(
                ProofOutcome.DISABLED, ProofUnavailable("Proof generation disabled")
            )

        circuit, inputs = build_circuit_inputs(operation)

        try:
            proof = await asyncio.wait_for(
                self.engine.generate_proof(circuit.value, inputs), timeout=self.timeout
            )
            if self.verify:
                proof.verified = bool(
                    await asyncio.wait_for(self.engine.verify_proof(proof), timeout=self.timeout)
                )
                if not proof.verified:
                    logger.warning(f"Proof {proof.id} for {circuit.value} failed verification")
                    return ProofResult.failed(
                        ProofOutcome.REJECTED,
                        ProofUnavailable(
                            "Proof failed verification",
                            {"circuit": circuit.value, "proof_id": proof.id},
                            code=ErrorCode.E403_PROOF_REJECTED,
                        ),
                        circuit.value,
                    )
        except asyncio.TimeoutError:
            logger.warning(f"Proof generation for {circuit.value} timed out after {self.timeout}s")
            return ProofResult.failed(
                ProofOutcome.TIMED_OUT,
                ProofUnavailable(
                    f"Proof generation timed out after {self.timeout}s",
                    {"circuit": circuit.value},
                    code=ErrorCode.E402_PROOF_TIMEOUT,
                ),
                circuit.value,
            )
        except Exception as e:
            logger.warning(f"Proof generation for {circuit.value} failed: {e}")
            error = e if isinstance(e, ProofUnavailable) else ProofUnavailable(
                f"Proof generation failed: {e}", {"circuit": circuit.value, "error": str(e)}
            )
            return ProofResult.failed(ProofOutcome.FAILED, error, circuit.value)

        logger.debug(f"Attached proof {proof.id} ({circuit.value})")
        return ProofResult.ok(ProofReference.from_proof(proof))
