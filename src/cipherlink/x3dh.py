"""
Cipherlink - X3DH session establishment.

Created by orpheus497

Implements the Extended Triple Diffie-Hellman handshake used to agree on
a shared secret with a peer that may be offline. The initiator combines
its identity key and a fresh ephemeral key with the responder's published
identity key, signed pre-key and (when one is available) one-time pre-key:

    DH1 = DH(IK_a, SPK_b)
    DH2 = DH(EK_a, IK_b)
    DH3 = DH(EK_a, SPK_b)
    DH4 = DH(EK_a, OPK_b)      only when a one-time pre-key was used

    SK = HKDF-SHA256(salt=0xFF * 32, ikm=DH1 || DH2 || DH3 [|| DH4])
    AD = IK_a || IK_b

The responder repeats the same exchanges from the other side and arrives
at the same SK. Without a one-time pre-key the handshake still completes
with three exchanges, at the cost of weaker replay protection.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from . import crypto
from .constants import DEFAULT_CURVE, KEY_SIZE, X3DH_INFO, X3DH_SALT
from .errors import CryptoError, InvalidBundle
from .identity import Identity, IdentityManager, PreKeyBundle

logger = logging.getLogger(__name__)


@dataclass
class PreKeyMessage:
    """Handshake header the initiator sends alongside its first envelope.

    Attributes:
        initiator_id: UID of the initiator
        initiator_identity_key: Initiator's long-term DH public key
        ephemeral_key: Initiator's ephemeral DH public key
        signed_prekey_id: Id of the responder signed pre-key that was used
        one_time_prekey_id: Id of the responder one-time pre-key, or None
        ratchet_key: Initiator's first ratchet public key
        curve: DH curve name
    """

    initiator_id: str
    initiator_identity_key: bytes
    ephemeral_key: bytes
    signed_prekey_id: int
    one_time_prekey_id: Optional[int]
    ratchet_key: bytes
    curve: str = DEFAULT_CURVE

    def to_dict(self) -> Dict:
        return {
            "initiator_id": self.initiator_id,
            "initiator_identity_key": base64.b64encode(self.initiator_identity_key).decode("utf-8"),
            "ephemeral_key": base64.b64encode(self.ephemeral_key).decode("utf-8"),
            "signed_prekey_id": self.signed_prekey_id,
            "one_time_prekey_id": self.one_time_prekey_id,
            "ratchet_key": base64.b64encode(self.ratchet_key).decode("utf-8"),
            "curve": self.curve,
        }

    @staticmethod
    def from_dict(data: Dict) -> "PreKeyMessage":
        """
        Raises:
            InvalidBundle: If a field is missing or malformed
        """
        try:
            return PreKeyMessage(
                initiator_id=data["initiator_id"],
                initiator_identity_key=base64.b64decode(data["initiator_identity_key"]),
                ephemeral_key=base64.b64decode(data["ephemeral_key"]),
                signed_prekey_id=int(data["signed_prekey_id"]),
                one_time_prekey_id=data.get("one_time_prekey_id"),
                ratchet_key=base64.b64decode(data["ratchet_key"]),
                curve=data.get("curve", DEFAULT_CURVE),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidBundle(f"Malformed pre-key message: {e}", {"error": str(e)}) from e


@dataclass
class X3DHResult:
    """Output of a completed handshake, ready to seed a ratchet session.

    Attributes:
        shared_secret: 32-byte secret agreed by both sides
        associated_data: IK_initiator || IK_responder
        prekey_message: Handshake header (initiator side only sends it)
        local_ratchet_key: Our first sending ratchet key pair
        remote_ratchet_key: Peer's first ratchet public key
        used_one_time_prekey: Whether DH4 contributed to the secret
    """

    shared_secret: bytes
    associated_data: bytes
    prekey_message: PreKeyMessage
    local_ratchet_key: crypto.KeyPair
    remote_ratchet_key: bytes
    used_one_time_prekey: bool


def _derive_shared_secret(dh_outputs) -> bytes:
    return crypto.hkdf(b"".join(dh_outputs), X3DH_SALT, X3DH_INFO, KEY_SIZE)


def initiate_session(identity: Identity, bundle: PreKeyBundle) -> X3DHResult:
    """
    Run the initiator half of X3DH against a peer's pre-key bundle.

    The first one-time pre-key advertised in the bundle is taken from it.

    Args:
        identity: Local identity
        bundle: Peer's published pre-key bundle

    Returns:
        X3DHResult with the PreKeyMessage to send to the peer

    Raises:
        InvalidBundle: If the bundle is incomplete, malformed or on another curve
        UntrustedBundle: If the signed pre-key signature does not verify
    """
    bundle.validate()

    backend = identity.identity_key.backend
    if bundle.curve != backend.name:
        raise InvalidBundle(
            f"Bundle curve {bundle.curve} does not match local curve {backend.name}",
            {"bundle_curve": bundle.curve, "local_curve": backend.name},
        )

    ephemeral = crypto.KeyPair(backend)
    one_time = bundle.pop_one_time_key()

    try:
        dh_outputs = [
            identity.identity_key.exchange(bundle.signed_prekey),
            ephemeral.exchange(bundle.identity_key),
            ephemeral.exchange(bundle.signed_prekey),
        ]
        if one_time is not None:
            dh_outputs.append(ephemeral.exchange(one_time[1]))
    except CryptoError as e:
        raise InvalidBundle(f"Bundle contains an unusable key: {e.message}", e.details) from e

    if one_time is None:
        logger.warning(
            f"No one-time pre-key available for {bundle.owner_id or 'peer'}; "
            f"establishing session with three DH exchanges"
        )

    shared_secret = _derive_shared_secret(dh_outputs)
    associated_data = identity.identity_key.public_bytes() + bundle.identity_key
    ratchet_key = crypto.KeyPair(backend)

    message = PreKeyMessage(
        initiator_id=identity.uid,
        initiator_identity_key=identity.identity_key.public_bytes(),
        ephemeral_key=ephemeral.public_bytes(),
        signed_prekey_id=bundle.signed_prekey_id,
        one_time_prekey_id=one_time[0] if one_time is not None else None,
        ratchet_key=ratchet_key.public_bytes(),
        curve=backend.name,
    )

    logger.info(
        f"X3DH initiated with {bundle.owner_id or 'peer'} "
        f"({len(dh_outputs)} DH exchanges, {backend.name})"
    )
    return X3DHResult(
        shared_secret=shared_secret,
        associated_data=associated_data,
        prekey_message=message,
        local_ratchet_key=ratchet_key,
        remote_ratchet_key=bundle.signed_prekey,
        used_one_time_prekey=one_time is not None,
    )


def respond(identity_manager: IdentityManager, message: PreKeyMessage,
            bundle: Optional[PreKeyBundle] = None, consume: bool = True) -> X3DHResult:
    """
    Run the responder half of X3DH for an incoming PreKeyMessage.

    The referenced one-time pre-key is consumed and can never be used again,
    unless consume is False. Callers that trial the handshake first consume
    the key themselves once the first message authenticates.

    Args:
        identity_manager: Manager holding our identity and pre-keys
        message: Handshake header received from the initiator
        bundle: Bundle the initiator used, if still held (optional)
        consume: Remove the one-time pre-key from the pool

    Returns:
        X3DHResult whose local ratchet key is our signed pre-key

    Raises:
        InvalidBundle: If the message references unknown keys or is malformed
        KeyAlreadyConsumed: If the one-time pre-key was already used
    """
    identity = identity_manager.require_identity()
    backend = identity.identity_key.backend

    if message.curve != backend.name:
        raise InvalidBundle(
            f"Handshake curve {message.curve} does not match local curve {backend.name}",
            {"message_curve": message.curve, "local_curve": backend.name},
        )
    if not message.initiator_identity_key or not message.ephemeral_key:
        raise InvalidBundle("Pre-key message is missing the initiator keys")

    signed_prekey = identity_manager.get_signed_prekey(message.signed_prekey_id)

    one_time = None
    if message.one_time_prekey_id is not None:
        if consume:
            one_time = identity_manager.consume_one_time_key(bundle, message.one_time_prekey_id)
        else:
            one_time = identity_manager.peek_one_time_key(bundle, message.one_time_prekey_id)

    try:
        dh_outputs = [
            signed_prekey.exchange(message.initiator_identity_key),
            identity.identity_key.exchange(message.ephemeral_key),
            signed_prekey.exchange(message.ephemeral_key),
        ]
        if one_time is not None:
            dh_outputs.append(one_time.exchange(message.ephemeral_key))
    except CryptoError as e:
        raise InvalidBundle(f"Pre-key message contains an unusable key: {e.message}",
                            e.details) from e

    if one_time is None:
        logger.warning(
            f"Session from {message.initiator_id} established without a one-time pre-key"
        )

    shared_secret = _derive_shared_secret(dh_outputs)
    associated_data = message.initiator_identity_key + identity.identity_key.public_bytes()

    logger.info(
        f"X3DH completed for {message.initiator_id} ({len(dh_outputs)} DH exchanges)"
    )
    return X3DHResult(
        shared_secret=shared_secret,
        associated_data=associated_data,
        prekey_message=message,
        local_ratchet_key=signed_prekey,
        remote_ratchet_key=message.ratchet_key,
        used_one_time_prekey=one_time is not None,
    )
