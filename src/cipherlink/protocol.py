"""
Cipherlink - Wire protocol definitions.

Created by orpheus497

This module frames session messages for the transport.
All messages are prefixed with a header containing:
- Protocol version (1 byte)
- Message type (2 bytes)
- Payload length (4 bytes)

Total header size: 7 bytes, followed by a UTF-8 JSON payload.
"""

import json
import struct
from enum import IntEnum
from typing import Dict, Optional, Tuple

from .codec import EncryptedEnvelope
from .constants import MAX_MESSAGE_SIZE, PROTOCOL_VERSION
from .errors import ErrorCode, ProtocolError
from .x3dh import PreKeyMessage


class MessageType(IntEnum):
    """Message type definitions."""

    # Session establishment
    PREKEY_MESSAGE = 1

    # Established session traffic
    RATCHET_MESSAGE = 10


class Protocol:
    """Wire protocol handler."""

    VERSION = PROTOCOL_VERSION
    HEADER_SIZE = 7
    MAX_PAYLOAD_SIZE = MAX_MESSAGE_SIZE

    REQUIRED_FIELDS = {
        MessageType.PREKEY_MESSAGE: ("prekey_message", "envelope"),
        MessageType.RATCHET_MESSAGE: ("envelope",),
    }

    @staticmethod
    def pack_message(msg_type: MessageType, payload: Dict) -> bytes:
        """
        Pack a message with protocol header.

        Format:
        - Version: 1 byte (unsigned char)
        - Message Type: 2 bytes (unsigned short, big-endian)
        - Payload Length: 4 bytes (unsigned int, big-endian)
        - Payload: variable length (JSON)

        Raises:
            ProtocolError: If validation fails or the payload is too large
        """
        Protocol.validate_message(msg_type, payload)

        payload_bytes = json.dumps(payload, sort_keys=True).encode("utf-8")

        if len(payload_bytes) > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E602_MESSAGE_TOO_LARGE,
                f"Payload too large: {len(payload_bytes)} bytes",
                {"size": len(payload_bytes), "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        header = struct.pack("!BHI", Protocol.VERSION, int(msg_type), len(payload_bytes))
        return header + payload_bytes

    @staticmethod
    def unpack_message(data: bytes) -> Optional[Tuple[MessageType, Dict, int]]:
        """
        Unpack a message from received data.

        Returns:
        - Message type
        - Payload dictionary
        - Total bytes consumed (header + payload)

        Returns None if the data holds no complete message yet.

        Raises:
            ProtocolError: If the message is invalid or the version unsupported
        """
        if len(data) < Protocol.HEADER_SIZE:
            return None

        version, msg_type_int, length = struct.unpack("!BHI", data[: Protocol.HEADER_SIZE])

        if version != Protocol.VERSION:
            raise ProtocolError(
                ErrorCode.E603_UNSUPPORTED_VERSION,
                f"Unsupported protocol version: {version}",
                {"version": version, "expected": Protocol.VERSION},
            )

        if length > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E602_MESSAGE_TOO_LARGE,
                f"Payload too large: {length} bytes",
                {"size": length, "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        if len(data) < Protocol.HEADER_SIZE + length:
            return None

        try:
            msg_type = MessageType(msg_type_int)
        except ValueError:
            raise ProtocolError(
                ErrorCode.E601_INVALID_MESSAGE,
                f"Invalid message type: {msg_type_int}",
                {"type": msg_type_int},
            )

        payload_bytes = data[Protocol.HEADER_SIZE : Protocol.HEADER_SIZE + length]
        try:
            payload = json.loads(payload_bytes.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                ErrorCode.E601_INVALID_MESSAGE, f"Failed to parse message: {e}", {"error": str(e)}
            )

        Protocol.validate_message(msg_type, payload)
        return msg_type, payload, Protocol.HEADER_SIZE + length

    @staticmethod
    def create_prekey_message(prekey_message: PreKeyMessage, envelope: EncryptedEnvelope) -> bytes:
        """Create the first message of a session: handshake header plus envelope."""
        payload = {"prekey_message": prekey_message.to_dict(), "envelope": envelope.to_dict()}
        return Protocol.pack_message(MessageType.PREKEY_MESSAGE, payload)

    @staticmethod
    def create_ratchet_message(envelope: EncryptedEnvelope) -> bytes:
        """Create a message on an established session."""
        return Protocol.pack_message(MessageType.RATCHET_MESSAGE, {"envelope": envelope.to_dict()})

    @staticmethod
    def parse(data: bytes) -> Tuple[MessageType, Optional[PreKeyMessage], EncryptedEnvelope]:
        """
        Decode one complete framed message.

        Raises:
            ProtocolError: If the frame is incomplete or malformed
            InvalidBundle: If the handshake header is malformed
        """
        unpacked = Protocol.unpack_message(data)
        if unpacked is None:
            raise ProtocolError(
                ErrorCode.E601_INVALID_MESSAGE,
                "Incomplete message",
                {"size": len(data)},
            )

        msg_type, payload, _ = unpacked
        envelope = EncryptedEnvelope.from_dict(payload["envelope"])
        prekey_message = None
        if msg_type == MessageType.PREKEY_MESSAGE:
            prekey_message = PreKeyMessage.from_dict(payload["prekey_message"])
        return msg_type, prekey_message, envelope

    @staticmethod
    def validate_message(msg_type: MessageType, payload: Dict) -> None:
        """
        Validate message structure.

        Args:
            msg_type: Message type
            payload: Message payload

        Raises:
            ProtocolError: If validation fails
        """
        if not isinstance(payload, dict):
            raise ProtocolError(
                ErrorCode.E601_INVALID_MESSAGE,
                "Payload must be a JSON object",
                {"message_type": msg_type.name},
            )

        for field in Protocol.REQUIRED_FIELDS.get(msg_type, ()):
            if not isinstance(payload.get(field), dict):
                raise ProtocolError(
                    ErrorCode.E601_INVALID_MESSAGE,
                    f"Missing required field: {field}",
                    {"message_type": msg_type.name, "field": field},
                )
