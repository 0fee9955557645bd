"""
GhostTerm - Gossip message protocol.

Created by orpheus497

This module defines the wire protocol for frames published on the gossip
channel. All frames are prefixed with a header containing:
- Protocol version (1 byte)
- Message kind (2 bytes)
- Payload length (4 bytes)

Total header size: 7 bytes. The payload is UTF-8 JSON:

    {"sender": hex id, "seq": int, "ts": ms, "body": str, "name": str|null}
"""

import json
import re
import struct
from typing import Any, Dict

from .constants import MAX_BODY_LENGTH, MAX_DISPLAY_NAME_LENGTH, MAX_FRAME_SIZE, PEER_ID_SIZE
from .errors import ErrorCode, ProtocolError
from .message import Message, MessageKind

SENDER_PATTERN = re.compile(rf"^[0-9a-f]{{{PEER_ID_SIZE * 2}}}$")


class Protocol:
    """Frame codec for chat and presence messages."""

    VERSION = 1
    HEADER_FORMAT = "!BHI"
    HEADER_SIZE = 7
    MAX_PAYLOAD_SIZE = MAX_FRAME_SIZE - HEADER_SIZE

    @staticmethod
    def pack_message(message: Message) -> bytes:
        """
        Pack a message into a frame.

        Raises:
            ProtocolError: If the message fails validation
        """
        Protocol.validate_message(message)

        payload = {
            "sender": message.sender,
            "seq": message.seq,
            "ts": message.timestamp,
            "body": message.body,
            "name": message.sender_name,
        }
        payload_bytes = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        if len(payload_bytes) > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E302_MESSAGE_TOO_LARGE,
                f"Frame too large: {len(payload_bytes)} bytes",
                {"size": len(payload_bytes), "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        header = struct.pack(
            Protocol.HEADER_FORMAT, Protocol.VERSION, int(message.kind), len(payload_bytes)
        )
        return header + payload_bytes

    @staticmethod
    def unpack_message(data: bytes) -> Message:
        """
        Unpack a complete frame into a message.

        Gossip delivers whole frames, so anything short or with extra bytes
        is malformed rather than partial.

        Raises:
            ProtocolError: If the frame is malformed, oversized or invalid
        """
        if len(data) < Protocol.HEADER_SIZE:
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME,
                f"Frame shorter than header: {len(data)} bytes",
                {"size": len(data)},
            )

        version, kind_int, length = struct.unpack(
            Protocol.HEADER_FORMAT, data[: Protocol.HEADER_SIZE]
        )

        if version != Protocol.VERSION:
            raise ProtocolError(
                ErrorCode.E303_UNSUPPORTED_PROTOCOL,
                f"Unsupported protocol version: {version}",
                {"version": version, "expected": Protocol.VERSION},
            )

        if length > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E302_MESSAGE_TOO_LARGE,
                f"Payload too large: {length} bytes",
                {"size": length, "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        if len(data) != Protocol.HEADER_SIZE + length:
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME,
                "Frame length does not match header",
                {"declared": length, "actual": len(data) - Protocol.HEADER_SIZE},
            )

        try:
            kind = MessageKind(kind_int)
        except ValueError:
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME,
                f"Invalid message kind: {kind_int}",
                {"kind": kind_int},
            )

        try:
            payload = json.loads(data[Protocol.HEADER_SIZE :].decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME, f"Failed to parse frame: {e}", {"error": str(e)}
            )

        message = Protocol._message_from_payload(kind, payload)
        Protocol.validate_message(message)
        return message

    @staticmethod
    def _message_from_payload(kind: MessageKind, payload: Any) -> Message:
        if not isinstance(payload, dict):
            raise ProtocolError(ErrorCode.E301_MALFORMED_FRAME, "Frame payload is not an object")

        fields: Dict[str, type] = {"sender": str, "seq": int, "ts": int, "body": str}
        for field, expected in fields.items():
            value = payload.get(field)
            # bool is an int subclass and never a valid counter
            if not isinstance(value, expected) or isinstance(value, bool):
                raise ProtocolError(
                    ErrorCode.E301_MALFORMED_FRAME,
                    f"Missing or invalid field: {field}",
                    {"kind": kind.name, "field": field},
                )

        name = payload.get("name")
        if name is not None and not isinstance(name, str):
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME,
                "Invalid field: name",
                {"kind": kind.name, "field": "name"},
            )

        return Message(
            sender=payload["sender"],
            seq=payload["seq"],
            timestamp=payload["ts"],
            body=payload["body"],
            kind=kind,
            sender_name=name,
        )

    @staticmethod
    def validate_message(message: Message) -> None:
        """
        Validate message structure and size.

        Raises:
            ProtocolError: If validation fails
        """
        if len(message.body) > MAX_BODY_LENGTH:
            raise ProtocolError(
                ErrorCode.E302_MESSAGE_TOO_LARGE,
                f"Message too long: {len(message.body)} > {MAX_BODY_LENGTH} characters",
                {"size": len(message.body), "max_size": MAX_BODY_LENGTH},
            )

        if not SENDER_PATTERN.match(message.sender):
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME,
                "Invalid sender identifier",
                {"sender_length": len(message.sender)},
            )

        if message.seq < 1 or message.timestamp < 0:
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME,
                "Sequence number and timestamp must be positive",
                {"seq": message.seq, "ts": message.timestamp},
            )

        if message.sender_name is not None and len(message.sender_name) > MAX_DISPLAY_NAME_LENGTH:
            raise ProtocolError(
                ErrorCode.E301_MALFORMED_FRAME,
                "Display name too long",
                {"size": len(message.sender_name), "max_size": MAX_DISPLAY_NAME_LENGTH},
            )
