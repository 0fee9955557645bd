"""
GhostTerm - Invite ticket codec.

Created by orpheus497

A ticket carries everything a joiner needs to reach the host's gossip
group. The connection descriptor is packed into a compact binary blob,
then wrapped as text that can be pasted into any chat:

    [cover text ]"[Ghost:" urlsafe-base64(blob) "]"

Binary layout (network byte order):
- Version (1 byte) and flags (1 byte: bit0 relay hint, bit1 display name)
- Peer identifier (32 bytes) and gossip topic (32 bytes)
- Protocol tag (1 byte length + UTF-8)
- Address hints (1 byte count, then family byte + 4/16 byte address + 2 byte port)
- Optional relay hint and display name (1 byte length + UTF-8 each)
- CRC32 of everything above (4 bytes)

The wrapping only keeps tickets out of reach of naive scrapers. It is not
a secrecy boundary: confidentiality starts with the transport's encrypted
channel, which is established after a ticket decodes successfully.
"""

import base64
import binascii
import ipaddress
import logging
import re
import struct
import zlib
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Tuple

from .constants import (
    GOSSIP_ALPN,
    MAX_ADDRESS_HINTS,
    MAX_TICKET_LENGTH,
    PEER_ID_SIZE,
    TICKET_PREFIX,
    TICKET_SUFFIX,
    TICKET_VERSION,
    TOPIC_ID_SIZE,
)
from .errors import ErrorCode, TicketError

logger = logging.getLogger(__name__)

FLAG_RELAY = 0x01
FLAG_DISPLAY_NAME = 0x02

FAMILY_IPV4 = 4
FAMILY_IPV6 = 6

HEADER_FORMAT = f"!BB{PEER_ID_SIZE}s{TOPIC_ID_SIZE}s"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
CHECKSUM_SIZE = 4
MIN_BLOB_SIZE = HEADER_SIZE + 1 + 1 + CHECKSUM_SIZE
MIN_WRAPPER_LENGTH = len(TICKET_PREFIX) + len(TICKET_SUFFIX)
PAYLOAD_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class AddressHint(NamedTuple):
    """A direct address at which the host may be reachable."""

    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Immutable connection metadata produced by the host.

    Attributes:
        peer_id: Host's public identifier (fixed-size key)
        topic: Gossip group identifier
        address_hints: Direct addresses to try, in order
        protocol: Protocol tag negotiated by the transport
        relay_hint: Optional relay URL
        display_name: Optional display name (hosts leave it unset)
    """

    peer_id: bytes
    topic: bytes
    address_hints: Tuple[AddressHint, ...] = field(default_factory=tuple)
    protocol: str = GOSSIP_ALPN
    relay_hint: Optional[str] = None
    display_name: Optional[str] = None

    def __post_init__(self):
        if not self.peer_id or len(self.peer_id) != PEER_ID_SIZE:
            raise ValueError(f"peer_id must be {PEER_ID_SIZE} bytes")
        if len(self.topic) != TOPIC_ID_SIZE:
            raise ValueError(f"topic must be {TOPIC_ID_SIZE} bytes")
        # Hosts are normalized so that a decoded descriptor compares equal
        hints = tuple(
            AddressHint(str(ipaddress.ip_address(h[0])), int(h[1])) for h in self.address_hints
        )
        object.__setattr__(self, "address_hints", hints)
        if not hints and not self.relay_hint:
            raise ValueError("address_hints may only be empty when a relay hint is present")
        if len(hints) > MAX_ADDRESS_HINTS:
            raise ValueError(f"at most {MAX_ADDRESS_HINTS} address hints are allowed")
        for hint in hints:
            if not 0 < hint.port < 65536:
                raise ValueError(f"invalid port in address hint: {hint.port}")
        for value in (self.protocol, self.relay_hint, self.display_name):
            if value is not None and len(value.encode("utf-8")) > 255:
                raise ValueError("text fields are limited to 255 bytes")

    @property
    def peer_id_hex(self) -> str:
        return self.peer_id.hex()


def _pack_text(value: str) -> bytes:
    data = value.encode("utf-8")
    if len(data) > 255:
        raise ValueError(f"text field too long for ticket: {len(data)} bytes")
    return struct.pack("!B", len(data)) + data


def to_bytes(descriptor: ConnectionDescriptor) -> bytes:
    """Serialize a descriptor to its binary form (checksum included)."""
    flags = 0
    if descriptor.relay_hint is not None:
        flags |= FLAG_RELAY
    if descriptor.display_name is not None:
        flags |= FLAG_DISPLAY_NAME

    parts: List[bytes] = [
        struct.pack(HEADER_FORMAT, TICKET_VERSION, flags, descriptor.peer_id, descriptor.topic),
        _pack_text(descriptor.protocol),
        struct.pack("!B", len(descriptor.address_hints)),
    ]
    for hint in descriptor.address_hints:
        ip = ipaddress.ip_address(hint.host)
        family = FAMILY_IPV4 if ip.version == 4 else FAMILY_IPV6
        parts.append(struct.pack("!B", family) + ip.packed + struct.pack("!H", hint.port))
    if descriptor.relay_hint is not None:
        parts.append(_pack_text(descriptor.relay_hint))
    if descriptor.display_name is not None:
        parts.append(_pack_text(descriptor.display_name))

    body = b"".join(parts)
    return body + struct.pack("!I", zlib.crc32(body))


class _Reader:
    """Bounds-checked cursor over a ticket blob."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise TicketError(
                ErrorCode.E102_TRUNCATED_PAYLOAD,
                "Ticket payload is truncated",
                {"needed": end, "available": len(self.data)},
            )
        chunk = self.data[self.offset : end]
        self.offset = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def text(self) -> str:
        raw = self.take(self.byte())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TicketError(
                ErrorCode.E104_CORRUPT_BINARY, "Ticket contains invalid text", {"error": str(e)}
            ) from e


def from_bytes(blob: bytes) -> ConnectionDescriptor:
    """Deserialize a binary blob produced by :func:`to_bytes`.

    Raises:
        TicketError: TruncatedPayload, UnsupportedVersion or CorruptBinary
    """
    if not blob:
        raise TicketError(ErrorCode.E102_TRUNCATED_PAYLOAD, "Ticket payload is empty")

    version = blob[0]
    if version > TICKET_VERSION:
        raise TicketError(
            ErrorCode.E103_UNSUPPORTED_VERSION,
            f"Ticket version {version} is newer than supported version {TICKET_VERSION}",
            {"version": version, "supported": TICKET_VERSION},
        )
    if version == 0:
        raise TicketError(ErrorCode.E104_CORRUPT_BINARY, "Ticket version byte is invalid")

    if len(blob) < MIN_BLOB_SIZE:
        raise TicketError(
            ErrorCode.E102_TRUNCATED_PAYLOAD,
            "Ticket payload is truncated",
            {"size": len(blob), "minimum": MIN_BLOB_SIZE},
        )

    body, checksum = blob[:-CHECKSUM_SIZE], blob[-CHECKSUM_SIZE:]
    reader = _Reader(body)
    _, flags, peer_id, topic = struct.unpack(HEADER_FORMAT, reader.take(HEADER_SIZE))
    protocol = reader.text()

    hints = []
    for _ in range(reader.byte()):
        family = reader.byte()
        if family == FAMILY_IPV4:
            packed = reader.take(4)
        elif family == FAMILY_IPV6:
            packed = reader.take(16)
        else:
            raise TicketError(
                ErrorCode.E104_CORRUPT_BINARY,
                f"Unknown address family: {family}",
                {"family": family},
            )
        (port,) = struct.unpack("!H", reader.take(2))
        hints.append(AddressHint(str(ipaddress.ip_address(packed)), port))

    relay_hint = reader.text() if flags & FLAG_RELAY else None
    display_name = reader.text() if flags & FLAG_DISPLAY_NAME else None

    if reader.offset != len(body):
        raise TicketError(
            ErrorCode.E104_CORRUPT_BINARY,
            "Ticket has trailing bytes",
            {"trailing": len(body) - reader.offset},
        )
    if struct.unpack("!I", checksum)[0] != zlib.crc32(body):
        raise TicketError(ErrorCode.E104_CORRUPT_BINARY, "Ticket checksum mismatch")

    try:
        return ConnectionDescriptor(
            peer_id=peer_id,
            topic=topic,
            address_hints=tuple(hints),
            protocol=protocol,
            relay_hint=relay_hint,
            display_name=display_name,
        )
    except ValueError as e:
        raise TicketError(
            ErrorCode.E104_CORRUPT_BINARY, f"Ticket describes an invalid peer: {e}"
        ) from e


def hide(payload: str, cover: Optional[str] = None) -> str:
    """Wrap an encoded payload in the ticket delimiters, after optional cover text."""
    wrapped = f"{TICKET_PREFIX}{payload}{TICKET_SUFFIX}"
    if cover:
        return f"{cover.strip()} {wrapped}"
    return wrapped


def reveal(text: str) -> str:
    """Extract the encoded payload from a wrapped ticket.

    The wrapper may appear anywhere inside the pasted text. The last prefix
    wins, since the wrapper always follows any cover text.

    Raises:
        TicketError: MalformedWrapper if the delimiters are missing
    """
    start = text.rfind(TICKET_PREFIX)
    if start < 0:
        raise TicketError(ErrorCode.E101_MALFORMED_WRAPPER, "Ticket prefix not found")
    start += len(TICKET_PREFIX)
    end = text.find(TICKET_SUFFIX, start)
    if end < 0:
        raise TicketError(ErrorCode.E101_MALFORMED_WRAPPER, "Ticket closing delimiter not found")
    return text[start:end]


def encode(descriptor: ConnectionDescriptor, cover: Optional[str] = None) -> str:
    """Encode a descriptor as a wrapped ticket. Deterministic for identical input."""
    blob = to_bytes(descriptor)
    payload = base64.urlsafe_b64encode(blob).rstrip(b"=").decode("ascii")
    return hide(payload, cover)


def decode(ticket_text: str) -> ConnectionDescriptor:
    """Decode a wrapped ticket back into a descriptor.

    Args:
        ticket_text: Text as pasted by the user (may include cover text)

    Returns:
        The descriptor that produced the ticket

    Raises:
        TicketError: On any failure; never returns a partially decoded value
    """
    if len(ticket_text) > MAX_TICKET_LENGTH:
        raise TicketError(
            ErrorCode.E105_OVERSIZED_INPUT,
            f"Ticket exceeds {MAX_TICKET_LENGTH} characters",
            {"length": len(ticket_text), "max_length": MAX_TICKET_LENGTH},
        )
    if len(ticket_text) < MIN_WRAPPER_LENGTH:
        raise TicketError(ErrorCode.E101_MALFORMED_WRAPPER, "Ticket is too short")

    payload = reveal(ticket_text).strip()
    if not payload:
        raise TicketError(ErrorCode.E102_TRUNCATED_PAYLOAD, "Ticket payload is empty")

    if not PAYLOAD_PATTERN.match(payload) or len(payload) % 4 == 1:
        raise TicketError(ErrorCode.E101_MALFORMED_WRAPPER, "Ticket text is not valid")
    try:
        blob = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
    except (binascii.Error, ValueError) as e:
        raise TicketError(
            ErrorCode.E101_MALFORMED_WRAPPER, "Ticket text is not valid", {"error": str(e)}
        ) from e

    descriptor = from_bytes(blob)
    logger.debug(f"Decoded ticket for peer {descriptor.peer_id_hex[:8]}")
    return descriptor
