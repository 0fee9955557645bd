"""
Unit tests for ghostterm.ticket module.

Created by orpheus497

Tests the descriptor invariants, the binary layout, the text wrapper and
the decode failure classes.
"""

import base64
import random
import struct

import pytest

from ghostterm import ticket
from ghostterm.constants import MAX_TICKET_LENGTH, TICKET_PREFIX, TICKET_SUFFIX
from ghostterm.errors import ErrorCode, TicketError
from ghostterm.ticket import AddressHint, ConnectionDescriptor

PEER_ID = bytes(range(32))
TOPIC = bytes(range(100, 132))


def wrap_blob(blob: bytes) -> str:
    payload = base64.urlsafe_b64encode(blob).rstrip(b"=").decode("ascii")
    return f"{TICKET_PREFIX}{payload}{TICKET_SUFFIX}"


def descriptor(**overrides) -> ConnectionDescriptor:
    fields = {
        "peer_id": PEER_ID,
        "topic": TOPIC,
        "address_hints": (AddressHint("10.0.0.5", 4433),),
    }
    fields.update(overrides)
    return ConnectionDescriptor(**fields)


class TestConnectionDescriptor:
    """Test descriptor construction invariants."""

    def test_valid_descriptor(self):
        d = descriptor()
        assert d.peer_id_hex == PEER_ID.hex()
        assert d.address_hints == (AddressHint("10.0.0.5", 4433),)

    def test_hosts_are_normalized(self):
        d = descriptor(address_hints=[("0:0:0:0:0:0:0:1", 9000)])
        assert d.address_hints == (AddressHint("::1", 9000),)

    def test_empty_peer_id_rejected(self):
        with pytest.raises(ValueError):
            descriptor(peer_id=b"")

    def test_wrong_size_peer_id_rejected(self):
        with pytest.raises(ValueError):
            descriptor(peer_id=b"\x01" * 16)

    def test_empty_hints_require_relay(self):
        with pytest.raises(ValueError):
            descriptor(address_hints=())

    def test_relay_only_descriptor_allowed(self):
        d = descriptor(address_hints=(), relay_hint="https://relay.example.net")
        assert d.address_hints == ()

    def test_invalid_port_rejected(self):
        with pytest.raises(ValueError):
            descriptor(address_hints=(AddressHint("10.0.0.5", 0),))

    def test_non_ip_host_rejected(self):
        with pytest.raises(ValueError):
            descriptor(address_hints=(AddressHint("example.com", 80),))

    def test_too_many_hints_rejected(self):
        hints = tuple(AddressHint(f"10.0.0.{i}", 4000 + i) for i in range(1, 18))
        with pytest.raises(ValueError):
            descriptor(address_hints=hints)


class TestRoundTrip:
    """Test that decode(encode(d)) reproduces d exactly."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {},
            {"address_hints": (AddressHint("192.168.1.20", 41000), AddressHint("fe80::1", 41000))},
            {"relay_hint": "https://relay.example.net", "display_name": "Ava"},
            {"address_hints": (), "relay_hint": "https://relay.example.net"},
            {"display_name": "Zoë 👻"},
            {"protocol": "custom/alpn/1"},
        ],
    )
    def test_round_trip(self, overrides):
        original = descriptor(**overrides)
        assert ticket.decode(ticket.encode(original)) == original

    def test_encode_is_deterministic(self):
        d = descriptor(display_name="Ava")
        assert ticket.encode(d) == ticket.encode(d)

    def test_wrapper_format(self):
        text = ticket.encode(descriptor())
        assert text.startswith(TICKET_PREFIX)
        assert text.endswith(TICKET_SUFFIX)
        assert "=" not in text

    def test_cover_text(self):
        d = descriptor()
        text = ticket.encode(d, cover="Hello World")
        assert text.startswith("Hello World [Ghost:")
        assert ticket.decode(text) == d

    @pytest.mark.parametrize(
        "cover",
        ["ping me at [Ghost: tonight", "[Ghost:]", "see [Ghost:abc] and [Ghost:"],
    )
    def test_cover_mentioning_prefix(self, cover):
        d = descriptor(display_name="Ava")
        assert ticket.decode(ticket.encode(d, cover=cover)) == d

    def test_ticket_inside_surrounding_text(self):
        d = descriptor()
        pasted = f"hey, use this: {ticket.encode(d)} see you soon"
        assert ticket.decode(pasted) == d


class TestBinaryLayout:
    """Test the blob header fields."""

    def test_header_fields(self):
        blob = ticket.to_bytes(descriptor(relay_hint="r", display_name="n"))
        version, flags = blob[0], blob[1]
        assert version == 1
        assert flags == ticket.FLAG_RELAY | ticket.FLAG_DISPLAY_NAME
        assert blob[2:34] == PEER_ID
        assert blob[34:66] == TOPIC

    def test_ipv4_hint_encoding(self):
        blob = ticket.to_bytes(descriptor())
        # header, protocol tag, hint count
        offset = ticket.HEADER_SIZE + 1 + len(ticket.GOSSIP_ALPN)
        assert blob[offset] == 1
        assert blob[offset + 1] == ticket.FAMILY_IPV4
        assert blob[offset + 2 : offset + 6] == bytes([10, 0, 0, 5])
        assert struct.unpack("!H", blob[offset + 6 : offset + 8])[0] == 4433


class TestDecodeErrors:
    """Test that every malformed input maps to one TicketError kind."""

    def test_missing_prefix(self):
        with pytest.raises(TicketError) as exc:
            ticket.decode("just some text without a ticket")
        assert exc.value.kind == "MalformedWrapper"

    def test_missing_suffix(self):
        text = ticket.encode(descriptor())[:-1]
        with pytest.raises(TicketError) as exc:
            ticket.decode(text)
        assert exc.value.kind == "MalformedWrapper"

    def test_short_input(self):
        with pytest.raises(TicketError) as exc:
            ticket.decode("[Gh")
        assert exc.value.kind == "MalformedWrapper"

    def test_empty_payload(self):
        with pytest.raises(TicketError) as exc:
            ticket.decode("[Ghost:]")
        assert exc.value.kind == "TruncatedPayload"

    def test_corrupt_base64(self):
        with pytest.raises(TicketError) as exc:
            ticket.decode("[Ghost:@@@@!!!!]")
        assert exc.value.kind == "MalformedWrapper"

    def test_impossible_base64_length(self):
        with pytest.raises(TicketError) as exc:
            ticket.decode("[Ghost:AAAAA]")
        assert exc.value.kind == "MalformedWrapper"

    def test_oversized_input_checked_first(self):
        with pytest.raises(TicketError) as exc:
            ticket.decode("x" * (MAX_TICKET_LENGTH + 1))
        assert exc.value.kind == "OversizedInput"
        assert exc.value.code == ErrorCode.E105_OVERSIZED_INPUT

    def test_unsupported_version(self):
        blob = bytearray(ticket.to_bytes(descriptor()))
        blob[0] = 2
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(bytes(blob)))
        assert exc.value.kind == "UnsupportedVersion"

    def test_zero_version_is_corrupt(self):
        blob = bytearray(ticket.to_bytes(descriptor()))
        blob[0] = 0
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(bytes(blob)))
        assert exc.value.kind == "CorruptBinary"

    def test_truncated_blob(self):
        blob = ticket.to_bytes(descriptor(relay_hint="https://relay.example.net"))
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(blob[:-10]))
        assert exc.value.kind == "TruncatedPayload"

    def test_tiny_blob(self):
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(b"\x01" + b"\x00" * 10))
        assert exc.value.kind == "TruncatedPayload"

    def test_checksum_mismatch(self):
        blob = bytearray(ticket.to_bytes(descriptor()))
        blob[10] ^= 0xFF
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(bytes(blob)))
        assert exc.value.kind == "CorruptBinary"

    def test_unknown_address_family(self):
        blob = bytearray(ticket.to_bytes(descriptor()))
        offset = ticket.HEADER_SIZE + 1 + len(ticket.GOSSIP_ALPN) + 1
        blob[offset] = 9
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(bytes(blob)))
        assert exc.value.kind == "CorruptBinary"

    def test_trailing_bytes(self):
        blob = ticket.to_bytes(descriptor())
        body = blob[:-4] + b"\x00\x00"
        tampered = body + struct.pack("!I", ticket.zlib.crc32(body))
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(tampered))
        assert exc.value.kind == "CorruptBinary"

    def test_descriptor_invariant_violation(self):
        # Zero hints and no relay, with a valid checksum
        d = descriptor(address_hints=(), relay_hint="x")
        blob = bytearray(ticket.to_bytes(d))
        blob[1] = 0
        body = bytes(blob[:-4])[:-2]
        tampered = body + struct.pack("!I", ticket.zlib.crc32(body))
        with pytest.raises(TicketError) as exc:
            ticket.decode(wrap_blob(tampered))
        assert exc.value.kind == "CorruptBinary"

    def test_arbitrary_input_only_raises_ticket_error(self):
        rng = random.Random(1234)
        alphabet = "[]:Ghost_-=+/AZaz09 \n\x00é"
        valid = ticket.encode(descriptor())
        samples = ["", "[Ghost:", "]", "[Ghost:]]", valid[: len(valid) // 2] + "]"]
        for _ in range(300):
            samples.append("".join(rng.choice(alphabet) for _ in range(rng.randint(0, 60))))
        for _ in range(100):
            chars = list(valid)
            position = rng.randrange(len(TICKET_PREFIX), len(chars) - 1)
            chars[position] = rng.choice("ABCxyz019_-")
            samples.append("".join(chars))

        for sample in samples:
            try:
                ticket.decode(sample)
            except TicketError as e:
                assert e.kind in TicketError.KINDS.values()
