"""
Unit tests for ghostterm.utils module.

Created by orpheus497

Tests utility functions for formatting, validation, and helpers.
"""

import ipaddress
from datetime import datetime
from unittest.mock import patch

from ghostterm.utils import (
    format_timestamp,
    local_addresses,
    short_peer_id,
    truncate_string,
    validate_port,
)


class TestPortValidation:
    """Test port number validation."""

    def test_valid_ports(self):
        """Test that valid port numbers are accepted."""
        assert validate_port(0) is True
        assert validate_port(1024) is True
        assert validate_port(41000) is True
        assert validate_port(65535) is True

    def test_invalid_ports(self):
        """Test that invalid port numbers are rejected."""
        assert validate_port(1) is False
        assert validate_port(1023) is False
        assert validate_port(65536) is False
        assert validate_port(-1) is False


class TestFormatting:
    """Test display helpers."""

    def test_format_timestamp(self):
        timestamp_ms = 1_700_000_000_000
        expected = datetime.fromtimestamp(timestamp_ms / 1000).strftime("%H:%M")
        assert format_timestamp(timestamp_ms) == expected

    def test_format_timestamp_out_of_range(self):
        assert format_timestamp(10**20) == "--:--"

    def test_short_peer_id(self):
        assert short_peer_id("0123456789abcdef") == "01234567"
        assert short_peer_id("0123456789abcdef", 4) == "0123"

    def test_truncate_string(self):
        assert truncate_string("short", 10) == "short"
        assert truncate_string("a long display name", 10) == "a long ..."
        assert truncate_string("abcdef", 2) == "ab"


class TestLocalAddresses:
    """Test address discovery for ticket hints."""

    def test_loopback_appended_last(self):
        infos = [
            (None, None, None, "", ("192.168.1.20", 0)),
            (None, None, None, "", ("fe80::1%eth0", 0, 0, 2)),
            (None, None, None, "", ("127.0.1.1", 0)),
            (None, None, None, "", ("192.168.1.20", 0)),
        ]
        with patch("ghostterm.utils.socket.getaddrinfo", return_value=infos):
            assert local_addresses() == ["192.168.1.20", "127.0.0.1"]

    def test_lookup_failure(self):
        with patch("ghostterm.utils.socket.getaddrinfo", side_effect=OSError("no dns")):
            assert local_addresses() == ["127.0.0.1"]
            assert local_addresses(include_loopback=False) == []

    def test_results_are_addresses(self):
        for address in local_addresses():
            ipaddress.ip_address(address)
