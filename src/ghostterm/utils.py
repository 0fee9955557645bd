"""
GhostTerm - Utility functions.

Created by orpheus497
Version: 0.3.0

Provides formatting and validation helpers shared by the CLI, the render
projector and the transport.
"""

import ipaddress
import logging
import socket
from datetime import datetime
from typing import List

from .constants import TIME_FORMAT

logger = logging.getLogger(__name__)


def format_timestamp(timestamp_ms: int, format_str: str = TIME_FORMAT) -> str:
    """
    Format a millisecond epoch timestamp in local time.

    Args:
        timestamp_ms: Milliseconds since the epoch
        format_str: strftime format string

    Returns:
        Formatted timestamp string, or "--:--" if the value is out of range
    """
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000).strftime(format_str)
    except (OverflowError, OSError, ValueError) as e:
        logger.debug(f"Failed to format timestamp {timestamp_ms}: {e}")
        return "--:--"


def short_peer_id(peer_id_hex: str, length: int = 8) -> str:
    """Abbreviate a hex peer identifier for display."""
    return peer_id_hex[:length]


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    if max_length <= len(suffix):
        return s[:max_length]
    return s[: max_length - len(suffix)] + suffix


def validate_port(port: int) -> bool:
    """
    Validate a listen port. 0 asks the OS for an ephemeral port.
    """
    return port == 0 or 1024 <= port <= 65535


def local_addresses(include_loopback: bool = True) -> List[str]:
    """
    Best-effort list of this machine's IP addresses.

    Link-local, multicast and unspecified addresses are skipped. The loopback
    address is appended last so that same-machine sessions always work.
    """
    found: List[str] = []

    try:
        infos = socket.getaddrinfo(socket.gethostname(), None)
    except OSError as e:
        logger.debug(f"Hostname lookup failed: {e}")
        infos = []

    for info in infos:
        address = info[4][0]
        try:
            ip = ipaddress.ip_address(address.split("%")[0])
        except ValueError:
            continue
        if ip.is_loopback or ip.is_link_local or ip.is_multicast or ip.is_unspecified:
            continue
        if str(ip) not in found:
            found.append(str(ip))

    if include_loopback and "127.0.0.1" not in found:
        found.append("127.0.0.1")

    return found
