"""
GhostTerm - Ephemeral Peer-to-Peer Terminal Chat

Serverless text chat between terminals. A host hands out a ticket, joiners
paste it, and the conversation lives only in memory: when the process
exits, messages, peers and identities are gone.

Author: orpheus497
Version: 0.3.0
License: MIT
"""

__version__ = "0.3.0"
__author__ = "orpheus497"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    ConnectError,
    ErrorCode,
    GhostError,
    ProtocolError,
    SessionError,
    TicketError,
)
from .message import Message, MessageHistory, MessageKind
from .rate_limiter import RateLimiter, TokenBucket
from .ticket import AddressHint, ConnectionDescriptor, decode, encode

__all__ = [
    "APP_NAME",
    "VERSION",
    "AddressHint",
    "Config",
    "ConfigError",
    "ConnectError",
    "ConnectionDescriptor",
    "ErrorCode",
    "GhostError",
    "Message",
    "MessageHistory",
    "MessageKind",
    "ProtocolError",
    "RateLimiter",
    "SessionError",
    "TicketError",
    "TokenBucket",
    "__author__",
    "__license__",
    "__version__",
    "decode",
    "encode",
]
