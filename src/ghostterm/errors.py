"""
GhostTerm - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the GhostTerm application. Each error has a unique code for logging and
for the diagnostics shown in the dashboard.

Author: orpheus497
Version: 0.3.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all GhostTerm error codes."""

    # Ticket Errors (E100-E199)
    E100_TICKET_ERROR = "E100"
    E101_MALFORMED_WRAPPER = "E101"
    E102_TRUNCATED_PAYLOAD = "E102"
    E103_UNSUPPORTED_VERSION = "E103"
    E104_CORRUPT_BINARY = "E104"
    E105_OVERSIZED_INPUT = "E105"

    # Connection Errors (E200-E299)
    E200_CONNECTION_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E203_CONNECTION_CLOSED = "E203"
    E204_SEND_FAILED = "E204"
    E209_HANDSHAKE_FAILED = "E209"

    # Protocol Errors (E300-E399)
    E300_PROTOCOL_ERROR = "E300"
    E301_MALFORMED_FRAME = "E301"
    E302_MESSAGE_TOO_LARGE = "E302"
    E303_UNSUPPORTED_PROTOCOL = "E303"

    # Session Errors (E400-E499)
    E400_SESSION_ERROR = "E400"
    E401_INVALID_TRANSITION = "E401"
    E402_SESSION_CLOSED = "E402"
    E403_INVARIANT_VIOLATION = "E403"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E704_CONFIG_PARSE_ERROR = "E704"


class GhostError(Exception):
    """Base exception class for all GhostTerm errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for display or diagnostics."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class TicketError(GhostError):
    """Exception raised when a ticket cannot be decoded.

    The ``kind`` attribute names the failure class: MalformedWrapper,
    TruncatedPayload, UnsupportedVersion, CorruptBinary or OversizedInput.
    """

    KINDS = {
        ErrorCode.E101_MALFORMED_WRAPPER: "MalformedWrapper",
        ErrorCode.E102_TRUNCATED_PAYLOAD: "TruncatedPayload",
        ErrorCode.E103_UNSUPPORTED_VERSION: "UnsupportedVersion",
        ErrorCode.E104_CORRUPT_BINARY: "CorruptBinary",
        ErrorCode.E105_OVERSIZED_INPUT: "OversizedInput",
    }

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_TICKET_ERROR,
        message: str = "Invalid ticket",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)

    @property
    def kind(self) -> str:
        return self.KINDS.get(self.code, "TicketError")


class ConnectError(GhostError):
    """Exception raised when the transport fails to establish or keep a connection.

    Transport failures are propagated opaquely; the original reason is kept
    in ``details["reason"]`` when available.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E201_CONNECTION_FAILED,
        message: str = "Connection failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(GhostError):
    """Exception raised for oversized or malformed message frames."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_PROTOCOL_ERROR,
        message: str = "Protocol violation",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SessionError(GhostError):
    """Exception raised for invalid session transitions and invariant violations.

    These are treated as fatal by the engine.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_SESSION_ERROR,
        message: str = "Session operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(GhostError):
    """Exception raised when the configuration file cannot be read or parsed."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
