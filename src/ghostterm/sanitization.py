"""
GhostTerm - Input Sanitization

Text received from peers ends up on the local terminal, so it is cleaned of
escape sequences and control characters before it is stored. Display names
are additionally collapsed to a single short line.

Author: orpheus497
Version: 0.3.0
"""

import re

from .constants import DEFAULT_DISPLAY_NAME, MAX_BODY_LENGTH, MAX_DISPLAY_NAME_LENGTH


class InputSanitizer:
    """Sanitize text for terminal display."""

    # ANSI CSI / single-character escape sequences
    ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

    # Bidirectional overrides can visually reorder a line
    BIDI_CONTROLS = re.compile("[\u202a-\u202e\u2066-\u2069]")

    @staticmethod
    def sanitize_for_display(text: str, max_length: int = MAX_BODY_LENGTH) -> str:
        """
        Sanitize text for terminal display.

        Removes ANSI escape sequences, bidi overrides and control characters.
        Tabs and newlines become spaces so every message stays on its own line.

        Args:
            text: Input text to sanitize
            max_length: Maximum allowed length

        Returns:
            Display-safe text
        """
        if not isinstance(text, str):
            text = str(text)

        text = text[:max_length]
        text = InputSanitizer.ANSI_ESCAPE.sub("", text)
        text = InputSanitizer.BIDI_CONTROLS.sub("", text)
        text = text.replace("\t", " ").replace("\r\n", " ").replace("\n", " ")

        # C0 controls, DEL and C1 controls
        return "".join(char for char in text if ord(char) >= 32 and not 0x7F <= ord(char) <= 0x9F)

    @staticmethod
    def sanitize_display_name(name: str) -> str:
        """
        Clean a display name for the sidebar and message attribution.

        Returns the default name when nothing printable is left.
        """
        text = InputSanitizer.sanitize_for_display(name or "", max_length=256)
        text = " ".join(text.split())
        if len(text) > MAX_DISPLAY_NAME_LENGTH:
            text = text[:MAX_DISPLAY_NAME_LENGTH].rstrip()
        return text or DEFAULT_DISPLAY_NAME


# Create global instance
_sanitizer = InputSanitizer()


def sanitize_for_display(text: str) -> str:
    """Convenience function for display sanitization."""
    return _sanitizer.sanitize_for_display(text)


def sanitize_display_name(name: str) -> str:
    """Convenience function for display name sanitization."""
    return _sanitizer.sanitize_display_name(name)
