"""
GhostTerm - Render projector.

Created by orpheus497

project() turns the current Session into a Frame: a complete, immutable
description of what the terminal should show. It is a pure function of
its inputs; projecting the same state twice yields equal frames and never
changes the session. Drawing the frame is the front end's job.

Layout (columns):

    | sidebar (SIDEBAR_WIDTH) | chat (rest of the width)       |
    |                         | status line                    |
    |                         | message lines                  |
    |                         | notice line                    |
    |                         | input box (INPUT_HEIGHT)       |
"""

import textwrap
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple

from .constants import APP_NAME, INPUT_HEIGHT, SIDEBAR_WIDTH, STATUS_HEIGHT
from .session import Session
from .session_fsm import Role, SessionState
from .utils import format_timestamp, truncate_string

# Borders and padding around the chat column
CHAT_PADDING = 4
NOTICE_HEIGHT = 1
INPUT_PROMPT = "> "


class Viewport(NamedTuple):
    """Terminal size in cells."""

    width: int
    height: int


@dataclass(frozen=True)
class SidebarEntry:
    label: str
    liveness: str
    is_self: bool = False


@dataclass(frozen=True)
class MessageLine:
    """One wrapped line of the chat column.

    ``is_own`` lines are drawn right-aligned; ``is_first`` marks the line
    that carries the time and author of a message.
    """

    text: str
    is_own: bool = False
    is_first: bool = True


@dataclass(frozen=True)
class Frame:
    title: str
    status: str
    sidebar: Tuple[SidebarEntry, ...]
    lines: Tuple[MessageLine, ...]
    input_line: str
    notice: Optional[str] = None
    notice_is_error: bool = False
    scroll_offset: int = 0
    total_lines: int = 0


def chat_width(viewport: Viewport) -> int:
    return max(10, viewport.width - SIDEBAR_WIDTH - CHAT_PADDING)


def chat_height(viewport: Viewport) -> int:
    return max(1, viewport.height - STATUS_HEIGHT - NOTICE_HEIGHT - INPUT_HEIGHT)


def _status(session: Session) -> str:
    live = len(session.live_peers())
    state = session.state
    if state == SessionState.HANDSHAKING:
        if session.role == Role.HOST:
            detail = "waiting for peers"
        else:
            detail = "connecting"
    elif state == SessionState.ACTIVE:
        detail = f"{live} peer{'s' if live != 1 else ''} online"
    elif state == SessionState.CLOSED:
        detail = "closed"
    else:
        detail = "not connected"
    return f"{session.role.value.upper()} | {state.name} | {detail}"


def _sidebar(session: Session) -> Tuple[SidebarEntry, ...]:
    label_width = SIDEBAR_WIDTH - 4
    entries = [
        SidebarEntry(
            truncate_string(f"{session.display_name} (You)", label_width), "active", is_self=True
        )
    ]
    peers = sorted(session.live_peers(), key=lambda p: (p.label.casefold(), p.peer_id))
    for peer in peers:
        entries.append(SidebarEntry(truncate_string(peer.label, label_width), peer.liveness.value))
    return tuple(entries)


def _message_lines(session: Session, width: int) -> List[MessageLine]:
    lines: List[MessageLine] = []
    for message in session.history:
        is_own = message.sender == session.local_id
        author = session.display_name_for(message.sender)
        text = f"[{format_timestamp(message.timestamp)}] {author}: {message.body}"
        wrapped = textwrap.wrap(
            text,
            width=width,
            subsequent_indent="  ",
            break_long_words=True,
            break_on_hyphens=False,
        ) or [text[:width]]
        for index, line in enumerate(wrapped):
            lines.append(MessageLine(line, is_own=is_own, is_first=index == 0))
    return lines


def _input_line(buffer: str, width: int) -> str:
    visible = width - len(INPUT_PROMPT)
    if len(buffer) > visible:
        buffer = buffer[-visible:]
    return INPUT_PROMPT + buffer


def max_scroll_offset(session: Session, viewport: Viewport) -> int:
    """Largest scroll offset that still moves the visible window."""
    total = len(_message_lines(session, chat_width(viewport)))
    return max(0, total - chat_height(viewport))


def project(session: Session, viewport: Viewport, scroll_offset: int = 0) -> Frame:
    """
    Project session state onto a viewport.

    Args:
        session: State to draw; not modified
        viewport: Terminal size
        scroll_offset: Lines scrolled up from the newest message. Values
            outside the scrollable range are clamped.

    Returns:
        Frame describing the whole screen
    """
    width = chat_width(viewport)
    rows = chat_height(viewport)

    all_lines = _message_lines(session, width)
    total = len(all_lines)
    offset = min(max(0, scroll_offset), max(0, total - rows))
    end = total - offset
    visible = all_lines[max(0, end - rows) : end]

    notice = session.latest_notice()
    return Frame(
        title=f"{APP_NAME} - {session.display_name}",
        status=_status(session),
        sidebar=_sidebar(session),
        lines=tuple(visible),
        input_line=_input_line(session.input_buffer, width),
        notice=notice.text if notice else None,
        notice_is_error=notice.is_error if notice else False,
        scroll_offset=offset,
        total_lines=total,
    )


def closed_frame(viewport: Viewport) -> Frame:
    """Frame shown once the session has been torn down."""
    return Frame(
        title=APP_NAME,
        status="CLOSED",
        sidebar=(),
        lines=(),
        input_line=_input_line("", chat_width(viewport)),
    )
