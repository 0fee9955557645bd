"""
GhostTerm - Textual-based terminal user interface.

Created by orpheus497

The app owns no conversation state. It forwards every key press to the
engine and redraws from engine.current_frame() whenever the engine asks,
so what is on screen is always a projection of the live session.
"""

import logging
from typing import Optional

from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import Static

from .constants import APP_NAME, INPUT_HEIGHT, SIDEBAR_WIDTH
from .engine import GhostEngine, KeyEvent
from .errors import SessionError
from .render import Frame, Viewport, chat_height, chat_width

logger = logging.getLogger(__name__)

LIVENESS_STYLES = {
    "active": "#44ff44",
    "connecting": "#ffaa00",
    "unknown": "#888888",
    "lost": "#444444",
}


class GhostApp(App):
    """Single-screen chat view: network sidebar on the left, conversation on the right."""

    TITLE = APP_NAME

    CSS = f"""
    Screen {{
        background: #000000;
        layout: horizontal;
    }}

    #sidebar {{
        width: {SIDEBAR_WIDTH};
        height: 100%;
        border-right: solid #8b0000;
        padding: 0 1;
        color: #cccccc;
    }}

    #chat {{
        width: 1fr;
        height: 100%;
    }}

    #status {{
        height: 1;
        background: #1a1a1a;
        color: #ff4444;
        text-style: bold;
        padding: 0 1;
    }}

    #messages {{
        height: 1fr;
        padding: 0 1;
        color: #cccccc;
    }}

    #notice {{
        height: 1;
        padding: 0 1;
        color: #888888;
    }}

    #input {{
        height: {INPUT_HEIGHT};
        border: solid #444444;
        color: #ffffff;
        padding: 0 1;
    }}
    """

    BINDINGS = [
        Binding("escape", "leave", "Quit", priority=True),
        Binding("ctrl+c", "leave", "Quit", show=False, priority=True),
        Binding("ctrl+q", "leave", "Quit", show=False, priority=True),
    ]

    def __init__(self, engine: GhostEngine):
        super().__init__()
        self.engine = engine
        self.session_error: Optional[SessionError] = None

    def compose(self) -> ComposeResult:
        yield Static("", id="sidebar")
        with Vertical(id="chat"):
            yield Static("", id="status")
            yield Static("", id="messages")
            yield Static("", id="notice")
            yield Static("", id="input")

    def on_mount(self) -> None:
        self.engine.on_update = self.refresh_frame
        self.run_worker(self._run_engine(), name="engine", exclusive=True)

    async def _run_engine(self) -> None:
        try:
            await self.engine.run()
        except SessionError as e:
            logger.error(f"Session ended with an error: {e}")
            self.session_error = e
        finally:
            self.exit()

    def on_resize(self, event: events.Resize) -> None:
        self.refresh_frame()

    def on_key(self, event: events.Key) -> None:
        event.stop()
        event.prevent_default()
        self.engine.submit(KeyEvent(event.key, event.character))

    def on_paste(self, event: events.Paste) -> None:
        event.stop()
        self.engine.submit(KeyEvent("paste", event.text))

    def action_leave(self) -> None:
        self.engine.submit(KeyEvent("escape"))

    def _viewport(self) -> Viewport:
        return Viewport(self.size.width, self.size.height)

    def refresh_frame(self) -> None:
        """Redraw every widget from the engine's current frame."""
        if not self.is_running:
            return
        viewport = self._viewport()
        frame = self.engine.current_frame(viewport)

        self.title = frame.title
        self.query_one("#sidebar", Static).update(self._render_sidebar(frame))
        self.query_one("#status", Static).update(Text(frame.status))
        self.query_one("#messages", Static).update(self._render_messages(frame, viewport))
        self.query_one("#notice", Static).update(self._render_notice(frame))
        self.query_one("#input", Static).update(Text(frame.input_line or "", style="#ffffff"))

    @staticmethod
    def _render_sidebar(frame: Frame) -> Text:
        text = Text("Network\n\n", style="bold #ff4444")
        for entry in frame.sidebar:
            style = "#00ffff" if entry.is_self else LIVENESS_STYLES.get(entry.liveness, "#cccccc")
            text.append("● ", style=style)
            text.append(f"{entry.label}\n", style="bold" if entry.is_self else "")
        return text

    @staticmethod
    def _render_messages(frame: Frame, viewport: Viewport) -> Text:
        width = chat_width(viewport)
        text = Text()
        # Anchor the conversation to the bottom of the panel
        padding = chat_height(viewport) - len(frame.lines)
        if padding > 0:
            text.append("\n" * padding)

        for index, line in enumerate(frame.lines):
            if index:
                text.append("\n")
            if line.is_own:
                text.append(line.text.rjust(width), style="#ff4444")
            else:
                text.append(line.text, style="bold #ffffff" if line.is_first else "#cccccc")
        return text

    @staticmethod
    def _render_notice(frame: Frame) -> Text:
        if not frame.notice:
            return Text("Write a message (Esc quits, /ticket, /quit)", style="#555555")
        return Text(frame.notice, style="#ff0000" if frame.notice_is_error else "#888888")
