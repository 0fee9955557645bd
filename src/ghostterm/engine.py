"""
GhostTerm - Concurrent session engine.

Created by orpheus497

The engine is the only code that mutates the Session. Independent producer
tasks turn keyboard input, inbound frames, peer discoveries and timer ticks
into immutable event values on a single asyncio.Queue; run() consumes them
one at a time, applies each to completion and then asks the front end to
redraw. Outbound frames go through a separate sender task and queue so a
slow or failing transport never stalls the loop.

Every exit path (user command, fatal transport error, invariant violation
or cancellation) ends in teardown(), which cancels the producers, closes
the connection and drops the Session together with its peers, history,
descriptor and ticket.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from . import render, ticket
from .config import Config
from .constants import (
    HEARTBEAT_INTERVAL,
    LIVENESS_TIMEOUT,
    MAX_BODY_LENGTH,
    MAX_RETAINED_MESSAGES,
    PEER_EVICT_AFTER,
    RATE_LIMIT_FRAMES_BURST,
    RATE_LIMIT_FRAMES_PER_SECOND,
)
from .crypto import generate_topic
from .errors import ConnectError, ErrorCode, ProtocolError, SessionError, TicketError
from .protocol import Protocol
from .rate_limiter import RateLimiter
from .session import Session
from .session_fsm import Role, SessionState
from .transport import Connection, Endpoint, PeerAddress, Transport
from .utils import short_peer_id

logger = logging.getLogger(__name__)

# Lines moved by PageUp/PageDown
SCROLL_PAGE = 10
# Used for scroll limits until the front end reports its size
DEFAULT_VIEWPORT = render.Viewport(80, 24)


@dataclass(frozen=True)
class KeyEvent:
    """A key press from the front end.

    ``key`` uses Textual's key names ("enter", "backspace", "escape",
    "ctrl+c", "pageup", ...). ``character`` is the printable text for
    ordinary keys; for "paste" it holds the pasted text.
    """

    key: str
    character: Optional[str] = None


# Events consumed by the loop


@dataclass(frozen=True)
class KeyPressed:
    event: KeyEvent


@dataclass(frozen=True)
class FrameReceived:
    sender: str
    data: bytes


@dataclass(frozen=True)
class PeerDiscovered:
    address: PeerAddress


@dataclass(frozen=True)
class Tick:
    now: float


@dataclass(frozen=True)
class SendFailed:
    reason: str


@dataclass(frozen=True)
class ConnectFinished:
    connection: Optional[Connection] = None
    error: Optional[ConnectError] = None


@dataclass(frozen=True)
class ExitRequested:
    pass


@dataclass(frozen=True)
class TransportFailed:
    reason: str


EngineEvent = Union[
    KeyPressed,
    FrameReceived,
    PeerDiscovered,
    Tick,
    SendFailed,
    ConnectFinished,
    ExitRequested,
    TransportFailed,
]


class GhostEngine:
    """
    Single coordinating loop for one GhostTerm session.

    Attributes:
        transport: Network collaborator
        session: The live Session, None before host()/join() and after teardown()
        on_update: Called after every applied event to request a redraw
    """

    def __init__(
        self,
        transport: Transport,
        display_name: str,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.display_name = display_name
        self.clock = clock

        config = config or Config()
        self.heartbeat_interval = float(
            config.get("presence", "heartbeat_interval", HEARTBEAT_INTERVAL)
        )
        self.liveness_timeout = float(config.get("presence", "liveness_timeout", LIVENESS_TIMEOUT))
        self.evict_after = float(config.get("presence", "evict_after", PEER_EVICT_AFTER))
        self.max_messages = int(
            config.get("limits", "max_retained_messages", MAX_RETAINED_MESSAGES)
        )
        self.rate_limiter = RateLimiter(
            frames_per_second=float(
                config.get("limits", "frames_per_second", RATE_LIMIT_FRAMES_PER_SECOND)
            ),
            frames_burst=int(config.get("limits", "frames_burst", RATE_LIMIT_FRAMES_BURST)),
        )

        self.session: Optional[Session] = None
        self.connection: Optional[Connection] = None
        self.endpoint: Optional[Endpoint] = None
        self._descriptor: Optional[ticket.ConnectionDescriptor] = None

        self.viewport = DEFAULT_VIEWPORT
        self.on_update: Optional[Callable[[], None]] = None
        self.fatal_error: Optional[Exception] = None

        self._events: asyncio.Queue = asyncio.Queue()
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._producers: List[asyncio.Task] = []
        self._connect_task: Optional[asyncio.Task] = None
        self._running = False
        self._torn_down = False

    # Session setup

    def _new_session(self, role: Role, endpoint: Endpoint) -> Session:
        self.endpoint = endpoint
        self.session = Session(
            role,
            self.display_name,
            endpoint.peer_id_hex,
            max_messages=self.max_messages,
            liveness_timeout=self.liveness_timeout,
            evict_after=self.evict_after,
        )
        self.session.fsm.on_state_change = self._on_state_change
        return self.session

    def _on_state_change(self, old_state: SessionState, new_state: SessionState) -> None:
        if new_state == SessionState.ACTIVE and self.session is not None:
            if self.session.role == Role.HOST:
                self.session.notify("A peer joined. Say hello!")
            else:
                self.session.notify("Connected.")

    async def host(self, endpoint: Optional[Endpoint] = None, cover: Optional[str] = None) -> str:
        """
        Open a new gossip group and issue its ticket.

        Returns:
            The ticket text to hand to joiners
        """
        if self.session is not None:
            raise SessionError(ErrorCode.E401_INVALID_TRANSITION, "Session already started")

        endpoint = endpoint or await self.transport.create_endpoint()
        session = self._new_session(Role.HOST, endpoint)

        descriptor = ticket.ConnectionDescriptor(
            peer_id=endpoint.peer_id,
            topic=generate_topic(),
            address_hints=endpoint.address_hints,
            relay_hint=endpoint.relay_hint,
        )
        ticket_text = ticket.encode(descriptor, cover)
        self.connection = await self.transport.listen(descriptor.topic)
        self._descriptor = descriptor

        session.issue_ticket(ticket_text)
        session.notify("Waiting for peers. Share your ticket (/ticket shows it again).")
        self._start_producers()
        logger.info(f"Hosting group {descriptor.topic.hex()[:8]} as {session.display_name}")
        return ticket_text

    async def _ensure_joiner_session(self) -> Session:
        if self.session is None:
            self._new_session(
                Role.JOINER, await self.transport.create_endpoint(accept_peers=False)
            )
        if self.session.role != Role.JOINER:
            raise SessionError(ErrorCode.E401_INVALID_TRANSITION, "A host cannot join another group")
        return self.session

    def _begin_join(self, ticket_text: str) -> ticket.ConnectionDescriptor:
        """Decode the ticket and move to HANDSHAKING; nothing changes on TicketError."""
        session = self.session
        if session.state != SessionState.IDLE:
            raise SessionError(
                ErrorCode.E401_INVALID_TRANSITION,
                f"Cannot join while {session.state.name}",
            )
        descriptor = ticket.decode(ticket_text)
        if descriptor.peer_id_hex == session.local_id:
            raise TicketError(ErrorCode.E104_CORRUPT_BINARY, "Ticket points at this session")
        session.begin_join(descriptor, self.clock())
        return descriptor

    async def join(self, ticket_text: str) -> None:
        """
        Decode a ticket and connect to its group.

        Retryable: after a failure the session is back in IDLE.

        Raises:
            TicketError: If the ticket does not decode; the session stays IDLE
            ConnectError: If the transport cannot reach the host
        """
        await self._ensure_joiner_session()
        descriptor = self._begin_join(ticket_text)
        try:
            connection = await self.transport.connect(descriptor)
        except ConnectError as e:
            self._apply_connect_result(ConnectFinished(error=e))
            raise
        self._apply_connect_result(ConnectFinished(connection=connection))

    async def _connect_in_background(self, descriptor: ticket.ConnectionDescriptor) -> None:
        try:
            connection = await self.transport.connect(descriptor)
        except ConnectError as e:
            await self._events.put(ConnectFinished(error=e))
            return
        await self._events.put(ConnectFinished(connection=connection))

    def _apply_connect_result(self, result: ConnectFinished) -> None:
        session = self.session
        if result.error is not None:
            logger.warning(f"Join failed: {result.error}")
            session.connect_failed(result.error.message)
            return
        self.connection = result.connection
        self._descriptor = session.descriptor
        session.connect_succeeded()
        self._start_producers()

    # Producers

    def _start_producers(self) -> None:
        if self._producers:
            return
        self._producers = [
            asyncio.create_task(self._receive_frames(), name="ghostterm-receive"),
            asyncio.create_task(self._discover_peers(), name="ghostterm-discover"),
            asyncio.create_task(self._timer(), name="ghostterm-timer"),
            asyncio.create_task(self._send_frames(), name="ghostterm-send"),
        ]

    async def _receive_frames(self) -> None:
        try:
            async for sender, data in self.transport.receive():
                await self._events.put(FrameReceived(sender, data))
        except ConnectError as e:
            await self._events.put(TransportFailed(e.message))
            return
        if not self._torn_down:
            await self._events.put(TransportFailed("Connection closed"))

    async def _discover_peers(self) -> None:
        try:
            async for address in self.transport.discover_peers():
                await self._events.put(PeerDiscovered(address))
        except ConnectError as e:
            logger.warning(f"Peer discovery stopped: {e}")

    async def _timer(self) -> None:
        while True:
            await self._events.put(Tick(self.clock()))
            await asyncio.sleep(self.heartbeat_interval)

    async def _send_frames(self) -> None:
        while True:
            data = await self._outbound.get()
            connection = self.connection
            if connection is None:
                continue
            try:
                await self.transport.send(connection, data)
            except ConnectError as e:
                await self._events.put(SendFailed(e.message))

    # Front end surface

    def submit(self, key_event: KeyEvent) -> None:
        """Queue a key press. Safe to call from the front end at any time."""
        if self._torn_down:
            return
        self._events.put_nowait(KeyPressed(key_event))

    def request_exit(self) -> None:
        if self._torn_down:
            return
        self._events.put_nowait(ExitRequested())

    def current_frame(
        self, viewport: render.Viewport, scroll_offset: Optional[int] = None
    ) -> render.Frame:
        self.viewport = viewport
        if self.session is None:
            return render.closed_frame(viewport)
        if scroll_offset is None:
            scroll_offset = self.session.scroll_offset
        return render.project(self.session, viewport, scroll_offset)

    @property
    def ticket_text(self) -> Optional[str]:
        return self.session.ticket_text if self.session else None

    # Loop

    async def run(self) -> None:
        """
        Consume events until the session closes, then tear down.

        Raises:
            SessionError: If an invariant is violated; teardown still runs
        """
        if self.session is None:
            raise SessionError(ErrorCode.E402_SESSION_CLOSED, "host() or join() must run first")

        self._running = True
        self._request_render()
        try:
            while self.session is not None and not self.session.fsm.is_closed():
                event = await self._events.get()
                try:
                    self.apply(event)
                except SessionError as e:
                    logger.error(f"Fatal session error: {e}")
                    self.fatal_error = e
                    raise
                self._request_render()
        finally:
            self._running = False
            await self.teardown()

    def apply(self, event: EngineEvent) -> None:
        """Apply one event to the session, to completion."""
        if isinstance(event, KeyPressed):
            self._handle_key(event.event)
        elif isinstance(event, FrameReceived):
            self._handle_frame(event.sender, event.data)
        elif isinstance(event, PeerDiscovered):
            self._handle_discovery(event.address)
        elif isinstance(event, Tick):
            self._handle_tick(event.now)
        elif isinstance(event, SendFailed):
            self.session.notify(f"Send failed: {event.reason}", is_error=True)
        elif isinstance(event, ConnectFinished):
            self._connect_task = None
            self._apply_connect_result(event)
        elif isinstance(event, TransportFailed):
            logger.error(f"Transport failed: {event.reason}")
            self.session.notify(f"Connection lost: {event.reason}", is_error=True)
            self.session.close(event.reason)
        elif isinstance(event, ExitRequested):
            self.session.close()
        self.session.check_invariants()

    def _request_render(self) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update()
        except Exception as e:
            logger.error(f"Render callback error: {e}")

    # Event handlers

    def _handle_frame(self, sender: str, data: bytes) -> None:
        session = self.session
        try:
            message = Protocol.unpack_message(data)
        except ProtocolError as e:
            # No author to charge, so the delivering link pays
            if self.rate_limiter.check_frame_rate(sender):
                logger.warning(f"Dropped frame from {short_peer_id(sender)}: {e}")
                session.notify(f"Dropped a bad frame from {short_peer_id(sender)}", is_error=True)
            return
        # Relayed frames all arrive from the host; limit each author separately
        if not self.rate_limiter.check_frame_rate(message.sender):
            return
        session.receive(message, self.clock())

    def _handle_discovery(self, address: PeerAddress) -> None:
        if address.peer_id == self.session.local_id:
            return
        self.session.peer_discovered(address.peer_id, self.clock())

    def _handle_tick(self, now: float) -> None:
        session = self.session
        for peer in session.sweep(now):
            session.notify(f"{peer.label} went quiet")
        self.rate_limiter.cleanup()
        if self.connection is not None:
            self._queue_outbound(Protocol.pack_message(session.compose_presence()))

    def _queue_outbound(self, data: bytes) -> None:
        self._outbound.put_nowait(data)

    def _handle_key(self, key_event: KeyEvent) -> None:
        session = self.session
        key = key_event.key

        if key in ("escape", "ctrl+c"):
            session.close()
        elif key == "enter":
            self._handle_enter()
        elif key == "backspace":
            session.input_buffer = session.input_buffer[:-1]
        elif key == "pageup":
            self._scroll(SCROLL_PAGE)
        elif key == "pagedown":
            self._scroll(-SCROLL_PAGE)
        elif key == "up":
            self._scroll(1)
        elif key == "down":
            self._scroll(-1)
        elif key == "paste" and key_event.character:
            text = " ".join(key_event.character.splitlines())
            session.input_buffer += text
        elif key_event.character and key_event.character.isprintable():
            session.input_buffer += key_event.character

    def _scroll(self, delta: int) -> None:
        session = self.session
        limit = render.max_scroll_offset(session, self.viewport)
        session.scroll_offset = min(max(0, session.scroll_offset + delta), limit)

    def _handle_enter(self) -> None:
        session = self.session
        text = session.input_buffer.strip()
        if not text:
            session.input_buffer = ""
            return

        if text.startswith("/"):
            session.input_buffer = ""
            self._handle_command(text)
            return

        if session.state not in (SessionState.HANDSHAKING, SessionState.ACTIVE) or (
            self.connection is None
        ):
            session.notify("Not connected yet.", is_error=True)
            return

        try:
            message = session.compose_chat(text, int(self.clock() * 1000))
        except ProtocolError as e:
            # Nothing is sent and the input is kept so it can be shortened
            logger.info(f"Rejected outbound message: {e.message}")
            session.notify(
                f"Message too long ({len(text)}/{MAX_BODY_LENGTH} characters)", is_error=True
            )
            return

        session.input_buffer = ""
        if message is not None:
            self._queue_outbound(Protocol.pack_message(message))

    def _handle_command(self, text: str) -> None:
        session = self.session
        command, _, argument = text.partition(" ")
        command = command.lower()

        if command in ("/quit", "/exit"):
            session.close()
        elif command == "/ticket":
            if session.ticket_text:
                session.notify(f"Ticket: {session.ticket_text}")
            else:
                session.notify("Only the host has a ticket.", is_error=True)
        elif command == "/join":
            self._command_join(argument.strip())
        else:
            session.notify(f"Unknown command: {command}", is_error=True)

    def _command_join(self, ticket_text: str) -> None:
        session = self.session
        if session.role != Role.JOINER:
            session.notify("A host cannot join another group.", is_error=True)
            return
        if session.state != SessionState.IDLE or self._connect_task is not None:
            session.notify("Already connected or connecting.", is_error=True)
            return
        if not ticket_text:
            session.notify("Usage: /join <ticket>", is_error=True)
            return
        try:
            descriptor = self._begin_join(ticket_text)
        except TicketError as e:
            session.notify(f"Invalid ticket ({e.kind})", is_error=True)
            return
        session.notify("Connecting...")
        self._connect_task = asyncio.create_task(self._connect_in_background(descriptor))

    # Shutdown

    async def teardown(self) -> None:
        """
        Cancel every producer, close the connection and drop all session state.

        Safe to call more than once and on any exit path.
        """
        if self._torn_down:
            return
        self._torn_down = True

        tasks = list(self._producers)
        if self._connect_task is not None:
            tasks.append(self._connect_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._producers = []
        self._connect_task = None

        # A joiner whose connect failed still owns a bound endpoint
        if self.connection is not None or self.endpoint is not None:
            try:
                await self.transport.close(self.connection)
            except ConnectError as e:
                logger.warning(f"Error closing connection: {e}")

        if self.session is not None:
            if not self.session.fsm.is_closed():
                self.session.close()
            self.session.wipe()

        _drain(self._events)
        _drain(self._outbound)
        logger.debug(f"Rate limiter at teardown: {self.rate_limiter.get_stats()}")
        self.rate_limiter.clear()

        self.session = None
        self.connection = None
        self._descriptor = None
        self.endpoint = None
        logger.info("Session torn down")


def _drain(queue: asyncio.Queue) -> None:
    while not queue.empty():
        queue.get_nowait()
