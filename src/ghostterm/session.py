"""
GhostTerm - Ephemeral session state.

Created by orpheus497

A Session is the single owner of everything a conversation knows: the
local role and name, the peers and their liveness, the chat history and
the composing-input buffer. Exactly one exists per process run and only
the engine mutates it. wipe() drops all of it; nothing is ever persisted.

Peer liveness:

    UNKNOWN -> CONNECTING -> ACTIVE -> LOST

A peer not heard from within the liveness timeout becomes LOST and leaves
the live-peer view; its name stays available for attributing the messages
it already sent. A LOST peer that speaks again becomes ACTIVE again.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List, Optional

from .constants import (
    LIVENESS_TIMEOUT,
    MAX_NOTICES,
    MAX_RETAINED_MESSAGES,
    PEER_EVICT_AFTER,
)
from .errors import ErrorCode, ProtocolError, SessionError
from .message import Message, MessageHistory, MessageKind, now_ms
from .protocol import Protocol
from .sanitization import sanitize_display_name, sanitize_for_display
from .session_fsm import Role, SessionEvent, SessionState, SessionStateMachine
from .ticket import ConnectionDescriptor
from .utils import short_peer_id

logger = logging.getLogger(__name__)


class PeerLiveness(Enum):
    """Per-peer liveness states."""

    UNKNOWN = "unknown"
    CONNECTING = "connecting"
    ACTIVE = "active"
    LOST = "lost"


@dataclass
class Peer:
    """A remote participant known to this session."""

    peer_id: str
    display_name: Optional[str] = None
    liveness: PeerLiveness = PeerLiveness.UNKNOWN
    last_seen: float = 0.0
    lost_since: Optional[float] = None

    @property
    def label(self) -> str:
        return self.display_name or short_peer_id(self.peer_id)

    def is_live(self) -> bool:
        return self.liveness in (PeerLiveness.CONNECTING, PeerLiveness.ACTIVE)


@dataclass(frozen=True)
class Notice:
    """A user-visible diagnostic line."""

    text: str
    timestamp: float
    is_error: bool = False


class Session:
    """
    Volatile state of one chat session.

    Attributes:
        role: HOST or JOINER
        display_name: Local display name
        local_id: Local hex peer identifier
        fsm: Lifecycle state machine
        peers: Known peers by hex identifier
        history: Ordered chat history
        input_buffer: Text being composed
        scroll_offset: Lines scrolled up from the newest message
        ticket_text: Ticket issued by this host, if any
        descriptor: Descriptor decoded by this joiner, if any
    """

    def __init__(
        self,
        role: Role,
        display_name: str,
        local_id: str,
        max_messages: int = MAX_RETAINED_MESSAGES,
        liveness_timeout: float = LIVENESS_TIMEOUT,
        evict_after: float = PEER_EVICT_AFTER,
    ):
        self.role = role
        self.display_name = sanitize_display_name(display_name)
        self.local_id = local_id
        self.liveness_timeout = liveness_timeout
        self.evict_after = evict_after

        self.fsm = SessionStateMachine(role)
        self.peers: Dict[str, Peer] = {}
        self.history = MessageHistory(max_messages)
        self.notices: Deque[Notice] = deque(maxlen=MAX_NOTICES)

        # Names of evicted peers, kept for message attribution
        self._attribution: Dict[str, str] = {}
        self._sequences: Dict[MessageKind, int] = {kind: 0 for kind in MessageKind}

        self.input_buffer = ""
        self.scroll_offset = 0
        self.ticket_text: Optional[str] = None
        self.descriptor: Optional[ConnectionDescriptor] = None

    @property
    def state(self) -> SessionState:
        return self.fsm.get_state()

    # Lifecycle

    def issue_ticket(self, ticket_text: str) -> None:
        """Host: record the published ticket and start waiting for peers."""
        self.fsm.require(SessionEvent.TICKET_ISSUED)
        self.ticket_text = ticket_text

    def begin_join(self, descriptor: ConnectionDescriptor, now: Optional[float] = None) -> None:
        """Joiner: record the decoded descriptor and mark the host as connecting."""
        self.fsm.require(SessionEvent.CONNECT_REQUESTED)
        self.descriptor = descriptor
        peer = self._get_or_create_peer(descriptor.peer_id_hex, now)
        peer.liveness = PeerLiveness.CONNECTING
        if descriptor.display_name:
            peer.display_name = sanitize_display_name(descriptor.display_name)

    def connect_succeeded(self) -> None:
        self.fsm.require(SessionEvent.CONNECT_SUCCEEDED)

    def connect_failed(self, reason: str) -> None:
        """Joiner: go back to IDLE, forgetting the failed descriptor."""
        self.fsm.require(SessionEvent.CONNECT_FAILED)
        if self.descriptor is not None:
            self.peers.pop(self.descriptor.peer_id_hex, None)
        self.descriptor = None
        self.notify(f"Connection failed: {reason}", is_error=True)

    def close(self, reason: Optional[str] = None) -> None:
        """Move to CLOSED. Safe to call more than once."""
        if self.fsm.is_closed():
            return
        if reason:
            self.fsm.require(SessionEvent.TRANSPORT_FAILED, reason)
        else:
            self.fsm.require(SessionEvent.EXIT_REQUESTED)

    def wipe(self) -> None:
        """Drop every piece of conversation state."""
        self.history.clear()
        self.peers.clear()
        self.notices.clear()
        self._attribution.clear()
        self.input_buffer = ""
        self.scroll_offset = 0
        self.ticket_text = None
        self.descriptor = None
        self.fsm.on_state_change = None

    # Peers

    def _get_or_create_peer(self, peer_id: str, now: Optional[float] = None) -> Peer:
        peer = self.peers.get(peer_id)
        if peer is None:
            peer = Peer(peer_id=peer_id, last_seen=now if now is not None else time.time())
            peer.display_name = self._attribution.pop(peer_id, None)
            self.peers[peer_id] = peer
            logger.debug(f"New peer {short_peer_id(peer_id)}")
        return peer

    def _peer_joined(self) -> None:
        if self.role == Role.HOST and self.state == SessionState.HANDSHAKING:
            self.fsm.require(SessionEvent.PEER_JOINED)

    def peer_discovered(self, peer_id: str, now: Optional[float] = None) -> Peer:
        """A transport link to a peer came up; it is connecting until heard from."""
        now = now if now is not None else time.time()
        peer = self._get_or_create_peer(peer_id, now)
        if peer.liveness in (PeerLiveness.UNKNOWN, PeerLiveness.LOST):
            peer.liveness = PeerLiveness.CONNECTING
            peer.lost_since = None
            peer.last_seen = now
        self._peer_joined()
        return peer

    def peer_heard(self, peer_id: str, name: Optional[str], now: Optional[float] = None) -> Peer:
        """Any frame from a peer proves it is alive."""
        now = now if now is not None else time.time()
        peer = self._get_or_create_peer(peer_id, now)
        if peer.liveness == PeerLiveness.LOST:
            logger.info(f"Peer {peer.label} is back")
        peer.liveness = PeerLiveness.ACTIVE
        peer.lost_since = None
        peer.last_seen = max(peer.last_seen, now)
        if name:
            peer.display_name = sanitize_display_name(name)
        self._peer_joined()
        return peer

    def sweep(self, now: Optional[float] = None) -> List[Peer]:
        """
        Apply liveness timeouts.

        Returns:
            Peers whose liveness changed to LOST during this sweep
        """
        now = now if now is not None else time.time()
        lost = []
        for peer in list(self.peers.values()):
            if peer.is_live() and now - peer.last_seen > self.liveness_timeout:
                peer.liveness = PeerLiveness.LOST
                peer.lost_since = now
                lost.append(peer)
                logger.info(f"Peer {peer.label} lost after {now - peer.last_seen:.1f}s of silence")
            elif (
                peer.liveness == PeerLiveness.LOST
                and peer.lost_since is not None
                and now - peer.lost_since > self.evict_after
            ):
                self.evict_peer(peer.peer_id)
        return lost

    def evict_peer(self, peer_id: str) -> bool:
        """
        Remove a LOST peer, keeping its name for attribution.

        Returns:
            True if the peer was evicted
        """
        peer = self.peers.get(peer_id)
        if peer is None or peer.liveness != PeerLiveness.LOST:
            return False
        if peer.display_name:
            self._attribution[peer_id] = peer.display_name
        del self.peers[peer_id]
        logger.debug(f"Evicted peer {short_peer_id(peer_id)}")
        return True

    def live_peers(self) -> List[Peer]:
        return [peer for peer in self.peers.values() if peer.is_live()]

    def display_name_for(self, peer_id: str) -> str:
        if peer_id == self.local_id:
            return self.display_name
        peer = self.peers.get(peer_id)
        if peer is not None and peer.display_name:
            return peer.display_name
        return self._attribution.get(peer_id) or short_peer_id(peer_id)

    # Messages

    def _next_seq(self, kind: MessageKind) -> int:
        self._sequences[kind] += 1
        return self._sequences[kind]

    def compose_chat(self, body: str, timestamp: Optional[int] = None) -> Optional[Message]:
        """
        Build an outbound chat message and add it to local history.

        Returns:
            The message, or None if the body is blank

        Raises:
            ProtocolError: If the body is too long; nothing is sent or truncated
        """
        if not body.strip():
            return None
        message = Message(
            sender=self.local_id,
            seq=self._sequences[MessageKind.CHAT] + 1,
            timestamp=timestamp if timestamp is not None else now_ms(),
            body=body,
            kind=MessageKind.CHAT,
            sender_name=self.display_name,
        )
        Protocol.validate_message(message)
        self._next_seq(MessageKind.CHAT)
        self.history.add(message)
        self.scroll_offset = 0
        return message

    def compose_presence(self, timestamp: Optional[int] = None) -> Message:
        return Message(
            sender=self.local_id,
            seq=self._next_seq(MessageKind.PRESENCE),
            timestamp=timestamp if timestamp is not None else now_ms(),
            body="",
            kind=MessageKind.PRESENCE,
            sender_name=self.display_name,
        )

    def receive(self, message: Message, now: Optional[float] = None) -> bool:
        """
        Apply an inbound message.

        Returns:
            True if a new chat entry became visible
        """
        if message.sender == self.local_id:
            # Our own frame echoed back by the gossip layer
            return False

        self.peer_heard(message.sender, message.sender_name, now)
        if message.kind == MessageKind.PRESENCE:
            return False

        body = sanitize_for_display(message.body)
        if not body.strip():
            return False
        if body != message.body:
            message = Message(
                sender=message.sender,
                seq=message.seq,
                timestamp=message.timestamp,
                body=body,
                kind=message.kind,
                sender_name=message.sender_name,
            )
        return self.history.add(message)

    def visible_history(self) -> List[Message]:
        return list(self.history)

    # Notices

    def notify(self, text: str, is_error: bool = False, now: Optional[float] = None) -> None:
        self.notices.append(Notice(text, now if now is not None else time.time(), is_error))

    def latest_notice(self) -> Optional[Notice]:
        return self.notices[-1] if self.notices else None

    def check_invariants(self) -> None:
        """
        Raises:
            SessionError: If internal state is inconsistent
        """
        if self.local_id in self.peers:
            raise SessionError(
                ErrorCode.E403_INVARIANT_VIOLATION, "Local peer present in peer mapping"
            )
        if self.state == SessionState.ACTIVE and self.role == Role.JOINER and self.descriptor is None:
            raise SessionError(
                ErrorCode.E403_INVARIANT_VIOLATION, "Active joiner without a descriptor"
            )


__all__ = [
    "Notice",
    "Peer",
    "PeerLiveness",
    "ProtocolError",
    "Role",
    "Session",
    "SessionState",
]
