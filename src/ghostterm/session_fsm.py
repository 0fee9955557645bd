"""
GhostTerm - Session lifecycle state machine.

Created by orpheus497

This module implements the finite state machine for a chat session:

    IDLE -> HANDSHAKING -> ACTIVE -> CLOSED

Host and joiner share one transition table. The role is a tag that decides
which events are allowed: only a host issues tickets and sees peers join,
only a joiner requests connections and hears back from the transport.
CLOSED is terminal.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, FrozenSet, List, Optional

from .errors import ErrorCode, SessionError

logger = logging.getLogger(__name__)


class Role(Enum):
    """Local role in the session."""

    HOST = "host"
    JOINER = "joiner"


class SessionState(Enum):
    """Session lifecycle states."""

    IDLE = auto()  # No ticket issued, no connection requested
    HANDSHAKING = auto()  # Ticket issued (host) or connection in progress (joiner)
    ACTIVE = auto()  # Connected to at least one peer
    CLOSED = auto()  # Torn down; terminal


class SessionEvent(Enum):
    """Events that trigger session transitions."""

    TICKET_ISSUED = auto()  # Host published its ticket
    PEER_JOINED = auto()  # Host saw its first peer
    CONNECT_REQUESTED = auto()  # Joiner asked the transport to connect
    CONNECT_SUCCEEDED = auto()  # Transport reported success
    CONNECT_FAILED = auto()  # Transport reported failure
    EXIT_REQUESTED = auto()  # User asked to leave
    TRANSPORT_FAILED = auto()  # Unrecoverable transport failure


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


class SessionStateMachine:
    """
    Finite state machine for the session lifecycle.

    Enforces valid transitions for the local role, tracks history and
    notifies an optional state-change callback.
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
        SessionState.IDLE: {
            SessionEvent.TICKET_ISSUED: SessionState.HANDSHAKING,
            SessionEvent.CONNECT_REQUESTED: SessionState.HANDSHAKING,
            SessionEvent.EXIT_REQUESTED: SessionState.CLOSED,
            SessionEvent.TRANSPORT_FAILED: SessionState.CLOSED,
        },
        SessionState.HANDSHAKING: {
            SessionEvent.PEER_JOINED: SessionState.ACTIVE,
            SessionEvent.CONNECT_SUCCEEDED: SessionState.ACTIVE,
            SessionEvent.CONNECT_FAILED: SessionState.IDLE,
            SessionEvent.EXIT_REQUESTED: SessionState.CLOSED,
            SessionEvent.TRANSPORT_FAILED: SessionState.CLOSED,
        },
        SessionState.ACTIVE: {
            SessionEvent.EXIT_REQUESTED: SessionState.CLOSED,
            SessionEvent.TRANSPORT_FAILED: SessionState.CLOSED,
        },
        SessionState.CLOSED: {},
    }

    ROLE_EVENTS: Dict[Role, FrozenSet[SessionEvent]] = {
        Role.HOST: frozenset(
            {
                SessionEvent.TICKET_ISSUED,
                SessionEvent.PEER_JOINED,
                SessionEvent.EXIT_REQUESTED,
                SessionEvent.TRANSPORT_FAILED,
            }
        ),
        Role.JOINER: frozenset(
            {
                SessionEvent.CONNECT_REQUESTED,
                SessionEvent.CONNECT_SUCCEEDED,
                SessionEvent.CONNECT_FAILED,
                SessionEvent.EXIT_REQUESTED,
                SessionEvent.TRANSPORT_FAILED,
            }
        ),
    }

    def __init__(self, role: Role, initial_state: SessionState = SessionState.IDLE):
        self.role = role
        self.current_state = initial_state
        self.previous_state: Optional[SessionState] = None
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = 100

        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None

        logger.debug(f"Session state machine ({role.value}) initialized in {initial_state.name}")

    def is_valid_transition(self, from_state: SessionState, event: SessionEvent) -> bool:
        """Check if an event is allowed for this role in the given state."""
        if event not in self.ROLE_EVENTS[self.role]:
            return False
        return event in self.TRANSITIONS.get(from_state, {})

    def transition(self, event: SessionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition
            error_msg: Reason recorded for failure events

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(
                f"Invalid transition for {self.role.value}: "
                f"{self.current_state.name} + {event.name}"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if event in (SessionEvent.CONNECT_FAILED, SessionEvent.TRANSPORT_FAILED):
            self.error_message = error_msg or "Unknown error"
        elif new_state == SessionState.ACTIVE:
            self.error_message = None

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.info(f"Session transition: {old_state.name} -> {new_state.name} (event: {event.name})")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        return True

    def require(self, event: SessionEvent, error_msg: Optional[str] = None) -> None:
        """
        Transition or raise.

        Raises:
            SessionError: If the event is not valid in the current state
        """
        if not self.transition(event, error_msg):
            raise SessionError(
                ErrorCode.E401_INVALID_TRANSITION,
                f"Cannot apply {event.name} in state {self.current_state.name}",
                {"state": self.current_state.name, "event": event.name, "role": self.role.value},
            )

    def get_state(self) -> SessionState:
        """Get current state."""
        return self.current_state

    def is_closed(self) -> bool:
        return self.current_state == SessionState.CLOSED

    def __repr__(self) -> str:
        return (
            f"SessionStateMachine(role={self.role.value}, state={self.current_state.name}, "
            f"transitions={len(self.transition_history)})"
        )
