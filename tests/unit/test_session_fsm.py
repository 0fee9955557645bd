"""
Unit tests for ghostterm.session_fsm module.

Created by orpheus497
"""

from unittest.mock import Mock

import pytest

from ghostterm.errors import ErrorCode, SessionError
from ghostterm.session_fsm import Role, SessionEvent, SessionState, SessionStateMachine


class TestHostTransitions:
    def test_host_lifecycle(self):
        fsm = SessionStateMachine(Role.HOST)
        assert fsm.get_state() == SessionState.IDLE
        assert fsm.transition(SessionEvent.TICKET_ISSUED)
        assert fsm.get_state() == SessionState.HANDSHAKING
        assert fsm.transition(SessionEvent.PEER_JOINED)
        assert fsm.get_state() == SessionState.ACTIVE
        assert fsm.transition(SessionEvent.EXIT_REQUESTED)
        assert fsm.is_closed()

    def test_host_cannot_connect(self):
        fsm = SessionStateMachine(Role.HOST)
        assert not fsm.transition(SessionEvent.CONNECT_REQUESTED)
        assert fsm.get_state() == SessionState.IDLE

    def test_peer_joined_requires_ticket(self):
        fsm = SessionStateMachine(Role.HOST)
        assert not fsm.transition(SessionEvent.PEER_JOINED)


class TestJoinerTransitions:
    def test_joiner_lifecycle(self):
        fsm = SessionStateMachine(Role.JOINER)
        assert fsm.transition(SessionEvent.CONNECT_REQUESTED)
        assert fsm.transition(SessionEvent.CONNECT_SUCCEEDED)
        assert fsm.get_state() == SessionState.ACTIVE
        assert fsm.error_message is None

    def test_connect_failed_returns_to_idle(self):
        fsm = SessionStateMachine(Role.JOINER)
        fsm.transition(SessionEvent.CONNECT_REQUESTED)
        assert fsm.transition(SessionEvent.CONNECT_FAILED, "timed out")
        assert fsm.get_state() == SessionState.IDLE
        assert fsm.error_message == "timed out"

    def test_retry_after_failure(self):
        fsm = SessionStateMachine(Role.JOINER)
        fsm.transition(SessionEvent.CONNECT_REQUESTED)
        fsm.transition(SessionEvent.CONNECT_FAILED)
        assert fsm.error_message == "Unknown error"
        assert fsm.transition(SessionEvent.CONNECT_REQUESTED)
        assert fsm.transition(SessionEvent.CONNECT_SUCCEEDED)
        assert fsm.error_message is None

    def test_joiner_cannot_issue_ticket(self):
        fsm = SessionStateMachine(Role.JOINER)
        assert not fsm.transition(SessionEvent.TICKET_ISSUED)

    def test_active_ignores_connect_failed(self):
        fsm = SessionStateMachine(Role.JOINER)
        fsm.transition(SessionEvent.CONNECT_REQUESTED)
        fsm.transition(SessionEvent.CONNECT_SUCCEEDED)
        assert not fsm.transition(SessionEvent.CONNECT_FAILED)
        assert fsm.get_state() == SessionState.ACTIVE


class TestClosedState:
    @pytest.mark.parametrize("role", [Role.HOST, Role.JOINER])
    @pytest.mark.parametrize("state", [SessionState.IDLE, SessionState.HANDSHAKING, SessionState.ACTIVE])
    def test_every_state_can_close(self, role, state):
        fsm = SessionStateMachine(role, initial_state=state)
        assert fsm.transition(SessionEvent.TRANSPORT_FAILED, "gone")
        assert fsm.is_closed()
        assert fsm.error_message == "gone"

    @pytest.mark.parametrize("event", list(SessionEvent))
    def test_closed_is_terminal(self, event):
        fsm = SessionStateMachine(Role.JOINER, initial_state=SessionState.CLOSED)
        assert not fsm.transition(event)
        assert fsm.is_closed()


class TestRequire:
    def test_require_raises_session_error(self):
        fsm = SessionStateMachine(Role.HOST)
        with pytest.raises(SessionError) as exc:
            fsm.require(SessionEvent.PEER_JOINED)
        assert exc.value.code == ErrorCode.E401_INVALID_TRANSITION
        assert exc.value.details["state"] == "IDLE"

    def test_require_passes_reason(self):
        fsm = SessionStateMachine(Role.HOST, initial_state=SessionState.ACTIVE)
        fsm.require(SessionEvent.TRANSPORT_FAILED, "socket reset")
        assert fsm.error_message == "socket reset"


class TestCallbacksAndHistory:
    def test_callback_invoked(self):
        fsm = SessionStateMachine(Role.HOST)
        callback = Mock()
        fsm.on_state_change = callback
        fsm.transition(SessionEvent.TICKET_ISSUED)
        callback.assert_called_once_with(SessionState.IDLE, SessionState.HANDSHAKING)

    def test_callback_error_does_not_block_transition(self):
        fsm = SessionStateMachine(Role.HOST)
        fsm.on_state_change = Mock(side_effect=RuntimeError("boom"))
        assert fsm.transition(SessionEvent.TICKET_ISSUED)
        assert fsm.get_state() == SessionState.HANDSHAKING

    def test_history_recorded(self):
        fsm = SessionStateMachine(Role.JOINER)
        fsm.transition(SessionEvent.CONNECT_REQUESTED)
        fsm.transition(SessionEvent.CONNECT_SUCCEEDED)
        history = fsm.transition_history
        assert [t.event for t in history] == [
            SessionEvent.CONNECT_REQUESTED,
            SessionEvent.CONNECT_SUCCEEDED,
        ]
        assert fsm.previous_state == SessionState.HANDSHAKING

    def test_repr(self):
        assert "joiner" in repr(SessionStateMachine(Role.JOINER))
