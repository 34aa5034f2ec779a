"""
Tests for the authorization handshake state machine.
"""

import pytest

from core.handshake import AuthorizationHandshake, HandshakeState
from utils.errors import InvalidTransition, StateMismatch


class TestHandshakeTransitions:
    def test_happy_path(self):
        hs = AuthorizationHandshake("owner-1", "meta")

        hs.advance(HandshakeState.AWAITING_CALLBACK)
        hs.advance(HandshakeState.EXCHANGING)
        hs.advance(HandshakeState.CONNECTED)

        assert hs.is_terminal
        assert [to for _, to in hs.history] == [
            HandshakeState.AWAITING_CALLBACK,
            HandshakeState.EXCHANGING,
            HandshakeState.CONNECTED,
        ]

    def test_skipping_a_state_is_rejected(self):
        hs = AuthorizationHandshake("owner-1", "meta")

        with pytest.raises(InvalidTransition):
            hs.advance(HandshakeState.EXCHANGING)
        assert hs.state == HandshakeState.IDLE

    def test_terminal_states_are_final(self):
        hs = AuthorizationHandshake("owner-1", "meta", state=HandshakeState.AWAITING_CALLBACK)
        hs.fail(StateMismatch())

        assert hs.state == HandshakeState.FAILED
        assert hs.error_code == "state_mismatch"
        with pytest.raises(InvalidTransition):
            hs.advance(HandshakeState.EXCHANGING)

    def test_idle_cannot_fail_directly(self):
        hs = AuthorizationHandshake("owner-1", "meta")

        with pytest.raises(InvalidTransition):
            hs.fail(StateMismatch())
