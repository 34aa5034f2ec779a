"""
Authorization handshake as an explicit finite state machine.

    idle → awaiting_callback → exchanging → connected
                 │                  │
                 └──────► failed ◄──┘

Every transition is checked against ``_TRANSITIONS``; an illegal move
raises ``InvalidTransition`` instead of silently continuing.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from utils.errors import InvalidTransition, LeadSyncError

logger = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    CONNECTED = "connected"
    FAILED = "failed"


_TRANSITIONS: Dict[HandshakeState, Set[HandshakeState]] = {
    HandshakeState.IDLE: {HandshakeState.AWAITING_CALLBACK},
    HandshakeState.AWAITING_CALLBACK: {HandshakeState.EXCHANGING, HandshakeState.FAILED},
    HandshakeState.EXCHANGING: {HandshakeState.CONNECTED, HandshakeState.FAILED},
    HandshakeState.CONNECTED: set(),
    HandshakeState.FAILED: set(),
}


class AuthorizationHandshake:
    """Tracks one owner's handshake for one platform."""

    def __init__(
        self,
        owner_id: str,
        platform: str,
        state: HandshakeState = HandshakeState.IDLE,
    ):
        self.owner_id = owner_id
        self.platform = platform
        self.state = state
        self.error_code: Optional[str] = None
        self.history: List[Tuple[HandshakeState, HandshakeState]] = []

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, new_state: HandshakeState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Handshake cannot go from {self.state.value} to {new_state.value}"
            )
        self.history.append((self.state, new_state))
        logger.debug(
            "Handshake %s/%s: %s → %s",
            self.owner_id,
            self.platform,
            self.state.value,
            new_state.value,
        )
        self.state = new_state

    def fail(self, error: LeadSyncError) -> None:
        self.error_code = error.code
        self.advance(HandshakeState.FAILED)
        logger.warning(
            "Handshake failed for owner=%s platform=%s: %s",
            self.owner_id,
            self.platform,
            error.code,
        )
