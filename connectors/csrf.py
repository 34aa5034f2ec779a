"""
CsrfStateGuard — single-use anti-forgery state for the OAuth redirect.

The nonce is random (``secrets.token_urlsafe``) and stored server-side,
bound to the owner who started the handshake.  Validation consumes it
atomically through the store, so a replayed callback always fails.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from config.settings import config
from database.store import LeadStore
from utils.errors import StateExpired, StateMismatch
from utils.schemas import CsrfState, utcnow

logger = logging.getLogger(__name__)


class CsrfStateGuard:
    def __init__(
        self,
        store: LeadStore,
        *,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds or config.oauth_state_ttl_seconds)
        self._clock = clock

    async def issue(
        self,
        owner_id: str,
        platform: str,
        handshake_state: str = "awaiting_callback",
    ) -> str:
        """
        Create and store a fresh nonce for ``owner_id``; return it.

        Expired states are pruned first, so the table stays bounded by the
        number of handshakes started within one TTL.
        """
        now = self._clock()
        await self._store.prune_csrf_states(now)
        nonce = secrets.token_urlsafe(32)
        await self._store.put_csrf_state(
            CsrfState(
                nonce=nonce,
                owner_id=owner_id,
                platform=platform,
                issued_at=now,
                expires_at=now + self._ttl,
                handshake_state=handshake_state,
            )
        )
        return nonce

    async def validate(self, nonce: str, owner_id: str) -> CsrfState:
        """
        Consume ``nonce`` and check it belongs to ``owner_id``.

        Raises
        ------
        StateMismatch – nonce never issued, or issued to someone else
        StateExpired  – nonce already used, or past its expiry
        """
        if not nonce:
            raise StateMismatch("Missing OAuth state")

        record = await self._store.take_csrf_state(nonce)
        if record is None:
            logger.warning("OAuth state not recognised (owner=%s)", owner_id)
            raise StateMismatch("Unknown OAuth state")
        if record.owner_id != owner_id:
            logger.warning(
                "OAuth state owner mismatch (issued to %s, presented by %s)",
                record.owner_id,
                owner_id,
            )
            raise StateMismatch("OAuth state was issued to a different user")
        if record.consumed_at is not None:
            raise StateExpired("OAuth state already used")
        if record.expires_at <= self._clock():
            raise StateExpired("OAuth state expired")
        return record
