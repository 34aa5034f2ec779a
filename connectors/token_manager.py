"""
Token manager — exchange authorization codes, refresh and invalidate tokens.

``TokenExchanger`` is the only writer of ``OAuthConnection`` records and
serialises writes per owner.  ``TokenSource`` is the read handle a sync
run hands to its branches: branches read the current token and, when the
vendor rejects it, ask for one refresh and retry once.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from connectors.base import BaseAdConnector
from database.store import LeadStore
from utils.errors import ConnectionInvalid, InvalidToken, LeadSyncError, TokenExchangeFailure
from utils.schemas import ConnectionStatus, OAuthConnection, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenExchanger:
    def __init__(
        self,
        connector: BaseAdConnector,
        store: LeadStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._connector = connector
        self._store = store
        self._clock = clock
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def platform(self) -> str:
        return self._connector.provider_name

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        return self._locks[(owner_id, self.platform)]

    def _build(
        self,
        owner_id: str,
        token_data: Dict[str, Any],
        previous: Optional[OAuthConnection] = None,
    ) -> OAuthConnection:
        expires_in = token_data.get("expires_in")
        expiry = self._clock() + timedelta(seconds=int(expires_in)) if expires_in else None
        return OAuthConnection(
            owner_id=owner_id,
            platform=self.platform,
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token")
            or (previous.refresh_token if previous else None),
            token_expiry=expiry,
            granted_scopes=list(token_data.get("scopes") or (previous.granted_scopes if previous else [])),
            status=ConnectionStatus.ACTIVE,
            version=previous.version + 1 if previous else 1,
            connected_at=previous.connected_at if previous else self._clock(),
        )

    async def exchange(self, owner_id: str, code: str, redirect_uri: str) -> OAuthConnection:
        """
        Trade ``code`` for a token and persist the resulting connection.

        The vendor's error payload is kept on ``TokenExchangeFailure.details``
        for diagnostics; it is never part of the user-facing message.
        """
        try:
            token_data = await self._connector.exchange_code(code, redirect_uri)
        except LeadSyncError as exc:
            logger.error(
                "Token exchange failed for owner=%s platform=%s: %s %s",
                owner_id,
                self.platform,
                exc.code,
                exc.details,
            )
            raise TokenExchangeFailure(exc.message, details=exc.details) from exc

        async with self._lock_for(owner_id):
            previous = await self._store.get_connection(owner_id, self.platform)
            connection = self._build(owner_id, token_data)
            if previous is not None:
                connection.version = previous.version + 1
            await self._store.save_connection(connection)

        logger.info("OAuth connected: owner=%s platform=%s", owner_id, self.platform)
        return connection

    async def refresh(self, connection: OAuthConnection) -> OAuthConnection:
        """
        Refresh ``connection``; on failure persist it as invalid and raise
        ``ConnectionInvalid`` (the owner must re-authorize from scratch).
        A connection that is no longer stored is never refreshed.
        """
        owner_id = connection.owner_id
        async with self._lock_for(owner_id):
            current = await self._store.get_connection(owner_id, self.platform)
            if current is None:
                # Disconnected while a run held the old copy; never resurrect it.
                logger.info(
                    "Refresh skipped for owner=%s platform=%s: connection was removed",
                    owner_id,
                    self.platform,
                )
                raise ConnectionInvalid("Connection was removed")
            if current.version > connection.version:
                if not current.is_active:
                    raise ConnectionInvalid(current.error_message or "Connection invalidated")
                # Someone else already refreshed; pick up their version.
                return current

            try:
                token_data = await self._connector.refresh_access_token(connection)
            except LeadSyncError as exc:
                invalid = connection.model_copy(
                    update={
                        "status": ConnectionStatus.INVALID,
                        "error_message": f"Refresh failed: {exc.code}",
                        "version": connection.version + 1,
                    }
                )
                await self._store.save_connection(invalid)
                logger.warning(
                    "Token refresh failed for owner=%s platform=%s: %s — connection invalidated",
                    owner_id,
                    self.platform,
                    exc.code,
                )
                raise ConnectionInvalid("Token refresh failed", details=exc.details) from exc

            refreshed = self._build(owner_id, token_data, previous=connection)
            await self._store.save_connection(refreshed)

        logger.info(
            "Refreshed %s token for owner %s (version %d)",
            self.platform,
            owner_id,
            refreshed.version,
        )
        return refreshed


class TokenSource:
    """
    Per-run token handle shared (read-only) by concurrent branches.

    A refresh produces a new connection version which every later call
    picks up; branches never mutate the connection themselves.
    """

    def __init__(self, connection: OAuthConnection, exchanger: Optional[TokenExchanger] = None):
        self._connection = connection
        self._exchanger = exchanger
        self._lock = asyncio.Lock()
        self._invalid_reason: Optional[str] = None

    @property
    def token(self) -> str:
        return self._connection.access_token

    @property
    def connection(self) -> OAuthConnection:
        return self._connection

    async def call(self, fn: Callable[[str], Awaitable[T]]) -> T:
        """Run ``fn(token)``; on ``InvalidToken`` refresh once and retry once."""
        if self._invalid_reason is not None:
            raise ConnectionInvalid(self._invalid_reason)

        token = self.token
        try:
            return await fn(token)
        except ConnectionInvalid:
            raise
        except InvalidToken:
            if self._exchanger is None:
                raise
            logger.info("Token rejected for owner %s — refreshing", self._connection.owner_id)
            await self._refresh(token)

        return await fn(self.token)

    async def _refresh(self, stale_token: str) -> None:
        async with self._lock:
            if self._invalid_reason is not None:
                raise ConnectionInvalid(self._invalid_reason)
            if self._connection.access_token != stale_token:
                return
            try:
                self._connection = await self._exchanger.refresh(self._connection)
            except ConnectionInvalid as exc:
                self._invalid_reason = exc.message
                raise
