"""
LeadAcquisitionService — the inbound operations for one ad platform.

Routes call this facade; it wires the CSRF guard, the handshake FSM, the
token exchanger and the sync orchestrator around a single ``LeadStore``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from connectors.base import BaseAdConnector
from connectors.csrf import CsrfStateGuard
from connectors.token_manager import TokenExchanger, TokenSource
from core.discovery import AccountDiscovery
from core.handshake import AuthorizationHandshake, HandshakeState
from core.orchestrator import SyncOrchestrator
from database.store import LeadStore
from utils.errors import (
    AdAccountNotFound,
    AuthorizationDenied,
    ConnectionNotFound,
    HandshakeError,
    LeadSyncError,
    SyncInProgress,
)
from utils.schemas import AdAccount, Lead, OAuthConnection, SyncRun, utcnow

logger = logging.getLogger(__name__)


class LeadAcquisitionService:
    def __init__(
        self,
        connector: BaseAdConnector,
        store: LeadStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        **orchestrator_options: Any,
    ):
        self.connector = connector
        self.store = store
        self.csrf = CsrfStateGuard(store, clock=clock)
        self.exchanger = TokenExchanger(connector, store, clock=clock)
        self.orchestrator = SyncOrchestrator(
            connector, store, self.exchanger, clock=clock, **orchestrator_options
        )
        self._inflight: Dict[str, asyncio.Event] = {}

    @property
    def platform(self) -> str:
        return self.connector.provider_name

    # ── OAuth handshake ─────────────────────────────────────────────────

    async def begin_authorization(self, owner_id: str) -> str:
        """Issue a fresh CSRF nonce and return the vendor authorization URL."""
        handshake = AuthorizationHandshake(owner_id, self.platform)
        handshake.advance(HandshakeState.AWAITING_CALLBACK)
        nonce = await self.csrf.issue(owner_id, self.platform, handshake_state=handshake.state.value)
        return self.connector.get_auth_url(nonce)

    async def complete_authorization(
        self,
        owner_id: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> OAuthConnection:
        """
        Handle the vendor callback.

        The state nonce is always consumed first, so a denied or failed
        callback cannot be replayed.  The handshake resumes from the state
        stored with the nonce and every transition is written back.
        Nothing but the handshake state is persisted unless the exchange
        succeeds.
        """
        record = await self.csrf.validate(state or "", owner_id)
        handshake = AuthorizationHandshake(
            owner_id, self.platform, state=HandshakeState(record.handshake_state)
        )
        try:
            if error:
                raise AuthorizationDenied(f"Vendor returned error={error}")
            if not code:
                raise HandshakeError("Callback carried no authorization code")

            await self._advance(handshake, record.nonce, HandshakeState.EXCHANGING)
            connection = await self.exchanger.exchange(
                owner_id, code, self.connector.redirect_uri()
            )
        except HandshakeError as exc:
            handshake.fail(exc)
            await self.store.save_handshake_state(record.nonce, handshake.state.value)
            raise

        await self._advance(handshake, record.nonce, HandshakeState.CONNECTED)
        return connection

    async def _advance(
        self, handshake: AuthorizationHandshake, nonce: str, new_state: HandshakeState
    ) -> None:
        handshake.advance(new_state)
        await self.store.save_handshake_state(nonce, new_state.value)

    # ── Connection management ───────────────────────────────────────────

    async def get_connection(self, owner_id: str) -> OAuthConnection:
        connection = await self.store.get_connection(owner_id, self.platform)
        if connection is None:
            raise ConnectionNotFound(f"No {self.platform} connection for this account")
        return connection

    async def disconnect(self, owner_id: str) -> bool:
        """Revoke at the vendor (best effort) and delete the stored connection."""
        connection = await self.store.get_connection(owner_id, self.platform)
        if connection is None:
            return False
        try:
            await self.connector.revoke_token(connection.access_token)
        except LeadSyncError as exc:
            logger.warning(
                "Revoke failed for owner=%s platform=%s: %s",
                owner_id,
                self.platform,
                exc.code,
            )
        deleted = await self.store.delete_connection(owner_id, self.platform)
        logger.info("OAuth disconnected: owner=%s platform=%s", owner_id, self.platform)
        return deleted

    async def connect_account(self, owner_id: str, token: str, account_id: str) -> AdAccount:
        """Associate ``account_id`` with the owner if ``token`` can see it."""
        wanted = self.connector.normalize_account_id(account_id.strip())
        supplied = OAuthConnection(owner_id=owner_id, platform=self.platform, access_token=token)
        accounts = await AccountDiscovery(self.connector).list_accounts(TokenSource(supplied))

        for account in accounts:
            if account.external_id == wanted:
                await self.store.save_ad_account(owner_id, account)
                logger.info("Ad account %s connected for owner %s", wanted, owner_id)
                return account
        raise AdAccountNotFound(f"Ad account {wanted} is not accessible with this connection")

    # ── Sync ────────────────────────────────────────────────────────────

    async def run_sync(self, owner_id: str, connection: OAuthConnection) -> SyncRun:
        if connection.owner_id != owner_id or connection.platform != self.platform:
            raise ConnectionNotFound("Connection does not belong to this account")
        if owner_id in self._inflight:
            raise SyncInProgress("A sync is already running for this account")

        cancel_event = asyncio.Event()
        self._inflight[owner_id] = cancel_event
        try:
            return await self.orchestrator.run(connection, cancel_event=cancel_event)
        finally:
            self._inflight.pop(owner_id, None)

    def cancel_sync(self, owner_id: str) -> bool:
        """Signal the owner's in-flight run to stop; False if none is running."""
        event = self._inflight.get(owner_id)
        if event is None:
            return False
        event.set()
        logger.info("Sync cancellation requested by owner %s", owner_id)
        return True

    def is_syncing(self, owner_id: str) -> bool:
        return owner_id in self._inflight

    async def list_leads(self, owner_id: str) -> List[Lead]:
        return await self.store.list_leads(owner_id, self.platform)

    async def list_sync_runs(self, owner_id: str, limit: int = 20) -> List[SyncRun]:
        return await self.store.list_sync_runs(owner_id, limit=limit)
