"""
Storage contract for the lead-acquisition pipeline.

The pipeline only ever talks to a ``LeadStore``.  Every key is scoped by
``owner_id`` so one tenant can never read or overwrite another tenant's
connection, accounts or leads.

``InMemoryStore`` is the reference implementation (tests, local runs);
``database.sql_store.SqlLeadStore`` is the PostgreSQL one.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from utils.schemas import AdAccount, CsrfState, Lead, OAuthConnection, SyncRun, utcnow


class LeadStore(ABC):
    """Store / retrieve connections, CSRF states, ad accounts, leads and runs by key."""

    # ── OAuth connections ───────────────────────────────────────────────

    @abstractmethod
    async def save_connection(self, connection: OAuthConnection) -> None:
        ...

    @abstractmethod
    async def get_connection(self, owner_id: str, platform: str) -> Optional[OAuthConnection]:
        ...

    @abstractmethod
    async def delete_connection(self, owner_id: str, platform: str) -> bool:
        ...

    # ── CSRF states ─────────────────────────────────────────────────────

    @abstractmethod
    async def put_csrf_state(self, state: CsrfState) -> None:
        ...

    @abstractmethod
    async def take_csrf_state(self, nonce: str) -> Optional[CsrfState]:
        """
        Atomically mark ``nonce`` consumed.

        Returns the record as it was *before* this call (so a first take
        sees ``consumed_at is None`` and any later take sees it set), or
        ``None`` if the nonce was never issued.
        """
        ...

    @abstractmethod
    async def save_handshake_state(self, nonce: str, handshake_state: str) -> None:
        ...

    @abstractmethod
    async def prune_csrf_states(self, now: datetime) -> int:
        """Delete states that expired before ``now``; return how many were removed."""
        ...

    # ── Ad accounts ─────────────────────────────────────────────────────

    @abstractmethod
    async def save_ad_account(self, owner_id: str, account: AdAccount) -> None:
        ...

    @abstractmethod
    async def get_ad_account(
        self, owner_id: str, platform: str, external_id: str
    ) -> Optional[AdAccount]:
        ...

    # ── Leads ───────────────────────────────────────────────────────────

    @abstractmethod
    async def upsert_lead(self, owner_id: str, lead: Lead) -> bool:
        """Insert or update by ``(owner_id, source_platform, external_id)``.  Returns True if created."""
        ...

    @abstractmethod
    async def get_lead(self, owner_id: str, platform: str, external_id: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def list_leads(self, owner_id: str, platform: Optional[str] = None) -> List[Lead]:
        ...

    # ── Sync runs ───────────────────────────────────────────────────────

    @abstractmethod
    async def save_sync_run(self, run: SyncRun) -> None:
        ...

    @abstractmethod
    async def list_sync_runs(self, owner_id: str, limit: int = 20) -> List[SyncRun]:
        ...


class InMemoryStore(LeadStore):
    """Process-local store guarded by a single asyncio lock."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._connections: Dict[Tuple[str, str], OAuthConnection] = {}
        self._states: Dict[str, CsrfState] = {}
        self._accounts: Dict[Tuple[str, str, str], AdAccount] = {}
        self._leads: Dict[Tuple[str, str, str], Lead] = {}
        self._runs: Dict[str, SyncRun] = {}

    async def save_connection(self, connection: OAuthConnection) -> None:
        async with self._lock:
            key = (connection.owner_id, connection.platform)
            self._connections[key] = connection.model_copy(deep=True)

    async def get_connection(self, owner_id: str, platform: str) -> Optional[OAuthConnection]:
        conn = self._connections.get((owner_id, platform))
        return conn.model_copy(deep=True) if conn else None

    async def delete_connection(self, owner_id: str, platform: str) -> bool:
        async with self._lock:
            return self._connections.pop((owner_id, platform), None) is not None

    async def put_csrf_state(self, state: CsrfState) -> None:
        async with self._lock:
            self._states[state.nonce] = state.model_copy()

    async def take_csrf_state(self, nonce: str) -> Optional[CsrfState]:
        async with self._lock:
            record = self._states.get(nonce)
            if record is None:
                return None
            before = record.model_copy()
            if record.consumed_at is None:
                record.consumed_at = utcnow()
            return before

    async def save_handshake_state(self, nonce: str, handshake_state: str) -> None:
        async with self._lock:
            record = self._states.get(nonce)
            if record is not None:
                record.handshake_state = handshake_state

    async def prune_csrf_states(self, now: datetime) -> int:
        async with self._lock:
            expired = [nonce for nonce, s in self._states.items() if s.expires_at < now]
            for nonce in expired:
                del self._states[nonce]
            return len(expired)

    async def save_ad_account(self, owner_id: str, account: AdAccount) -> None:
        async with self._lock:
            self._accounts[(owner_id, account.platform, account.external_id)] = account.model_copy()

    async def get_ad_account(
        self, owner_id: str, platform: str, external_id: str
    ) -> Optional[AdAccount]:
        account = self._accounts.get((owner_id, platform, external_id))
        return account.model_copy() if account else None

    async def upsert_lead(self, owner_id: str, lead: Lead) -> bool:
        key = (owner_id, lead.source_platform, lead.external_id)
        async with self._lock:
            created = key not in self._leads
            self._leads[key] = lead.model_copy(deep=True)
            return created

    async def get_lead(self, owner_id: str, platform: str, external_id: str) -> Optional[Lead]:
        lead = self._leads.get((owner_id, platform, external_id))
        return lead.model_copy(deep=True) if lead else None

    async def list_leads(self, owner_id: str, platform: Optional[str] = None) -> List[Lead]:
        return [
            lead.model_copy(deep=True)
            for (oid, plat, _), lead in self._leads.items()
            if oid == owner_id and (platform is None or plat == platform)
        ]

    async def save_sync_run(self, run: SyncRun) -> None:
        async with self._lock:
            self._runs[run.run_id] = run.model_copy(deep=True)

    async def list_sync_runs(self, owner_id: str, limit: int = 20) -> List[SyncRun]:
        runs = [r for r in self._runs.values() if r.owner_id == owner_id]
        runs.sort(key=lambda r: r.started_at or utcnow(), reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]
