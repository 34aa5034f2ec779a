"""
PostgreSQL implementation of ``LeadStore``.

Leads are upserted with ``INSERT … ON CONFLICT (owner_id, source_platform,
external_id) DO UPDATE`` so re-ingesting the same vendor lead never creates
a duplicate row.  OAuth tokens are Fernet-encrypted at rest.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, literal_column, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import decrypt_token, encrypt_token
from database.models import AdAccountRecord, LeadRecord, OAuthState, SyncRunRecord, UserConnection
from database.store import LeadStore
from utils.schemas import (
    AdAccount,
    BranchError,
    CampaignRef,
    ConnectionStatus,
    CsrfState,
    Lead,
    OAuthConnection,
    SyncRun,
    SyncState,
)

logger = logging.getLogger(__name__)


def _to_connection(row: UserConnection) -> OAuthConnection:
    return OAuthConnection(
        owner_id=row.owner_id,
        platform=row.platform,
        access_token=decrypt_token(row.access_token),
        refresh_token=decrypt_token(row.refresh_token),
        token_expiry=row.expires_at,
        granted_scopes=list(row.scopes or []),
        status=ConnectionStatus(row.status),
        version=row.version,
        error_message=row.error_message,
        connected_at=row.connected_at,
    )


def _to_state(row: OAuthState) -> CsrfState:
    return CsrfState(
        nonce=row.nonce,
        owner_id=row.owner_id,
        platform=row.platform,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
        handshake_state=row.handshake_state,
    )


def _to_lead(row: LeadRecord) -> Lead:
    return Lead(
        external_id=row.external_id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        source_platform=row.source_platform,
        campaign_ref=CampaignRef(account_id=row.account_id, form_id=row.form_id),
        created_at=row.created_at,
        raw_fields=row.raw_fields or {},
    )


def _to_run(row: SyncRunRecord) -> SyncRun:
    return SyncRun(
        run_id=str(row.run_id),
        owner_id=row.owner_id,
        platform=row.platform,
        state=SyncState(row.state),
        started_at=row.started_at,
        finished_at=row.finished_at,
        accounts_processed=row.accounts_processed or 0,
        forms_processed=row.forms_processed or 0,
        leads_ingested=row.leads_ingested or 0,
        leads_created=row.leads_created or 0,
        leads_skipped=row.leads_skipped or 0,
        per_branch_errors=[BranchError(**e) for e in (row.per_branch_errors or [])],
        advisories=list(row.advisories or []),
        abort_reason=row.abort_reason,
    )


class SqlLeadStore(LeadStore):
    """Each operation runs in its own short transaction (partial progress is never rolled back)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── OAuth connections ───────────────────────────────────────────────

    async def save_connection(self, connection: OAuthConnection) -> None:
        values = {
            "owner_id": connection.owner_id,
            "platform": connection.platform,
            "access_token": encrypt_token(connection.access_token),
            "refresh_token": encrypt_token(connection.refresh_token),
            "expires_at": connection.token_expiry,
            "scopes": connection.granted_scopes,
            "status": connection.status.value,
            "version": connection.version,
            "error_message": connection.error_message,
            "connected_at": connection.connected_at,
            "last_refreshed": datetime.now(timezone.utc) if connection.version > 1 else None,
        }
        stmt = pg_insert(UserConnection).values(connection_id=uuid.uuid4(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["owner_id", "platform"],
            set_=values,
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_connection(self, owner_id: str, platform: str) -> Optional[OAuthConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserConnection).where(
                    UserConnection.owner_id == owner_id,
                    UserConnection.platform == platform,
                )
            )
            row = result.scalar_one_or_none()
            return _to_connection(row) if row else None

    async def delete_connection(self, owner_id: str, platform: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(UserConnection).where(
                    UserConnection.owner_id == owner_id,
                    UserConnection.platform == platform,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── CSRF states ─────────────────────────────────────────────────────

    async def put_csrf_state(self, state: CsrfState) -> None:
        async with self._session_factory() as session:
            session.add(
                OAuthState(
                    nonce=state.nonce,
                    owner_id=state.owner_id,
                    platform=state.platform,
                    issued_at=state.issued_at,
                    expires_at=state.expires_at,
                    handshake_state=state.handshake_state,
                )
            )
            await session.commit()

    async def take_csrf_state(self, nonce: str) -> Optional[CsrfState]:
        async with self._session_factory() as session:
            # The conditional UPDATE is the atomic consume: only one caller gets a row back.
            result = await session.execute(
                update(OAuthState)
                .where(OAuthState.nonce == nonce, OAuthState.consumed_at.is_(None))
                .values(consumed_at=datetime.now(timezone.utc))
                .returning(OAuthState)
            )
            row = result.scalar_one_or_none()
            if row is not None:
                await session.commit()
                state = _to_state(row)
                state.consumed_at = None
                return state

            result = await session.execute(select(OAuthState).where(OAuthState.nonce == nonce))
            row = result.scalar_one_or_none()
            return _to_state(row) if row else None

    async def save_handshake_state(self, nonce: str, handshake_state: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(OAuthState)
                .where(OAuthState.nonce == nonce)
                .values(handshake_state=handshake_state)
            )
            await session.commit()

    async def prune_csrf_states(self, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(OAuthState).where(OAuthState.expires_at < now))
            await session.commit()
            if result.rowcount:
                logger.debug("Pruned %d expired OAuth state(s)", result.rowcount)
            return result.rowcount or 0

    # ── Ad accounts ─────────────────────────────────────────────────────

    async def save_ad_account(self, owner_id: str, account: AdAccount) -> None:
        values = {
            "display_name": account.display_name,
            "status": account.status,
        }
        stmt = pg_insert(AdAccountRecord).values(
            id=uuid.uuid4(),
            owner_id=owner_id,
            platform=account.platform,
            external_id=account.external_id,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["owner_id", "platform", "external_id"],
            set_=values,
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_ad_account(
        self, owner_id: str, platform: str, external_id: str
    ) -> Optional[AdAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdAccountRecord).where(
                    AdAccountRecord.owner_id == owner_id,
                    AdAccountRecord.platform == platform,
                    AdAccountRecord.external_id == external_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return AdAccount(
                external_id=row.external_id,
                display_name=row.display_name or "",
                status=row.status or "",
                platform=row.platform,
            )

    # ── Leads ───────────────────────────────────────────────────────────

    async def upsert_lead(self, owner_id: str, lead: Lead) -> bool:
        now = datetime.now(timezone.utc)
        values = {
            "name": lead.name,
            "email": lead.email,
            "phone": lead.phone,
            "account_id": lead.campaign_ref.account_id,
            "form_id": lead.campaign_ref.form_id,
            "created_at": lead.created_at,
            "raw_fields": lead.raw_fields,
            "updated_at": now,
        }
        stmt = pg_insert(LeadRecord).values(
            id=uuid.uuid4(),
            owner_id=owner_id,
            source_platform=lead.source_platform,
            external_id=lead.external_id,
            first_seen_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_lead_natural_key",
            set_=values,
        ).returning(literal_column("(xmax = 0)").label("inserted"))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            inserted = bool(result.scalar_one())
            await session.commit()
        return inserted

    async def get_lead(self, owner_id: str, platform: str, external_id: str) -> Optional[Lead]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LeadRecord).where(
                    LeadRecord.owner_id == owner_id,
                    LeadRecord.source_platform == platform,
                    LeadRecord.external_id == external_id,
                )
            )
            row = result.scalar_one_or_none()
            return _to_lead(row) if row else None

    async def list_leads(self, owner_id: str, platform: Optional[str] = None) -> List[Lead]:
        stmt = select(LeadRecord).where(LeadRecord.owner_id == owner_id)
        if platform is not None:
            stmt = stmt.where(LeadRecord.source_platform == platform)
        stmt = stmt.order_by(LeadRecord.created_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_lead(row) for row in result.scalars().all()]

    # ── Sync runs ───────────────────────────────────────────────────────

    async def save_sync_run(self, run: SyncRun) -> None:
        values = {
            "owner_id": run.owner_id,
            "platform": run.platform,
            "state": run.state.value,
            "started_at": run.started_at,
            "finished_at": run.finished_at,
            "accounts_processed": run.accounts_processed,
            "forms_processed": run.forms_processed,
            "leads_ingested": run.leads_ingested,
            "leads_created": run.leads_created,
            "leads_skipped": run.leads_skipped,
            "per_branch_errors": [e.model_dump() for e in run.per_branch_errors],
            "advisories": run.advisories,
            "abort_reason": run.abort_reason,
        }
        stmt = pg_insert(SyncRunRecord).values(run_id=uuid.UUID(run.run_id), **values)
        stmt = stmt.on_conflict_do_update(index_elements=["run_id"], set_=values)
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug("Saved sync run %s (%s)", run.run_id, run.state.value)

    async def list_sync_runs(self, owner_id: str, limit: int = 20) -> List[SyncRun]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncRunRecord)
                .where(SyncRunRecord.owner_id == owner_id)
                .order_by(SyncRunRecord.started_at.desc())
                .limit(limit)
            )
            return [_to_run(row) for row in result.scalars().all()]
