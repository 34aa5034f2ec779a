"""
Pydantic schemas for the lead-acquisition pipeline.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth handshake
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INVALID = "invalid"


class OAuthConnection(BaseModel):
    """A tenant's authorised link to one ad platform."""

    owner_id: str
    platform: str
    access_token: str
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    granted_scopes: List[str] = Field(default_factory=list)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    version: int = 1
    error_message: Optional[str] = None
    connected_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    def is_expired(self, now: Optional[datetime] = None, skew_seconds: int = 120) -> bool:
        if self.token_expiry is None:
            return False
        now = now or utcnow()
        return self.token_expiry <= now + timedelta(seconds=skew_seconds)

    def public_view(self) -> Dict[str, Any]:
        """Connection info safe to return to the UI (no tokens)."""
        return {
            "platform": self.platform,
            "status": self.status.value,
            "granted_scopes": self.granted_scopes,
            "token_expiry": self.token_expiry.isoformat() if self.token_expiry else None,
            "connected_at": self.connected_at.isoformat(),
            "version": self.version,
            "error_message": self.error_message,
        }


class CsrfState(BaseModel):
    nonce: str
    owner_id: str
    platform: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    # Persisted handshake FSM state (see core.handshake.HandshakeState).
    handshake_state: str = "awaiting_callback"


# ═══════════════════════════════════════════════════════════════════════════════
# Vendor mirror
# ═══════════════════════════════════════════════════════════════════════════════


class AdAccount(BaseModel):
    external_id: str
    display_name: str = ""
    status: str = ""
    platform: str = ""


class LeadForm(BaseModel):
    external_id: str
    account_ref: str
    name: str = ""


class Page(BaseModel):
    """One page of a vendor listing endpoint."""

    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class RawLead(BaseModel):
    """
    A lead as the vendor returned it.

    ``field_data`` is the vendor's untyped ``[{name, values}]`` list; it is
    ``None`` when the payload carried no field list at all.
    """

    external_id: str
    platform: str
    form_ref: str
    account_ref: str
    created_time: Optional[str] = None
    field_data: Optional[Any] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Canonical lead
# ═══════════════════════════════════════════════════════════════════════════════


class CampaignRef(BaseModel):
    account_id: str
    form_id: str


class Lead(BaseModel):
    """Canonical lead; natural key is ``(source_platform, external_id)``."""

    external_id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    source_platform: str
    campaign_ref: CampaignRef
    created_at: Optional[datetime] = None
    raw_fields: Dict[str, Any] = Field(default_factory=dict)

    @property
    def natural_key(self) -> tuple:
        return (self.source_platform, self.external_id)


# ═══════════════════════════════════════════════════════════════════════════════
# Sync run
# ═══════════════════════════════════════════════════════════════════════════════


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"


class BranchError(BaseModel):
    account_ref: str
    form_ref: Optional[str] = None
    lead_ref: Optional[str] = None
    code: str
    message: str = ""


class BranchResult(BaseModel):
    """Outcome of one (account, form) branch; ``form_ref=None`` means form discovery failed."""

    account_ref: str
    form_ref: Optional[str] = None
    leads_ingested: int = 0
    leads_created: int = 0
    leads_skipped: int = 0
    errors: List[BranchError] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class SyncRun(BaseModel):
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    platform: str
    state: SyncState = SyncState.IDLE
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    accounts_processed: int = 0
    forms_processed: int = 0
    leads_ingested: int = 0
    leads_created: int = 0
    leads_skipped: int = 0
    per_branch_errors: List[BranchError] = Field(default_factory=list)
    advisories: List[str] = Field(default_factory=list)
    abort_reason: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.state in (
            SyncState.COMPLETED,
            SyncState.COMPLETED_WITH_ERRORS,
            SyncState.ABORTED,
        )
