"""
SQLAlchemy ORM models for connections, CSRF states, ad accounts, leads and sync runs.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class UserConnection(Base):
    __tablename__ = "oauth_connections"
    __table_args__ = (UniqueConstraint("owner_id", "platform", name="uq_connection_owner_platform"),)

    connection_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(64), nullable=False)
    platform = Column(String(32), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_type = Column(String(32), default="Bearer")
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(ARRAY(Text), default=list)
    status = Column(String(16), nullable=False, default="active")
    version = Column(Integer, nullable=False, default=1)
    connected_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    last_refreshed = Column(DateTime(timezone=True))
    error_message = Column(Text)


class OAuthState(Base):
    __tablename__ = "oauth_states"

    nonce = Column(String(128), primary_key=True)
    owner_id = Column(String(64), nullable=False)
    platform = Column(String(32), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    handshake_state = Column(String(32), nullable=False, default="awaiting_callback")


class AdAccountRecord(Base):
    __tablename__ = "ad_accounts"
    __table_args__ = (
        UniqueConstraint("owner_id", "platform", "external_id", name="uq_ad_account_owner_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(64), nullable=False)
    platform = Column(String(32), nullable=False)
    external_id = Column(String(128), nullable=False)
    display_name = Column(String(255), default="")
    status = Column(String(32), default="")
    connected_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class LeadRecord(Base):
    __tablename__ = "leads"
    __table_args__ = (
        UniqueConstraint("owner_id", "source_platform", "external_id", name="uq_lead_natural_key"),
        Index("ix_leads_owner_created", "owner_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(64), nullable=False)
    source_platform = Column(String(32), nullable=False)
    external_id = Column(String(128), nullable=False)
    name = Column(Text, nullable=False, default="")
    email = Column(Text, nullable=False, default="")
    phone = Column(Text, nullable=False, default="")
    account_id = Column(String(128), nullable=False)
    form_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=True)
    raw_fields = Column(JSONB, default=dict)
    first_seen_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class SyncRunRecord(Base):
    __tablename__ = "sync_runs"

    run_id = Column(UUID(as_uuid=True), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(32), nullable=False)
    state = Column(String(32), nullable=False)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    accounts_processed = Column(Integer, default=0)
    forms_processed = Column(Integer, default=0)
    leads_ingested = Column(Integer, default=0)
    leads_created = Column(Integer, default=0)
    leads_skipped = Column(Integer, default=0)
    per_branch_errors = Column(JSONB, default=list)
    advisories = Column(ARRAY(Text), default=list)
    abort_reason = Column(Text)
