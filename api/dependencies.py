"""
FastAPI dependencies (shared across routes).

The owner (tenant) is identified by a signed session token presented as a
Bearer header or a ``session_token`` cookie.  Tokens are a base64 JSON
payload ``{"user_id", "exp"}`` plus an HMAC-SHA256 signature keyed by
``config.session_secret``; issuing them is the login service's job.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode
from typing import Dict, Optional

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config.settings import config
from connectors.registry import ConnectorRegistry
from core.service import LeadAcquisitionService
from database.store import LeadStore

_bearer_scheme = HTTPBearer(auto_error=False)

_store: Optional[LeadStore] = None
_services: Dict[str, LeadAcquisitionService] = {}


def verify_session_token(token: str) -> str:
    """Verify token and return the owner id. Raises HTTPException on failure."""
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        expected_sig = hmac.new(config.session_secret.encode(), raw, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(parts[1], expected_sig):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return str(payload["user_id"])
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )


async def get_current_owner_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    session_token: Optional[str] = Cookie(default=None),
) -> str:
    """
    Resolve the authenticated owner id from the Bearer header or, for
    top-level browser navigations, the ``session_token`` cookie.
    """
    token = credentials.credentials if credentials else session_token
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session token",
        )
    return verify_session_token(token)


async def get_optional_owner_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    session_token: Optional[str] = Cookie(default=None),
) -> Optional[str]:
    """Like ``get_current_owner_id`` but ``None`` when the session is missing or invalid."""
    token = credentials.credentials if credentials else session_token
    if not token:
        return None
    try:
        return verify_session_token(token)
    except HTTPException:
        return None


def get_store() -> LeadStore:
    """Process-wide PostgreSQL store, created on first use."""
    global _store
    if _store is None:
        from database.session import async_session_factory
        from database.sql_store import SqlLeadStore

        _store = SqlLeadStore(async_session_factory)
    return _store


def get_lead_service(
    platform: str,
    store: LeadStore = Depends(get_store),
) -> LeadAcquisitionService:
    """
    One service per platform, kept for the life of the process so the
    in-flight sync registry is shared between requests.
    """
    connector = ConnectorRegistry().get(platform)
    if connector is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Platform '{platform}' not found or not configured",
        )
    service = _services.get(platform)
    if service is None or service.store is not store or service.connector is not connector:
        service = LeadAcquisitionService(connector, store)
        _services[platform] = service
    return service


def reset_services() -> None:
    """Forget cached services and store (test teardown)."""
    global _store
    _store = None
    _services.clear()
