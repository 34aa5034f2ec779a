"""
Connector API routes — OAuth connect/callback, connection, ad account,
sync and lead listing.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from api.dependencies import get_current_owner_id, get_lead_service, get_optional_owner_id
from config.settings import config
from connectors.registry import ConnectorRegistry
from core.service import LeadAcquisitionService
from utils.errors import (
    AdAccountNotFound,
    ConnectionNotFound,
    InvalidToken,
    LeadSyncError,
    SessionRequired,
    SyncInProgress,
    UpstreamError,
    UpstreamRateLimited,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


class ConnectAccountRequest(BaseModel):
    account_id: str


# ── Error mapping ──────────────────────────────────────────────────────

_STATUS_BY_ERROR = [
    (ConnectionNotFound, status.HTTP_404_NOT_FOUND),
    (AdAccountNotFound, status.HTTP_404_NOT_FOUND),
    (SyncInProgress, status.HTTP_409_CONFLICT),
    (InvalidToken, status.HTTP_409_CONFLICT),
    (UpstreamRateLimited, status.HTTP_503_SERVICE_UNAVAILABLE),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY),
]


def _http_error(exc: LeadSyncError) -> HTTPException:
    """User-safe HTTP error; vendor payloads stay in the logs."""
    code = status.HTTP_400_BAD_REQUEST
    for cls, http_status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            code = http_status
            break
    return HTTPException(
        status_code=code,
        detail={"error_code": exc.code, "message": exc.user_message},
    )


def _redirect(params: Dict[str, str]) -> RedirectResponse:
    url = config.post_connect_redirect_url
    sep = "&" if "?" in url else "?"
    return RedirectResponse(url=f"{url}{sep}{urlencode(params)}", status_code=status.HTTP_302_FOUND)


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers() -> List[Dict[str, Any]]:
    """
    List all available ad platforms and their configuration status.
    No auth required — used by frontend to show available connectors.
    """
    return ConnectorRegistry().list_providers()


@router.get("/{platform}/auth-url")
async def get_auth_url(
    platform: str,
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> Dict[str, str]:
    """Authorization URL for the platform; the frontend redirects the user there."""
    auth_url = await service.begin_authorization(owner_id)
    return {"auth_url": auth_url, "platform": platform}


@router.get("/{platform}/callback")
async def oauth_callback(
    platform: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    owner_id: Optional[str] = Depends(get_optional_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> RedirectResponse:
    """
    Vendor redirects here after consent.  Always answers with a redirect to
    the frontend carrying ``status`` and, on failure, a stable error code.
    """
    try:
        if owner_id is None:
            raise SessionRequired("No valid session on OAuth callback")
        await service.complete_authorization(owner_id, code, state, error=error)
    except LeadSyncError as exc:
        logger.warning("OAuth callback failed for %s (owner=%s): %s", platform, owner_id, exc.code)
        return _redirect(
            {"status": "error", "error_code": exc.code, "message": exc.user_message}
        )
    return _redirect({"status": "connected", "platform": platform})


@router.get("/{platform}/connection")
async def get_connection(
    platform: str,
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> Dict[str, Any]:
    try:
        connection = await service.get_connection(owner_id)
    except LeadSyncError as exc:
        raise _http_error(exc)
    return connection.public_view()


@router.delete("/{platform}/connection")
async def delete_connection(
    platform: str,
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> Dict[str, Any]:
    """Disconnect and revoke the platform connection."""
    deleted = await service.disconnect(owner_id)
    if not deleted:
        raise _http_error(ConnectionNotFound())
    return {"status": "disconnected", "platform": platform}


@router.post("/{platform}/accounts/connect")
async def connect_account(
    platform: str,
    body: ConnectAccountRequest,
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> Dict[str, Any]:
    try:
        connection = await service.get_connection(owner_id)
        account = await service.connect_account(owner_id, connection.access_token, body.account_id)
    except LeadSyncError as exc:
        raise _http_error(exc)
    return account.model_dump()


@router.post("/{platform}/sync")
async def run_sync(
    platform: str,
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> Dict[str, Any]:
    """Run a full sync and return its summary."""
    try:
        connection = await service.get_connection(owner_id)
        run = await service.run_sync(owner_id, connection)
    except LeadSyncError as exc:
        raise _http_error(exc)
    return run.model_dump(mode="json")


@router.post("/{platform}/sync/cancel")
async def cancel_sync(
    platform: str,
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> Dict[str, Any]:
    return {"cancelled": service.cancel_sync(owner_id), "platform": platform}


@router.get("/{platform}/leads")
async def list_leads(
    platform: str,
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> List[Dict[str, Any]]:
    leads = await service.list_leads(owner_id)
    return [lead.model_dump(mode="json") for lead in leads]


@router.get("/{platform}/sync-runs")
async def list_sync_runs(
    platform: str,
    limit: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_current_owner_id),
    service: LeadAcquisitionService = Depends(get_lead_service),
) -> List[Dict[str, Any]]:
    runs = await service.list_sync_runs(owner_id, limit=limit)
    return [run.model_dump(mode="json") for run in runs]
