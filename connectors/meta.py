"""
MetaLeadAdsConnector — OAuth2 + Graph API access to Facebook/Instagram Lead Ads.

Traversal: ``/me/adaccounts`` → ``/{account}/leadgen_forms`` → ``/{form}/leads``.
Graph pages are cursor based: ``paging.cursors.after`` is the next cursor and
the absence of ``paging.next`` marks the last page.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.base import BaseAdConnector, safe_json
from utils.errors import InvalidToken, LeadSyncError, UpstreamError, UpstreamRateLimited
from utils.schemas import AdAccount, LeadForm, OAuthConnection, Page, RawLead

logger = logging.getLogger(__name__)

# Graph error codes (https://developers.facebook.com/docs/graph-api/guides/error-handling)
_TOKEN_ERROR_CODES = {102, 190, 463, 467}
_THROTTLE_ERROR_CODES = {4, 17, 32, 341, 613, 80000, 80003, 80004, 80014}

_ACCOUNT_STATUS = {
    1: "active",
    2: "disabled",
    3: "unsettled",
    7: "pending_risk_review",
    8: "pending_settlement",
    9: "in_grace_period",
    100: "pending_closure",
    101: "closed",
}


class MetaLeadAdsConnector(BaseAdConnector):
    """OAuth2 + Lead Ads connector for Meta's Graph API."""

    @property
    def provider_name(self) -> str:
        return "meta"

    @property
    def display_name(self) -> str:
        return "Meta Lead Ads"

    @property
    def scopes(self) -> List[str]:
        return list(config.meta_scopes)

    def is_configured(self) -> bool:
        return bool(config.meta_app_id and config.meta_app_secret)

    @property
    def _version(self) -> str:
        v = config.meta_graph_version.strip()
        return v if v.startswith("v") else f"v{v}"

    @property
    def _graph(self) -> str:
        return f"https://graph.facebook.com/{self._version}"

    # ── OAuth flow ──────────────────────────────────────────────────────

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": config.meta_app_id,
            "redirect_uri": self.redirect_uri(),
            "state": state,
            "scope": ",".join(self.scopes),
            "response_type": "code",
        }
        return f"https://www.facebook.com/{self._version}/dialog/oauth?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        """Exchange the code, upgrade to a long-lived token, then read granted scopes."""
        # Codes are single-use, so this call is never retried.
        short = await self._request(
            "POST",
            f"{self._graph}/oauth/access_token",
            data={
                "client_id": config.meta_app_id,
                "client_secret": config.meta_app_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
            retry=False,
        )
        if "access_token" not in short:
            raise UpstreamError("Token endpoint returned no access_token", details=short)

        token_data = {
            "access_token": short["access_token"],
            "refresh_token": None,
            "expires_in": short.get("expires_in"),
        }
        try:
            token_data.update(await self._extend(short["access_token"]))
        except LeadSyncError as exc:
            logger.warning("Long-lived token upgrade failed, keeping short-lived token: %s", exc.code)

        token_data["scopes"] = await self._granted_scopes(token_data["access_token"])
        return token_data

    async def refresh_access_token(self, connection: OAuthConnection) -> Dict[str, Any]:
        """Graph has no refresh_token grant; a still-valid token is re-extended instead."""
        data = await self._extend(connection.access_token)
        data["scopes"] = connection.granted_scopes
        return data

    async def _extend(self, access_token: str) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"{self._graph}/oauth/access_token",
            data={
                "grant_type": "fb_exchange_token",
                "client_id": config.meta_app_id,
                "client_secret": config.meta_app_secret,
                "fb_exchange_token": access_token,
            },
        )
        if "access_token" not in data:
            raise UpstreamError("Token extension returned no access_token", details=data)
        return {
            "access_token": data["access_token"],
            "refresh_token": None,
            "expires_in": data.get("expires_in"),
        }

    async def _granted_scopes(self, access_token: str) -> List[str]:
        try:
            data = await self._request(
                "GET", f"{self._graph}/me/permissions", access_token=access_token
            )
        except LeadSyncError as exc:
            logger.warning("Could not read granted permissions: %s", exc.code)
            return self.scopes
        return [
            p["permission"]
            for p in data.get("data", [])
            if p.get("status") == "granted" and "permission" in p
        ]

    async def revoke_token(self, access_token: str) -> bool:
        try:
            data = await self._request(
                "DELETE", f"{self._graph}/me/permissions", access_token=access_token
            )
        except LeadSyncError:
            logger.warning("Meta token revocation failed", exc_info=True)
            return False
        return bool(data.get("success"))

    # ── Listing endpoints ───────────────────────────────────────────────

    async def fetch_accounts_page(self, access_token: str, cursor: Optional[str]) -> Page:
        return await self._page(
            f"{self._graph}/me/adaccounts",
            access_token,
            cursor,
            fields="id,name,account_status",
        )

    async def fetch_forms_page(
        self, access_token: str, account_id: str, cursor: Optional[str]
    ) -> Page:
        return await self._page(
            f"{self._graph}/{account_id}/leadgen_forms",
            access_token,
            cursor,
            fields="id,name,status",
        )

    async def fetch_leads_page(
        self, access_token: str, form_id: str, cursor: Optional[str]
    ) -> Page:
        return await self._page(
            f"{self._graph}/{form_id}/leads",
            access_token,
            cursor,
            fields="id,created_time,field_data,ad_id,form_id",
        )

    async def _page(
        self, url: str, access_token: str, cursor: Optional[str], *, fields: str
    ) -> Page:
        params: Dict[str, Any] = {"fields": fields, "limit": config.sync_page_size}
        if cursor:
            params["after"] = cursor
        payload = await self._request("GET", url, access_token=access_token, params=params)
        items = payload.get("data") or []
        paging = payload.get("paging") or {}
        next_cursor = None
        if paging.get("next"):
            next_cursor = (paging.get("cursors") or {}).get("after")
        return Page(items=[i for i in items if isinstance(i, dict)], next_cursor=next_cursor)

    # ── Payload parsing ─────────────────────────────────────────────────

    def parse_account(self, item: Dict[str, Any]) -> AdAccount:
        raw_status = item.get("account_status")
        return AdAccount(
            external_id=str(item.get("id", "")),
            display_name=item.get("name") or "",
            status=_ACCOUNT_STATUS.get(raw_status, str(raw_status or "")),
            platform=self.provider_name,
        )

    def parse_form(self, item: Dict[str, Any], account_id: str) -> LeadForm:
        return LeadForm(
            external_id=str(item.get("id", "")),
            account_ref=account_id,
            name=item.get("name") or "",
        )

    def parse_lead(self, item: Dict[str, Any], form: LeadForm) -> RawLead:
        return RawLead(
            external_id=str(item.get("id") or ""),
            platform=self.provider_name,
            form_ref=form.external_id,
            account_ref=form.account_ref,
            created_time=item.get("created_time"),
            field_data=item.get("field_data"),
        )

    def normalize_account_id(self, account_id: str) -> str:
        account_id = account_id.strip()
        return account_id if account_id.startswith("act_") else f"act_{account_id}"

    # ── Errors ──────────────────────────────────────────────────────────

    def classify_error(self, response: httpx.Response) -> Tuple[LeadSyncError, bool]:
        payload = safe_json(response)
        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
        code = error.get("code")
        message = error.get("message") or f"Graph API error (HTTP {response.status_code})"

        if code in _TOKEN_ERROR_CODES or response.status_code == 401:
            return InvalidToken(message, details=payload), False
        if code in _THROTTLE_ERROR_CODES or response.status_code == 429:
            return UpstreamRateLimited(message, details=payload), True
        if error.get("is_transient") or response.status_code >= 500:
            return UpstreamError(message, details=payload), True
        # 403 / codes 10, 200-299 are missing permissions: a refresh will not help.
        return UpstreamError(message, details=payload), False
