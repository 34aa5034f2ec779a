"""
BaseAdConnector — abstract interface for every ad-platform connector.

A connector knows one vendor's URLs, payload shapes and error codes.
Everything vendor-neutral (pagination, token refresh, orchestration)
lives in ``core`` and only talks to this interface.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from config.settings import config
from utils.errors import InvalidToken, LeadSyncError, UpstreamError, UpstreamRateLimited
from utils.schemas import AdAccount, LeadForm, OAuthConnection, Page, RawLead

logger = logging.getLogger(__name__)


class BaseAdConnector(ABC):
    """Abstract base for all ad-platform connectors."""

    def __init__(
        self,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Parameters
        ----------
        transport    : optional httpx transport (tests pass ``httpx.MockTransport``).
        retry_config : overrides for ``config.get_retry_config()``.
        sleep        : backoff sleeper, injectable so tests don't wait.
        """
        self._transport = transport
        self._retry = {**config.get_retry_config(), **(retry_config or {})}
        self._sleep = sleep

    # ── Identity ────────────────────────────────────────────────────────

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug stored as ``platform`` on connections and leads."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """Permission scopes requested during authorization."""
        ...

    def is_configured(self) -> bool:
        return True

    def redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/{self.provider_name}/callback"

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """Build the vendor authorization URL embedding ``state`` and the scopes."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        """
        Trade an authorization code for tokens.

        Returns
        -------
        dict with keys: access_token, refresh_token (or None), expires_in
        (seconds or None), scopes.
        """
        ...

    @abstractmethod
    async def refresh_access_token(self, connection: OAuthConnection) -> Dict[str, Any]:
        """Return fresh token data in the same shape as ``exchange_code``."""
        ...

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke at the vendor; False when unsupported."""
        return False

    # ── Listing endpoints (one page each) ───────────────────────────────

    @abstractmethod
    async def fetch_accounts_page(self, access_token: str, cursor: Optional[str]) -> Page:
        ...

    @abstractmethod
    async def fetch_forms_page(
        self, access_token: str, account_id: str, cursor: Optional[str]
    ) -> Page:
        ...

    @abstractmethod
    async def fetch_leads_page(
        self, access_token: str, form_id: str, cursor: Optional[str]
    ) -> Page:
        ...

    # ── Payload parsing ─────────────────────────────────────────────────

    @abstractmethod
    def parse_account(self, item: Dict[str, Any]) -> AdAccount:
        ...

    @abstractmethod
    def parse_form(self, item: Dict[str, Any], account_id: str) -> LeadForm:
        ...

    @abstractmethod
    def parse_lead(self, item: Dict[str, Any], form: LeadForm) -> RawLead:
        ...

    def normalize_account_id(self, account_id: str) -> str:
        """Map a user-typed account id to the vendor's canonical form."""
        return account_id

    # ── HTTP ────────────────────────────────────────────────────────────

    def classify_error(self, response: httpx.Response) -> Tuple[LeadSyncError, bool]:
        """
        Map an error response to ``(exception, is_transient)``.

        Subclasses override this to read vendor error codes.
        """
        payload = safe_json(response)
        status = response.status_code
        if status in (401, 403):
            return InvalidToken(f"Token rejected (HTTP {status})", details=payload), False
        if status == 429:
            return UpstreamRateLimited("Rate limited (HTTP 429)", details=payload), True
        if status >= 500:
            return UpstreamError(f"Vendor error (HTTP {status})", details=payload), True
        return UpstreamError(f"Vendor error (HTTP {status})", details=payload), False

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Dict[str, Any]:
        """
        Perform one vendor call with a timeout and exponential-backoff retries.

        Only transient failures (429/5xx, transport errors, vendor rate-limit
        codes) are retried; authorization failures raise immediately.
        """
        max_retries: int = self._retry["max_retries"] if retry else 0
        timeout: float = float(self._retry["timeout"])
        backoff_base: float = self._retry["backoff_base"]
        backoff_mul: float = self._retry["backoff_multiplier"]

        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        for attempt in range(max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    resp = await client.request(
                        method, url, params=params, data=data, headers=headers
                    )
            except httpx.TransportError as exc:
                error: LeadSyncError = UpstreamError(f"{method} {url} failed: {exc!r}")
                transient = True
            else:
                if resp.status_code < 400:
                    return safe_json(resp)
                error, transient = self.classify_error(resp)

            if not transient or attempt >= max_retries:
                raise error

            delay = backoff_base * (backoff_mul ** attempt)
            logger.warning(
                "%s %s attempt %d/%d failed (%s) — retrying in %.1fs",
                method,
                url,
                attempt + 1,
                max_retries + 1,
                error.code,
                delay,
            )
            await self._sleep(delay)


def safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text[:500]}
    return body if isinstance(body, dict) else {"data": body}
