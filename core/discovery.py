"""
AccountDiscovery / FormDiscovery — list resources under a parent with a token.

Both hide vendor pagination from the caller, go through ``TokenSource.call``
for every page (refresh-then-retry-once), and treat an empty result as a
valid answer.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from config.settings import config
from connectors.base import BaseAdConnector
from connectors.token_manager import TokenSource
from core.pagination import collect_pages
from utils.schemas import AdAccount, LeadForm, Page

logger = logging.getLogger(__name__)


class AccountDiscovery:
    def __init__(self, connector: BaseAdConnector, *, max_pages: Optional[int] = None):
        self._connector = connector
        self._max_pages = max_pages or config.sync_max_pages

    async def list_accounts(self, tokens: TokenSource) -> List[AdAccount]:
        async def fetch(cursor: Optional[str]) -> Page:
            return await tokens.call(lambda token: self._connector.fetch_accounts_page(token, cursor))

        items = await collect_pages(fetch, max_pages=self._max_pages, label="ad accounts")
        accounts = _dedupe(self._connector.parse_account(item) for item in items)
        logger.info("Discovered %d ad account(s) for owner %s", len(accounts), tokens.connection.owner_id)
        return accounts


class FormDiscovery:
    def __init__(self, connector: BaseAdConnector, *, max_pages: Optional[int] = None):
        self._connector = connector
        self._max_pages = max_pages or config.sync_max_pages

    async def list_forms(self, tokens: TokenSource, account_id: str) -> List[LeadForm]:
        async def fetch(cursor: Optional[str]) -> Page:
            return await tokens.call(
                lambda token: self._connector.fetch_forms_page(token, account_id, cursor)
            )

        items = await collect_pages(fetch, max_pages=self._max_pages, label=f"forms of {account_id}")
        forms = _dedupe(self._connector.parse_form(item, account_id) for item in items)
        logger.debug("Account %s has %d lead form(s)", account_id, len(forms))
        return forms


def _dedupe(resources) -> list:
    """Drop blank and repeated ids (vendors occasionally repeat items across pages)."""
    seen: Dict[str, object] = {}
    for res in resources:
        if res.external_id and res.external_id not in seen:
            seen[res.external_id] = res
    return list(seen.values())
