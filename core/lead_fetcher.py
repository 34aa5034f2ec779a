"""
LeadFetcher — lazily page through the leads of one form.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional, Set

from config.settings import config
from connectors.base import BaseAdConnector
from connectors.token_manager import TokenSource
from core.pagination import iterate_pages
from utils.schemas import LeadForm, Page, RawLead

logger = logging.getLogger(__name__)


class LeadFetcher:
    """
    Produces ``RawLead`` objects for a single form in vendor page order.

    The sequence is finite (bounded by ``max_pages``) and always starts
    from the first page; there is no resume-from-cursor across runs.
    A lead id the vendor repeats on a later page is yielded only once.
    """

    def __init__(self, connector: BaseAdConnector, *, max_pages: Optional[int] = None):
        self._connector = connector
        self._max_pages = max_pages or config.sync_max_pages

    async def fetch_leads(self, tokens: TokenSource, form: LeadForm) -> AsyncIterator[RawLead]:
        async def fetch(cursor: Optional[str]) -> Page:
            return await tokens.call(
                lambda token: self._connector.fetch_leads_page(token, form.external_id, cursor)
            )

        seen: Set[str] = set()
        async for items in iterate_pages(
            fetch, max_pages=self._max_pages, label=f"leads of form {form.external_id}"
        ):
            for item in items:
                raw = self._connector.parse_lead(item, form)
                # Blank ids pass through so the normalizer reports them as malformed.
                if raw.external_id:
                    if raw.external_id in seen:
                        logger.debug("Form %s repeated lead %s", form.external_id, raw.external_id)
                        continue
                    seen.add(raw.external_id)
                yield raw
