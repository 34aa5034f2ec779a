"""
Cursor pagination shared by every listing endpoint.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from utils.errors import PaginationLimitExceeded
from utils.schemas import Page

logger = logging.getLogger(__name__)

FetchPage = Callable[[Optional[str]], Awaitable[Page]]


async def iterate_pages(
    fetch_page: FetchPage,
    *,
    max_pages: int,
    label: str,
) -> AsyncIterator[List[Dict[str, Any]]]:
    """
    Yield each page's items in vendor order until the vendor signals the
    last page (no next cursor).

    Raises ``PaginationLimitExceeded`` once ``max_pages`` pages have been
    read and the vendor still reports more, which bounds a vendor that
    keeps echoing the same page.
    """
    cursor: Optional[str] = None
    for page_num in range(1, max_pages + 1):
        page = await fetch_page(cursor)
        yield page.items
        if not page.next_cursor:
            return
        cursor = page.next_cursor
        logger.debug("%s: page %d done, next cursor present", label, page_num)

    raise PaginationLimitExceeded(
        f"{label}: stopped after {max_pages} pages",
        details={"max_pages": max_pages, "last_cursor": cursor},
    )


async def collect_pages(fetch_page: FetchPage, *, max_pages: int, label: str) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    async for batch in iterate_pages(fetch_page, max_pages=max_pages, label=label):
        items.extend(batch)
    return items
