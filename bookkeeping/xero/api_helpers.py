"""Pagination helpers for page-numbered Xero endpoints."""
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional
import asyncio
import logging


logger = logging.getLogger(__name__)

XERO_PAGE_SIZE = 100


async def paginate(
    fetch_page: Callable[[int], Awaitable[List[Any]]],
    page_size: int = XERO_PAGE_SIZE,
    max_pages: Optional[int] = None,
    delay_between_pages: float = 0,
    start_page: int = 1,
) -> AsyncIterator[List[Any]]:
    """
    Yield successive pages from `fetch_page(page)`.

    A page shorter than `page_size` is the last one. Stops early after
    `max_pages` pages when set.
    """
    page = start_page
    fetched = 0
    while True:
        items = await fetch_page(page) or []
        fetched += 1
        if items:
            yield items
        has_more = len(items) == page_size
        if not has_more:
            break
        if max_pages is not None and fetched >= max_pages:
            logger.warning(f"Stopped paginating after {fetched} pages (max_pages={max_pages})")
            break
        page += 1
        if delay_between_pages:
            await asyncio.sleep(delay_between_pages)


async def fetch_all(
    fetch_page: Callable[[int], Awaitable[List[Any]]],
    page_size: int = XERO_PAGE_SIZE,
    max_pages: Optional[int] = None,
    delay_between_pages: float = 0,
) -> List[Any]:
    """Collect every page into a single list."""
    results: List[Any] = []
    async for items in paginate(fetch_page, page_size, max_pages, delay_between_pages):
        results.extend(items)
    return results
