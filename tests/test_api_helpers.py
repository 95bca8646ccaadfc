"""
Tests for Xero pagination helpers.
"""

import pytest
from unittest.mock import AsyncMock

from bookkeeping.xero.api_helpers import fetch_all, paginate


def pages(*sizes):
    """fetch_page mock returning pages of the given sizes."""
    return AsyncMock(side_effect=[list(range(size)) for size in sizes])


class TestPaginate:
    """Page iteration."""

    @pytest.mark.asyncio
    async def test_stops_on_short_page(self):
        fetch = pages(100, 100, 7)

        collected = [page async for page in paginate(fetch)]

        assert [len(p) for p in collected] == [100, 100, 7]
        assert [c.args[0] for c in fetch.await_args_list] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_empty_first_page_yields_nothing(self):
        collected = [page async for page in paginate(pages(0))]
        assert collected == []

    @pytest.mark.asyncio
    async def test_max_pages(self):
        fetch = pages(10, 10, 10, 10)

        collected = [page async for page in paginate(fetch, page_size=10, max_pages=2)]

        assert len(collected) == 2
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_start_page(self):
        fetch = pages(3)

        [page async for page in paginate(fetch, start_page=4)]

        fetch.assert_awaited_once_with(4)

    @pytest.mark.asyncio
    async def test_none_treated_as_empty(self):
        fetch = AsyncMock(return_value=None)
        assert [page async for page in paginate(fetch)] == []


class TestFetchAll:
    """Flattening pages."""

    @pytest.mark.asyncio
    async def test_concatenates_pages(self):
        result = await fetch_all(pages(2, 2, 1), page_size=2)
        assert result == [0, 1, 0, 1, 0]
