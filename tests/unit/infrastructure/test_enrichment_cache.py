"""Tests for the single-flight EnrichmentCache."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from scrapearr.infrastructure.enrichment import EnrichmentCache


class _GatedSource:
    """Enrichment source whose fetches block until ``release`` is set."""

    def __init__(self, results: list[Any]) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str]] = []
        self.release = asyncio.Event()

    async def fetch(self, external_id: str, content_kind: str) -> Any:
        self.calls.append((external_id, content_kind))
        await self.release.wait()
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class TestSingleFlight:
    async def test_concurrent_callers_share_one_fetch(self) -> None:
        source = _GatedSource([{"title": "The Matrix"}])
        cache = EnrichmentCache(source)

        tasks = [asyncio.create_task(cache.get("603", "movie")) for _ in range(5)]
        await asyncio.sleep(0)
        source.release.set()
        values = await asyncio.gather(*tasks)

        assert values == [{"title": "The Matrix"}] * 5
        assert source.calls == [("603", "movie")]

    async def test_hit_does_not_fetch(self) -> None:
        source = _GatedSource([{"title": "The Matrix"}])
        source.release.set()
        cache = EnrichmentCache(source)

        await cache.get("603", "movie")
        assert await cache.get("603", "movie") == {"title": "The Matrix"}
        assert len(source.calls) == 1
        assert len(cache) == 1
        assert cache.peek("603", "movie") == {"title": "The Matrix"}

    async def test_keys_include_content_kind(self) -> None:
        source = _GatedSource(["movie-meta", "series-meta"])
        source.release.set()
        cache = EnrichmentCache(source)

        assert await cache.get("603", "movie") == "movie-meta"
        assert await cache.get("603", "series") == "series-meta"
        assert len(source.calls) == 2

    async def test_cancelled_caller_does_not_cancel_fetch(self) -> None:
        source = _GatedSource(["meta"])
        cache = EnrichmentCache(source)

        first = asyncio.create_task(cache.get("603", "movie"))
        second = asyncio.create_task(cache.get("603", "movie"))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        source.release.set()
        assert await second == "meta"
        assert len(source.calls) == 1
        assert cache.peek("603", "movie") == "meta"


class TestNoNegativeCaching:
    async def test_failure_is_not_cached(self) -> None:
        source = _GatedSource([RuntimeError("tmdb down"), "meta"])
        source.release.set()
        cache = EnrichmentCache(source)

        with pytest.raises(RuntimeError, match="tmdb down"):
            await cache.get("603", "movie")
        assert len(cache) == 0

        assert await cache.get("603", "movie") == "meta"
        assert len(source.calls) == 2

    async def test_none_is_not_cached(self) -> None:
        source = _GatedSource([None, None])
        source.release.set()
        cache = EnrichmentCache(source)

        assert await cache.get("nope", "movie") is None
        assert await cache.get("nope", "movie") is None
        assert len(source.calls) == 2
        assert len(cache) == 0

    async def test_entry_records_fetch_time(self) -> None:
        source = _GatedSource(["meta"])
        source.release.set()
        cache = EnrichmentCache(source, clock=lambda: 1234.5)

        await cache.get("603", "movie")
        assert cache._entries[("603", "movie")].fetched_at == 1234.5
