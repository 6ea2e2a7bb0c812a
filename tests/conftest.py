"""Shared test fixtures for Scrapearr test suite."""

from __future__ import annotations

from collections.abc import Callable
from types import MappingProxyType
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from scrapearr.domain.entities.plugins import (
    CapabilityManifest,
    RepositoryDescriptor,
    ScraperDescriptor,
)
from scrapearr.domain.entities.streams import AggregationQuery
from scrapearr.infrastructure.config.schema import AggregatorConfig, SandboxConfig

SIMPLE_SCRIPT = '''
async def get_streams(query, ctx):
    return [
        {
            "url": "https://cdn.example/" + query["external_id"] + ".mp4",
            "title": "Sample 1080p",
            "quality": "1080p",
        }
    ]
'''

ScraperFactory = Callable[..., ScraperDescriptor]
RepositoryFactory = Callable[..., RepositoryDescriptor]


# ---------------------------------------------------------------------------
# Domain entity fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def simple_script() -> str:
    """Valid scraper script returning one 1080p stream for any query."""
    return SIMPLE_SCRIPT


@pytest.fixture()
def scraper_factory() -> ScraperFactory:
    """Build ScraperDescriptors; ids have the form ``<repository>:<manifest id>``."""

    def _make(
        scraper_id: str = "repo1:alpha",
        *,
        name: str | None = None,
        script: str = SIMPLE_SCRIPT,
        enabled: bool = True,
        supported_types: tuple[str, ...] = (),
        id_prefixes: tuple[str, ...] = (),
        settings: dict[str, Any] | None = None,
    ) -> ScraperDescriptor:
        repository_id, _, manifest_id = scraper_id.partition(":")
        return ScraperDescriptor(
            id=scraper_id,
            repository_id=repository_id,
            manifest_id=manifest_id or repository_id,
            name=name or manifest_id.capitalize() or scraper_id,
            script_source=script,
            enabled=enabled,
            capabilities=CapabilityManifest(
                supported_types=supported_types, id_prefixes=id_prefixes
            ),
            settings=MappingProxyType(dict(settings or {})),
        )

    return _make


@pytest.fixture()
def repository_factory() -> RepositoryFactory:
    def _make(
        repository_id: str = "repo1",
        *,
        url: str | None = None,
        name: str | None = None,
    ) -> RepositoryDescriptor:
        return RepositoryDescriptor(
            id=repository_id,
            url=url or f"https://{repository_id}.example/manifest.json",
            name=name or repository_id.upper(),
        )

    return _make


@pytest.fixture()
def movie_query() -> AggregationQuery:
    return AggregationQuery(content_type="movie", external_id="603")


@pytest.fixture()
def series_query() -> AggregationQuery:
    return AggregationQuery(
        content_type="series", external_id="tt0944947", season=1, episode=2
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sandbox_config() -> SandboxConfig:
    """Short timeouts so failing tests fail fast."""
    return SandboxConfig(
        invocation_timeout_seconds=2.0,
        fetch_timeout_seconds=2.0,
        max_response_bytes=64 * 1024,
        max_script_bytes=64 * 1024,
        fetch_user_agent="ScrapearrTest/1.0",
    )


@pytest.fixture()
def aggregator_config() -> AggregatorConfig:
    return AggregatorConfig(
        max_concurrent_scrapers=5,
        query_deadline_seconds=2.0,
        max_results=50,
        sort_by_quality=True,
    )


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
async def http_client() -> Any:
    """Plain AsyncClient; tests mock the network with respx."""
    async with httpx.AsyncClient() as client:
        yield client


# ---------------------------------------------------------------------------
# Mock port fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_cache() -> AsyncMock:
    """Mock CachePort."""
    cache = AsyncMock()
    cache.get = AsyncMock(return_value=None)
    cache.set = AsyncMock()
    cache.delete = AsyncMock(return_value=True)
    cache.aclose = AsyncMock()
    return cache


@pytest.fixture()
def mock_state_repository() -> AsyncMock:
    """Mock PluginStateRepository."""
    repo = AsyncMock()
    repo.load = AsyncMock(return_value=None)
    repo.save = AsyncMock()
    return repo
