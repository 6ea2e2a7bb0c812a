"""Composition root: builds and tears down all components for one process."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
import structlog

from scrapearr.application.use_cases.repository_management import RepositoryManager
from scrapearr.application.use_cases.stream_aggregation import StreamAggregator
from scrapearr.domain.entities.pairing import RepositoryInfo
from scrapearr.infrastructure.cache import DiskcacheAdapter
from scrapearr.infrastructure.config.schema import AppConfig
from scrapearr.infrastructure.enrichment import EnrichmentCache, TmdbEnrichmentSource
from scrapearr.infrastructure.persistence.plugin_state_cache import (
    CachePluginStateRepository,
)
from scrapearr.infrastructure.plugins.manifest import ManifestFetcher
from scrapearr.infrastructure.plugins.store import PluginStore
from scrapearr.infrastructure.sandbox import SandboxRuntime
from scrapearr.infrastructure.streams.quality import parse_quality

log = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything the CLI commands operate on."""

    config: AppConfig
    http_client: httpx.AsyncClient
    cache: DiskcacheAdapter
    store: PluginStore
    sandbox: SandboxRuntime
    manager: RepositoryManager
    aggregator: StreamAggregator
    enrichment: EnrichmentCache | None = None

    def repository_infos(self) -> list[RepositoryInfo]:
        return [
            RepositoryInfo(url=r.url, name=r.name, description=r.description)
            for r in self.store.list_repositories()
        ]

    def read_logo(self) -> bytes | None:
        path = self.config.pairing.logo_path
        if path is None or not path.is_file():
            return None
        return path.read_bytes()


@asynccontextmanager
async def build_services(config: AppConfig) -> AsyncIterator[Services]:
    """Initialize and clean up all resources.

    Order matters:
        1. Cache (persistence backend of the plugin store)
        2. HTTP client (manifests, scripts, sandbox fetch, TMDB)
        3. Sandbox runtime
        4. Plugin store (loads persisted state)
        5. Repository manager, enrichment, aggregator
    """
    cache = DiskcacheAdapter(
        directory=config.cache_dir,
        ttl_seconds=0,
        max_concurrent=config.cache_max_concurrent,
    )
    await cache.__aenter__()

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.http_timeout_seconds),
        headers={"User-Agent": config.http_user_agent},
        follow_redirects=config.http_follow_redirects,
    )
    log.info("http_client_initialized", timeout=config.http_timeout_seconds)

    try:
        sandbox = SandboxRuntime(http_client=http_client, config=config.sandbox)
        store = PluginStore(
            state_repository=CachePluginStateRepository(cache), sandbox=sandbox
        )
        await store.load()

        manager = RepositoryManager(
            store=store,
            manifests=ManifestFetcher(
                http_client=http_client,
                timeout_seconds=config.http_timeout_seconds,
                max_script_bytes=config.sandbox.max_script_bytes,
                user_agent=config.http_user_agent,
            ),
            sandbox=sandbox,
        )

        enrichment: EnrichmentCache | None = None
        if config.tmdb_api_key:
            enrichment = EnrichmentCache(
                TmdbEnrichmentSource(
                    api_key=config.tmdb_api_key, http_client=http_client
                )
            )
            log.info("enrichment_enabled", source="tmdb")

        aggregator = StreamAggregator(
            store=store,
            sandbox=sandbox,
            config=config.aggregator,
            quality_fn=parse_quality,
            invocation_timeout=config.sandbox.invocation_timeout_seconds,
            enrichment=enrichment,
        )

        yield Services(
            config=config,
            http_client=http_client,
            cache=cache,
            store=store,
            sandbox=sandbox,
            manager=manager,
            aggregator=aggregator,
            enrichment=enrichment,
        )
    finally:
        await http_client.aclose()
        log.info("http_client_closed")
        await cache.aclose()
