"""Repository management use case.

Manifest URL -> fetch + validate -> download scripts -> static validation
-> store (all-or-nothing).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Protocol
from uuid import uuid4

import structlog

from scrapearr.domain.entities.pairing import ChangeDiff, RepositoryInfo
from scrapearr.domain.entities.plugins import (
    CapabilityManifest,
    PluginStoreSnapshot,
    RepositoryDescriptor,
    ScraperDescriptor,
    canonicalize_url,
)
from scrapearr.domain.entities.streams import AggregationQuery, StreamResult
from scrapearr.domain.exceptions import (
    DuplicateRepositoryError,
    InvalidManifestError,
    ScrapearrError,
    UnreachableError,
)
from scrapearr.domain.ports.sandbox import SandboxPort

log = structlog.get_logger(__name__)

# The Matrix (1999); any scraper should find something for it.
SAMPLE_TMDB_ID = "603"


# ---------------------------------------------------------------------------
# Protocols: what this use case needs from the manifest fetcher and store.
# ---------------------------------------------------------------------------


class _ManifestEntry(Protocol):
    id: str
    description: str | None
    version: str | None
    supported_types: list[str]
    id_prefixes: list[str]
    enabled: bool
    logo: str | None
    content_language: list[str]
    formats: list[str]

    @property
    def display_name(self) -> str: ...


class _Manifest(Protocol):
    name: str
    description: str | None
    version: str | None

    @property
    def scrapers(self) -> Sequence[_ManifestEntry]: ...


class _ManifestSource(Protocol):
    async def fetch_manifest(self, url: str) -> _Manifest: ...

    async def fetch_script(self, manifest_url: str, entry: _ManifestEntry) -> str: ...


class _Store(Protocol):
    def snapshot(self) -> PluginStoreSnapshot: ...

    def get_repository(self, repository_id: str) -> RepositoryDescriptor: ...

    def get_scraper(self, scraper_id: str) -> ScraperDescriptor: ...

    def find_by_canonical_url(self, url: str) -> RepositoryDescriptor | None: ...

    async def upsert_repository(
        self,
        repository: RepositoryDescriptor,
        scrapers: Sequence[ScraperDescriptor],
        *,
        must_exist: bool = False,
    ) -> RepositoryDescriptor: ...

    async def remove_repository(self, repository_id: str) -> RepositoryDescriptor: ...


@dataclass(frozen=True)
class SyncFailure:
    url: str
    error: ScrapearrError


@dataclass(frozen=True)
class SyncReport:
    """Result of applying a confirmed pairing diff."""

    added: tuple[RepositoryDescriptor, ...] = ()
    removed: tuple[RepositoryDescriptor, ...] = ()
    skipped: tuple[str, ...] = ()
    failures: tuple[SyncFailure, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.failures


def default_sample_query(scraper: ScraperDescriptor) -> AggregationQuery:
    """Sample query for ``test_scraper``: a movie, or S1E1 for series-only scrapers."""
    if scraper.capabilities.supports_type("movie"):
        return AggregationQuery(content_type="movie", external_id=SAMPLE_TMDB_ID)
    return AggregationQuery(
        content_type="series", external_id=SAMPLE_TMDB_ID, season=1, episode=1
    )


class RepositoryManager:
    """Install, refresh, remove and test scraper repositories.

    Every write goes through the plugin store; a failure at any step
    (manifest, script download, static validation) leaves the store untouched.
    """

    def __init__(
        self,
        *,
        store: _Store,
        manifests: _ManifestSource,
        sandbox: SandboxPort,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._manifests = manifests
        self._sandbox = sandbox
        self._clock = clock

    async def add_repository(self, url: str) -> RepositoryDescriptor:
        """Install the repository behind *url* with all of its scrapers.

        Raises:
            DuplicateRepositoryError: an equivalent URL is already installed.
            UnreachableError: manifest or a script could not be downloaded.
            InvalidManifestError: manifest or a script is unusable.
        """
        url = url.strip()
        existing = self._store.find_by_canonical_url(url)
        if existing is not None:
            raise DuplicateRepositoryError(
                f"Repository '{url}' is already installed as '{existing.name}'"
            )

        manifest = await self._manifests.fetch_manifest(url)
        repository_id = uuid4().hex
        scrapers = await self._build_scrapers(repository_id, url, manifest, {})

        repo = await self._store.upsert_repository(
            RepositoryDescriptor(
                id=repository_id,
                url=url,
                name=manifest.name,
                description=manifest.description or "",
                version=manifest.version,
                last_updated=self._clock(),
            ),
            scrapers,
        )
        log.info(
            "repository_added",
            repository_id=repo.id,
            name=repo.name,
            url=url,
            scrapers=repo.scraper_count,
        )
        return repo

    async def refresh_repository(self, repository_id: str) -> None:
        """Re-fetch the manifest and reconcile scrapers by manifest id.

        New scrapers are added enabled, scrapers gone from the manifest
        are removed, survivors keep their enabled flag.

        Raises:
            RepositoryNotFoundError: unknown id, or the repository was
                removed while the manifest was being fetched.
        """
        repo = self._store.get_repository(repository_id)
        manifest = await self._manifests.fetch_manifest(repo.url)

        previous = {
            s.manifest_id: s for s in self._store.snapshot().scrapers_of(repo.id)
        }
        scrapers = await self._build_scrapers(repo.id, repo.url, manifest, previous)

        await self._store.upsert_repository(
            replace(
                repo,
                name=manifest.name,
                description=manifest.description or "",
                version=manifest.version,
                last_updated=self._clock(),
            ),
            scrapers,
            must_exist=True,
        )

        current_ids = {s.manifest_id for s in scrapers}
        log.info(
            "repository_refreshed",
            repository_id=repo.id,
            added=sorted(current_ids - previous.keys()),
            removed=sorted(previous.keys() - current_ids),
            kept=len(current_ids & previous.keys()),
        )

    async def remove_repository(self, repository_id: str) -> RepositoryDescriptor:
        return await self._store.remove_repository(repository_id)

    async def test_scraper(
        self,
        scraper_id: str,
        sample_query: AggregationQuery | None = None,
    ) -> list[StreamResult]:
        """Run one scraper directly, bypassing enablement and aggregation."""
        scraper = self._store.get_scraper(scraper_id)
        query = sample_query or default_sample_query(scraper)
        log.info(
            "scraper_test_start",
            scraper_id=scraper_id,
            content_type=query.content_type,
            external_id=query.external_id,
        )
        return await self._sandbox.invoke(scraper, query)

    async def fetch_repository_info(self, url: str) -> RepositoryInfo | None:
        """Manifest summary for *url*, or None when it is not a usable manifest."""
        try:
            manifest = await self._manifests.fetch_manifest(url.strip())
        except (UnreachableError, InvalidManifestError) as e:
            log.info("repository_info_unavailable", url=url, error=e.message)
            return None
        return RepositoryInfo(
            url=url.strip(),
            name=manifest.name,
            description=manifest.description or "",
        )

    async def apply_diff(self, diff: ChangeDiff) -> SyncReport:
        """Apply a confirmed pairing change; failures are collected per URL."""
        added: list[RepositoryDescriptor] = []
        removed: list[RepositoryDescriptor] = []
        skipped: list[str] = []
        failures: list[SyncFailure] = []

        removed_urls = {canonicalize_url(u) for u in diff.removed}
        for repo in list(self._store.snapshot().repositories):
            if repo.canonical_url not in removed_urls:
                continue
            try:
                removed.append(await self._store.remove_repository(repo.id))
            except ScrapearrError as e:
                failures.append(SyncFailure(url=repo.url, error=e))

        for url in diff.added:
            try:
                added.append(await self.add_repository(url))
            except DuplicateRepositoryError:
                skipped.append(url)
            except ScrapearrError as e:
                log.warning(
                    "repository_sync_failed",
                    url=url,
                    kind=e.kind.value,
                    error=e.message,
                )
                failures.append(SyncFailure(url=url, error=e))

        report = SyncReport(
            added=tuple(added),
            removed=tuple(removed),
            skipped=tuple(skipped),
            failures=tuple(failures),
        )
        log.info(
            "repository_diff_applied",
            added=len(report.added),
            removed=len(report.removed),
            skipped=len(report.skipped),
            failed=len(report.failures),
        )
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _build_scrapers(
        self,
        repository_id: str,
        manifest_url: str,
        manifest: _Manifest,
        previous: dict[str, ScraperDescriptor],
    ) -> list[ScraperDescriptor]:
        entries = list(manifest.scrapers)
        sources = await asyncio.gather(
            *(self._manifests.fetch_script(manifest_url, e) for e in entries),
            return_exceptions=True,
        )
        # Raise the first failure in manifest order
        for source in sources:
            if isinstance(source, BaseException):
                raise source

        scrapers: list[ScraperDescriptor] = []
        for entry, source in zip(entries, sources):
            scraper_id = f"{repository_id}:{entry.id}"
            self._sandbox.validate(source, filename=f"<scraper {scraper_id}>")
            prior = previous.get(entry.id)
            scrapers.append(
                ScraperDescriptor(
                    id=scraper_id,
                    repository_id=repository_id,
                    manifest_id=entry.id,
                    name=entry.display_name,
                    script_source=source,
                    enabled=prior.enabled if prior is not None else entry.enabled,
                    capabilities=CapabilityManifest(
                        supported_types=tuple(entry.supported_types),
                        id_prefixes=tuple(entry.id_prefixes),
                    ),
                    version=entry.version,
                    description=entry.description or "",
                    logo=entry.logo,
                    content_language=tuple(entry.content_language),
                    formats=tuple(entry.formats),
                    manifest_enabled=entry.enabled,
                    settings=prior.settings if prior is not None else {},
                )
            )
        return scrapers
