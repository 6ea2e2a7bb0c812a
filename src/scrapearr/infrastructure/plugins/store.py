"""Plugin descriptor store with snapshot broadcasting."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import replace

import structlog

from scrapearr.domain.entities.plugins import (
    PluginStoreSnapshot,
    RepositoryDescriptor,
    ScraperDescriptor,
    canonicalize_url,
)
from scrapearr.domain.exceptions import (
    DuplicateRepositoryError,
    RepositoryNotFoundError,
    ScraperNotFoundError,
)
from scrapearr.domain.ports.plugin_state import PluginStateRepository
from scrapearr.domain.ports.sandbox import SandboxPort

log = structlog.get_logger(__name__)


class PluginStore:
    """
    Single-writer registry of installed repositories and scrapers.

    Reads return the current immutable snapshot without locking.
    Mutations are serialized, applied, persisted, then broadcast to every
    ``watch()`` subscriber in mutation order.
    """

    def __init__(
        self,
        *,
        state_repository: PluginStateRepository | None = None,
        sandbox: SandboxPort | None = None,
    ) -> None:
        self._state_repository = state_repository
        self._sandbox = sandbox
        self._snapshot = PluginStoreSnapshot()
        self._lock = asyncio.Lock()
        self._subscribers: list[asyncio.Queue[PluginStoreSnapshot]] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> PluginStoreSnapshot:
        return self._snapshot

    def list_repositories(self) -> list[RepositoryDescriptor]:
        return list(self._snapshot.repositories)

    def list_scrapers(self) -> list[ScraperDescriptor]:
        return list(self._snapshot.scrapers)

    def get_repository(self, repository_id: str) -> RepositoryDescriptor:
        repo = self._snapshot.repository(repository_id)
        if repo is None:
            raise RepositoryNotFoundError(f"Repository '{repository_id}' not found")
        return repo

    def get_scraper(self, scraper_id: str) -> ScraperDescriptor:
        scraper = self._snapshot.scraper(scraper_id)
        if scraper is None:
            raise ScraperNotFoundError(f"Scraper '{scraper_id}' not found")
        return scraper

    def find_by_canonical_url(self, url: str) -> RepositoryDescriptor | None:
        wanted = canonicalize_url(url)
        for repo in self._snapshot.repositories:
            if repo.canonical_url == wanted:
                return repo
        return None

    async def watch(self) -> AsyncIterator[PluginStoreSnapshot]:
        """Yield the current snapshot, then one snapshot per mutation."""
        queue: asyncio.Queue[PluginStoreSnapshot] = asyncio.Queue()
        queue.put_nowait(self._snapshot)
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def load(self) -> PluginStoreSnapshot:
        """Replace the in-memory state with the persisted one, if any."""
        if self._state_repository is None:
            return self._snapshot

        async with self._lock:
            stored = await self._state_repository.load()
            if stored is not None:
                self._publish(replace(stored, version=self._snapshot.version + 1))
            log.info(
                "plugin_store_loaded",
                repositories=len(self._snapshot.repositories),
                scrapers=len(self._snapshot.scrapers),
                plugins_enabled=self._snapshot.global_enabled,
            )
            return self._snapshot

    async def upsert_repository(
        self,
        repository: RepositoryDescriptor,
        scrapers: Sequence[ScraperDescriptor],
        *,
        must_exist: bool = False,
    ) -> RepositoryDescriptor:
        """Insert or replace a repository together with all of its scrapers.

        With ``must_exist`` (refresh) the repository has to still be stored
        when the write happens, and scrapers it already has keep their
        current enabled flag.

        Raises:
            RepositoryNotFoundError: ``must_exist`` and the repository was
                removed.
            DuplicateRepositoryError: another repository has the same
                canonical URL.
            ScriptValidationError: a scraper script fails static validation.
            ValueError: a scraper does not belong to *repository*.
        """
        for scraper in scrapers:
            if scraper.repository_id != repository.id:
                raise ValueError(
                    f"Scraper '{scraper.id}' belongs to "
                    f"'{scraper.repository_id}', not '{repository.id}'"
                )
            if self._sandbox is not None:
                self._sandbox.validate(
                    scraper.script_source, filename=f"<scraper {scraper.id}>"
                )

        async with self._lock:
            current = self._snapshot
            if must_exist and current.repository(repository.id) is None:
                raise RepositoryNotFoundError(
                    f"Repository '{repository.id}' was removed during refresh"
                )
            if must_exist:
                enabled = {s.id: s.enabled for s in current.scrapers_of(repository.id)}
                scrapers = [
                    replace(s, enabled=enabled[s.id]) if s.id in enabled else s
                    for s in scrapers
                ]

            clash = next(
                (
                    r
                    for r in current.repositories
                    if r.canonical_url == repository.canonical_url
                    and r.id != repository.id
                ),
                None,
            )
            if clash is not None:
                raise DuplicateRepositoryError(
                    f"Repository '{repository.url}' is already installed as "
                    f"'{clash.name}'"
                )

            stored_repo = replace(
                repository, scraper_ids=tuple(s.id for s in scrapers)
            )
            if current.repository(repository.id) is None:
                repositories = (*current.repositories, stored_repo)
            else:
                repositories = tuple(
                    stored_repo if r.id == repository.id else r
                    for r in current.repositories
                )

            by_id = {
                s.id: s
                for s in current.scrapers
                if s.repository_id != repository.id
            }
            by_id.update((s.id, s) for s in scrapers)

            await self._commit(
                replace(
                    current,
                    repositories=repositories,
                    scrapers=_ordered_scrapers(repositories, by_id),
                )
            )
            log.info(
                "repository_stored",
                repository_id=stored_repo.id,
                url=stored_repo.url,
                scrapers=stored_repo.scraper_count,
            )
            return stored_repo

    async def remove_repository(self, repository_id: str) -> RepositoryDescriptor:
        """Remove a repository and all scrapers it owns in one step."""
        async with self._lock:
            current = self._snapshot
            repo = current.repository(repository_id)
            if repo is None:
                raise RepositoryNotFoundError(f"Repository '{repository_id}' not found")

            await self._commit(
                replace(
                    current,
                    repositories=tuple(
                        r for r in current.repositories if r.id != repository_id
                    ),
                    scrapers=tuple(
                        s for s in current.scrapers if s.repository_id != repository_id
                    ),
                )
            )
            log.info("repository_removed", repository_id=repository_id, url=repo.url)
            return repo

    async def set_scraper_enabled(self, scraper_id: str, enabled: bool) -> None:
        async with self._lock:
            current = self._snapshot
            if current.scraper(scraper_id) is None:
                raise ScraperNotFoundError(f"Scraper '{scraper_id}' not found")

            await self._commit(
                replace(
                    current,
                    scrapers=tuple(
                        replace(s, enabled=enabled) if s.id == scraper_id else s
                        for s in current.scrapers
                    ),
                )
            )
            log.info("scraper_enabled_changed", scraper_id=scraper_id, enabled=enabled)

    async def set_plugins_globally_enabled(self, enabled: bool) -> None:
        async with self._lock:
            await self._commit(replace(self._snapshot, global_enabled=enabled))
            log.info("plugins_global_enabled_changed", enabled=enabled)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _commit(self, snapshot: PluginStoreSnapshot) -> None:
        self._publish(replace(snapshot, version=self._snapshot.version + 1))
        if self._state_repository is not None:
            await self._state_repository.save(self._snapshot)

    def _publish(self, snapshot: PluginStoreSnapshot) -> None:
        self._snapshot = snapshot
        for queue in self._subscribers:
            queue.put_nowait(snapshot)


def _ordered_scrapers(
    repositories: Sequence[RepositoryDescriptor],
    by_id: dict[str, ScraperDescriptor],
) -> tuple[ScraperDescriptor, ...]:
    """Scrapers in configuration order (repository order, then manifest order)."""
    return tuple(
        by_id[sid]
        for repo in repositories
        for sid in repo.scraper_ids
        if sid in by_id
    )
