"""Tests for the RepositoryManager use case."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import MagicMock

import pytest

from scrapearr.application.use_cases.repository_management import (
    RepositoryManager,
    default_sample_query,
)
from scrapearr.domain.entities.pairing import ChangeDiff
from scrapearr.domain.entities.streams import AggregationQuery
from scrapearr.domain.exceptions import (
    DuplicateRepositoryError,
    ErrorKind,
    InvalidManifestError,
    RepositoryNotFoundError,
    ScraperNotFoundError,
    ScriptValidationError,
    UnreachableError,
)
from scrapearr.infrastructure.config.schema import SandboxConfig
from scrapearr.infrastructure.plugins.manifest import (
    RepositoryManifest,
    ScraperManifestEntry,
)
from scrapearr.infrastructure.plugins.store import PluginStore
from scrapearr.infrastructure.sandbox import SandboxRuntime

REPO_X = "https://x.example/manifest.json"
REPO_Y = "https://y.example/manifest.json"


def _manifest(name: str, /, *scraper_ids: str, **entry_fields: Any) -> RepositoryManifest:
    return RepositoryManifest(
        name=name,
        description=f"{name} scrapers",
        version="1.0",
        scrapers=[ScraperManifestEntry(id=sid, **entry_fields) for sid in scraper_ids],
    )


class FakeManifests:
    """In-memory manifest source keyed by URL."""

    def __init__(self, simple_script: str) -> None:
        self.manifests: dict[str, Any] = {}
        self.scripts: dict[str, Any] = {}
        self.default_script = simple_script
        self.manifest_calls: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.fetching = asyncio.Event()

    def hold(self, url: str) -> asyncio.Event:
        """Block fetches of *url* until the returned event is set."""
        self.gates[url] = asyncio.Event()
        return self.gates[url]

    async def fetch_manifest(self, url: str) -> RepositoryManifest:
        self.manifest_calls.append(url)
        if url in self.gates:
            self.fetching.set()
            await self.gates[url].wait()
        value = self.manifests.get(url)
        if value is None:
            raise UnreachableError(f"{url}: HTTP 404")
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_script(self, manifest_url: str, entry: ScraperManifestEntry) -> str:
        value = self.scripts.get(entry.id, self.default_script)
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture()
def manifests(simple_script: str) -> FakeManifests:
    source = FakeManifests(simple_script)
    source.manifests[REPO_X] = _manifest("X", "alpha", "beta")
    source.manifests[REPO_Y] = _manifest("Y", "gamma")
    return source


@pytest.fixture()
def sandbox(sandbox_config: SandboxConfig) -> SandboxRuntime:
    # Sample scripts never call fetch()
    return SandboxRuntime(http_client=MagicMock(), config=sandbox_config)


@pytest.fixture()
def store(sandbox: SandboxRuntime) -> PluginStore:
    return PluginStore(sandbox=sandbox)


@pytest.fixture()
def manager(
    store: PluginStore, manifests: FakeManifests, sandbox: SandboxRuntime
) -> RepositoryManager:
    return RepositoryManager(
        store=store, manifests=manifests, sandbox=sandbox, clock=lambda: 1000.0
    )


class TestAddRepository:
    async def test_installs_repository_with_scrapers(
        self, manager: RepositoryManager, store: PluginStore
    ) -> None:
        repo = await manager.add_repository(REPO_X)

        assert repo.name == "X"
        assert repo.description == "X scrapers"
        assert repo.version == "1.0"
        assert repo.last_updated == 1000.0
        assert repo.scraper_ids == (f"{repo.id}:alpha", f"{repo.id}:beta")
        scrapers = store.list_scrapers()
        assert [s.manifest_id for s in scrapers] == ["alpha", "beta"]
        assert all(s.enabled for s in scrapers)
        assert scrapers[0].repository_id == repo.id

    async def test_manifest_fields_carried_to_descriptor(
        self, manager: RepositoryManager, manifests: FakeManifests, store: PluginStore
    ) -> None:
        manifests.manifests[REPO_X] = _manifest(
            "X",
            "alpha",
            name="Alpha Streams",
            supported_types=["movie"],
            id_prefixes=["tt"],
            content_language=["de"],
            enabled=False,
        )
        await manager.add_repository(REPO_X)

        (scraper,) = store.list_scrapers()
        assert scraper.name == "Alpha Streams"
        assert scraper.capabilities.supported_types == ("movie",)
        assert scraper.capabilities.id_prefixes == ("tt",)
        assert scraper.content_language == ("de",)
        assert scraper.enabled is False
        assert scraper.manifest_enabled is False

    async def test_distinct_ids_per_install(
        self, manager: RepositoryManager
    ) -> None:
        x = await manager.add_repository(REPO_X)
        y = await manager.add_repository(REPO_Y)
        assert x.id != y.id

    async def test_duplicate_detected_before_fetch(
        self, manager: RepositoryManager, manifests: FakeManifests
    ) -> None:
        await manager.add_repository(REPO_X)
        manifests.manifest_calls.clear()

        with pytest.raises(DuplicateRepositoryError):
            await manager.add_repository("HTTPS://X.EXAMPLE/manifest.json/")
        assert manifests.manifest_calls == []

    async def test_unreachable_manifest_leaves_store_untouched(
        self, manager: RepositoryManager, store: PluginStore
    ) -> None:
        version = store.snapshot().version
        with pytest.raises(UnreachableError):
            await manager.add_repository("https://missing.example/manifest.json")
        assert store.snapshot().version == version
        assert store.list_repositories() == []

    async def test_invalid_manifest_propagates(
        self, manager: RepositoryManager, manifests: FakeManifests
    ) -> None:
        manifests.manifests[REPO_X] = InvalidManifestError("missing 'scrapers'")
        with pytest.raises(InvalidManifestError) as exc_info:
            await manager.add_repository(REPO_X)
        assert exc_info.value.kind == ErrorKind.INVALID_MANIFEST

    async def test_one_bad_script_aborts_whole_install(
        self, manager: RepositoryManager, manifests: FakeManifests, store: PluginStore
    ) -> None:
        manifests.scripts["beta"] = "import os\n"
        with pytest.raises(ScriptValidationError):
            await manager.add_repository(REPO_X)
        assert store.list_repositories() == []
        assert store.list_scrapers() == []

    async def test_script_download_failure_aborts_install(
        self, manager: RepositoryManager, manifests: FakeManifests, store: PluginStore
    ) -> None:
        manifests.scripts["alpha"] = UnreachableError("alpha.py: HTTP 500")
        with pytest.raises(UnreachableError, match="alpha.py"):
            await manager.add_repository(REPO_X)
        assert store.list_repositories() == []


class TestRefreshRepository:
    async def test_reconciles_by_manifest_id(
        self, manager: RepositoryManager, manifests: FakeManifests, store: PluginStore
    ) -> None:
        repo = await manager.add_repository(REPO_X)
        await store.set_scraper_enabled(f"{repo.id}:alpha", False)

        manifests.manifests[REPO_X] = _manifest("X v2", "alpha", "delta")
        assert await manager.refresh_repository(repo.id) is None

        refreshed = store.get_repository(repo.id)
        assert refreshed.name == "X v2"
        ids = [s.manifest_id for s in store.list_scrapers()]
        assert ids == ["alpha", "delta"]
        assert store.get_scraper(f"{repo.id}:alpha").enabled is False
        assert store.get_scraper(f"{repo.id}:delta").enabled is True

    async def test_preserves_settings(
        self, manager: RepositoryManager, store: PluginStore, scraper_factory
    ) -> None:
        repo = await manager.add_repository(REPO_X)
        alpha = store.get_scraper(f"{repo.id}:alpha")
        beta = store.get_scraper(f"{repo.id}:beta")
        await store.upsert_repository(
            repo,
            [
                scraper_factory(
                    alpha.id,
                    name=alpha.name,
                    script=alpha.script_source,
                    settings={"region": "de"},
                ),
                beta,
            ],
        )

        await manager.refresh_repository(repo.id)
        assert dict(store.get_scraper(alpha.id).settings) == {"region": "de"}

    async def test_failed_refresh_keeps_previous_state(
        self, manager: RepositoryManager, manifests: FakeManifests, store: PluginStore
    ) -> None:
        repo = await manager.add_repository(REPO_X)
        before = store.snapshot()

        manifests.manifests[REPO_X] = UnreachableError("down")
        with pytest.raises(UnreachableError):
            await manager.refresh_repository(repo.id)
        assert store.snapshot() == before

    async def test_unknown_repository(self, manager: RepositoryManager) -> None:
        with pytest.raises(RepositoryNotFoundError):
            await manager.refresh_repository("nope")

    async def test_removal_during_refresh_is_not_undone(
        self, manager: RepositoryManager, manifests: FakeManifests, store: PluginStore
    ) -> None:
        repo = await manager.add_repository(REPO_X)
        release = manifests.hold(REPO_X)
        refresh = asyncio.create_task(manager.refresh_repository(repo.id))
        await manifests.fetching.wait()

        await manager.remove_repository(repo.id)
        release.set()

        with pytest.raises(RepositoryNotFoundError):
            await refresh
        assert not store.list_repositories()
        assert not store.list_scrapers()

    async def test_toggle_during_refresh_is_kept(
        self, manager: RepositoryManager, manifests: FakeManifests, store: PluginStore
    ) -> None:
        repo = await manager.add_repository(REPO_X)
        release = manifests.hold(REPO_X)
        refresh = asyncio.create_task(manager.refresh_repository(repo.id))
        await manifests.fetching.wait()

        await store.set_scraper_enabled(f"{repo.id}:alpha", False)
        release.set()
        await refresh

        assert store.get_scraper(f"{repo.id}:alpha").enabled is False
        assert store.get_scraper(f"{repo.id}:beta").enabled is True


class TestRemoveRepository:
    async def test_removes_repository_and_scrapers(
        self, manager: RepositoryManager, store: PluginStore
    ) -> None:
        x = await manager.add_repository(REPO_X)
        await manager.add_repository(REPO_Y)

        removed = await manager.remove_repository(x.id)
        assert removed.id == x.id
        assert [r.url for r in store.list_repositories()] == [REPO_Y]
        assert [s.manifest_id for s in store.list_scrapers()] == ["gamma"]

    async def test_unknown_repository(self, manager: RepositoryManager) -> None:
        with pytest.raises(RepositoryNotFoundError):
            await manager.remove_repository("nope")


class TestScraperTesting:
    async def test_runs_disabled_scraper_directly(
        self, manager: RepositoryManager, store: PluginStore
    ) -> None:
        repo = await manager.add_repository(REPO_X)
        scraper_id = f"{repo.id}:alpha"
        await store.set_scraper_enabled(scraper_id, False)
        await store.set_plugins_globally_enabled(False)

        results = await manager.test_scraper(scraper_id)
        assert [r.url for r in results] == ["https://cdn.example/603.mp4"]

    async def test_explicit_sample_query(
        self, manager: RepositoryManager
    ) -> None:
        repo = await manager.add_repository(REPO_X)
        query = AggregationQuery(content_type="movie", external_id="tt0133093")
        results = await manager.test_scraper(f"{repo.id}:alpha", query)
        assert results[0].url == "https://cdn.example/tt0133093.mp4"

    async def test_unknown_scraper(self, manager: RepositoryManager) -> None:
        with pytest.raises(ScraperNotFoundError):
            await manager.test_scraper("nope:alpha")

    def test_default_sample_query(self, scraper_factory) -> None:
        movie = default_sample_query(scraper_factory(supported_types=("movie",)))
        assert movie.content_type == "movie"
        assert movie.external_id == "603"

        series = default_sample_query(scraper_factory(supported_types=("series",)))
        assert series.content_type == "series"
        assert (series.season, series.episode) == (1, 1)


class TestRepositoryInfo:
    async def test_summary(self, manager: RepositoryManager) -> None:
        info = await manager.fetch_repository_info(f"  {REPO_X} ")
        assert info is not None
        assert info.url == REPO_X
        assert info.name == "X"
        assert info.description == "X scrapers"

    async def test_unusable_url(self, manager: RepositoryManager) -> None:
        assert await manager.fetch_repository_info("https://nope.example/m") is None


class TestApplyDiff:
    async def test_adds_and_removes(
        self, manager: RepositoryManager, store: PluginStore
    ) -> None:
        await manager.add_repository(REPO_X)

        report = await manager.apply_diff(
            ChangeDiff(added=(REPO_Y,), removed=(REPO_X,))
        )
        assert report.ok
        assert [r.url for r in report.removed] == [REPO_X]
        assert [r.url for r in report.added] == [REPO_Y]
        assert [r.url for r in store.list_repositories()] == [REPO_Y]

    async def test_removal_matches_canonical_url(
        self, manager: RepositoryManager, store: PluginStore
    ) -> None:
        await manager.add_repository(REPO_X)
        report = await manager.apply_diff(
            ChangeDiff(added=(), removed=("https://X.example/manifest.json/",))
        )
        assert len(report.removed) == 1
        assert store.list_repositories() == []

    async def test_already_installed_is_skipped(
        self, manager: RepositoryManager
    ) -> None:
        await manager.add_repository(REPO_X)
        report = await manager.apply_diff(ChangeDiff(added=(REPO_X,), removed=()))
        assert report.skipped == (REPO_X,)
        assert report.added == ()
        assert report.ok

    async def test_failures_are_collected(
        self, manager: RepositoryManager, store: PluginStore
    ) -> None:
        broken = "https://broken.example/manifest.json"
        report = await manager.apply_diff(
            ChangeDiff(added=(broken, REPO_Y), removed=())
        )
        assert not report.ok
        (failure,) = report.failures
        assert failure.url == broken
        assert failure.error.kind == ErrorKind.UNREACHABLE
        assert [r.url for r in store.list_repositories()] == [REPO_Y]
