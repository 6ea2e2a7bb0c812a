"""End-to-end flows across the repository manager, store, sandbox and aggregator.

Real components throughout; only the network is mocked (respx).
"""

from __future__ import annotations

import httpx
import pytest
import respx

from scrapearr.application.use_cases.repository_management import RepositoryManager
from scrapearr.application.use_cases.repository_pairing import PairingCoordinator
from scrapearr.application.use_cases.stream_aggregation import StreamAggregator
from scrapearr.domain.entities.pairing import ChangeDiff, ChangeState, RepositoryInfo
from scrapearr.domain.entities.streams import AggregationQuery, SkipReason, SourceStatus
from scrapearr.domain.exceptions import ErrorKind, ProposalValidationError
from scrapearr.infrastructure.cache.diskcache_adapter import DiskcacheAdapter
from scrapearr.infrastructure.config.schema import AggregatorConfig, SandboxConfig
from scrapearr.infrastructure.persistence.plugin_state_cache import (
    CachePluginStateRepository,
)
from scrapearr.infrastructure.plugins.manifest import ManifestFetcher
from scrapearr.infrastructure.plugins.store import PluginStore
from scrapearr.infrastructure.sandbox import SandboxRuntime
from scrapearr.infrastructure.streams.quality import parse_quality

pytestmark = pytest.mark.integration

DEMO_URL = "https://demo.example/repo/manifest.json"
OTHER_URL = "https://other.example/manifest.json"

_API_SCRIPT = '''
async def get_streams(query, ctx):
    resp = await ctx.fetch("https://api.example/{name}/" + query["external_id"])
    if not resp.ok:
        return []
    return [
        {{"url": item["file"], "title": item["label"], "quality": item["q"]}}
        for item in resp.json()["items"]
    ]
'''

_FAULTY_SCRIPT = '''
async def get_streams(query, ctx):
    return [{"title": "no target"}]
'''


def _mock_repo(
    router: respx.MockRouter, url: str, name: str, scraper_ids: list[str]
) -> None:
    router.get(url).respond(
        200,
        json={"name": name, "scrapers": [{"id": sid} for sid in scraper_ids]},
    )
    base = url.rsplit("/", 1)[0]
    for sid in scraper_ids:
        router.get(f"{base}/{sid}.py").respond(
            200, text=_API_SCRIPT.format(name=sid)
        )


def _mock_api(router: respx.MockRouter, name: str, external_id: str) -> None:
    router.get(f"https://api.example/{name}/{external_id}").respond(
        200,
        json={
            "items": [
                {
                    "file": f"https://cdn.{name}.example/{external_id}.m3u8",
                    "label": f"{name} stream",
                    "q": "1080p",
                }
            ]
        },
    )


class _System:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cache: DiskcacheAdapter,
        sandbox_config: SandboxConfig,
        aggregator_config: AggregatorConfig,
    ) -> None:
        self.sandbox = SandboxRuntime(http_client=http_client, config=sandbox_config)
        self.store = PluginStore(
            state_repository=CachePluginStateRepository(cache), sandbox=self.sandbox
        )
        self.manager = RepositoryManager(
            store=self.store,
            manifests=ManifestFetcher(
                http_client=http_client,
                timeout_seconds=5.0,
                max_script_bytes=sandbox_config.max_script_bytes,
                user_agent="ScrapearrTest/1.0",
            ),
            sandbox=self.sandbox,
        )
        self.aggregator = StreamAggregator(
            store=self.store,
            sandbox=self.sandbox,
            config=aggregator_config,
            quality_fn=parse_quality,
            invocation_timeout=sandbox_config.invocation_timeout_seconds,
        )

    def repository_infos(self) -> list[RepositoryInfo]:
        return [
            RepositoryInfo(url=r.url, name=r.name, description=r.description)
            for r in self.store.list_repositories()
        ]


@pytest.fixture()
def system(
    http_client: httpx.AsyncClient,
    diskcache: DiskcacheAdapter,
    sandbox_config: SandboxConfig,
    aggregator_config: AggregatorConfig,
) -> _System:
    return _System(http_client, diskcache, sandbox_config, aggregator_config)


class TestInstallAndQuery:
    async def test_disabled_scraper_skipped_in_query(
        self, system: _System, respx_mock: respx.MockRouter
    ) -> None:
        _mock_repo(respx_mock, DEMO_URL, "Demo", ["a", "b"])
        _mock_api(respx_mock, "a", "603")
        _mock_api(respx_mock, "b", "603")

        repo = await system.manager.add_repository(DEMO_URL)
        scrapers = system.store.list_scrapers()
        assert repo.name == "Demo"
        assert len(scrapers) == 2
        assert all(s.enabled and s.repository_id == repo.id for s in scrapers)

        a_id = f"{repo.id}:a"
        await system.store.set_scraper_enabled(a_id, False)

        outcome = await system.aggregator.collect(
            AggregationQuery(content_type="movie", external_id="603")
        )

        assert outcome.complete
        assert [r.url for r in outcome.merged] == [
            "https://cdn.b.example/603.m3u8"
        ]
        skipped = outcome.source(a_id)
        assert skipped.status is SourceStatus.SKIPPED
        assert skipped.skip_reason is SkipReason.DISABLED

    async def test_faulty_and_failing_sources_are_isolated(
        self, system: _System, respx_mock: respx.MockRouter
    ) -> None:
        respx_mock.get(DEMO_URL).respond(
            200,
            json={
                "name": "Demo",
                "scrapers": [
                    {"id": "good"},
                    {"id": "bad", "script": _FAULTY_SCRIPT},
                    {"id": "down"},
                ],
            },
        )
        for sid in ("good", "down"):
            respx_mock.get(f"https://demo.example/repo/{sid}.py").respond(
                200, text=_API_SCRIPT.format(name=sid)
            )
        _mock_api(respx_mock, "good", "tt0133093")
        respx_mock.get("https://api.example/down/tt0133093").mock(
            side_effect=httpx.ConnectError("refused")
        )

        repo = await system.manager.add_repository(DEMO_URL)
        outcome = await system.aggregator.collect(
            AggregationQuery(content_type="movie", external_id="tt0133093")
        )

        assert outcome.source(f"{repo.id}:good").status is SourceStatus.SUCCEEDED
        bad = outcome.source(f"{repo.id}:bad")
        assert bad.failure is ErrorKind.MALFORMED_OUTPUT
        down = outcome.source(f"{repo.id}:down")
        assert down.failure is ErrorKind.UNREACHABLE
        assert [r.url for r in outcome.merged] == [
            "https://cdn.good.example/tt0133093.m3u8"
        ]

    async def test_state_survives_restart(
        self,
        system: _System,
        respx_mock: respx.MockRouter,
        diskcache: DiskcacheAdapter,
    ) -> None:
        _mock_repo(respx_mock, DEMO_URL, "Demo", ["a"])
        repo = await system.manager.add_repository(DEMO_URL)
        await system.store.set_scraper_enabled(f"{repo.id}:a", False)

        state = CachePluginStateRepository(diskcache)
        restarted = PluginStore(state_repository=state)
        await restarted.load()

        assert [r.url for r in restarted.list_repositories()] == [DEMO_URL]
        assert restarted.get_scraper(f"{repo.id}:a").enabled is False


class TestPairingFlow:
    async def test_second_proposal_supersedes_first_and_applies_diff(
        self, system: _System, respx_mock: respx.MockRouter
    ) -> None:
        _mock_repo(respx_mock, DEMO_URL, "Demo", ["a"])
        _mock_repo(respx_mock, OTHER_URL, "Other", ["z"])
        await system.manager.add_repository(DEMO_URL)

        coordinator = PairingCoordinator(
            current_repositories=system.repository_infos,
            manifest_fetcher=system.manager.fetch_repository_info,
            apply_change=system.manager.apply_diff,
        )

        first = await coordinator.propose([DEMO_URL])
        second = await coordinator.propose([DEMO_URL, OTHER_URL])
        assert coordinator.status(first.change_id) is ChangeState.EXPIRED

        confirmed = await coordinator.confirm_change(second.change_id)

        assert confirmed.diff == ChangeDiff(added=(OTHER_URL,), removed=())
        assert [r.url for r in system.store.list_repositories()] == [
            DEMO_URL,
            OTHER_URL,
        ]

    async def test_invalid_manifest_rejected_at_proposal(
        self, system: _System, respx_mock: respx.MockRouter
    ) -> None:
        respx_mock.get(OTHER_URL).respond(200, text="<html>not json</html>")
        coordinator = PairingCoordinator(
            current_repositories=system.repository_infos,
            manifest_fetcher=system.manager.fetch_repository_info,
            apply_change=system.manager.apply_diff,
        )

        with pytest.raises(ProposalValidationError) as exc_info:
            await coordinator.propose([OTHER_URL])
        assert exc_info.value.kind is ErrorKind.INVALID_PROPOSAL
        assert coordinator.live_change is None
