"""Stream aggregation use case.

Query -> eligible scrapers -> parallel sandbox invocations (bounded)
-> incremental outcomes -> deterministic merge.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any, Protocol

import structlog

from scrapearr.domain.entities.plugins import PluginStoreSnapshot, ScraperDescriptor
from scrapearr.domain.entities.streams import (
    AggregationOutcome,
    AggregationQuery,
    SkipReason,
    SourceOutcome,
    SourceStatus,
    StreamQuality,
    StreamResult,
)
from scrapearr.domain.exceptions import ErrorKind, InvocationError
from scrapearr.domain.ports.sandbox import SandboxPort

log = structlog.get_logger(__name__)


class _AggregatorConfig(Protocol):
    """Configuration values consumed by StreamAggregator."""

    max_concurrent_scrapers: int
    query_deadline_seconds: float
    max_results: int
    sort_by_quality: bool


class _SnapshotSource(Protocol):
    def snapshot(self) -> PluginStoreSnapshot: ...


class _EnrichmentLookup(Protocol):
    async def get(self, external_id: str, content_kind: str) -> Any: ...


# Injected pure function: (quality_tag=..., title=...) -> StreamQuality
_QualityFn = Callable[..., StreamQuality]

_BTIH_RE = re.compile(r"xt=urn:btih:([A-Za-z0-9]+)", re.IGNORECASE)

RatedResult = tuple[StreamResult, StreamQuality]

# (scraper id, content type, external id, season, episode)
_FlightKey = tuple[str, str, str, int | None, int | None]


@dataclass
class _Flight:
    """One running invocation shared by every query that asks for it."""

    task: asyncio.Task[list[StreamResult]]
    waiters: int = 0


def skip_reason(
    snapshot: PluginStoreSnapshot,
    scraper: ScraperDescriptor,
    query: AggregationQuery,
) -> SkipReason | None:
    """Why *scraper* does not take part in *query*, or None if it is eligible."""
    if not snapshot.global_enabled:
        return SkipReason.PLUGINS_DISABLED
    if not scraper.enabled:
        return SkipReason.DISABLED
    if not scraper.capabilities.supports_type(query.content_type):
        return SkipReason.UNSUPPORTED_TYPE
    if not scraper.capabilities.supports_id(query.external_id):
        return SkipReason.UNSUPPORTED_ID
    return None


def _target_key(result: StreamResult) -> str:
    if result.magnet:
        m = _BTIH_RE.search(result.magnet)
        if m:
            return f"btih:{m.group(1).lower()}"
        return result.magnet.strip()
    return (result.url or "").strip()


def merge_results(
    per_source: Sequence[Sequence[RatedResult]],
    *,
    max_results: int,
    sort_by_quality: bool = True,
) -> tuple[StreamResult, ...]:
    """Merge per-source results given in configuration order.

    Concatenates by source index then result index, drops duplicates of
    (normalized target, quality) keeping the first occurrence, stable
    sorts by quality (best first) when enabled, then caps the list.
    The output depends only on the input, not on completion order.
    """
    seen: set[tuple[str, int]] = set()
    unique: list[RatedResult] = []
    for results in per_source:
        for result, quality in results:
            key = (_target_key(result), int(quality))
            if key in seen:
                continue
            seen.add(key)
            unique.append((result, quality))

    if sort_by_quality:
        unique.sort(key=lambda rq: rq[1], reverse=True)

    return tuple(result for result, _ in unique[:max_results])


class StreamAggregator:
    """Fan a query out to all eligible scrapers and merge their results.

    ``query()`` yields an ``AggregationOutcome`` once at start and again
    after every source completes. Closing the iterator (or cancelling
    the consuming task) cancels all outstanding invocations.

    The concurrency limit is shared by all queries on one aggregator.
    Identical invocations (same scraper and same content request) that
    overlap run once; an invocation is cancelled only when every query
    waiting on it has gone away.
    """

    def __init__(
        self,
        *,
        store: _SnapshotSource,
        sandbox: SandboxPort,
        config: _AggregatorConfig,
        quality_fn: _QualityFn,
        invocation_timeout: float | None = None,
        enrichment: _EnrichmentLookup | None = None,
    ) -> None:
        self._store = store
        self._sandbox = sandbox
        self._quality_fn = quality_fn
        self._invocation_timeout = invocation_timeout
        self._enrichment = enrichment
        self._max_concurrent = config.max_concurrent_scrapers
        self._deadline_seconds = config.query_deadline_seconds
        self._max_results = config.max_results
        self._sort_by_quality = config.sort_by_quality
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._inflight: dict[_FlightKey, _Flight] = {}

    async def collect(self, query: AggregationQuery) -> AggregationOutcome:
        """Run *query* to completion and return the final outcome."""
        final: AggregationOutcome | None = None
        async for outcome in self.query(query):
            final = outcome
        if final is None:
            raise RuntimeError("aggregation produced no outcome")
        return final

    async def query(self, query: AggregationQuery) -> AsyncIterator[AggregationOutcome]:
        snapshot = self._store.snapshot()
        outcomes: list[SourceOutcome] = []
        eligible: list[tuple[int, ScraperDescriptor]] = []
        for index, scraper in enumerate(snapshot.scrapers):
            reason = skip_reason(snapshot, scraper, query)
            if reason is None:
                outcomes.append(
                    SourceOutcome(source_id=scraper.id, source_name=scraper.name)
                )
                eligible.append((index, scraper))
            else:
                outcomes.append(
                    SourceOutcome(
                        source_id=scraper.id,
                        source_name=scraper.name,
                        status=SourceStatus.SKIPPED,
                        skip_reason=reason,
                    )
                )

        log.info(
            "aggregation_start",
            content_type=query.content_type,
            external_id=query.external_id,
            season=query.season,
            episode=query.episode,
            eligible=len(eligible),
            skipped=len(outcomes) - len(eligible),
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._deadline_seconds
        rated: dict[int, tuple[RatedResult, ...]] = {}

        tasks: dict[asyncio.Task[SourceOutcome], int] = {}
        for index, scraper in eligible:
            task = asyncio.create_task(
                self._invoke_one(scraper, query, outcomes[index]),
                name=f"scraper:{scraper.id}",
            )
            tasks[task] = index

        enrichment_task: asyncio.Task[Any] | None = None
        if self._enrichment is not None:
            enrichment_task = asyncio.create_task(self._enrich(self._enrichment, query))

        def outcome(complete: bool) -> AggregationOutcome:
            return AggregationOutcome(
                query=query,
                sources=tuple(outcomes),
                merged=merge_results(
                    [rated.get(i, ()) for i in range(len(outcomes))],
                    max_results=self._max_results,
                    sort_by_quality=self._sort_by_quality,
                ),
                complete=complete,
                enrichment=_enrichment_value(enrichment_task),
            )

        try:
            if not tasks:
                await self._await_enrichment(enrichment_task, deadline)
                yield outcome(complete=True)
                return

            yield outcome(complete=False)

            pending: set[asyncio.Task[SourceOutcome]] = set(tasks)
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    break
                for task in sorted(done, key=tasks.__getitem__):
                    index = tasks[task]
                    finished = task.result()
                    outcomes[index] = finished
                    rated[index] = self._rate(finished)
                if not pending:
                    await self._await_enrichment(enrichment_task, deadline)
                yield outcome(complete=not pending)

            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                for task in sorted(pending, key=tasks.__getitem__):
                    index = tasks[task]
                    outcomes[index] = replace(
                        outcomes[index],
                        status=SourceStatus.FAILED,
                        failure=ErrorKind.TIMEOUT,
                        message="query deadline exceeded",
                    )
                log.warning(
                    "aggregation_deadline_exceeded",
                    external_id=query.external_id,
                    deadline=self._deadline_seconds,
                    timed_out=[outcomes[tasks[t]].source_id for t in pending],
                )
                yield outcome(complete=True)

            final = outcome(complete=True)
            log.info(
                "aggregation_complete",
                external_id=query.external_id,
                succeeded=len(final.succeeded),
                failed=len(final.failed),
                merged=len(final.merged),
            )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if enrichment_task is not None and not enrichment_task.done():
                enrichment_task.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _invoke_one(
        self,
        scraper: ScraperDescriptor,
        query: AggregationQuery,
        pending: SourceOutcome,
    ) -> SourceOutcome:
        t0 = time.perf_counter()
        try:
            results = await self._join(self._flight(scraper, query))
        except InvocationError as e:
            return replace(
                pending,
                status=SourceStatus.FAILED,
                failure=e.kind,
                message=e.message,
                duration_ms=_elapsed_ms(t0),
            )
        except Exception as e:
            log.error("aggregation_source_crashed", scraper=scraper.id, exc_info=True)
            return replace(
                pending,
                status=SourceStatus.FAILED,
                failure=ErrorKind.SCRIPT_FAULT,
                message=f"{type(e).__name__}: {e}",
                duration_ms=_elapsed_ms(t0),
            )

        log.debug(
            "aggregation_source_done",
            scraper=scraper.id,
            result_count=len(results),
            duration_ms=_elapsed_ms(t0),
        )
        return replace(
            pending,
            status=SourceStatus.SUCCEEDED,
            results=tuple(results),
            duration_ms=_elapsed_ms(t0),
        )

    def _flight(self, scraper: ScraperDescriptor, query: AggregationQuery) -> _Flight:
        key: _FlightKey = (
            scraper.id,
            query.content_type,
            query.external_id,
            query.season,
            query.episode,
        )
        flight = self._inflight.get(key)
        if flight is not None:
            log.debug("aggregation_source_shared", scraper=scraper.id)
            return flight

        flight = _Flight(
            task=asyncio.create_task(
                self._execute(scraper, query), name=f"scraper:{scraper.id}"
            )
        )
        self._inflight[key] = flight

        def forget(_: asyncio.Task[list[StreamResult]]) -> None:
            if self._inflight.get(key) is flight:
                del self._inflight[key]

        flight.task.add_done_callback(forget)
        return flight

    async def _join(self, flight: _Flight) -> list[StreamResult]:
        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            # Last query waiting on it: stop the invocation too
            if flight.waiters == 1 and not flight.task.done():
                flight.task.cancel()
                await asyncio.wait({flight.task})
            raise
        finally:
            flight.waiters -= 1

    async def _execute(
        self, scraper: ScraperDescriptor, query: AggregationQuery
    ) -> list[StreamResult]:
        async with self._semaphore:
            return await self._sandbox.invoke(
                scraper, query, timeout=self._invocation_timeout
            )

    def _rate(self, source: SourceOutcome) -> tuple[RatedResult, ...]:
        if source.status is not SourceStatus.SUCCEEDED:
            return ()
        return tuple(
            (r, self._quality_fn(quality_tag=r.quality_tag, title=r.title))
            for r in source.results
        )

    async def _enrich(
        self, enrichment: _EnrichmentLookup, query: AggregationQuery
    ) -> Any:
        try:
            return await enrichment.get(query.external_id, query.content_kind)
        except Exception:
            log.warning(
                "aggregation_enrichment_failed",
                external_id=query.external_id,
                exc_info=True,
            )
            return None

    @staticmethod
    async def _await_enrichment(
        task: asyncio.Task[Any] | None, deadline: float
    ) -> None:
        if task is None or task.done():
            return
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining > 0:
            await asyncio.wait({task}, timeout=remaining)


def _enrichment_value(task: asyncio.Task[Any] | None) -> Any:
    if task is None or not task.done() or task.cancelled():
        return None
    return task.result()


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)
