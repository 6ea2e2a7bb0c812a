"""Single-flight in-process cache in front of an enrichment source."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import structlog

from scrapearr.domain.entities.enrichment import EnrichmentEntry, EnrichmentKey
from scrapearr.domain.ports.enrichment import EnrichmentSourcePort

log = structlog.get_logger(__name__)


class EnrichmentCache:
    """
    Memoizes (external_id, content_kind) -> metadata.

    - At most one in-flight fetch per key; concurrent callers share it.
    - A caller being cancelled does not cancel the shared fetch.
    - None results and failures are not stored, the next call retries.
    - Entries are never evicted.
    """

    def __init__(
        self,
        source: EnrichmentSourcePort,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._clock = clock
        self._entries: dict[EnrichmentKey, EnrichmentEntry] = {}
        self._inflight: dict[EnrichmentKey, asyncio.Task[Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, external_id: str, content_kind: str) -> Any:
        entry = self._entries.get((external_id, content_kind))
        return entry.value if entry is not None else None

    async def get(self, external_id: str, content_kind: str) -> Any:
        key: EnrichmentKey = (external_id, content_kind)
        entry = self._entries.get(key)
        if entry is not None:
            log.debug(
                "enrichment_cache_hit", external_id=external_id, kind=content_kind
            )
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._load(key), name=f"enrich:{external_id}")
            self._inflight[key] = task
        else:
            log.debug("enrichment_join_inflight", external_id=external_id)
        return await asyncio.shield(task)

    async def _load(self, key: EnrichmentKey) -> Any:
        external_id, content_kind = key
        try:
            value = await self._source.fetch(external_id, content_kind)
            if value is not None:
                self._entries[key] = EnrichmentEntry(
                    key=key, value=value, fetched_at=self._clock()
                )
            log.debug(
                "enrichment_fetched",
                external_id=external_id,
                kind=content_kind,
                found=value is not None,
            )
            return value
        finally:
            self._inflight.pop(key, None)
