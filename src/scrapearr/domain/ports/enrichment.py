"""Port for third-party metadata lookups."""

from __future__ import annotations

from typing import Protocol

from scrapearr.domain.entities.enrichment import Enrichment


class EnrichmentSourcePort(Protocol):
    """Remote metadata source. Returns None when it has no data for the id."""

    async def fetch(self, external_id: str, content_kind: str) -> Enrichment | None: ...
