"""Domain entities for stream aggregation.

Pure value objects with no framework dependencies and no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Literal, Mapping

from scrapearr.domain.exceptions import ErrorKind

ContentType = Literal["movie", "series"]


class StreamQuality(IntEnum):
    """Ranked quality levels (higher value = better quality)."""

    UNKNOWN = 0
    CAM = 10
    TS = 20
    SD = 30
    HD_720P = 40
    HD_1080P = 50
    UHD_4K = 60


@dataclass(frozen=True)
class StreamResult:
    """One playable stream candidate produced by a scraper.

    Exactly one of ``url`` / ``magnet`` is set.
    """

    source_name: str
    title: str
    url: str | None = None
    magnet: str | None = None
    quality_tag: str | None = None
    name: str | None = None
    is_external: bool = False
    is_torrent: bool = False
    extra_headers: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    size: str | None = None
    language: str | None = None

    @property
    def target(self) -> str:
        """The playable locator: the URL, or the magnet link for torrents."""
        return self.url or self.magnet or ""


@dataclass(frozen=True)
class AggregationQuery:
    """Content request shared by every fanned-out invocation."""

    content_type: ContentType
    external_id: str
    season: int | None = None
    episode: int | None = None

    @property
    def content_kind(self) -> str:
        return self.content_type

    def as_script_mapping(self) -> dict[str, Any]:
        """The read-only view handed to scraper scripts."""
        return {
            "content_type": self.content_type,
            # Older scrapers read "media_type" and expect "tv" for series
            "media_type": "tv" if self.content_type == "series" else "movie",
            "external_id": self.external_id,
            "season": self.season,
            "episode": self.episode,
        }


class SourceStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    DISABLED = "disabled"
    PLUGINS_DISABLED = "plugins_disabled"
    UNSUPPORTED_TYPE = "unsupported_type"
    UNSUPPORTED_ID = "unsupported_id"


@dataclass(frozen=True)
class SourceOutcome:
    """State of a single scraper within one aggregation query."""

    source_id: str
    source_name: str
    status: SourceStatus = SourceStatus.PENDING
    results: tuple[StreamResult, ...] = ()
    failure: ErrorKind | None = None
    skip_reason: SkipReason | None = None
    message: str = ""
    duration_ms: float | None = None

    @property
    def attempted(self) -> bool:
        return self.status is not SourceStatus.SKIPPED


@dataclass(frozen=True)
class AggregationOutcome:
    """Snapshot of an aggregation query.

    ``sources`` is in configuration order, independent of the order in
    which sources completed. ``merged`` only contains results of
    succeeded sources.
    """

    query: AggregationQuery
    sources: tuple[SourceOutcome, ...]
    merged: tuple[StreamResult, ...] = ()
    complete: bool = False
    enrichment: Any = None

    @property
    def per_source_results(
        self,
    ) -> list[tuple[str, tuple[StreamResult, ...] | ErrorKind | SkipReason | None]]:
        """(source name, results | failure kind | skip reason) pairs."""
        out: list[
            tuple[str, tuple[StreamResult, ...] | ErrorKind | SkipReason | None]
        ] = []
        for src in self.sources:
            if src.status is SourceStatus.SUCCEEDED:
                out.append((src.source_name, src.results))
            elif src.status is SourceStatus.FAILED:
                out.append((src.source_name, src.failure))
            elif src.status is SourceStatus.SKIPPED:
                out.append((src.source_name, src.skip_reason))
            else:
                out.append((src.source_name, None))
        return out

    @property
    def pending(self) -> list[SourceOutcome]:
        return [s for s in self.sources if s.status is SourceStatus.PENDING]

    @property
    def failed(self) -> list[SourceOutcome]:
        return [s for s in self.sources if s.status is SourceStatus.FAILED]

    @property
    def succeeded(self) -> list[SourceOutcome]:
        return [s for s in self.sources if s.status is SourceStatus.SUCCEEDED]

    def source(self, source_id: str) -> SourceOutcome | None:
        for src in self.sources:
            if src.source_id == source_id:
                return src
        return None
