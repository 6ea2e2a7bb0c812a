"""Domain entities for metadata enrichment."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

EnrichmentKey = tuple[str, str]  # (external_id, content_kind)


@dataclass(frozen=True)
class Enrichment:
    """Descriptive metadata for one title (TMDB-derived)."""

    external_id: str
    content_kind: str
    title: str
    year: int | None = None
    overview: str = ""
    poster: str = ""
    backdrop: str = ""
    rating: float | None = None
    genres: tuple[str, ...] = ()


@dataclass(frozen=True)
class EnrichmentEntry:
    """A populated cache slot."""

    key: EnrichmentKey
    value: Any
    fetched_at: float = field(default=0.0)
