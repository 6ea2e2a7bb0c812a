"""Domain entities for installed repositories and scrapers.

Pure value objects with no framework dependencies and no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

# Repositories use "tv" and "series" interchangeably.
_TYPE_ALIASES: dict[str, frozenset[str]] = {
    "series": frozenset({"series", "tv"}),
    "tv": frozenset({"series", "tv"}),
}


def canonicalize_url(url: str) -> str:
    """Normalize a repository URL for equality checks.

    Comparison is case-insensitive and ignores surrounding whitespace
    and trailing slashes.
    """
    return url.strip().rstrip("/").lower()


@dataclass(frozen=True)
class CapabilityManifest:
    """Content kinds and id prefixes a scraper declares support for.

    An empty tuple means the scraper does not restrict that dimension.
    """

    supported_types: tuple[str, ...] = ()
    id_prefixes: tuple[str, ...] = ()

    def supports_type(self, content_type: str) -> bool:
        if not self.supported_types:
            return True
        wanted = content_type.lower()
        aliases = _TYPE_ALIASES.get(wanted, frozenset({wanted}))
        return any(t.lower() in aliases for t in self.supported_types)

    def supports_id(self, external_id: str) -> bool:
        if not self.id_prefixes:
            return True
        return any(external_id.startswith(p) for p in self.id_prefixes)


@dataclass(frozen=True)
class ScraperDescriptor:
    """A single installed scraper and its script source."""

    id: str
    repository_id: str
    manifest_id: str
    name: str
    script_source: str
    enabled: bool = True
    capabilities: CapabilityManifest = field(default_factory=CapabilityManifest)
    version: str | None = None
    description: str = ""
    logo: str | None = None
    content_language: tuple[str, ...] = ()
    formats: tuple[str, ...] = ()
    manifest_enabled: bool = True
    settings: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )


@dataclass(frozen=True)
class RepositoryDescriptor:
    """An installed repository (collection of scrapers behind one manifest URL)."""

    id: str
    url: str
    name: str
    description: str = ""
    version: str | None = None
    scraper_ids: tuple[str, ...] = ()
    last_updated: float = 0.0

    @property
    def canonical_url(self) -> str:
        return canonicalize_url(self.url)

    @property
    def scraper_count(self) -> int:
        return len(self.scraper_ids)


@dataclass(frozen=True)
class PluginStoreSnapshot:
    """Immutable view of the plugin store at one point in time.

    ``scrapers`` is in configuration order: repositories in installation
    order, scrapers in manifest order within each repository.
    """

    global_enabled: bool = True
    repositories: tuple[RepositoryDescriptor, ...] = ()
    scrapers: tuple[ScraperDescriptor, ...] = ()
    version: int = 0

    def repository(self, repository_id: str) -> RepositoryDescriptor | None:
        for repo in self.repositories:
            if repo.id == repository_id:
                return repo
        return None

    def scraper(self, scraper_id: str) -> ScraperDescriptor | None:
        for scraper in self.scrapers:
            if scraper.id == scraper_id:
                return scraper
        return None

    def scrapers_of(self, repository_id: str) -> list[ScraperDescriptor]:
        return [s for s in self.scrapers if s.repository_id == repository_id]

    @property
    def enabled_scrapers(self) -> list[ScraperDescriptor]:
        """Scrapers passing both the global gate and their own flag."""
        if not self.global_enabled:
            return []
        return [s for s in self.scrapers if s.enabled]
