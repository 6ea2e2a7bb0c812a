"""Plugin store state persisted via CachePort (diskcache)."""

from __future__ import annotations

import json
from typing import Any

import structlog

from scrapearr.domain.entities.plugins import (
    CapabilityManifest,
    PluginStoreSnapshot,
    RepositoryDescriptor,
    ScraperDescriptor,
)
from scrapearr.domain.ports.cache import CachePort

log = structlog.get_logger(__name__)

_STATE_KEY = "plugins:state"
_SCHEMA_VERSION = 1


def _serialize_scraper(s: ScraperDescriptor) -> dict[str, Any]:
    return {
        "id": s.id,
        "repository_id": s.repository_id,
        "manifest_id": s.manifest_id,
        "name": s.name,
        "script_source": s.script_source,
        "enabled": s.enabled,
        "supported_types": list(s.capabilities.supported_types),
        "id_prefixes": list(s.capabilities.id_prefixes),
        "version": s.version,
        "description": s.description,
        "logo": s.logo,
        "content_language": list(s.content_language),
        "formats": list(s.formats),
        "manifest_enabled": s.manifest_enabled,
        "settings": dict(s.settings),
    }


def _deserialize_scraper(d: dict[str, Any]) -> ScraperDescriptor:
    return ScraperDescriptor(
        id=d["id"],
        repository_id=d["repository_id"],
        manifest_id=d["manifest_id"],
        name=d["name"],
        script_source=d["script_source"],
        enabled=d.get("enabled", True),
        capabilities=CapabilityManifest(
            supported_types=tuple(d.get("supported_types", [])),
            id_prefixes=tuple(d.get("id_prefixes", [])),
        ),
        version=d.get("version"),
        description=d.get("description", ""),
        logo=d.get("logo"),
        content_language=tuple(d.get("content_language", [])),
        formats=tuple(d.get("formats", [])),
        manifest_enabled=d.get("manifest_enabled", True),
        settings=d.get("settings", {}),
    )


def _serialize_repository(r: RepositoryDescriptor) -> dict[str, Any]:
    return {
        "id": r.id,
        "url": r.url,
        "name": r.name,
        "description": r.description,
        "version": r.version,
        "scraper_ids": list(r.scraper_ids),
        "last_updated": r.last_updated,
    }


def _deserialize_repository(d: dict[str, Any]) -> RepositoryDescriptor:
    return RepositoryDescriptor(
        id=d["id"],
        url=d["url"],
        name=d["name"],
        description=d.get("description", ""),
        version=d.get("version"),
        scraper_ids=tuple(d.get("scraper_ids", [])),
        last_updated=d.get("last_updated", 0.0),
    )


def serialize_state(snapshot: PluginStoreSnapshot) -> str:
    """Serialize a store snapshot to a JSON string."""
    return json.dumps(
        {
            "schema": _SCHEMA_VERSION,
            "global_enabled": snapshot.global_enabled,
            "repositories": [_serialize_repository(r) for r in snapshot.repositories],
            "scrapers": [_serialize_scraper(s) for s in snapshot.scrapers],
        }
    )


def deserialize_state(data: str) -> PluginStoreSnapshot:
    """Deserialize a store snapshot from a JSON string."""
    d = json.loads(data)
    return PluginStoreSnapshot(
        global_enabled=d.get("global_enabled", True),
        repositories=tuple(
            _deserialize_repository(r) for r in d.get("repositories", [])
        ),
        scrapers=tuple(_deserialize_scraper(s) for s in d.get("scrapers", [])),
    )


class CachePluginStateRepository:
    """Stores the plugin store state under a single non-expiring key."""

    def __init__(self, cache: CachePort) -> None:
        self.cache = cache

    async def save(self, snapshot: PluginStoreSnapshot) -> None:
        await self.cache.set(_STATE_KEY, serialize_state(snapshot), ttl=0)
        log.debug(
            "plugin_state_saved",
            repositories=len(snapshot.repositories),
            scrapers=len(snapshot.scrapers),
        )

    async def load(self) -> PluginStoreSnapshot | None:
        data = await self.cache.get(_STATE_KEY)
        if data is None:
            log.debug("plugin_state_not_found")
            return None

        try:
            snapshot = deserialize_state(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            log.error("plugin_state_deserialize_error", error=str(e))
            return None

        log.debug(
            "plugin_state_loaded",
            repositories=len(snapshot.repositories),
            scrapers=len(snapshot.scrapers),
        )
        return snapshot
