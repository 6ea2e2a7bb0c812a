"""Port for durable storage of the plugin store state."""

from __future__ import annotations

from typing import Protocol

from scrapearr.domain.entities.plugins import PluginStoreSnapshot


class PluginStateRepository(Protocol):
    """Loads and saves repositories, scrapers and the global flag.

    ``load`` returns None when nothing has been saved yet.
    """

    async def load(self) -> PluginStoreSnapshot | None: ...

    async def save(self, snapshot: PluginStoreSnapshot) -> None: ...
