"""Port for sandboxed scraper execution."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from scrapearr.domain.entities.plugins import ScraperDescriptor
from scrapearr.domain.entities.streams import AggregationQuery, StreamResult


@runtime_checkable
class SandboxPort(Protocol):
    """Runs one scraper script against one query in an isolated namespace.

    ``invoke`` raises ``InvocationError`` subclasses only; ``validate``
    raises ``ScriptValidationError`` without executing the script.
    """

    async def invoke(
        self,
        scraper: ScraperDescriptor,
        query: AggregationQuery,
        *,
        timeout: float | None = None,
    ) -> list[StreamResult]: ...

    def validate(self, source: str, *, filename: str = "<scraper>") -> None: ...
