"""Pydantic validation of the list a scraper script returns."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Dict, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from scrapearr.domain.entities.streams import StreamResult
from scrapearr.domain.exceptions import MalformedOutputError


class ScriptStreamItem(BaseModel):
    """One item of a script's result list.

    ``url`` may be a string or ``{"url": ...}``. Torrents are given as a
    ``magnet`` link or a bare ``infoHash``.
    """

    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, coerce_numbers_to_str=True
    )

    url: Optional[str] = None
    magnet: Optional[str] = None
    info_hash: Optional[str] = Field(default=None, alias="infoHash")
    title: Optional[str] = None
    name: Optional[str] = None
    quality: Optional[str] = None
    size: Optional[str] = None
    language: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    external: bool = False

    @field_validator("url", mode="before")
    @classmethod
    def _unwrap_url(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return v.get("url")
        return v

    @field_validator("headers", mode="before")
    @classmethod
    def _default_headers(cls, v: Any) -> Any:
        return {} if v is None else v

    @model_validator(mode="after")
    def _require_target(self) -> "ScriptStreamItem":
        if self.url and self.url.lower().startswith("magnet:"):
            self.magnet, self.url = self.url, None
        if not (self.url or self.magnet or self.info_hash):
            raise ValueError("stream item needs 'url', 'magnet' or 'infoHash'")
        return self

    def to_result(self, source_name: str) -> StreamResult:
        magnet = self.magnet
        if magnet is None and self.info_hash and not self.url:
            magnet = f"magnet:?xt=urn:btih:{self.info_hash.strip().lower()}"
        url = None if magnet else self.url
        return StreamResult(
            source_name=source_name,
            title=self.title or self.name or source_name,
            url=url,
            magnet=magnet,
            quality_tag=self.quality,
            name=self.name,
            is_external=self.external,
            is_torrent=magnet is not None,
            extra_headers=MappingProxyType(dict(self.headers)),
            size=self.size,
            language=self.language,
        )


def parse_script_output(raw: Any, *, source_name: str) -> list[StreamResult]:
    """Convert a script's return value into stream results.

    Raises:
        MalformedOutputError: *raw* is not a list of valid stream items.
    """
    if not isinstance(raw, (list, tuple)):
        raise MalformedOutputError(
            f"expected a list of stream items, got {type(raw).__name__}"
        )

    results: list[StreamResult] = []
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise MalformedOutputError(
                f"item {index}: expected a mapping, got {type(item).__name__}"
            )
        try:
            parsed = ScriptStreamItem.model_validate(dict(item))
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ())) or "item"
            raise MalformedOutputError(
                f"item {index}: {loc}: {first.get('msg', 'invalid')}"
            ) from e
        results.append(parsed.to_result(source_name))
    return results
