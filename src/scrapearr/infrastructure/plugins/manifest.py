"""Repository manifest schema and HTTP fetcher."""

from __future__ import annotations

import json
from typing import List, Optional
from urllib.parse import urljoin, urlparse

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from scrapearr.domain.exceptions import InvalidManifestError, UnreachableError
from scrapearr.infrastructure.sandbox.validation import script_digest

log = structlog.get_logger(__name__)

SCRAPER_ID_RE = r"^[A-Za-z0-9._-]+$"


class ScraperManifestEntry(BaseModel):
    """One scraper listed in a repository manifest."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(pattern=SCRAPER_ID_RE)
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    script: Optional[str] = None
    script_url: Optional[str] = Field(default=None, alias="scriptUrl")
    filename: Optional[str] = None
    supported_types: List[str] = Field(default_factory=list, alias="supportedTypes")
    id_prefixes: List[str] = Field(default_factory=list, alias="idPrefixes")
    enabled: bool = True
    logo: Optional[str] = None
    content_language: List[str] = Field(default_factory=list, alias="contentLanguage")
    formats: List[str] = Field(default_factory=list)

    @field_validator(
        "supported_types", "id_prefixes", "content_language", "formats", mode="before"
    )
    @classmethod
    def _none_as_empty(cls, v: object) -> object:
        return [] if v is None else v

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def script_location(self, manifest_url: str) -> str:
        """Absolute URL of the script, relative paths resolved against the manifest."""
        target = self.script_url or self.filename or f"{self.id}.py"
        return urljoin(manifest_url, target)


class RepositoryManifest(BaseModel):
    """Top-level repository manifest document."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    description: Optional[str] = None
    version: Optional[str] = None
    scrapers: List[ScraperManifestEntry]

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("scrapers")
    @classmethod
    def _unique_ids(
        cls, v: List[ScraperManifestEntry]
    ) -> List[ScraperManifestEntry]:
        seen: set[str] = set()
        for entry in v:
            if entry.id in seen:
                raise ValueError(f"duplicate scraper id '{entry.id}'")
            seen.add(entry.id)
        return v


def _describe_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors()[:3]:
        loc = ".".join(str(p) for p in err.get("loc", ())) or "document"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ManifestFetcher:
    """Downloads manifests and scraper scripts over HTTP.

    Errors are mapped to the shared taxonomy: transport failures and
    non-2xx answers raise ``UnreachableError``, unparsable documents
    raise ``InvalidManifestError``.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        timeout_seconds: float,
        max_script_bytes: int,
        user_agent: str,
    ) -> None:
        self._http = http_client
        self._timeout = timeout_seconds
        self._max_script_bytes = max_script_bytes
        self._user_agent = user_agent

    async def _get(self, url: str, *, what: str) -> httpx.Response:
        if urlparse(url).scheme.lower() not in ("http", "https"):
            raise UnreachableError(
                f"Cannot fetch {what} from '{url}': not an http(s) URL"
            )
        try:
            resp = await self._http.get(
                url,
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout,
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            log.warning(f"{what}_fetch_failed", url=url, error=str(e))
            raise UnreachableError(f"Cannot fetch {what} from '{url}': {e}") from e

        if not resp.is_success:
            log.warning(f"{what}_fetch_failed", url=url, status=resp.status_code)
            raise UnreachableError(
                f"Cannot fetch {what} from '{url}': HTTP {resp.status_code}"
            )
        return resp

    async def fetch_manifest(self, url: str) -> RepositoryManifest:
        resp = await self._get(url, what="manifest")
        try:
            data = json.loads(resp.content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidManifestError(f"Manifest at '{url}' is not valid JSON") from e

        if not isinstance(data, dict):
            raise InvalidManifestError(f"Manifest at '{url}' must be a JSON object")

        try:
            manifest = RepositoryManifest.model_validate(data)
        except ValidationError as e:
            raise InvalidManifestError(
                f"Manifest at '{url}' is invalid: {_describe_validation_error(e)}"
            ) from e

        log.debug(
            "manifest_fetched",
            url=url,
            name=manifest.name,
            scrapers=len(manifest.scrapers),
        )
        return manifest

    async def fetch_script(self, manifest_url: str, entry: ScraperManifestEntry) -> str:
        """Return the script source of *entry*, downloading it when not inline."""
        if entry.script is not None:
            code = entry.script
            location = "inline"
        else:
            location = entry.script_location(manifest_url)
            resp = await self._get(location, what="script")
            if len(resp.content) > self._max_script_bytes:
                raise InvalidManifestError(
                    f"Script '{entry.id}' exceeds {self._max_script_bytes} bytes"
                )
            code = resp.text

        log.debug(
            "scraper_script_fetched",
            scraper=entry.id,
            url=location,
            size=len(code.encode("utf-8")),
            sha256=script_digest(code),
        )
        return code
