"""TMDB metadata source (async httpx implementation)."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from scrapearr.domain.entities.enrichment import Enrichment

log = structlog.get_logger(__name__)

_BASE_URL = "https://api.themoviedb.org/3"
_IMAGE_BASE = "https://image.tmdb.org/t/p/w500"


class TmdbEnrichmentSource:
    """Looks up titles on TMDB by IMDb id (``tt…``) or TMDB id.

    Implements ``EnrichmentSourcePort``. Accepted ids: ``tt0133093``,
    ``tmdb:603`` and bare ``603``. Anything else yields None.
    """

    def __init__(
        self,
        *,
        api_key: str,
        http_client: httpx.AsyncClient,
        language: str = "en-US",
        base_url: str = _BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._http = http_client
        self._language = language
        self._base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"api_key": self._api_key, "language": self._language, **extra}

    async def _get(self, path: str, **extra: Any) -> dict[str, Any] | None:
        """GET request with error handling. Returns parsed JSON or None."""
        url = f"{self._base_url}{path}"
        try:
            resp = await self._http.get(url, params=self._params(**extra))
            if resp.status_code == 401:
                log.error("tmdb_api_key_invalid", status=401)
                return None
            if resp.status_code == 404:
                log.debug("tmdb_resource_not_found", path=path)
                return None
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError:
            log.warning("tmdb_http_error", path=path, exc_info=True)
            return None
        except httpx.HTTPError:
            log.warning("tmdb_network_error", path=path, exc_info=True)
            return None

    @staticmethod
    def _image_url(path: str | None) -> str:
        if not path:
            return ""
        return f"{_IMAGE_BASE}{path}"

    @staticmethod
    def _endpoint(content_kind: str) -> str:
        return "tv" if content_kind in ("series", "tv") else "movie"

    async def _resolve_imdb(
        self, imdb_id: str, content_kind: str
    ) -> tuple[str, int] | None:
        data = await self._get(f"/find/{imdb_id}", external_source="imdb_id")
        if data is None:
            return None
        preferred = (
            ("tv_results", "movie_results")
            if self._endpoint(content_kind) == "tv"
            else ("movie_results", "tv_results")
        )
        for group in preferred:
            results = data.get(group) or []
            if results:
                return group.removesuffix("_results"), results[0]["id"]
        return None

    def _to_enrichment(
        self, external_id: str, content_kind: str, item: dict[str, Any]
    ) -> Enrichment | None:
        title = item.get("title") or item.get("name")
        if not title:
            return None
        date_str = item.get("release_date") or item.get("first_air_date") or ""
        rating = item.get("vote_average")
        return Enrichment(
            external_id=external_id,
            content_kind=content_kind,
            title=title,
            year=int(date_str[:4]) if len(date_str) >= 4 else None,
            overview=item.get("overview") or "",
            poster=self._image_url(item.get("poster_path")),
            backdrop=self._image_url(item.get("backdrop_path")),
            rating=float(rating) if rating else None,
            genres=tuple(g["name"] for g in item.get("genres", []) if g.get("name")),
        )

    # ------------------------------------------------------------------
    # Public API (EnrichmentSourcePort)
    # ------------------------------------------------------------------

    async def fetch(self, external_id: str, content_kind: str) -> Enrichment | None:
        resolved: tuple[str, int] | None
        if external_id.startswith("tt"):
            resolved = await self._resolve_imdb(external_id, content_kind)
        else:
            raw = external_id.removeprefix("tmdb:")
            resolved = (
                (self._endpoint(content_kind), int(raw)) if raw.isdigit() else None
            )

        if resolved is None:
            log.debug("tmdb_id_unresolved", external_id=external_id)
            return None

        endpoint, tmdb_id = resolved
        data = await self._get(f"/{endpoint}/{tmdb_id}")
        if data is None:
            return None
        return self._to_enrichment(external_id, content_kind, data)
