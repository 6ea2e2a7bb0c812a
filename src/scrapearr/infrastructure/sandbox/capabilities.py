"""Capability objects injected into scraper scripts as ``ctx``.

Scripts have no other way to reach the network or the host. Every
object handed out returns plain data (str, bytes, dict, list) so a
script cannot walk from a return value into host internals.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import parse_qs, quote, unquote, urlencode, urljoin, urlparse

import httpx
import structlog
from bs4 import BeautifulSoup
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

log = structlog.get_logger(__name__)


class NetworkError(Exception):
    """Raised by ``ctx.fetch`` when a request cannot be completed."""


@dataclass(frozen=True)
class FetchResponse:
    """Final response of a ``ctx.fetch`` call (after redirects)."""

    status: int
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body

    def json(self) -> Any:
        return json.loads(self.body)


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _b64decode(data: str | bytes) -> bytes:
    """Decode standard or url-safe base64, with or without padding."""
    raw = _as_bytes(data).strip()
    raw = raw.replace(b"-", b"+").replace(b"_", b"/")
    raw += b"=" * (-len(raw) % 4)
    try:
        return base64.b64decode(raw, validate=False)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 input: {e}") from e


class SandboxFetch:
    """HTTP GET/POST on behalf of one scraper invocation.

    Only http/https URLs are allowed. Redirects are followed and the
    final response is returned. Bodies larger than ``max_bytes`` raise
    ``NetworkError`` instead of being buffered.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        scraper_id: str,
        timeout: float,
        max_bytes: int,
        user_agent: str,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._client = client
        self._loop = loop
        self._scraper_id = scraper_id
        self._timeout = timeout
        self._max_bytes = max_bytes
        self._user_agent = user_agent
        self._closed = False

    def close(self) -> None:
        self._closed = True

    def _prepare_headers(self, headers: Mapping[str, str] | None) -> dict[str, str]:
        prepared: dict[str, str] = {}
        for key, value in (headers or {}).items():
            # httpx negotiates and decodes compression itself
            if str(key).lower() == "accept-encoding":
                continue
            prepared[str(key)] = str(value)
        if not any(k.lower() == "user-agent" for k in prepared):
            prepared["User-Agent"] = self._user_agent
        return prepared

    async def __call__(
        self,
        url: str,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: str | bytes | Mapping[str, Any] | None = None,
    ) -> FetchResponse:
        if self._closed:
            raise NetworkError("fetch used after the invocation finished")

        scheme = urlparse(str(url)).scheme.lower()
        if scheme not in ("http", "https"):
            raise NetworkError(f"unsupported URL scheme: {scheme or '(none)'}")

        request_headers = self._prepare_headers(headers)
        content: bytes | None = None
        if isinstance(body, Mapping):
            content = json.dumps(dict(body)).encode("utf-8")
            request_headers.setdefault("Content-Type", "application/json")
        elif body is not None:
            content = _as_bytes(body)

        request = self._request(method.upper(), str(url), request_headers, content)
        if self._loop is None or self._loop is _running_loop():
            return await request
        # The shared client belongs to the host loop; scripts run on a worker loop
        future = asyncio.run_coroutine_threadsafe(request, self._loop)
        return await asyncio.wrap_future(future)

    async def _request(
        self,
        method: str,
        url: str,
        request_headers: dict[str, str],
        content: bytes | None,
    ) -> FetchResponse:
        try:
            async with self._client.stream(
                method,
                url,
                headers=request_headers,
                content=content,
                timeout=self._timeout,
                follow_redirects=True,
            ) as resp:
                chunks: list[bytes] = []
                received = 0
                async for chunk in resp.aiter_bytes():
                    received += len(chunk)
                    if received > self._max_bytes:
                        raise NetworkError(
                            f"response body exceeds {self._max_bytes} bytes"
                        )
                    chunks.append(chunk)
                raw = b"".join(chunks)
                encoding = resp.charset_encoding or "utf-8"
                result = FetchResponse(
                    status=resp.status_code,
                    url=str(resp.url),
                    headers=MappingProxyType(
                        {k.lower(): v for k, v in resp.headers.items()}
                    ),
                    body=raw.decode(encoding, errors="replace"),
                )
        except httpx.HTTPError as e:
            log.debug(
                "sandbox_fetch_failed",
                scraper=self._scraper_id,
                url=url[:120],
                error=str(e),
            )
            raise NetworkError(f"{type(e).__name__}: {e}") from e

        log.debug(
            "sandbox_fetch",
            scraper=self._scraper_id,
            method=method,
            url=url[:120],
            status=result.status,
            size=len(raw),
        )
        return result


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class JsonHelpers:
    def loads(self, text: str | bytes) -> Any:
        return json.loads(text)

    def dumps(self, value: Any) -> str:
        return json.dumps(value, ensure_ascii=False)


class CryptoHelpers:
    """Hashing, base64 and AES-CBC helpers. Hashes are returned as hex."""

    def md5(self, data: str | bytes) -> str:
        return hashlib.md5(_as_bytes(data)).hexdigest()

    def sha1(self, data: str | bytes) -> str:
        return hashlib.sha1(_as_bytes(data)).hexdigest()

    def sha256(self, data: str | bytes) -> str:
        return hashlib.sha256(_as_bytes(data)).hexdigest()

    def hmac_sha256(self, key: str | bytes, data: str | bytes) -> str:
        return hmac.new(_as_bytes(key), _as_bytes(data), hashlib.sha256).hexdigest()

    def b64encode(self, data: str | bytes) -> str:
        return base64.b64encode(_as_bytes(data)).decode("ascii")

    def b64decode(self, data: str | bytes) -> str:
        return _b64decode(data).decode("utf-8", errors="replace")

    def b64decode_bytes(self, data: str | bytes) -> bytes:
        return _b64decode(data)

    def from_hex(self, data: str) -> bytes:
        return bytes.fromhex(data)

    def aes_cbc_decrypt(
        self, data: str | bytes, key: str | bytes, iv: str | bytes
    ) -> str:
        """Decrypt AES-CBC with PKCS7 padding.

        ``data`` given as str is treated as base64; ``key`` and ``iv``
        given as str are used as their UTF-8 bytes.
        """
        ciphertext = _b64decode(data) if isinstance(data, str) else bytes(data)
        decryptor = Cipher(
            algorithms.AES(_as_bytes(key)), modes.CBC(_as_bytes(iv))
        ).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8", errors="replace")


class TextHelpers:
    """URL and regex helpers returning plain values."""

    def quote(self, value: str, safe: str = "") -> str:
        return quote(value, safe=safe)

    def unquote(self, value: str) -> str:
        return unquote(value)

    def urlencode(self, params: Mapping[str, Any]) -> str:
        return urlencode(dict(params))

    def urljoin(self, base: str, url: str) -> str:
        return urljoin(base, url)

    def urlparse(self, url: str) -> dict[str, Any]:
        parts = urlparse(url)
        params = {
            k: v[0] if len(v) == 1 else v for k, v in parse_qs(parts.query).items()
        }
        return {
            "scheme": parts.scheme,
            "netloc": parts.netloc,
            "hostname": parts.hostname,
            "port": parts.port,
            "path": parts.path,
            "query": parts.query,
            "fragment": parts.fragment,
            "params": params,
        }

    def findall(self, pattern: str, text: str) -> list[Any]:
        return re.findall(pattern, text)

    def search(self, pattern: str, text: str) -> dict[str, Any] | None:
        m = re.search(pattern, text)
        if m is None:
            return None
        return {"match": m.group(0), "groups": m.groups(), "named": m.groupdict()}

    def sub(self, pattern: str, repl: str, text: str) -> str:
        return re.sub(pattern, repl, text)


class HtmlHelpers:
    """CSS selection over HTML documents (BeautifulSoup).

    Elements are returned as dicts ``{text, html, attrs}``.
    """

    @staticmethod
    def _element(tag: Any) -> dict[str, Any]:
        attrs = {
            k: " ".join(v) if isinstance(v, list) else v for k, v in tag.attrs.items()
        }
        return {"text": tag.get_text(" ", strip=True), "html": str(tag), "attrs": attrs}

    def select(self, html: str, selector: str) -> list[dict[str, Any]]:
        soup = BeautifulSoup(html, "html.parser")
        return [self._element(tag) for tag in soup.select(selector)]

    def select_one(self, html: str, selector: str) -> dict[str, Any] | None:
        soup = BeautifulSoup(html, "html.parser")
        tag = soup.select_one(selector)
        return self._element(tag) if tag is not None else None


_JSON = JsonHelpers()
_CRYPTO = CryptoHelpers()
_TEXT = TextHelpers()
_HTML = HtmlHelpers()


class ScriptContext:
    """The ``ctx`` argument of ``get_streams(query, ctx)``.

    One instance per invocation; ``close()`` revokes network access so
    references leaked past the invocation are inert.
    """

    NetworkError = NetworkError

    def __init__(
        self,
        *,
        scraper_id: str,
        fetch: SandboxFetch,
        settings: Mapping[str, Any] | None = None,
    ) -> None:
        self.scraper_id = scraper_id
        self.fetch = fetch
        self.json = _JSON
        self.crypto = _CRYPTO
        self.text = _TEXT
        self.html = _HTML
        self.settings = MappingProxyType(dict(settings or {}))
        self._log = log.bind(scraper=scraper_id)

    def log(self, *args: Any) -> None:
        self._log.info("scraper_log", message=" ".join(str(a) for a in args))

    def close(self) -> None:
        self.fetch.close()
