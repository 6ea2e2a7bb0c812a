"""Quality detection for scraper results using guessit and a badge table."""

from __future__ import annotations

import re

from guessit import guessit

from scrapearr.domain.entities.streams import StreamQuality

_SCREEN_SIZE_TO_QUALITY: dict[str, StreamQuality] = {
    "2160p": StreamQuality.UHD_4K,
    "1080p": StreamQuality.HD_1080P,
    "1080i": StreamQuality.HD_1080P,
    "720p": StreamQuality.HD_720P,
    "480p": StreamQuality.SD,
    "576p": StreamQuality.SD,
    "360p": StreamQuality.SD,
}

_SOURCE_TO_QUALITY: dict[str, StreamQuality] = {
    "Camera": StreamQuality.CAM,
    "HD Camera": StreamQuality.CAM,
    "Telesync": StreamQuality.TS,
    "HD Telesync": StreamQuality.TS,
}

_BADGE_TO_QUALITY: dict[str, StreamQuality] = {
    "4K": StreamQuality.UHD_4K,
    "UHD": StreamQuality.UHD_4K,
    "2160P": StreamQuality.UHD_4K,
    "1080P": StreamQuality.HD_1080P,
    "FHD": StreamQuality.HD_1080P,
    "FULLHD": StreamQuality.HD_1080P,
    "BDRIP": StreamQuality.HD_1080P,
    "BLURAY": StreamQuality.HD_1080P,
    "720P": StreamQuality.HD_720P,
    "HD": StreamQuality.HD_720P,
    "WEBRIP": StreamQuality.HD_720P,
    "WEBDL": StreamQuality.HD_720P,
    "WEB-DL": StreamQuality.HD_720P,
    "480P": StreamQuality.SD,
    "360P": StreamQuality.SD,
    "SD": StreamQuality.SD,
    "DVDRIP": StreamQuality.SD,
    "TS": StreamQuality.TS,
    "TELESYNC": StreamQuality.TS,
    "HDTS": StreamQuality.TS,
    "CAM": StreamQuality.CAM,
    "HDCAM": StreamQuality.CAM,
    "CAMRIP": StreamQuality.CAM,
}

_TOKEN_RE = re.compile(r"[A-Za-z0-9-]+")


def _quality_from_badge(badge: str) -> StreamQuality:
    """Map a badge like "1080p" or "4K HDR" to StreamQuality (case-insensitive).

    The best matching token wins, so "HDR 2160p" is UHD_4K.
    """
    exact = _BADGE_TO_QUALITY.get(badge.strip().upper())
    if exact is not None:
        return exact
    tokens = (_BADGE_TO_QUALITY.get(t.upper()) for t in _TOKEN_RE.findall(badge))
    return max((q for q in tokens if q is not None), default=StreamQuality.UNKNOWN)


def _quality_from_title(title: str) -> StreamQuality:
    guess = guessit(title)
    screen_size = guess.get("screen_size")
    if screen_size and screen_size in _SCREEN_SIZE_TO_QUALITY:
        return _SCREEN_SIZE_TO_QUALITY[screen_size]
    source = guess.get("source")
    if isinstance(source, str) and source in _SOURCE_TO_QUALITY:
        return _SOURCE_TO_QUALITY[source]
    return StreamQuality.UNKNOWN


def parse_quality(
    *,
    quality_tag: str | None = None,
    title: str | None = None,
) -> StreamQuality:
    """Determine quality of a scraper result.

    Priority: 1) the scraper's quality tag, 2) guessit(title).
    """
    if quality_tag:
        q = _quality_from_badge(quality_tag)
        if q != StreamQuality.UNKNOWN:
            return q

    if title:
        return _quality_from_title(title)

    return StreamQuality.UNKNOWN
