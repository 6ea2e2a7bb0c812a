"""Ports for the device-side collaborators of the pairing flow."""

from __future__ import annotations

from typing import Protocol


class LanAddressProvider(Protocol):
    """Returns the device's LAN address, or None when offline."""

    def get(self) -> str | None: ...


class QrRendererPort(Protocol):
    """Renders a URL into a scannable image (PNG bytes)."""

    def render(self, url: str) -> bytes: ...
