"""State container of the pairing FastAPI app."""

from __future__ import annotations

from collections.abc import Callable

from starlette.datastructures import State

from scrapearr.application.use_cases.repository_pairing import PairingCoordinator


class PairingState(State):
    """Resources the pairing endpoints read from ``request.app.state``."""

    coordinator: PairingCoordinator
    logo_provider: Callable[[], bytes | None] | None
