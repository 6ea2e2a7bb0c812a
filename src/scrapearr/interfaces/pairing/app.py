"""FastAPI application factory for the pairing server."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import FastAPI, Request
from starlette.responses import Response

from scrapearr.application.use_cases.repository_pairing import PairingCoordinator
from scrapearr.interfaces.pairing.app_state import PairingState
from scrapearr.interfaces.pairing.router import router

log = structlog.get_logger(__name__)


def create_pairing_app(
    coordinator: PairingCoordinator,
    *,
    logo_provider: Callable[[], bytes | None] | None = None,
) -> FastAPI:
    app = FastAPI(
        title="Scrapearr pairing",
        description="Propose repository lists to this device",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
    )

    app.state = PairingState()
    app.state.coordinator = coordinator
    app.state.logo_provider = logo_provider
    app.include_router(router)

    @app.middleware("http")
    async def log_requests(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ):
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            log.info(
                "pairing_http_request",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
                client_host=(request.client.host if request.client else None),
            )

    return app
