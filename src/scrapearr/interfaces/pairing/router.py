"""HTTP endpoints of the pairing server."""

from __future__ import annotations

from typing import Any, List, cast

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel

from scrapearr.domain.exceptions import ProposalValidationError
from scrapearr.interfaces.pairing.app_state import PairingState
from scrapearr.interfaces.pairing.page import PAIRING_PAGE

log = structlog.get_logger(__name__)

router = APIRouter(tags=["pairing"])


class ProposeRequest(BaseModel):
    urls: List[str]


class ValidateRequest(BaseModel):
    url: str


def _state(request: Request) -> PairingState:
    return cast(PairingState, request.app.state)


@router.get("/", response_class=HTMLResponse)
async def index() -> HTMLResponse:
    """Repository editor opened from the pairing QR code."""
    return HTMLResponse(content=PAIRING_PAGE)


@router.get("/healthz")
async def healthz(request: Request) -> dict[str, Any]:
    state = _state(request)
    return {"status": "ok", "pending": state.coordinator.live_change is not None}


@router.get("/repositories")
async def list_repositories(request: Request) -> dict[str, Any]:
    """Repositories currently installed on this device."""
    infos = _state(request).coordinator.repositories()
    return {
        "repositories": [
            {"url": i.url, "name": i.name, "description": i.description}
            for i in infos
        ]
    }


@router.post("/propose")
async def propose(body: ProposeRequest, request: Request) -> JSONResponse:
    """Submit a full replacement repository list for local confirmation."""
    coordinator = _state(request).coordinator
    proposer = request.client.host if request.client else None
    try:
        change = await coordinator.propose(body.urls, proposer=proposer)
    except ProposalValidationError as e:
        return JSONResponse(
            status_code=400,
            content={
                "error": e.kind.value,
                "message": e.message,
                "invalid_urls": e.invalid_urls,
            },
        )

    return JSONResponse(
        content={
            "changeId": change.change_id,
            "state": change.state.value,
            "added": list(change.diff.added),
            "removed": list(change.diff.removed),
        }
    )


@router.get("/status/{change_id}")
async def change_status(change_id: str, request: Request) -> JSONResponse:
    state = _state(request).coordinator.status(change_id)
    if state is None:
        return JSONResponse(status_code=404, content={"error": "unknown_change"})
    return JSONResponse(content={"changeId": change_id, "state": state.value})


@router.post("/validate")
async def validate(body: ValidateRequest, request: Request) -> JSONResponse:
    """Check that a single URL serves a usable repository manifest."""
    info = await _state(request).coordinator.describe(body.url)
    if info is None:
        return JSONResponse(
            status_code=400, content={"error": "invalid_manifest", "url": body.url}
        )
    return JSONResponse(
        content={"url": info.url, "name": info.name, "description": info.description}
    )


@router.get("/logo")
async def logo(request: Request) -> Response:
    provider = _state(request).logo_provider
    data = provider() if provider is not None else None
    if not data:
        return JSONResponse(status_code=404, content={"error": "no_logo"})
    return Response(content=data, media_type="image/png")
