"""Ephemeral local HTTP server hosting the pairing endpoints."""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable
from typing import Any

import structlog
import uvicorn

from scrapearr.application.use_cases.repository_pairing import (
    ApplyChange,
    CurrentRepositories,
    ManifestFetcher,
    PairingCoordinator,
    ProposalListener,
)
from scrapearr.domain.entities.pairing import PendingChange
from scrapearr.domain.exceptions import PortExhaustedError
from scrapearr.domain.ports.network import LanAddressProvider, QrRendererPort
from scrapearr.infrastructure.config.schema import PairingConfig
from scrapearr.infrastructure.network import bind_first_free
from scrapearr.interfaces.pairing.app import create_pairing_app

log = structlog.get_logger(__name__)

_STARTUP_TIMEOUT_SECONDS = 5.0


class PairingServer:
    """A running pairing server bound to one port of the configured range.

    Create with ``start_on_available_port`` (None when every port is
    taken) or ``start_or_raise``. ``stop()`` shuts the listener down and
    expires any live proposal.
    """

    def __init__(
        self,
        *,
        coordinator: PairingCoordinator,
        server: uvicorn.Server,
        serve_task: asyncio.Task[None],
        sock: socket.socket,
        host: str,
        lan_address_provider: LanAddressProvider | None = None,
        qr_renderer: QrRendererPort | None = None,
    ) -> None:
        self.coordinator = coordinator
        self._server = server
        self._serve_task = serve_task
        self._sock = sock
        self._host = host
        self._lan = lan_address_provider
        self._qr = qr_renderer
        self.port: int = sock.getsockname()[1]

    @classmethod
    async def start_on_available_port(
        cls,
        *,
        config: PairingConfig,
        current_repositories: CurrentRepositories,
        manifest_fetcher: ManifestFetcher,
        apply_change: ApplyChange,
        on_change_proposed: ProposalListener | None = None,
        logo_provider: Callable[[], bytes | None] | None = None,
        lan_address_provider: LanAddressProvider | None = None,
        qr_renderer: QrRendererPort | None = None,
        log_config: dict[str, Any] | None = None,
    ) -> PairingServer | None:
        sock = bind_first_free(config.host, config.start_port, config.max_attempts)
        if sock is None:
            log.warning(
                "pairing_ports_exhausted",
                start_port=config.start_port,
                max_attempts=config.max_attempts,
            )
            return None

        coordinator = PairingCoordinator(
            current_repositories=current_repositories,
            manifest_fetcher=manifest_fetcher,
            apply_change=apply_change,
            on_change_proposed=on_change_proposed,
            ttl_seconds=config.proposal_ttl_seconds,
        )
        app = create_pairing_app(coordinator, logo_provider=logo_provider)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                lifespan="off",
                access_log=False,
                log_config=log_config,
            )
        )
        serve_task = asyncio.create_task(
            server.serve(sockets=[sock]), name="pairing-server"
        )

        loop = asyncio.get_running_loop()
        give_up = loop.time() + _STARTUP_TIMEOUT_SECONDS
        while not server.started:
            if serve_task.done() or loop.time() > give_up:
                server.should_exit = True
                sock.close()
                cause = serve_task.exception() if serve_task.done() else None
                raise RuntimeError("pairing server failed to start") from cause
            await asyncio.sleep(0.01)

        instance = cls(
            coordinator=coordinator,
            server=server,
            serve_task=serve_task,
            sock=sock,
            host=config.host,
            lan_address_provider=lan_address_provider,
            qr_renderer=qr_renderer,
        )
        log.info("pairing_server_started", port=instance.port, url=instance.pairing_url)
        return instance

    @classmethod
    async def start_or_raise(cls, **kwargs: Any) -> PairingServer:
        """Like ``start_on_available_port`` but raises ``PortExhaustedError``."""
        server = await cls.start_on_available_port(**kwargs)
        if server is None:
            config: PairingConfig = kwargs["config"]
            raise PortExhaustedError(
                f"No free port in {config.start_port}-"
                f"{config.start_port + config.max_attempts - 1}"
            )
        return server

    @property
    def pairing_url(self) -> str:
        """URL to open on the remote device."""
        address = self._lan.get() if self._lan is not None else None
        if address is None:
            address = "127.0.0.1" if self._host in ("0.0.0.0", "") else self._host
        return f"http://{address}:{self.port}/"

    def qr_image(self) -> bytes | None:
        if self._qr is None:
            return None
        return self._qr.render(self.pairing_url)

    @property
    def running(self) -> bool:
        return not self._serve_task.done()

    async def confirm_change(self, change_id: str) -> PendingChange | None:
        return await self.coordinator.confirm_change(change_id)

    async def reject_change(self, change_id: str) -> PendingChange | None:
        return await self.coordinator.reject_change(change_id)

    async def stop(self) -> None:
        self._server.should_exit = True
        try:
            await self._serve_task
        finally:
            self._sock.close()
            self.coordinator.expire_live()
            log.info("pairing_server_stopped", port=self.port)
