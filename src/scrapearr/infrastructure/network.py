"""Socket helpers for the pairing server."""

from __future__ import annotations

import socket

import structlog

log = structlog.get_logger(__name__)


class UdpLanAddressProvider:
    """Finds the LAN address by asking the kernel which interface routes outward.

    ``connect()`` on a UDP socket sends no packets; it only selects a
    source address. Returns None when there is no route (offline).
    """

    def __init__(self, route_host: str = "192.168.0.1", route_port: int = 80) -> None:
        self._route = (route_host, route_port)

    def get(self) -> str | None:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(self._route)
                address = s.getsockname()[0]
        except OSError as e:
            log.debug("lan_address_unavailable", error=str(e))
            return None
        if address.startswith("0.") or address == "0.0.0.0":
            return None
        return address


def bind_first_free(
    host: str, start_port: int, max_attempts: int
) -> socket.socket | None:
    """Bind a listening TCP socket to the first free port in the range.

    Returns None when every candidate in
    ``[start_port, start_port + max_attempts)`` is taken.
    """
    for port in range(start_port, start_port + max_attempts):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            log.debug("pairing_port_busy", port=port)
            continue
        sock.listen(128)
        sock.setblocking(False)
        return sock
    return None
