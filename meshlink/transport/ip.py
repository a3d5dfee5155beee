"""TCP link to a network-attached radio."""

from __future__ import annotations

import asyncio

from ..const import DEFAULT_IP_PORT, IP_DIAL_TIMEOUT
from .base import TransportConfigError, TransportError
from .stream import StreamTransport


class IPTransport(StreamTransport):
    name = "ip"

    def __init__(self, host: str, port: int = DEFAULT_IP_PORT, *, dial_timeout: float = IP_DIAL_TIMEOUT) -> None:
        super().__init__()
        self.host = host
        self.port = port or DEFAULT_IP_PORT
        self.dial_timeout = dial_timeout

    def status_target(self) -> str:
        return f"{self.host}:{self.port}"

    async def _open(self) -> None:
        if not self.host.strip():
            raise TransportConfigError("ip host is empty")
        if not 0 < self.port <= 0xFFFF:
            raise TransportConfigError(f"invalid ip port: {self.port}")

        try:
            async with asyncio.timeout(self.dial_timeout):
                reader, writer = await asyncio.open_connection(self.host, self.port)
        except TimeoutError as exc:
            raise TransportError(f"dial tcp {self.status_target()}: timed out") from exc
        except OSError as exc:
            raise TransportError(f"dial tcp {self.status_target()}: {exc}") from exc
        self._attach(reader, writer)


__all__ = ["IPTransport"]
