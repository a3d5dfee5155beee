"""Transport contract shared by the serial, TCP and Bluetooth links."""

from __future__ import annotations

import abc
import asyncio
import logging

from ..metrics import FRAMES_IN, FRAMES_OUT


class TransportError(ConnectionError):
    """Base class for link failures that end a connection attempt."""


class TransportConfigError(TransportError, ValueError):
    """Endpoint configuration can never succeed; retrying is pointless."""


class NotConnectedError(TransportError):
    """Raised when I/O is attempted on a link that is not open."""


class TransportClosedError(TransportError):
    """The link was torn down; ``__cause__`` holds the failure, if any."""


class ShortWriteError(TransportError):
    """The link accepted fewer bytes than the payload held."""


class Transport(abc.ABC):
    """One link to the radio.

    A single reader and a single writer may run concurrently. ``connect``
    and ``close`` serialize on ``_state_lock``.
    """

    name: str = "transport"

    def __init__(self) -> None:
        self._state_lock = asyncio.Lock()
        self._connected = False
        self.logger = logging.getLogger(f"meshlink.transport.{self.name}")

    def is_connected(self) -> bool:
        return self._connected

    @abc.abstractmethod
    def status_target(self) -> str:
        """Human readable endpoint, shown next to the connection state."""

    async def connect(self) -> None:
        async with self._state_lock:
            if self._connected:
                return
            await self._open()
            self._connected = True
            self.logger.info("Connected to %s", self.status_target())

    async def close(self) -> None:
        async with self._state_lock:
            was_connected = self._connected
            self._connected = False
            await self._teardown()
            if was_connected:
                self.logger.info("Disconnected from %s", self.status_target())

    async def read_frame(self, timeout: float | None = None) -> bytes:
        if not self._connected:
            raise NotConnectedError(f"{self.name} transport is not connected")
        payload = await self._read_payload(timeout)
        FRAMES_IN.labels(transport=self.name).inc()
        return payload

    async def write_frame(self, payload: bytes, timeout: float | None = None) -> None:
        if not self._connected:
            raise NotConnectedError(f"{self.name} transport is not connected")
        async with asyncio.timeout(timeout):
            await self._write_payload(payload)
        FRAMES_OUT.labels(transport=self.name).inc()

    @abc.abstractmethod
    async def _open(self) -> None:
        """Open the link or raise :class:`TransportError`."""

    @abc.abstractmethod
    async def _teardown(self) -> None:
        """Release link resources. Must be safe to call repeatedly."""

    @abc.abstractmethod
    async def _read_payload(self, timeout: float | None) -> bytes:
        """Return the next payload, raising :class:`TimeoutError` if none starts within *timeout*."""

    @abc.abstractmethod
    async def _write_payload(self, payload: bytes) -> None: ...

    async def _fail(self, exc: BaseException) -> None:
        """Mark the link dead after an I/O failure and release it."""
        self._connected = False
        await self._teardown()
        self.logger.warning("%s link failed: %s", self.name, exc)


__all__ = [
    "NotConnectedError",
    "ShortWriteError",
    "Transport",
    "TransportClosedError",
    "TransportConfigError",
    "TransportError",
]
