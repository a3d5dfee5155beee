"""Test doubles shared across the meshlink test-suite."""

from __future__ import annotations

import asyncio

from meshlink.transport.base import NotConnectedError, Transport, TransportClosedError


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(Transport):
    """In-memory transport: inbound payloads are fed, outbound are recorded."""

    name = "fake"

    def __init__(self, *, fail_connects: int = 0, error: BaseException | None = None) -> None:
        super().__init__()
        self.fail_connects = fail_connects
        self.error = error or ConnectionError("radio unreachable")
        self.connect_calls = 0
        self.close_calls = 0
        self.written: list[bytes] = []
        self.inbound: asyncio.Queue[bytes | None] = asyncio.Queue()

    def status_target(self) -> str:
        return "fake0"

    async def _open(self) -> None:
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise self.error

    async def _teardown(self) -> None:
        self.close_calls += 1
        self.inbound.put_nowait(None)

    async def _read_payload(self, timeout: float | None) -> bytes:
        async with asyncio.timeout(timeout):
            payload = await self.inbound.get()
        if payload is None:
            raise TransportClosedError("transport is closed")
        return payload

    async def _write_payload(self, payload: bytes) -> None:
        if not self.is_connected():
            raise NotConnectedError("not connected")
        self.written.append(payload)

    def feed(self, payload: bytes) -> None:
        self.inbound.put_nowait(payload)

    def drop(self) -> None:
        """Simulate the link going away underneath the reader."""
        self._connected = False
        self.inbound.put_nowait(None)
