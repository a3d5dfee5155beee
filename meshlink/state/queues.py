"""Bounded queue helpers for meshlink links and event fan-out."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterator
from typing import Annotated

import msgspec


def _make_deque() -> deque[bytes]:
    """Factory for msgspec default_factory to avoid lambdas."""
    return deque()


class QueueEvent(msgspec.Struct):
    """Outcome of a single push into a bounded queue."""

    accepted: bool = False
    dropped_chunks: int = 0
    dropped_bytes: int = 0


class BoundedByteDeque(msgspec.Struct):
    """Deque of byte blobs that evicts the oldest entries when full."""

    max_items: Annotated[int, msgspec.Meta(ge=1)]
    _queue: deque[bytes] = msgspec.field(default_factory=_make_deque)
    _bytes: int = 0

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._queue)

    @property
    def bytes_used(self) -> int:
        return self._bytes

    def clear(self) -> None:
        self._queue.clear()
        self._bytes = 0

    def append(self, chunk: bytes) -> QueueEvent:
        data = bytes(chunk)
        event = QueueEvent()
        while len(self._queue) >= self.max_items:
            removed = self._queue.popleft()
            self._bytes -= len(removed)
            event.dropped_chunks += 1
            event.dropped_bytes += len(removed)
        self._queue.append(data)
        self._bytes += len(data)
        event.accepted = True
        return event

    def popleft(self) -> bytes:
        blob = self._queue.popleft()
        self._bytes -= len(blob)
        return blob


class FrameQueueClosed(Exception):
    """Raised by :meth:`FrameQueue.get` once the queue has been closed."""


class FrameQueue:
    """Async single-consumer frame buffer with drop-oldest backpressure.

    Producers never block. Closing wakes any waiting consumer, which then
    observes :class:`FrameQueueClosed` chained to the close reason.
    """

    def __init__(self, max_items: int) -> None:
        limit = msgspec.convert(max_items, Annotated[int, msgspec.Meta(ge=1)])
        self._frames = BoundedByteDeque(max_items=limit)
        self._ready = asyncio.Event()
        self._closed = False
        self._error: BaseException | None = None

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> BaseException | None:
        return self._error

    def put_nowait(self, payload: bytes) -> QueueEvent:
        if self._closed:
            return QueueEvent()
        event = self._frames.append(payload)
        self._ready.set()
        return event

    async def get(self) -> bytes:
        while True:
            if self._closed:
                raise FrameQueueClosed("frame queue closed") from self._error
            if self._frames:
                return self._frames.popleft()
            self._ready.clear()
            await self._ready.wait()

    def close(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        if error is not None:
            self._error = error
        self._frames.clear()
        self._ready.set()


__all__ = ["BoundedByteDeque", "FrameQueue", "FrameQueueClosed", "QueueEvent"]
