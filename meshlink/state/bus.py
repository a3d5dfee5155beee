"""Topic based publish/subscribe for meshlink events.

Every subscriber owns a bounded :class:`asyncio.Queue`. Publishing never
blocks: when a subscriber falls behind, the newest event is dropped for that
subscriber only and the drop is counted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from enum import StrEnum
from typing import Any

import msgspec

from ..const import BUS_SUBSCRIBER_BUFFER
from ..metrics import BUS_DROPS

logger = logging.getLogger("meshlink.bus")


class Topic(StrEnum):
    MESSAGE_RECEIVED = "message.received"
    NODE_INFO = "node.info"
    CONN_STATUS = "conn.status"
    NODE_DISCOVERED = "node.discovered"
    CHANNELS = "channels"
    MESSAGE_STATUS = "message.status"
    TRACEROUTE = "traceroute"
    CONFIG_COMPLETE = "config.complete"
    RAW_FRAME_IN = "raw.frame.in"
    RAW_FRAME_OUT = "raw.frame.out"


class BusEvent(msgspec.Struct, frozen=True):
    topic: Topic
    payload: Any


class Subscription:
    """A subscriber's view of the bus, iterable with ``async for``."""

    def __init__(self, bus: EventBus, topics: frozenset[Topic], maxsize: int) -> None:
        self._bus = bus
        self.topics = topics
        self.dropped = 0
        self._queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=maxsize)

    def wants(self, topic: Topic) -> bool:
        return not self.topics or topic in self.topics

    def offer(self, event: BusEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def qsize(self) -> int:
        return self._queue.qsize()

    async def get(self) -> BusEvent:
        return await self._queue.get()

    def get_nowait(self) -> BusEvent:
        return self._queue.get_nowait()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[BusEvent]:
        return self

    async def __anext__(self) -> BusEvent:
        return await self._queue.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class EventBus:
    def __init__(self, buffer: int = BUS_SUBSCRIBER_BUFFER) -> None:
        if buffer <= 0:
            raise ValueError("bus buffer must be positive")
        self.buffer = buffer
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, *topics: Topic, maxsize: int | None = None) -> Subscription:
        """Subscribe to *topics*; no topics means every topic."""
        sub = Subscription(self, frozenset(topics), maxsize or self.buffer)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            pass

    def publish(self, topic: Topic, payload: Any) -> int:
        """Deliver *payload* to every interested subscriber.

        Returns the number of subscribers that accepted the event.
        """
        event = BusEvent(topic, payload)
        delivered = 0
        for sub in tuple(self._subscribers):
            if not sub.wants(topic):
                continue
            if sub.offer(event):
                delivered += 1
                continue
            BUS_DROPS.labels(topic=topic.value).inc()
            logger.warning(
                "Subscriber queue full (%d); dropped %s event",
                sub.qsize(),
                topic.value,
            )
        return delivered


__all__ = ["BusEvent", "EventBus", "Subscription", "Topic"]
