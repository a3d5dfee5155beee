"""In-process state: the event bus, node directory and queues."""

from .bus import BusEvent, EventBus, Subscription, Topic
from .nodes import NodeDirectory
from .queues import FrameQueue, FrameQueueClosed
from .stores import MessageStore, NodeStore, Notifier, PersistenceProjection

__all__ = [
    "BusEvent",
    "EventBus",
    "FrameQueue",
    "FrameQueueClosed",
    "MessageStore",
    "NodeDirectory",
    "NodeStore",
    "Notifier",
    "PersistenceProjection",
    "Subscription",
    "Topic",
]
