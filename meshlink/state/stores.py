"""Collaborator interfaces for persistence and notifications.

meshlink does not own storage. Applications hand in objects satisfying the
protocols below and :class:`PersistenceProjection` forwards bus events to
them. Store calls may block, so they run via :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Protocol

from ..protocol.structures import ChatMessage, MessageDirection, Node, NodeUpdate
from .bus import EventBus, Topic
from .nodes import NodeDirectory

logger = logging.getLogger("meshlink.stores")


class MessageStore(Protocol):
    def save_message(self, message: ChatMessage) -> None: ...

    def mark_read(self, chat_id: str) -> None: ...

    def get_unread_counts(self) -> Mapping[str, int]: ...


class NodeStore(Protocol):
    def save_node(self, node: Node) -> None: ...

    def get_node(self, node_id: str) -> Node | None: ...

    def list_node_ids(self) -> Iterable[str]: ...


class Notifier(Protocol):
    def notify(self, chat_id: str, title: str, body: str, timestamp: float) -> None: ...


class PersistenceProjection:
    """Persist messages and nodes published on the bus."""

    def __init__(
        self,
        bus: EventBus,
        *,
        messages: MessageStore | None = None,
        nodes: NodeStore | None = None,
        notifier: Notifier | None = None,
        directory: NodeDirectory | None = None,
    ) -> None:
        self.bus = bus
        self.messages = messages
        self.nodes = nodes
        self.notifier = notifier
        self.directory = directory

    async def run(self) -> None:
        with self.bus.subscribe(Topic.MESSAGE_RECEIVED, Topic.NODE_INFO) as sub:
            async for event in sub:
                try:
                    match event.payload:
                        case ChatMessage() as message:
                            await self.handle_message(message)
                        case NodeUpdate(node=node):
                            await self.handle_node(node)
                except Exception:
                    # A misbehaving store must not stop event delivery.
                    logger.exception("Failed to persist %s event", event.topic.value)

    async def handle_message(self, message: ChatMessage) -> None:
        if self.messages is not None:
            await asyncio.to_thread(self.messages.save_message, message)
        if self.notifier is None or message.direction is not MessageDirection.IN or not message.unread:
            return
        await asyncio.to_thread(
            self.notifier.notify,
            message.chat_id,
            self._sender_title(message.sender_id),
            message.text,
            message.timestamp,
        )

    async def handle_node(self, node: Node) -> None:
        if self.nodes is not None:
            await asyncio.to_thread(self.nodes.save_node, node)

    async def mark_read(self, chat_id: str) -> None:
        if self.messages is not None:
            await asyncio.to_thread(self.messages.mark_read, chat_id)

    async def unread_counts(self) -> dict[str, int]:
        if self.messages is None:
            return {}
        counts = await asyncio.to_thread(self.messages.get_unread_counts)
        return dict(counts)

    async def stored_node_ids(self) -> frozenset[str]:
        if self.nodes is None:
            return frozenset()
        ids = await asyncio.to_thread(lambda: frozenset(self.nodes.list_node_ids()))
        return ids

    def _sender_title(self, sender_id: str) -> str:
        if self.directory is not None:
            node = self.directory.get(sender_id)
            if node is not None:
                return node.display_name
        return sender_id


__all__ = ["MessageStore", "NodeStore", "Notifier", "PersistenceProjection"]
