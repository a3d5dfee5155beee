"""One-shot "new node" announcements, gated on the radio's startup dump.

On every connect the radio replays its whole node database. Those nodes are
not new, so nothing is announced until the dump finishes. After that, the
first node-info packet from an id that was neither in the dump nor in the
persisted baseline produces exactly one :class:`NodeDiscovered` event.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

from ..protocol.structures import (
    ConfigComplete,
    ConnectionState,
    ConnectionStatus,
    NodeDiscovered,
    NodeUpdate,
    NodeUpdateSource,
)
from ..state.bus import EventBus, Topic

logger = logging.getLogger("meshlink.discovery")

DISCOVERY_SOURCE = NodeUpdateSource.NODE_INFO_PACKET.value


class NodeDiscoveryProjection:
    def __init__(
        self,
        bus: EventBus,
        known_ids: Iterable[str] = (),
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.bus = bus
        self._clock = clock
        self._lock = threading.Lock()
        self._bootstrapped = False
        self._cutover = 0.0
        self._known: set[str] = _clean_ids(known_ids)
        self._seen_before_bootstrap: set[str] = set()
        self._announced: set[str] = set()

    @property
    def bootstrapped(self) -> bool:
        with self._lock:
            return self._bootstrapped

    async def run(self) -> None:
        with self.bus.subscribe(Topic.NODE_INFO, Topic.CONFIG_COMPLETE, Topic.CONN_STATUS) as sub:
            async for event in sub:
                match event.payload:
                    case NodeUpdate() as update:
                        discovered = self.handle_node_update(update)
                        if discovered is not None:
                            self.bus.publish(Topic.NODE_DISCOVERED, discovered)
                    case ConfigComplete() as complete:
                        self.handle_config_complete(complete)
                    case ConnectionStatus() as status:
                        self.handle_connection_status(status)

    def handle_config_complete(self, event: ConfigComplete) -> None:
        with self._lock:
            if self._bootstrapped:
                return
            self._bootstrapped = True
            self._cutover = event.completed_at
            self._seen_before_bootstrap = _clean_ids(event.node_ids)
        logger.debug("Node discovery armed (%d nodes from startup dump)", len(event.node_ids))

    def handle_connection_status(self, status: ConnectionStatus) -> None:
        if status.state is ConnectionState.CONNECTED:
            return
        with self._lock:
            self._bootstrapped = False
            self._cutover = 0.0

    def handle_node_update(self, update: NodeUpdate) -> NodeDiscovered | None:
        """Return the discovery event for *update*, if it announces a new node."""
        if update.source is not NodeUpdateSource.NODE_INFO_PACKET:
            return None
        node_id = update.node.id.strip()
        if not node_id:
            return None

        with self._lock:
            if not self._bootstrapped:
                return None
            if self._cutover and update.node.updated_at < self._cutover:
                return None
            if node_id in self._known or node_id in self._seen_before_bootstrap:
                return None
            if node_id in self._announced:
                return None
            self._known.add(node_id)
            self._announced.add(node_id)

        logger.info("Node discovered: %s (%s)", node_id, update.node.display_name)
        return NodeDiscovered(
            node_id=node_id,
            source=DISCOVERY_SOURCE,
            node=update.node,
            discovered_at=self._clock(),
        )

    def reset_from_store(self, known_ids: Iterable[str] = ()) -> None:
        """Start a new session with *known_ids* as the persisted baseline."""
        known = _clean_ids(known_ids)
        with self._lock:
            self._bootstrapped = False
            self._cutover = 0.0
            self._known = known
            self._seen_before_bootstrap = set()
            self._announced = set()
        logger.info("Node discovery baseline reset (%d known nodes)", len(known))


def _clean_ids(ids: Iterable[str]) -> set[str]:
    return {value.strip() for value in ids if value and value.strip()}


__all__ = ["DISCOVERY_SOURCE", "NodeDiscoveryProjection"]
