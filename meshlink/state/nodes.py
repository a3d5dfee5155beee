"""In-memory node directory shared by the radio client and discovery."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

import msgspec

from ..const import DEFAULT_NODE_STALE_SECONDS
from ..metrics import KNOWN_NODES
from ..protocol.addressing import node_id_from_num
from ..protocol.envelope import NodeInfoRecord, UserInfo
from ..protocol.quality import signal_quality
from ..protocol.structures import DeviceMetrics, EncryptionState, Node, Position

logger = logging.getLogger("meshlink.nodes")

_NAME_JUNK = "\"'\\"


def clean_node_name(name: str) -> str:
    """Strip quoting debris and non-printable characters from a node name."""
    cleaned = "".join(ch for ch in name if ch.isprintable())
    return cleaned.strip().strip(_NAME_JUNK).strip()


class NodeDirectory:
    """Nodes keyed by canonical ``!xxxxxxxx`` id.

    Entries whose ``last_heard`` is older than ``stale_seconds`` are evicted
    lazily when the directory is read. Every merge returns a copy so callers
    can publish it without holding the lock.
    """

    def __init__(
        self,
        stale_seconds: float = DEFAULT_NODE_STALE_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if stale_seconds <= 0:
            raise ValueError("stale_seconds must be positive")
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._nodes: dict[str, Node] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._nodes

    def _entry(self, num: int, now: float) -> Node:
        node_id = node_id_from_num(num)
        node = self._nodes.get(node_id)
        if node is None:
            node = Node(id=node_id, num=num, last_heard=now, updated_at=now)
            self._nodes[node_id] = node
            KNOWN_NODES.set(len(self._nodes))
            logger.debug("New node %s", node_id)
        return node

    def _evict_stale(self, now: float) -> None:
        cutoff = now - self.stale_seconds
        stale = [node_id for node_id, node in self._nodes.items() if node.last_heard < cutoff]
        for node_id in stale:
            del self._nodes[node_id]
        if stale:
            KNOWN_NODES.set(len(self._nodes))
            logger.debug("Evicted %d stale node(s)", len(stale))

    def _apply_user(self, node: Node, user: UserInfo) -> None:
        long_name = clean_node_name(user.long_name)
        short_name = clean_node_name(user.short_name)
        if long_name:
            node.long_name = long_name
        if short_name:
            node.short_name = short_name
        if user.hw_model:
            node.hw_model = user.hw_model
        if user.role:
            node.role = user.role

    def merge_user(self, num: int, user: UserInfo, *, now: float | None = None) -> Node:
        now = self._clock() if now is None else now
        with self._lock:
            node = self._entry(num, now)
            self._apply_user(node, user)
            node.updated_at = now
            return msgspec.structs.replace(node)

    def merge_node_info(self, info: NodeInfoRecord, *, now: float | None = None) -> Node:
        """Fold a NodeInfo snapshot from the radio's node database."""
        now = self._clock() if now is None else now
        with self._lock:
            created = node_id_from_num(info.num) not in self._nodes
            node = self._entry(info.num, now)
            if info.user is not None:
                self._apply_user(node, info.user)
            if info.position is not None:
                node.position = info.position
            if info.device_metrics is not None:
                node.device_metrics = info.device_metrics
            if info.snr:
                node.snr = info.snr
            if info.hops_away is not None:
                node.hops_away = info.hops_away
            node.via_mqtt = info.via_mqtt
            node.favorite = info.favorite
            node.ignored = info.ignored
            if info.last_heard:
                heard = float(info.last_heard)
                node.last_heard = heard if created else max(node.last_heard, heard)
            node.updated_at = now
            return msgspec.structs.replace(node)

    def merge_position(self, num: int, position: Position, *, now: float | None = None) -> Node:
        now = self._clock() if now is None else now
        with self._lock:
            node = self._entry(num, now)
            node.position = position
            node.updated_at = now
            return msgspec.structs.replace(node)

    def merge_device_metrics(self, num: int, metrics: DeviceMetrics, *, now: float | None = None) -> Node:
        now = self._clock() if now is None else now
        with self._lock:
            node = self._entry(num, now)
            previous = node.device_metrics
            if previous is not None:
                metrics = DeviceMetrics(
                    battery_level=metrics.battery_level
                    if metrics.battery_level is not None
                    else previous.battery_level,
                    voltage=metrics.voltage if metrics.voltage is not None else previous.voltage,
                )
            node.device_metrics = metrics
            node.updated_at = now
            return msgspec.structs.replace(node)

    def record_packet(
        self,
        num: int,
        *,
        rssi: int,
        snr: float,
        heard_at: float | None = None,
        hops_away: int | None = None,
        via_mqtt: bool = False,
        encryption: EncryptionState | None = None,
        now: float | None = None,
    ) -> Node:
        """Refresh link metrics and last-heard for the sender of a packet."""
        now = self._clock() if now is None else now
        with self._lock:
            node = self._entry(num, now)
            node.rssi = rssi
            node.snr = snr
            node.signal_quality = signal_quality(rssi, snr)
            node.last_heard = heard_at or now
            node.via_mqtt = via_mqtt
            if hops_away is not None:
                node.hops_away = hops_away
            if encryption is not None:
                node.encryption = encryption
            node.updated_at = now
            return msgspec.structs.replace(node)

    def get(self, node_id: str) -> Node | None:
        with self._lock:
            self._evict_stale(self._clock())
            node = self._nodes.get(node_id)
            return msgspec.structs.replace(node) if node is not None else None

    def list_nodes(self, *, exclude: Iterable[str] = ()) -> list[Node]:
        skip = set(exclude)
        with self._lock:
            self._evict_stale(self._clock())
            nodes = [
                msgspec.structs.replace(node) for node_id, node in self._nodes.items() if node_id not in skip
            ]
        nodes.sort(key=lambda node: node.last_heard, reverse=True)
        return nodes

    def snapshot_ids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._nodes)

    def load(self, nodes: Iterable[Node]) -> None:
        """Seed the directory from persisted nodes."""
        with self._lock:
            for node in nodes:
                self._nodes[node.id] = msgspec.structs.replace(node)
            KNOWN_NODES.set(len(self._nodes))

    def clear(self) -> None:
        with self._lock:
            self._nodes.clear()
            KNOWN_NODES.set(0)


__all__ = ["NodeDirectory", "clean_node_name"]
