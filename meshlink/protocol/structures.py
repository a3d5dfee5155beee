"""Meshlink data structures.

Typed msgspec structs for everything that crosses a module boundary: node
state, chat messages and the events published on the bus.
"""

from __future__ import annotations

import time
from enum import StrEnum

import msgspec

from ..const import POSITION_SCALE


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"


class SignalQuality(StrEnum):
    BAD = "bad"
    FAIR = "fair"
    GOOD = "good"


class EncryptionState(StrEnum):
    NONE = "none"
    DEFAULT_KEY = "default_key"
    CUSTOM_KEY = "custom_key"


class NodeUpdateSource(StrEnum):
    """Which kind of radio frame produced a node update."""

    NODE_INFO_PACKET = "node-info-packet"
    NODE_INFO_SNAPSHOT = "node-info-snapshot"
    POSITION_PACKET = "position-packet"
    TELEMETRY_PACKET = "telemetry-packet"
    PACKET_METRICS = "packet-metrics"


class MessageDirection(StrEnum):
    IN = "in"
    OUT = "out"


class DeliveryStatus(StrEnum):
    PENDING = "pending"
    ACKED = "acked"
    FAILED = "failed"


def _now() -> float:
    return time.time()


class Position(msgspec.Struct, frozen=True, kw_only=True):
    """Fixed-point position as carried on the wire (degrees * 1e7)."""

    latitude_i: int
    longitude_i: int
    altitude: int = 0
    time: int = 0

    @property
    def latitude(self) -> float:
        return self.latitude_i * POSITION_SCALE

    @property
    def longitude(self) -> float:
        return self.longitude_i * POSITION_SCALE

    def is_valid(self) -> bool:
        if self.latitude_i == 0 and self.longitude_i == 0:
            return False
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0


class DeviceMetrics(msgspec.Struct, frozen=True, kw_only=True):
    battery_level: int | None = None
    voltage: float | None = None

    @property
    def is_charging(self) -> bool:
        # Firmware reports 101 while on external power.
        return self.battery_level is not None and self.battery_level > 100

    @property
    def battery_percent(self) -> int | None:
        if self.battery_level is None or self.is_charging:
            return None
        return self.battery_level


class Node(msgspec.Struct, kw_only=True):
    """A mesh participant as seen by this client."""

    id: str
    num: int = 0
    short_name: str = ""
    long_name: str = ""
    hw_model: str = ""
    role: str = ""
    favorite: bool = False
    ignored: bool = False
    encryption: EncryptionState = EncryptionState.NONE
    rssi: int = 0
    snr: float = 0.0
    signal_quality: SignalQuality = SignalQuality.BAD
    hops_away: int | None = None
    via_mqtt: bool = False
    last_heard: float = msgspec.field(default_factory=_now)
    updated_at: float = msgspec.field(default_factory=_now)
    position: Position | None = None
    device_metrics: DeviceMetrics | None = None

    @property
    def display_name(self) -> str:
        return self.long_name or self.short_name or self.id


class NodeUpdate(msgspec.Struct, frozen=True, kw_only=True):
    node: Node
    source: NodeUpdateSource

    @property
    def node_id(self) -> str:
        return self.node.id


class NodeDiscovered(msgspec.Struct, frozen=True, kw_only=True):
    node_id: str
    source: str
    node: Node | None = None
    discovered_at: float = msgspec.field(default_factory=_now)


class ChatMessage(msgspec.Struct, frozen=True, kw_only=True):
    chat_id: str
    sender_id: str
    text: str
    port: int
    direction: MessageDirection = MessageDirection.IN
    packet_id: int = 0
    channel: int = 0
    rx_snr: float | None = None
    rx_rssi: int | None = None
    timestamp: float = msgspec.field(default_factory=_now)
    unread: bool = True
    status: DeliveryStatus = DeliveryStatus.PENDING


class ConnectionStatus(msgspec.Struct, frozen=True, kw_only=True):
    state: ConnectionState
    status: str = ""
    error: str | None = None
    target: str = ""
    transport_name: str = ""
    timestamp: float = msgspec.field(default_factory=_now)


class ChannelInfo(msgspec.Struct, frozen=True, kw_only=True):
    index: int
    name: str = ""
    role: str = ""
    encryption: EncryptionState = EncryptionState.NONE

    @property
    def chat_id(self) -> str:
        return f"channel_{self.index}"


class MessageStatus(msgspec.Struct, frozen=True, kw_only=True):
    packet_id: int
    status: DeliveryStatus
    reason: str = ""
    from_id: str = ""


class TracerouteResult(msgspec.Struct, frozen=True, kw_only=True):
    from_id: str
    to_id: str
    request_id: int = 0
    route: tuple[str, ...] = ()
    snr_towards: tuple[float, ...] = ()
    route_back: tuple[str, ...] = ()
    snr_back: tuple[float, ...] = ()


class RawFrame(msgspec.Struct, frozen=True, kw_only=True):
    payload: bytes
    timestamp: float = msgspec.field(default_factory=_now)

    @property
    def hex(self) -> str:
        return self.payload.hex()


class ConfigComplete(msgspec.Struct, frozen=True, kw_only=True):
    """The radio finished its startup dump.

    ``node_ids`` is the directory content at that moment: every node the
    dump announced plus anything already known.
    """

    config_id: int
    own_node_id: str = ""
    node_ids: frozenset[str] = frozenset()
    completed_at: float = msgspec.field(default_factory=_now)


__all__ = [
    "ChannelInfo",
    "ChatMessage",
    "ConfigComplete",
    "ConnectionState",
    "ConnectionStatus",
    "DeliveryStatus",
    "DeviceMetrics",
    "EncryptionState",
    "MessageDirection",
    "MessageStatus",
    "Node",
    "NodeDiscovered",
    "NodeUpdate",
    "NodeUpdateSource",
    "Position",
    "RawFrame",
    "SignalQuality",
    "TracerouteResult",
]
