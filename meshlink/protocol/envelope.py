"""ToRadio/FromRadio envelope codec.

Inbound payloads are decoded with the Meshtastic protobuf definitions and
converted into a tagged union of frozen structs so the radio client can
dispatch with a single ``match``. Outbound helpers build serialized
``ToRadio`` messages.
"""

from __future__ import annotations

import logging
from typing import Any

import msgspec
from google.protobuf.message import DecodeError, Message
from meshtastic.protobuf import mesh_pb2, portnums_pb2, telemetry_pb2

from .structures import DeviceMetrics, Position

logger = logging.getLogger("meshlink.protocol.envelope")

PortNum = portnums_pb2.PortNum

TEXT_PORTS: frozenset[int] = frozenset(
    {
        PortNum.TEXT_MESSAGE_APP,
        PortNum.TEXT_MESSAGE_COMPRESSED_APP,
        PortNum.DETECTION_SENSOR_APP,
        PortNum.ALERT_APP,
    }
)

PRIORITY_DEFAULT = mesh_pb2.MeshPacket.Priority.DEFAULT
PRIORITY_ACK = mesh_pb2.MeshPacket.Priority.ACK


class EnvelopeError(ValueError):
    """Raised when a payload is not a decodable envelope."""


# --- Decoded records ---


class DecodedData(msgspec.Struct, frozen=True, kw_only=True):
    port: int
    payload: bytes = b""
    want_response: bool = False
    dest: int = 0
    source: int = 0
    request_id: int = 0
    reply_id: int = 0

    @property
    def port_name(self) -> str:
        return port_name(self.port)


class MeshPacket(msgspec.Struct, frozen=True, kw_only=True):
    from_num: int
    to_num: int
    channel: int = 0
    id: int = 0
    rx_time: int = 0
    rx_snr: float = 0.0
    rx_rssi: int = 0
    hop_limit: int = 0
    hop_start: int = 0
    priority: int = 0
    want_ack: bool = False
    via_mqtt: bool = False
    decoded: DecodedData | None = None
    encrypted: bytes | None = None


class UserInfo(msgspec.Struct, frozen=True, kw_only=True):
    id: str = ""
    long_name: str = ""
    short_name: str = ""
    hw_model: str = ""
    role: str = ""
    is_licensed: bool = False


class NodeInfoRecord(msgspec.Struct, frozen=True, kw_only=True):
    num: int
    user: UserInfo | None = None
    position: Position | None = None
    device_metrics: DeviceMetrics | None = None
    snr: float = 0.0
    last_heard: int = 0
    hops_away: int | None = None
    via_mqtt: bool = False
    favorite: bool = False
    ignored: bool = False


class ChannelRecord(msgspec.Struct, frozen=True, kw_only=True):
    index: int
    name: str = ""
    role: str = ""
    psk: bytes = b""


class RoutingRecord(msgspec.Struct, frozen=True, kw_only=True):
    error_reason: str = "NONE"
    route: tuple[int, ...] = ()

    @property
    def is_error(self) -> bool:
        return self.error_reason != "NONE"


class RouteRecord(msgspec.Struct, frozen=True, kw_only=True):
    route: tuple[int, ...] = ()
    snr_towards: tuple[float, ...] = ()
    route_back: tuple[int, ...] = ()
    snr_back: tuple[float, ...] = ()


# --- FromRadio tagged union ---


class FromRadioEvent(msgspec.Struct, frozen=True, kw_only=True, tag_field="variant"):
    """Base for decoded FromRadio variants."""


class PacketReceived(FromRadioEvent, tag="packet"):
    packet: MeshPacket


class MyInfoReceived(FromRadioEvent, tag="my_info"):
    my_node_num: int


class NodeInfoReceived(FromRadioEvent, tag="node_info"):
    info: NodeInfoRecord


class ChannelReceived(FromRadioEvent, tag="channel"):
    channel: ChannelRecord


class ConfigCompleteReceived(FromRadioEvent, tag="config_complete_id"):
    config_id: int


class QueueStatusReceived(FromRadioEvent, tag="queue_status"):
    res: int = 0
    free: int = 0
    maxlen: int = 0
    mesh_packet_id: int = 0


class UnhandledVariant(FromRadioEvent, tag="unhandled"):
    name: str


FromRadioVariant = (
    PacketReceived
    | MyInfoReceived
    | NodeInfoReceived
    | ChannelReceived
    | ConfigCompleteReceived
    | QueueStatusReceived
    | UnhandledVariant
)


def _parse(message: Message, payload: bytes, what: str) -> None:
    try:
        message.ParseFromString(payload)
    except DecodeError as exc:
        raise EnvelopeError(f"Malformed {what}: {exc}") from exc


def _present(message: Message, field: str) -> bool:
    # Fields that are not declared ``optional`` cannot be probed with HasField.
    try:
        return message.HasField(field)
    except ValueError:
        return True


def _enum_name(message: Message, field: str, value: int) -> str:
    enum_type = message.DESCRIPTOR.fields_by_name[field].enum_type
    entry = enum_type.values_by_number.get(value) if enum_type is not None else None
    return entry.name if entry is not None else str(value)


def port_name(port: int) -> str:
    try:
        return PortNum.Name(port)
    except ValueError:
        return str(port)


def decode_from_radio(payload: bytes) -> FromRadioVariant:
    """Decode one FromRadio payload into its tagged variant."""
    if not payload:
        raise EnvelopeError("Empty FromRadio payload")

    msg = mesh_pb2.FromRadio()
    _parse(msg, payload, "FromRadio")

    variant = msg.WhichOneof("payload_variant")
    match variant:
        case "packet":
            return PacketReceived(packet=_convert_packet(msg.packet))
        case "my_info":
            return MyInfoReceived(my_node_num=msg.my_info.my_node_num)
        case "node_info":
            return NodeInfoReceived(info=_convert_node_info(msg.node_info))
        case "channel":
            return ChannelReceived(channel=_convert_channel(msg.channel))
        case "config_complete_id":
            return ConfigCompleteReceived(config_id=msg.config_complete_id)
        case "queueStatus":
            status = msg.queueStatus
            return QueueStatusReceived(
                res=status.res,
                free=status.free,
                maxlen=status.maxlen,
                mesh_packet_id=status.mesh_packet_id,
            )
        case None:
            return UnhandledVariant(name="none")
        case _:
            return UnhandledVariant(name=variant)


def _convert_packet(packet: Any) -> MeshPacket:
    decoded: DecodedData | None = None
    encrypted: bytes | None = None
    kind = packet.WhichOneof("payload_variant")
    if kind == "decoded":
        data = packet.decoded
        decoded = DecodedData(
            port=int(data.portnum),
            payload=bytes(data.payload),
            want_response=data.want_response,
            dest=data.dest,
            source=data.source,
            request_id=data.request_id,
            reply_id=data.reply_id,
        )
    elif kind == "encrypted":
        encrypted = bytes(packet.encrypted)

    return MeshPacket(
        from_num=getattr(packet, "from"),
        to_num=packet.to,
        channel=packet.channel,
        id=packet.id,
        rx_time=packet.rx_time,
        rx_snr=packet.rx_snr,
        rx_rssi=packet.rx_rssi,
        hop_limit=packet.hop_limit,
        hop_start=packet.hop_start,
        priority=int(packet.priority),
        want_ack=packet.want_ack,
        via_mqtt=packet.via_mqtt,
        decoded=decoded,
        encrypted=encrypted,
    )


def _convert_user(user: Any) -> UserInfo:
    return UserInfo(
        id=user.id,
        long_name=user.long_name.strip(),
        short_name=user.short_name.strip(),
        hw_model=_enum_name(user, "hw_model", user.hw_model),
        role=_enum_name(user, "role", user.role),
        is_licensed=user.is_licensed,
    )


def _convert_position(position: Any) -> Position | None:
    candidate = Position(
        latitude_i=position.latitude_i,
        longitude_i=position.longitude_i,
        altitude=position.altitude,
        time=position.time,
    )
    if not candidate.is_valid():
        return None
    return candidate


def _convert_metrics(metrics: Any) -> DeviceMetrics:
    return DeviceMetrics(
        battery_level=metrics.battery_level if _present(metrics, "battery_level") else None,
        voltage=metrics.voltage if _present(metrics, "voltage") else None,
    )


def _convert_node_info(info: Any) -> NodeInfoRecord:
    return NodeInfoRecord(
        num=info.num,
        user=_convert_user(info.user) if info.HasField("user") else None,
        position=_convert_position(info.position) if info.HasField("position") else None,
        device_metrics=_convert_metrics(info.device_metrics) if info.HasField("device_metrics") else None,
        snr=info.snr,
        last_heard=info.last_heard,
        hops_away=info.hops_away if _present(info, "hops_away") else None,
        via_mqtt=info.via_mqtt,
        favorite=info.is_favorite,
        ignored=getattr(info, "is_ignored", False),
    )


def _convert_channel(channel: Any) -> ChannelRecord:
    settings = channel.settings
    return ChannelRecord(
        index=channel.index,
        name=settings.name,
        role=_enum_name(channel, "role", channel.role),
        psk=bytes(settings.psk),
    )


# --- Port payload decoders ---


def decode_user(payload: bytes) -> UserInfo:
    msg = mesh_pb2.User()
    _parse(msg, payload, "User")
    return _convert_user(msg)


def decode_position(payload: bytes) -> Position | None:
    msg = mesh_pb2.Position()
    _parse(msg, payload, "Position")
    return _convert_position(msg)


def decode_telemetry(payload: bytes) -> DeviceMetrics | None:
    """Return device metrics from a telemetry payload, if it carries any."""
    msg = telemetry_pb2.Telemetry()
    _parse(msg, payload, "Telemetry")
    if msg.WhichOneof("variant") != "device_metrics":
        return None
    return _convert_metrics(msg.device_metrics)


def decode_routing(payload: bytes) -> RoutingRecord:
    msg = mesh_pb2.Routing()
    _parse(msg, payload, "Routing")
    kind = msg.WhichOneof("variant")
    if kind == "error_reason":
        return RoutingRecord(error_reason=mesh_pb2.Routing.Error.Name(msg.error_reason))
    if kind in ("route_request", "route_reply"):
        route = getattr(msg, kind)
        return RoutingRecord(route=tuple(route.route))
    return RoutingRecord()


def decode_route_discovery(payload: bytes) -> RouteRecord:
    msg = mesh_pb2.RouteDiscovery()
    _parse(msg, payload, "RouteDiscovery")
    # SNR values are transported as dB * 4.
    return RouteRecord(
        route=tuple(msg.route),
        snr_towards=tuple(value / 4.0 for value in msg.snr_towards),
        route_back=tuple(msg.route_back),
        snr_back=tuple(value / 4.0 for value in msg.snr_back),
    )


# --- ToRadio builders ---


def encode_want_config(config_id: int) -> bytes:
    return mesh_pb2.ToRadio(want_config_id=config_id).SerializeToString()


def encode_heartbeat() -> bytes:
    return mesh_pb2.ToRadio(heartbeat=mesh_pb2.Heartbeat()).SerializeToString()


def encode_mesh_packet(
    *,
    from_num: int,
    to_num: int,
    packet_id: int,
    port: int,
    payload: bytes,
    channel: int = 0,
    want_ack: bool = False,
    want_response: bool = False,
    priority: int = PRIORITY_DEFAULT,
) -> bytes:
    """Serialize a ``ToRadio{packet}`` carrying a decoded Data payload."""
    data = mesh_pb2.Data(portnum=port, payload=payload, want_response=want_response)
    packet = mesh_pb2.MeshPacket(
        to=to_num,
        channel=channel,
        id=packet_id,
        want_ack=want_ack,
        priority=priority,
        decoded=data,
    )
    setattr(packet, "from", from_num)
    return mesh_pb2.ToRadio(packet=packet).SerializeToString()


def encode_user(user: UserInfo) -> bytes:
    return mesh_pb2.User(
        id=user.id,
        long_name=user.long_name,
        short_name=user.short_name,
    ).SerializeToString()


def encode_route_discovery() -> bytes:
    return mesh_pb2.RouteDiscovery().SerializeToString()


__all__ = [
    "ChannelReceived",
    "ChannelRecord",
    "ConfigCompleteReceived",
    "DecodedData",
    "EnvelopeError",
    "FromRadioEvent",
    "FromRadioVariant",
    "MeshPacket",
    "MyInfoReceived",
    "NodeInfoReceived",
    "NodeInfoRecord",
    "PacketReceived",
    "PortNum",
    "QueueStatusReceived",
    "RouteRecord",
    "RoutingRecord",
    "TEXT_PORTS",
    "UnhandledVariant",
    "UserInfo",
    "decode_from_radio",
    "decode_position",
    "decode_route_discovery",
    "decode_routing",
    "decode_telemetry",
    "decode_user",
    "encode_heartbeat",
    "encode_mesh_packet",
    "encode_route_discovery",
    "encode_user",
    "encode_want_config",
    "port_name",
]
