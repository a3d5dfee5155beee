"""Radio client: startup handshake, inbound dispatch and outbound messages."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import random
import time
from collections.abc import Callable, Coroutine
from typing import Any

from ..common import format_hexdump
from ..const import (
    DEFAULT_HEARTBEAT_INTERVAL,
    MAX_TEXT_BYTES,
    RADIO_READ_ERROR_PAUSE,
    RADIO_READ_TIMEOUT,
)
from ..metrics import DECODE_ERRORS
from ..protocol.addressing import (
    chat_id_for_packet,
    node_id_from_num,
    parse_chat_target,
    parse_node_num,
)
from ..protocol.envelope import (
    TEXT_PORTS,
    ChannelReceived,
    ChannelRecord,
    ConfigCompleteReceived,
    DecodedData,
    EnvelopeError,
    FromRadioVariant,
    MeshPacket,
    MyInfoReceived,
    NodeInfoReceived,
    PacketReceived,
    PortNum,
    QueueStatusReceived,
    UnhandledVariant,
    UserInfo,
    decode_from_radio,
    decode_position,
    decode_route_discovery,
    decode_routing,
    decode_telemetry,
    decode_user,
    encode_heartbeat,
    encode_mesh_packet,
    encode_route_discovery,
    encode_user,
    encode_want_config,
)
from ..protocol.frame import FrameError
from ..protocol.quality import classify_psk
from ..protocol.structures import (
    ChannelInfo,
    ChatMessage,
    ConfigComplete,
    DeliveryStatus,
    MessageDirection,
    MessageStatus,
    Node,
    NodeUpdate,
    NodeUpdateSource,
    RawFrame,
    TracerouteResult,
)
from ..state.bus import EventBus, Topic
from ..state.nodes import NodeDirectory
from ..transport.base import NotConnectedError, Transport, TransportClosedError, TransportError

logger = logging.getLogger("meshlink.radio")

# Config ids the firmware treats as "config only" / "nodes only" requests.
_RESERVED_CONFIG_IDS = frozenset({69420, 69421})


def new_config_id() -> int:
    while True:
        candidate = random.randint(1, 0xFFFFFFFF)
        if candidate not in _RESERVED_CONFIG_IDS:
            return candidate


class RadioClient:
    """Speaks the Meshtastic ToRadio/FromRadio protocol over one transport.

    ``start`` is meant to be the reconnect manager's ``on_connected`` hook and
    ``stop`` its ``on_disconnected`` hook. Everything the client learns is
    published on the bus; node state lives in the shared
    :class:`NodeDirectory`.
    """

    def __init__(
        self,
        bus: EventBus,
        directory: NodeDirectory,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        read_timeout: float = RADIO_READ_TIMEOUT,
        config_id_factory: Callable[[], int] = new_config_id,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.bus = bus
        self.directory = directory
        self.heartbeat_interval = heartbeat_interval
        self.read_timeout = read_timeout
        self._config_id_factory = config_id_factory
        self._clock = clock

        self._transport: Transport | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._config_id = 0
        self._config_complete = False
        self._own_num = 0
        self._own_user: UserInfo | None = None
        self._channels: dict[int, ChannelInfo] = {}
        self._packet_counter = itertools.count(1)

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._transport is not None

    @property
    def config_complete(self) -> bool:
        return self._config_complete

    async def start(self, transport: Transport) -> None:
        """Attach to a connected transport and request the config dump."""
        if self._transport is not None:
            raise RuntimeError("radio client already running")
        self._transport = transport
        self._config_complete = False
        self._config_id = self._config_id_factory()
        try:
            await self._write(encode_want_config(self._config_id))
        except BaseException:
            self._transport = None
            raise
        logger.info("Requested radio config (want_config_id=%d)", self._config_id)

        self._spawn(self._read_loop(transport), "meshlink-radio-read")
        if self.heartbeat_interval > 0:
            self._spawn(self._heartbeat_loop(transport), "meshlink-radio-heartbeat")

    async def stop(self) -> None:
        self._transport = None
        self._config_complete = False
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --- Queries ---

    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_connected()

    def get_own_node_id(self) -> str:
        return node_id_from_num(self._own_num) if self._own_num else ""

    def get_own_node_num(self) -> int:
        return self._own_num

    def get_nodes(self) -> list[Node]:
        own = self.get_own_node_id()
        return self.directory.list_nodes(exclude=(own,) if own else ())

    def get_channel_name(self, index: int) -> str:
        channel = self._channels.get(index)
        return channel.name if channel is not None else ""

    def get_channels(self) -> list[ChannelInfo]:
        return [self._channels[index] for index in sorted(self._channels)]

    # --- Inbound ---

    async def _read_loop(self, transport: Transport) -> None:
        logger.debug("Read loop started on %s", transport.status_target())
        while True:
            try:
                payload = await transport.read_frame(timeout=self.read_timeout)
            except TimeoutError:
                continue
            except (TransportClosedError, NotConnectedError) as exc:
                logger.info("Read loop ending: %s", exc)
                return
            except (TransportError, FrameError, OSError) as exc:
                logger.debug("Transient read error: %s", exc)
                await asyncio.sleep(RADIO_READ_ERROR_PAUSE)
                continue
            self.handle_frame(payload)

    def handle_frame(self, payload: bytes) -> None:
        """Decode one FromRadio payload and dispatch it."""
        self.bus.publish(Topic.RAW_FRAME_IN, RawFrame(payload=payload))
        try:
            variant = decode_from_radio(payload)
        except EnvelopeError as exc:
            DECODE_ERRORS.inc()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Skipping undecodable frame: %s\n%s", exc, format_hexdump(payload, "  "))
            return
        self.dispatch(variant)

    def dispatch(self, variant: FromRadioVariant) -> None:
        match variant:
            case PacketReceived(packet=packet):
                self._handle_packet(packet)
            case MyInfoReceived(my_node_num=num):
                self._own_num = num
                logger.info("Own node is %s", node_id_from_num(num))
            case NodeInfoReceived(info=info):
                node = self.directory.merge_node_info(info)
                if info.num == self._own_num and info.user is not None:
                    self._own_user = info.user
                self._publish_node(node, NodeUpdateSource.NODE_INFO_SNAPSHOT)
            case ChannelReceived(channel=channel):
                self._handle_channel(channel)
            case ConfigCompleteReceived(config_id=config_id):
                self._handle_config_complete(config_id)
            case QueueStatusReceived(free=free, maxlen=maxlen, mesh_packet_id=packet_id):
                logger.debug("Radio queue %d/%d free (packet %d)", free, maxlen, packet_id)
            case UnhandledVariant(name=name):
                logger.debug("Ignoring FromRadio variant %s", name)

    def _handle_config_complete(self, config_id: int) -> None:
        if config_id != self._config_id:
            logger.debug("Ignoring config_complete_id %d (expected %d)", config_id, self._config_id)
            return
        self._config_complete = True
        event = ConfigComplete(
            config_id=config_id,
            own_node_id=self.get_own_node_id(),
            node_ids=self.directory.snapshot_ids(),
            completed_at=self._clock(),
        )
        logger.info("Radio config complete (%d nodes)", len(event.node_ids))
        self.bus.publish(Topic.CONFIG_COMPLETE, event)

    def _handle_channel(self, record: ChannelRecord) -> None:
        if record.role == "DISABLED":
            self._channels.pop(record.index, None)
            return
        channel = ChannelInfo(
            index=record.index,
            name=record.name,
            role=record.role,
            encryption=classify_psk(record.psk),
        )
        self._channels[record.index] = channel
        logger.debug("Channel %d %r (%s)", channel.index, channel.name, channel.encryption.value)
        self.bus.publish(Topic.CHANNELS, channel)

    def _handle_packet(self, packet: MeshPacket) -> None:
        if packet.from_num == 0:
            logger.debug("Dropping packet %d without sender", packet.id)
            return

        if packet.from_num != self._own_num:
            channel = self._channels.get(packet.channel)
            node = self.directory.record_packet(
                packet.from_num,
                rssi=packet.rx_rssi,
                snr=packet.rx_snr,
                heard_at=float(packet.rx_time) if packet.rx_time else None,
                hops_away=packet.hop_start - packet.hop_limit if packet.hop_start else None,
                via_mqtt=packet.via_mqtt,
                encryption=channel.encryption if channel is not None else None,
            )
            self._publish_node(node, NodeUpdateSource.PACKET_METRICS)

        data = packet.decoded
        if data is None:
            logger.debug(
                "Dropping encrypted packet %d from %s", packet.id, node_id_from_num(packet.from_num)
            )
            return

        try:
            self._route_port(packet, data)
        except EnvelopeError as exc:
            DECODE_ERRORS.inc()
            logger.debug("Skipping %s payload from %s: %s", data.port_name, node_id_from_num(packet.from_num), exc)

    def _route_port(self, packet: MeshPacket, data: DecodedData) -> None:
        if data.port in TEXT_PORTS:
            self._handle_text(packet, data)
            return
        match data.port:
            case PortNum.NODEINFO_APP:
                if not data.payload:
                    return
                node = self.directory.merge_user(packet.from_num, decode_user(data.payload))
                self._publish_node(node, NodeUpdateSource.NODE_INFO_PACKET)
            case PortNum.POSITION_APP:
                position = decode_position(data.payload)
                if position is None:
                    return
                node = self.directory.merge_position(packet.from_num, position)
                self._publish_node(node, NodeUpdateSource.POSITION_PACKET)
            case PortNum.TELEMETRY_APP:
                metrics = decode_telemetry(data.payload)
                if metrics is None:
                    return
                node = self.directory.merge_device_metrics(packet.from_num, metrics)
                self._publish_node(node, NodeUpdateSource.TELEMETRY_PACKET)
            case PortNum.ROUTING_APP:
                self._handle_routing(packet, data)
            case PortNum.TRACEROUTE_APP:
                self._handle_traceroute(packet, data)
            case _:
                logger.debug("Ignoring %s packet from %s", data.port_name, node_id_from_num(packet.from_num))

    def _handle_text(self, packet: MeshPacket, data: DecodedData) -> None:
        try:
            text = data.payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Dropping non UTF-8 text from %s", node_id_from_num(packet.from_num))
            return
        if not text.strip():
            return

        outgoing = bool(self._own_num) and packet.from_num == self._own_num
        message = ChatMessage(
            chat_id=chat_id_for_packet(
                from_num=packet.from_num,
                to_num=packet.to_num,
                channel=packet.channel,
                own_num=self._own_num,
            ),
            sender_id=node_id_from_num(packet.from_num),
            text=text,
            port=data.port,
            direction=MessageDirection.OUT if outgoing else MessageDirection.IN,
            packet_id=packet.id,
            channel=packet.channel,
            rx_snr=packet.rx_snr,
            rx_rssi=packet.rx_rssi,
            timestamp=float(packet.rx_time) if packet.rx_time else self._clock(),
            unread=not outgoing,
            status=DeliveryStatus.ACKED,
        )
        logger.info("Text from %s in %s (%d chars)", message.sender_id, message.chat_id, len(text))
        self.bus.publish(Topic.MESSAGE_RECEIVED, message)

    def _handle_routing(self, packet: MeshPacket, data: DecodedData) -> None:
        routing = decode_routing(data.payload)
        from_id = node_id_from_num(packet.from_num)
        if data.request_id:
            status = MessageStatus(
                packet_id=data.request_id,
                status=DeliveryStatus.FAILED if routing.is_error else DeliveryStatus.ACKED,
                reason=routing.error_reason if routing.is_error else "",
                from_id=from_id,
            )
            self.bus.publish(Topic.MESSAGE_STATUS, status)
        if routing.route:
            self.bus.publish(
                Topic.TRACEROUTE,
                TracerouteResult(
                    from_id=from_id,
                    to_id=node_id_from_num(packet.to_num),
                    request_id=data.request_id,
                    route=tuple(node_id_from_num(num) for num in routing.route),
                ),
            )

    def _handle_traceroute(self, packet: MeshPacket, data: DecodedData) -> None:
        record = decode_route_discovery(data.payload)
        result = TracerouteResult(
            from_id=node_id_from_num(packet.from_num),
            to_id=node_id_from_num(packet.to_num),
            request_id=data.request_id,
            route=tuple(node_id_from_num(num) for num in record.route),
            snr_towards=record.snr_towards,
            route_back=tuple(node_id_from_num(num) for num in record.route_back),
            snr_back=record.snr_back,
        )
        logger.info("Traceroute %s -> %s: %d hop(s)", result.from_id, result.to_id, len(result.route))
        self.bus.publish(Topic.TRACEROUTE, result)

    def _publish_node(self, node: Node, source: NodeUpdateSource) -> None:
        self.bus.publish(Topic.NODE_INFO, NodeUpdate(node=node, source=source))

    # --- Outbound ---

    def _require_transport(self) -> Transport:
        transport = self._transport
        if transport is None or not transport.is_connected():
            raise NotConnectedError("radio is not connected")
        return transport

    async def _write(self, payload: bytes) -> None:
        transport = self._require_transport()
        await transport.write_frame(payload)
        self.bus.publish(Topic.RAW_FRAME_OUT, RawFrame(payload=payload))

    def next_packet_id(self) -> int:
        """Packet ids combine the clock with a counter so they stay unique."""
        seconds = int(self._clock()) & 0xFFFF
        packet_id = (seconds << 16) | (next(self._packet_counter) & 0xFFFF)
        return packet_id or 1

    async def send_text(self, chat_id: str, text: str) -> ChatMessage:
        """Send *text* to a ``channel_<n>`` or ``dm_<node>`` chat."""
        if not text.strip():
            raise ValueError("text is empty")
        encoded = text.encode("utf-8")
        if len(encoded) > MAX_TEXT_BYTES:
            raise ValueError(f"text is {len(encoded)} bytes; max is {MAX_TEXT_BYTES}")
        destination, channel = parse_chat_target(chat_id)
        self._require_transport()

        packet_id = self.next_packet_id()
        await self._write(
            encode_mesh_packet(
                from_num=self._own_num,
                to_num=destination,
                packet_id=packet_id,
                port=PortNum.TEXT_MESSAGE_APP,
                payload=encoded,
                channel=channel,
                want_ack=True,
            )
        )
        message = ChatMessage(
            chat_id=chat_id,
            sender_id=self.get_own_node_id(),
            text=text,
            port=PortNum.TEXT_MESSAGE_APP,
            direction=MessageDirection.OUT,
            packet_id=packet_id,
            channel=channel,
            timestamp=self._clock(),
            unread=False,
            status=DeliveryStatus.PENDING,
        )
        logger.debug("Sent text %d to %s (%d bytes)", packet_id, chat_id, len(encoded))
        self.bus.publish(Topic.MESSAGE_RECEIVED, message)
        return message

    async def send_traceroute(self, node: str | int) -> int:
        destination = parse_node_num(node) if isinstance(node, str) else node
        self._require_transport()
        packet_id = self.next_packet_id()
        await self._write(
            encode_mesh_packet(
                from_num=self._own_num,
                to_num=destination,
                packet_id=packet_id,
                port=PortNum.TRACEROUTE_APP,
                payload=encode_route_discovery(),
                want_response=True,
            )
        )
        logger.debug("Traceroute %d requested to %s", packet_id, node_id_from_num(destination))
        return packet_id

    async def send_exchange_user_info(self, node: str | int) -> int:
        destination = parse_node_num(node) if isinstance(node, str) else node
        self._require_transport()
        packet_id = self.next_packet_id()
        payload = encode_user(self._own_user) if self._own_user is not None else b""
        await self._write(
            encode_mesh_packet(
                from_num=self._own_num,
                to_num=destination,
                packet_id=packet_id,
                port=PortNum.NODEINFO_APP,
                payload=payload,
                want_response=True,
            )
        )
        logger.debug("User info exchange %d requested with %s", packet_id, node_id_from_num(destination))
        return packet_id

    async def _heartbeat_loop(self, transport: Transport) -> None:
        payload = encode_heartbeat()
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self._transport is not transport or not transport.is_connected():
                return
            try:
                await self._write(payload)
            except (TransportClosedError, NotConnectedError):
                return
            except (TransportError, OSError, TimeoutError) as exc:
                logger.debug("Heartbeat failed: %s", exc)


__all__ = ["RadioClient", "new_config_id"]
