import asyncio

import pytest
from meshtastic.protobuf import channel_pb2, mesh_pb2, portnums_pb2, telemetry_pb2

from meshlink.metrics import REGISTRY
from meshlink.protocol.structures import (
    ChannelInfo,
    ChatMessage,
    ConfigComplete,
    DeliveryStatus,
    EncryptionState,
    MessageDirection,
    MessageStatus,
    NodeUpdate,
    NodeUpdateSource,
    TracerouteResult,
)
from meshlink.services.radio import RadioClient, new_config_id
from meshlink.state.bus import EventBus, Subscription, Topic
from meshlink.state.nodes import NodeDirectory
from meshlink.transport.base import NotConnectedError
from tests.mocks import FakeTransport

OWN = 0x11111111
PEER = 0x22222222
CONFIG_ID = 4242


def _from_radio(**kwargs: object) -> bytes:
    return mesh_pb2.FromRadio(**kwargs).SerializeToString()


def _packet(port: int, payload: bytes, *, sender: int = PEER, to: int = 0xFFFFFFFF, **extra: object) -> bytes:
    request_id = extra.pop("request_id", 0)
    packet = mesh_pb2.MeshPacket(
        to=to,
        decoded=mesh_pb2.Data(portnum=port, payload=payload, request_id=request_id),
        **extra,
    )
    setattr(packet, "from", sender)
    return _from_radio(packet=packet)


def _drain(sub: Subscription) -> list:
    events = []
    while sub.qsize():
        events.append(sub.get_nowait().payload)
    return events


def _decode_error_count() -> float:
    return REGISTRY.get_sample_value("meshlink_decode_errors_total") or 0.0


@pytest.fixture()
def radio(bus: EventBus, directory: NodeDirectory, clock) -> RadioClient:
    client = RadioClient(
        bus,
        directory,
        heartbeat_interval=0,
        config_id_factory=lambda: CONFIG_ID,
        clock=clock,
    )
    return client


def _learn_own_node(radio: RadioClient) -> None:
    radio.handle_frame(_from_radio(my_info=mesh_pb2.MyNodeInfo(my_node_num=OWN)))


async def _connected(transport: FakeTransport) -> FakeTransport:
    await transport.connect()
    return transport


def test_new_config_id_avoids_reserved_values() -> None:
    for _ in range(100):
        value = new_config_id()
        assert 0 < value <= 0xFFFFFFFF
        assert value not in (69420, 69421)


@pytest.mark.asyncio
async def test_start_requests_config_and_processes_startup_dump(
    radio: RadioClient, bus: EventBus, fake_transport: FakeTransport
) -> None:
    completes = bus.subscribe(Topic.CONFIG_COMPLETE)
    nodes = bus.subscribe(Topic.NODE_INFO)
    await _connected(fake_transport)

    await radio.start(fake_transport)

    want = mesh_pb2.ToRadio()
    want.ParseFromString(fake_transport.written[0])
    assert want.want_config_id == CONFIG_ID

    fake_transport.feed(_from_radio(my_info=mesh_pb2.MyNodeInfo(my_node_num=OWN)))
    fake_transport.feed(
        _from_radio(node_info=mesh_pb2.NodeInfo(num=OWN, user=mesh_pb2.User(id="!11111111", long_name="Base")))
    )
    fake_transport.feed(
        _from_radio(node_info=mesh_pb2.NodeInfo(num=PEER, user=mesh_pb2.User(id="!22222222", long_name="Ridge")))
    )
    fake_transport.feed(
        _from_radio(
            channel=channel_pb2.Channel(
                index=0,
                role=channel_pb2.Channel.Role.PRIMARY,
                settings=channel_pb2.ChannelSettings(name="LongFast", psk=b"\x01"),
            )
        )
    )
    fake_transport.feed(_from_radio(config_complete_id=CONFIG_ID))

    event = await asyncio.wait_for(completes.get(), 1.0)
    complete = event.payload
    assert isinstance(complete, ConfigComplete)
    assert complete.config_id == CONFIG_ID
    assert complete.own_node_id == "!11111111"
    assert complete.node_ids == frozenset({"!11111111", "!22222222"})
    assert radio.config_complete

    updates = _drain(nodes)
    assert {update.source for update in updates} == {NodeUpdateSource.NODE_INFO_SNAPSHOT}
    assert radio.get_own_node_id() == "!11111111"
    assert [node.id for node in radio.get_nodes()] == ["!22222222"]
    assert radio.get_channel_name(0) == "LongFast"
    assert radio.get_channels()[0].encryption is EncryptionState.DEFAULT_KEY

    await radio.stop()
    assert not radio.running


@pytest.mark.asyncio
async def test_start_twice_is_rejected(radio: RadioClient, fake_transport: FakeTransport) -> None:
    await _connected(fake_transport)
    await radio.start(fake_transport)
    with pytest.raises(RuntimeError):
        await radio.start(fake_transport)
    await radio.stop()


@pytest.mark.asyncio
async def test_read_loop_ends_when_transport_closes(radio: RadioClient, fake_transport: FakeTransport) -> None:
    await _connected(fake_transport)
    await radio.start(fake_transport)
    tasks = set(radio._tasks)

    await fake_transport.close()
    await asyncio.wait_for(asyncio.gather(*tasks), 1.0)

    assert not radio.is_connected()
    await radio.stop()


@pytest.mark.asyncio
async def test_heartbeat_is_sent_periodically(bus: EventBus, directory: NodeDirectory, fake_transport) -> None:
    client = RadioClient(bus, directory, heartbeat_interval=0.01, config_id_factory=lambda: CONFIG_ID)
    raw_out = bus.subscribe(Topic.RAW_FRAME_OUT)
    await _connected(fake_transport)
    await client.start(fake_transport)

    async with asyncio.timeout(1.0):
        while len(fake_transport.written) < 3:
            await asyncio.sleep(0.01)
    await client.stop()

    heartbeat = mesh_pb2.ToRadio()
    heartbeat.ParseFromString(fake_transport.written[1])
    assert heartbeat.WhichOneof("payload_variant") == "heartbeat"

    published = [raw_out.get_nowait().payload.payload for _ in range(raw_out.qsize())]
    assert published == fake_transport.written


def test_mismatched_config_complete_is_ignored(radio: RadioClient, bus: EventBus) -> None:
    completes = bus.subscribe(Topic.CONFIG_COMPLETE)
    radio._config_id = CONFIG_ID

    radio.handle_frame(_from_radio(config_complete_id=CONFIG_ID + 1))

    assert completes.qsize() == 0
    assert not radio.config_complete


def test_disabled_channel_is_removed(radio: RadioClient) -> None:
    settings = channel_pb2.ChannelSettings(name="ops", psk=bytes(16))
    radio.handle_frame(_from_radio(channel=channel_pb2.Channel(index=1, role=channel_pb2.Channel.Role.SECONDARY, settings=settings)))
    assert radio.get_channel_name(1) == "ops"

    radio.handle_frame(_from_radio(channel=channel_pb2.Channel(index=1, role=channel_pb2.Channel.Role.DISABLED)))
    assert radio.get_channel_name(1) == ""


def test_incoming_broadcast_text(radio: RadioClient, bus: EventBus, directory: NodeDirectory) -> None:
    messages = bus.subscribe(Topic.MESSAGE_RECEIVED)
    nodes = bus.subscribe(Topic.NODE_INFO)
    _learn_own_node(radio)

    radio.handle_frame(
        _packet(
            portnums_pb2.PortNum.TEXT_MESSAGE_APP,
            "trail is clear".encode(),
            channel=2,
            rx_rssi=-85,
            rx_snr=9.0,
            hop_start=3,
            hop_limit=1,
            id=99,
        )
    )

    [message] = _drain(messages)
    assert isinstance(message, ChatMessage)
    assert message.chat_id == "channel_2"
    assert message.sender_id == "!22222222"
    assert message.direction is MessageDirection.IN
    assert message.unread
    assert message.packet_id == 99

    [update] = _drain(nodes)
    assert update.source is NodeUpdateSource.PACKET_METRICS
    assert update.node.hops_away == 2
    assert directory.get("!22222222").rssi == -85


def test_direct_message_and_own_echo(radio: RadioClient, bus: EventBus) -> None:
    messages = bus.subscribe(Topic.MESSAGE_RECEIVED)
    _learn_own_node(radio)

    radio.handle_frame(_packet(portnums_pb2.PortNum.TEXT_MESSAGE_APP, b"ping", to=OWN))
    radio.handle_frame(_packet(portnums_pb2.PortNum.TEXT_MESSAGE_APP, b"pong", sender=OWN, to=PEER))

    incoming, echo = _drain(messages)
    assert incoming.chat_id == "dm_!22222222"
    assert echo.chat_id == "dm_!22222222"
    assert echo.direction is MessageDirection.OUT
    assert not echo.unread


def test_packets_without_sender_or_text_are_dropped(radio: RadioClient, bus: EventBus) -> None:
    everything = bus.subscribe(Topic.MESSAGE_RECEIVED, Topic.NODE_INFO)

    radio.handle_frame(_packet(portnums_pb2.PortNum.TEXT_MESSAGE_APP, b"ghost", sender=0))
    radio.handle_frame(_packet(portnums_pb2.PortNum.TEXT_MESSAGE_APP, b"\xff\xfe"))
    radio.handle_frame(_packet(portnums_pb2.PortNum.TEXT_MESSAGE_APP, b"   "))

    events = _drain(everything)
    assert all(isinstance(event, NodeUpdate) for event in events)
    assert len(events) == 2


def test_encrypted_packet_only_refreshes_metrics(radio: RadioClient, bus: EventBus) -> None:
    everything = bus.subscribe(Topic.MESSAGE_RECEIVED, Topic.NODE_INFO)
    packet = mesh_pb2.MeshPacket(to=0xFFFFFFFF, encrypted=b"\x00" * 8, rx_rssi=-100, rx_snr=3.0)
    setattr(packet, "from", PEER)

    radio.handle_frame(_from_radio(packet=packet))

    [update] = _drain(everything)
    assert update.source is NodeUpdateSource.PACKET_METRICS


def test_nodeinfo_position_and_telemetry_packets(radio: RadioClient, bus: EventBus) -> None:
    nodes = bus.subscribe(Topic.NODE_INFO)
    user = mesh_pb2.User(id="!22222222", long_name="Ridge", short_name="RDG").SerializeToString()
    position = mesh_pb2.Position(latitude_i=515000000, longitude_i=1000000).SerializeToString()
    telemetry = telemetry_pb2.Telemetry(
        device_metrics=telemetry_pb2.DeviceMetrics(battery_level=64, voltage=3.8)
    ).SerializeToString()

    radio.handle_frame(_packet(portnums_pb2.PortNum.NODEINFO_APP, user))
    radio.handle_frame(_packet(portnums_pb2.PortNum.POSITION_APP, position))
    radio.handle_frame(_packet(portnums_pb2.PortNum.TELEMETRY_APP, telemetry))

    updates = [update for update in _drain(nodes) if update.source is not NodeUpdateSource.PACKET_METRICS]
    assert [update.source for update in updates] == [
        NodeUpdateSource.NODE_INFO_PACKET,
        NodeUpdateSource.POSITION_PACKET,
        NodeUpdateSource.TELEMETRY_PACKET,
    ]
    final = updates[-1].node
    assert final.long_name == "Ridge"
    assert final.position is not None
    assert final.device_metrics.battery_percent == 64


def test_routing_ack_and_nak_publish_status(radio: RadioClient, bus: EventBus) -> None:
    statuses = bus.subscribe(Topic.MESSAGE_STATUS)
    ack = mesh_pb2.Routing(error_reason=mesh_pb2.Routing.Error.NONE).SerializeToString()
    nak = mesh_pb2.Routing(error_reason=mesh_pb2.Routing.Error.MAX_RETRANSMIT).SerializeToString()

    radio.handle_frame(_packet(portnums_pb2.PortNum.ROUTING_APP, ack, to=OWN, request_id=7))
    radio.handle_frame(_packet(portnums_pb2.PortNum.ROUTING_APP, nak, to=OWN, request_id=8))

    first, second = _drain(statuses)
    assert first == MessageStatus(packet_id=7, status=DeliveryStatus.ACKED, from_id="!22222222")
    assert isinstance(second, MessageStatus)
    assert second.status is DeliveryStatus.FAILED
    assert second.reason == "MAX_RETRANSMIT"


def test_traceroute_reply_is_published(radio: RadioClient, bus: EventBus) -> None:
    traces = bus.subscribe(Topic.TRACEROUTE)
    reply = mesh_pb2.RouteDiscovery(route=[0x33333333], snr_towards=[24, 16], route_back=[], snr_back=[8])

    radio.handle_frame(
        _packet(portnums_pb2.PortNum.TRACEROUTE_APP, reply.SerializeToString(), to=OWN, request_id=31)
    )

    [result] = _drain(traces)
    assert isinstance(result, TracerouteResult)
    assert result.from_id == "!22222222"
    assert result.route == ("!33333333",)
    assert result.snr_towards == (6.0, 4.0)
    assert result.request_id == 31


def test_undecodable_frames_are_counted_and_skipped(radio: RadioClient, bus: EventBus) -> None:
    raw = bus.subscribe(Topic.RAW_FRAME_IN)
    before = _decode_error_count()

    radio.handle_frame(b"\xff\xff\xff\xff")
    radio.handle_frame(_packet(portnums_pb2.PortNum.POSITION_APP, b"\xff\xff\xff"))

    assert _decode_error_count() == before + 2
    assert raw.qsize() == 2


@pytest.mark.asyncio
async def test_send_text_writes_packet_and_publishes_pending(
    radio: RadioClient, bus: EventBus, fake_transport: FakeTransport
) -> None:
    messages = bus.subscribe(Topic.MESSAGE_RECEIVED)
    outbound = bus.subscribe(Topic.RAW_FRAME_OUT)
    await _connected(fake_transport)
    await radio.start(fake_transport)
    _learn_own_node(radio)

    message = await radio.send_text("dm_!22222222", "on my way")

    sent = mesh_pb2.ToRadio()
    sent.ParseFromString(fake_transport.written[-1])
    assert sent.packet.to == PEER
    assert sent.packet.want_ack
    assert sent.packet.decoded.payload == b"on my way"
    assert sent.packet.id == message.packet_id
    assert message.status is DeliveryStatus.PENDING
    assert message.direction is MessageDirection.OUT
    assert _drain(messages) == [message]
    assert outbound.qsize() == 2
    await radio.stop()


@pytest.mark.asyncio
async def test_send_text_validation(radio: RadioClient, fake_transport: FakeTransport) -> None:
    with pytest.raises(NotConnectedError):
        await radio.send_text("channel_0", "hello")

    await _connected(fake_transport)
    await radio.start(fake_transport)
    with pytest.raises(ValueError):
        await radio.send_text("channel_0", "  ")
    with pytest.raises(ValueError):
        await radio.send_text("channel_0", "x" * 201)
    with pytest.raises(ValueError):
        await radio.send_text("lobby", "hello")
    await radio.stop()


@pytest.mark.asyncio
async def test_traceroute_and_user_exchange_requests(radio: RadioClient, fake_transport: FakeTransport) -> None:
    await _connected(fake_transport)
    await radio.start(fake_transport)
    radio.handle_frame(_from_radio(my_info=mesh_pb2.MyNodeInfo(my_node_num=OWN)))
    radio.handle_frame(
        _from_radio(node_info=mesh_pb2.NodeInfo(num=OWN, user=mesh_pb2.User(id="!11111111", long_name="Base")))
    )

    trace_id = await radio.send_traceroute("!22222222")
    exchange_id = await radio.send_exchange_user_info(PEER)

    trace, exchange = mesh_pb2.ToRadio(), mesh_pb2.ToRadio()
    trace.ParseFromString(fake_transport.written[-2])
    exchange.ParseFromString(fake_transport.written[-1])
    assert trace.packet.id == trace_id
    assert trace.packet.decoded.portnum == portnums_pb2.PortNum.TRACEROUTE_APP
    assert trace.packet.decoded.want_response
    assert exchange.packet.id == exchange_id
    user = mesh_pb2.User()
    user.ParseFromString(exchange.packet.decoded.payload)
    assert user.long_name == "Base"
    assert trace_id != exchange_id
    await radio.stop()


def test_channel_event_is_published(radio: RadioClient, bus: EventBus) -> None:
    channels = bus.subscribe(Topic.CHANNELS)
    radio.handle_frame(
        _from_radio(
            channel=channel_pb2.Channel(
                index=3, role=channel_pb2.Channel.Role.SECONDARY, settings=channel_pb2.ChannelSettings(name="x")
            )
        )
    )

    [channel] = _drain(channels)
    assert channel == ChannelInfo(index=3, name="x", role="SECONDARY", encryption=EncryptionState.NONE)
