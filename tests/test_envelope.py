import pytest
from meshtastic.protobuf import channel_pb2, mesh_pb2, portnums_pb2, telemetry_pb2

from meshlink.protocol.envelope import (
    ChannelReceived,
    ConfigCompleteReceived,
    EnvelopeError,
    MyInfoReceived,
    NodeInfoReceived,
    PacketReceived,
    QueueStatusReceived,
    UnhandledVariant,
    decode_from_radio,
    decode_position,
    decode_route_discovery,
    decode_routing,
    decode_telemetry,
    decode_user,
    encode_heartbeat,
    encode_mesh_packet,
    encode_want_config,
    port_name,
)


def _text_packet(text: str) -> bytes:
    packet = mesh_pb2.MeshPacket(
        to=0xFFFFFFFF,
        channel=1,
        id=77,
        rx_snr=6.5,
        rx_rssi=-90,
        hop_limit=2,
        hop_start=3,
        decoded=mesh_pb2.Data(portnum=portnums_pb2.PortNum.TEXT_MESSAGE_APP, payload=text.encode()),
    )
    setattr(packet, "from", 0x22222222)
    return mesh_pb2.FromRadio(packet=packet).SerializeToString()


def test_decode_packet_variant() -> None:
    event = decode_from_radio(_text_packet("hola"))

    assert isinstance(event, PacketReceived)
    packet = event.packet
    assert packet.from_num == 0x22222222
    assert packet.to_num == 0xFFFFFFFF
    assert packet.channel == 1
    assert packet.rx_rssi == -90
    assert packet.hop_start - packet.hop_limit == 1
    assert packet.decoded is not None
    assert packet.decoded.payload == b"hola"
    assert packet.decoded.port_name == "TEXT_MESSAGE_APP"
    assert packet.encrypted is None


def test_decode_encrypted_packet_keeps_ciphertext() -> None:
    packet = mesh_pb2.MeshPacket(to=1, encrypted=b"\x01\x02\x03")
    setattr(packet, "from", 2)

    event = decode_from_radio(mesh_pb2.FromRadio(packet=packet).SerializeToString())

    assert isinstance(event, PacketReceived)
    assert event.packet.decoded is None
    assert event.packet.encrypted == b"\x01\x02\x03"


def test_decode_my_info_and_config_complete() -> None:
    my_info = mesh_pb2.FromRadio(my_info=mesh_pb2.MyNodeInfo(my_node_num=0x11111111))
    done = mesh_pb2.FromRadio(config_complete_id=1234)

    assert decode_from_radio(my_info.SerializeToString()) == MyInfoReceived(my_node_num=0x11111111)
    assert decode_from_radio(done.SerializeToString()) == ConfigCompleteReceived(config_id=1234)


def test_decode_node_info_snapshot() -> None:
    info = mesh_pb2.NodeInfo(
        num=0x33333333,
        user=mesh_pb2.User(id="!33333333", long_name=" Hill Relay ", short_name="HR"),
        position=mesh_pb2.Position(latitude_i=515000000, longitude_i=-1200000),
        device_metrics=telemetry_pb2.DeviceMetrics(battery_level=87, voltage=4.01),
        snr=4.25,
        last_heard=1_700_000_000,
        hops_away=2,
    )

    event = decode_from_radio(mesh_pb2.FromRadio(node_info=info).SerializeToString())

    assert isinstance(event, NodeInfoReceived)
    record = event.info
    assert record.num == 0x33333333
    assert record.user is not None
    assert record.user.long_name == "Hill Relay"
    assert record.position is not None
    assert record.position.latitude == pytest.approx(51.5)
    assert record.device_metrics is not None
    assert record.device_metrics.battery_level == 87
    assert record.hops_away == 2


def test_decode_channel_record() -> None:
    channel = channel_pb2.Channel(
        index=2,
        role=channel_pb2.Channel.Role.SECONDARY,
        settings=channel_pb2.ChannelSettings(name="ops", psk=bytes(16)),
    )

    event = decode_from_radio(mesh_pb2.FromRadio(channel=channel).SerializeToString())

    assert isinstance(event, ChannelReceived)
    assert event.channel.name == "ops"
    assert event.channel.role == "SECONDARY"
    assert event.channel.psk == bytes(16)


def test_decode_queue_status_and_unhandled() -> None:
    status = mesh_pb2.FromRadio(queueStatus=mesh_pb2.QueueStatus(free=5, maxlen=16))
    reboot = mesh_pb2.FromRadio(rebooted=True)

    assert decode_from_radio(status.SerializeToString()) == QueueStatusReceived(free=5, maxlen=16)
    unhandled = decode_from_radio(reboot.SerializeToString())
    assert isinstance(unhandled, UnhandledVariant)
    assert unhandled.name == "rebooted"


@pytest.mark.parametrize("payload", [b"", b"\xff\xff\xff\xff"])
def test_decode_rejects_malformed_payloads(payload: bytes) -> None:
    with pytest.raises(EnvelopeError):
        decode_from_radio(payload)


def test_port_payload_decoders() -> None:
    user = decode_user(mesh_pb2.User(id="!0000abcd", long_name="Base", short_name="BS").SerializeToString())
    assert (user.id, user.long_name, user.short_name) == ("!0000abcd", "Base", "BS")

    assert decode_position(mesh_pb2.Position().SerializeToString()) is None

    metrics = decode_telemetry(
        telemetry_pb2.Telemetry(device_metrics=telemetry_pb2.DeviceMetrics(battery_level=101)).SerializeToString()
    )
    assert metrics is not None
    assert metrics.is_charging
    assert metrics.battery_percent is None

    env = telemetry_pb2.Telemetry(environment_metrics=telemetry_pb2.EnvironmentMetrics(temperature=20.0))
    assert decode_telemetry(env.SerializeToString()) is None


def test_decode_routing_error_and_route() -> None:
    nak = decode_routing(mesh_pb2.Routing(error_reason=mesh_pb2.Routing.Error.NO_RESPONSE).SerializeToString())
    ack = decode_routing(mesh_pb2.Routing(error_reason=mesh_pb2.Routing.Error.NONE).SerializeToString())

    assert nak.is_error
    assert nak.error_reason == "NO_RESPONSE"
    assert not ack.is_error


def test_decode_route_discovery_scales_snr() -> None:
    payload = mesh_pb2.RouteDiscovery(route=[5, 6], snr_towards=[20, -8], route_back=[6], snr_back=[12]).SerializeToString()

    record = decode_route_discovery(payload)

    assert record.route == (5, 6)
    assert record.snr_towards == (5.0, -2.0)
    assert record.snr_back == (3.0,)


def test_to_radio_builders() -> None:
    want = mesh_pb2.ToRadio()
    want.ParseFromString(encode_want_config(987))
    assert want.want_config_id == 987

    heartbeat = mesh_pb2.ToRadio()
    heartbeat.ParseFromString(encode_heartbeat())
    assert heartbeat.WhichOneof("payload_variant") == "heartbeat"

    raw = encode_mesh_packet(
        from_num=1,
        to_num=0xFFFFFFFF,
        packet_id=42,
        port=portnums_pb2.PortNum.TEXT_MESSAGE_APP,
        payload=b"hi",
        channel=3,
        want_ack=True,
    )
    sent = mesh_pb2.ToRadio()
    sent.ParseFromString(raw)
    assert sent.packet.id == 42
    assert sent.packet.channel == 3
    assert sent.packet.want_ack
    assert sent.packet.decoded.payload == b"hi"


def test_port_name_falls_back_to_number() -> None:
    assert port_name(portnums_pb2.PortNum.POSITION_APP) == "POSITION_APP"
    assert port_name(60000) == "60000"
