import urllib.request

from meshlink.metrics import REGISTRY, PrometheusExporter, record_connection_state, render_latest
from meshlink.protocol.structures import ConnectionState


def _state(state: ConnectionState) -> float | None:
    return REGISTRY.get_sample_value("meshlink_connection_state", {"state": state.value})


def test_connection_state_gauge_is_one_hot() -> None:
    record_connection_state(ConnectionState.RETRYING)

    assert _state(ConnectionState.RETRYING) == 1
    assert _state(ConnectionState.CONNECTED) == 0
    assert _state(ConnectionState.DISCONNECTED) == 0

    record_connection_state(ConnectionState.CONNECTED)
    assert _state(ConnectionState.CONNECTED) == 1
    assert _state(ConnectionState.RETRYING) == 0


def test_render_latest_exposes_meshlink_metrics() -> None:
    text = render_latest().decode("utf-8")

    assert "meshlink_known_nodes" in text
    assert "meshlink_decode_errors_total" in text


def test_exporter_serves_registry() -> None:
    exporter = PrometheusExporter("127.0.0.1", 0)
    exporter.start()
    try:
        port = exporter._server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/metrics", timeout=2) as response:
            body = response.read().decode("utf-8")
        assert "meshlink_connection_state" in body
    finally:
        exporter.stop()
    exporter.stop()
