"""Prometheus instrumentation for meshlink."""

from __future__ import annotations

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, start_http_server

from .protocol.structures import ConnectionState

logger = logging.getLogger("meshlink.metrics")

REGISTRY = CollectorRegistry(auto_describe=True)

FRAMES_IN = Counter(
    "meshlink_frames_received",
    "Frames read from the radio",
    ["transport"],
    registry=REGISTRY,
)
FRAMES_OUT = Counter(
    "meshlink_frames_sent",
    "Frames written to the radio",
    ["transport"],
    registry=REGISTRY,
)
DECODE_ERRORS = Counter(
    "meshlink_decode_errors",
    "Frames skipped because they could not be decoded",
    registry=REGISTRY,
)
RECONNECT_ATTEMPTS = Counter(
    "meshlink_reconnect_attempts",
    "Connection attempts made by the reconnection manager",
    ["outcome"],
    registry=REGISTRY,
)
BUS_DROPS = Counter(
    "meshlink_bus_dropped_events",
    "Events dropped because a subscriber queue was full",
    ["topic"],
    registry=REGISTRY,
)
CONNECTION_STATE = Gauge(
    "meshlink_connection_state",
    "1 for the current connection state, 0 otherwise",
    ["state"],
    registry=REGISTRY,
)
KNOWN_NODES = Gauge(
    "meshlink_known_nodes",
    "Nodes currently held in the in-memory directory",
    registry=REGISTRY,
)


def record_connection_state(state: ConnectionState) -> None:
    for candidate in ConnectionState:
        CONNECTION_STATE.labels(state=candidate.value).set(1 if candidate is state else 0)


def render_latest() -> bytes:
    return generate_latest(REGISTRY)


class PrometheusExporter:
    """Expose :data:`REGISTRY` over HTTP."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._server = None
        self._thread = None

    def start(self) -> None:
        if self._server is not None:
            return
        self._server, self._thread = start_http_server(self.port, addr=self.host, registry=REGISTRY)
        logger.info("Prometheus exporter listening on %s:%d", self.host, self.port)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self._server = None
        self._thread = None
        logger.info("Prometheus exporter stopped")


__all__ = [
    "BUS_DROPS",
    "CONNECTION_STATE",
    "DECODE_ERRORS",
    "FRAMES_IN",
    "FRAMES_OUT",
    "KNOWN_NODES",
    "PrometheusExporter",
    "REGISTRY",
    "RECONNECT_ATTEMPTS",
    "record_connection_state",
    "render_latest",
]
