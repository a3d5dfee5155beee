"""Data model for meshlink configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..const import (
    DEFAULT_BLE_ADAPTER,
    DEFAULT_CONNECT_ON_STARTUP,
    DEFAULT_CONNECTION_TYPE,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_IP_HOST,
    DEFAULT_IP_PORT,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_NODE_STALE_SECONDS,
    DEFAULT_RECONNECT_INITIAL_DELAY,
    DEFAULT_RECONNECT_JITTER,
    DEFAULT_RECONNECT_MAX_DELAY,
    DEFAULT_RECONNECT_MULTIPLIER,
    DEFAULT_SERIAL_BAUD,
    DEFAULT_SERIAL_PORT,
)
from ..services.reconnect import ReconnectPolicy
from ..transport.endpoints import (
    BluetoothEndpoint,
    Endpoint,
    IPEndpoint,
    SerialEndpoint,
)

logger = logging.getLogger("meshlink.config")

CONNECTION_TYPES = ("serial", "ip", "bluetooth")


@dataclass(slots=True)
class RuntimeConfig:
    """Strongly typed configuration for the daemon."""

    connection_type: str = DEFAULT_CONNECTION_TYPE
    serial_port: str = DEFAULT_SERIAL_PORT
    serial_baud: int = DEFAULT_SERIAL_BAUD
    ip_host: str = DEFAULT_IP_HOST
    ip_port: int = DEFAULT_IP_PORT
    ble_address: str = ""
    ble_adapter: str = DEFAULT_BLE_ADAPTER

    reconnect_initial_delay: float = DEFAULT_RECONNECT_INITIAL_DELAY
    reconnect_max_delay: float = DEFAULT_RECONNECT_MAX_DELAY
    reconnect_multiplier: float = DEFAULT_RECONNECT_MULTIPLIER
    reconnect_jitter: float = DEFAULT_RECONNECT_JITTER
    connect_on_startup: bool = DEFAULT_CONNECT_ON_STARTUP

    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    log_file: str | None = None

    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT

    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    node_stale_seconds: float = DEFAULT_NODE_STALE_SECONDS

    def __post_init__(self) -> None:
        self.connection_type = (self.connection_type or "").strip().lower()
        if self.connection_type not in CONNECTION_TYPES:
            raise ValueError(f"connection_type must be one of {', '.join(CONNECTION_TYPES)}")
        self.serial_port = (self.serial_port or "").strip()
        self.ip_host = (self.ip_host or "").strip()
        self.ble_address = (self.ble_address or "").strip()
        self.ble_adapter = (self.ble_adapter or "").strip() or DEFAULT_BLE_ADAPTER
        self.serial_baud = self._require_positive("serial_baud", self.serial_baud)
        self.ip_port = self._require_positive("ip_port", self.ip_port)
        self.reconnect_initial_delay = self._require_positive(
            "reconnect_initial_delay", self.reconnect_initial_delay
        )
        self.heartbeat_interval = self._require_positive("heartbeat_interval", self.heartbeat_interval)
        self.node_stale_seconds = self._require_positive("node_stale_seconds", self.node_stale_seconds)
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError(
                "reconnect_max_delay must be greater than or equal to "
                "reconnect_initial_delay"
            )
        if self.log_file is not None:
            self.log_file = self.log_file.strip() or None
        if self.metrics_enabled and self.metrics_host not in ("127.0.0.1", "localhost", "::1"):
            logger.warning(
                "Metrics exporter bound to %s; node and connection data "
                "will be reachable from the network.",
                self.metrics_host,
            )

    @staticmethod
    def _require_positive(name: str, value: int | float) -> int | float:
        if value <= 0:
            raise ValueError(f"{name} must be a positive number")
        return value

    @property
    def target(self) -> str:
        match self.connection_type:
            case "serial":
                return self.serial_port
            case "ip":
                return f"{self.ip_host}:{self.ip_port}"
            case _:
                return self.ble_address

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            initial_delay=self.reconnect_initial_delay,
            max_delay=self.reconnect_max_delay,
            multiplier=self.reconnect_multiplier,
            jitter=self.reconnect_jitter,
        )

    def endpoint(self) -> Endpoint:
        """Return the transport endpoint selected by ``connection_type``."""
        match self.connection_type:
            case "serial":
                return SerialEndpoint(port=self.serial_port, baud=self.serial_baud)
            case "ip":
                return IPEndpoint(host=self.ip_host, port=self.ip_port)
            case _:
                return BluetoothEndpoint(address=self.ble_address, adapter=self.ble_adapter)


__all__ = ["CONNECTION_TYPES", "RuntimeConfig"]
