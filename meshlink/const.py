"""Shared constants and defaults for meshlink."""

from __future__ import annotations

from typing import Final

# Link framing
FRAME_MAGIC: Final[bytes] = b"\x94\xc3"
FRAME_HEADER_SIZE: Final[int] = 4
MAX_FRAME_PAYLOAD: Final[int] = 0xFFFF

# Connection defaults
DEFAULT_CONNECTION_TYPE: Final[str] = "ip"
DEFAULT_SERIAL_PORT: Final[str] = ""
DEFAULT_SERIAL_BAUD: Final[int] = 115200
DEFAULT_IP_HOST: Final[str] = "192.168.1.1"
DEFAULT_IP_PORT: Final[int] = 4403
DEFAULT_BLE_ADAPTER: Final[str] = "default"

IP_DIAL_TIMEOUT: Final[float] = 6.0

# Bluetooth LE (Meshtastic GATT service)
BLE_SERVICE_UUID: Final[str] = "6ba1b218-15a8-461f-9fa8-5dcae273eafd"
BLE_TO_RADIO_UUID: Final[str] = "f75c76d2-129e-4dad-a1dd-7866124401e7"
BLE_FROM_RADIO_UUID: Final[str] = "2c55e69e-4993-11ed-b878-0242ac120002"
BLE_FROM_NUM_UUID: Final[str] = "ed9da18c-a800-4f66-a670-aa7547e34453"
BLE_FRAME_QUEUE_SIZE: Final[int] = 128
BLE_READ_BUFFER_SIZE: Final[int] = 4096
BLE_MAX_DRAIN_READS: Final[int] = 256
BLE_DISCOVER_TIMEOUT: Final[float] = 12.0
BLE_SUBSCRIBE_TIMEOUT: Final[float] = 8.0
BLE_ABORT_GRACE: Final[float] = 2.0

# Reconnect policy
DEFAULT_RECONNECT_INITIAL_DELAY: Final[float] = 1.0
DEFAULT_RECONNECT_MAX_DELAY: Final[float] = 60.0
DEFAULT_RECONNECT_MULTIPLIER: Final[float] = 1.6
DEFAULT_RECONNECT_JITTER: Final[float] = 0.2
RECONNECT_CONNECT_TIMEOUT: Final[float] = 10.0
RECONNECT_MONITOR_INTERVAL: Final[float] = 5.0
RECONNECT_STABLE_THRESHOLD: Final[float] = 60.0
RECONNECT_EVENT_QUEUE_SIZE: Final[int] = 10

# Radio client
RADIO_READ_TIMEOUT: Final[float] = 30.0
RADIO_READ_ERROR_PAUSE: Final[float] = 0.1
DEFAULT_HEARTBEAT_INTERVAL: Final[float] = 25.0
DEFAULT_NODE_STALE_SECONDS: Final[float] = 600.0
MAX_TEXT_BYTES: Final[int] = 200
BROADCAST_NODE_NUM: Final[int] = 0xFFFFFFFF
POSITION_SCALE: Final[float] = 1e-7

# Bus
BUS_SUBSCRIBER_BUFFER: Final[int] = 128

# Metrics
DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9131

DEFAULT_DEBUG_LOGGING: Final[bool] = False
DEFAULT_CONNECT_ON_STARTUP: Final[bool] = True

CONFIG_ENV_VAR: Final[str] = "MESHLINK_CONFIG"
CONFIG_DIR_NAME: Final[str] = "meshlink"
CONFIG_FILE_NAME: Final[str] = "config.json"
LOG_FILE_NAME: Final[str] = "meshlink.log"
