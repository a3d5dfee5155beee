"""Physical links to the radio."""

from .base import (
    NotConnectedError,
    ShortWriteError,
    Transport,
    TransportClosedError,
    TransportConfigError,
    TransportError,
)
from .endpoints import BluetoothEndpoint, Endpoint, IPEndpoint, SerialEndpoint, build_transport

__all__ = [
    "BluetoothEndpoint",
    "Endpoint",
    "IPEndpoint",
    "NotConnectedError",
    "SerialEndpoint",
    "ShortWriteError",
    "Transport",
    "TransportClosedError",
    "TransportConfigError",
    "TransportError",
    "build_transport",
]
