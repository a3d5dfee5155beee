"""Typed endpoint descriptions and the transport factory."""

from __future__ import annotations

from typing import TypeAlias

import msgspec

from ..const import DEFAULT_BLE_ADAPTER, DEFAULT_IP_PORT, DEFAULT_SERIAL_BAUD
from .base import Transport, TransportConfigError


class SerialEndpoint(msgspec.Struct, frozen=True, kw_only=True, tag="serial"):
    port: str
    baud: int = DEFAULT_SERIAL_BAUD


class IPEndpoint(msgspec.Struct, frozen=True, kw_only=True, tag="ip"):
    host: str
    port: int = DEFAULT_IP_PORT


class BluetoothEndpoint(msgspec.Struct, frozen=True, kw_only=True, tag="bluetooth"):
    address: str
    adapter: str = DEFAULT_BLE_ADAPTER


Endpoint: TypeAlias = SerialEndpoint | IPEndpoint | BluetoothEndpoint


def build_transport(endpoint: Endpoint) -> Transport:
    """Instantiate the transport matching *endpoint*."""
    # Imported lazily so a missing BLE stack only matters when it is used.
    match endpoint:
        case SerialEndpoint(port=port, baud=baud):
            from .serial import SerialTransport

            return SerialTransport(port, baud)
        case IPEndpoint(host=host, port=port):
            from .ip import IPTransport

            return IPTransport(host, port)
        case BluetoothEndpoint(address=address, adapter=adapter):
            from .bluetooth import BluetoothTransport

            return BluetoothTransport(address, adapter)
        case _:
            raise TransportConfigError(f"unsupported endpoint: {endpoint!r}")


__all__ = [
    "BluetoothEndpoint",
    "Endpoint",
    "IPEndpoint",
    "SerialEndpoint",
    "build_transport",
]
