"""USB-serial link to the radio using pyserial-asyncio-fast."""

from __future__ import annotations

import serial_asyncio_fast  # type: ignore

from ..const import DEFAULT_SERIAL_BAUD
from .base import TransportConfigError, TransportError
from .stream import StreamTransport


class SerialTransport(StreamTransport):
    name = "serial"

    def __init__(self, port: str, baud: int = DEFAULT_SERIAL_BAUD) -> None:
        super().__init__()
        self.port = port
        self.baud = baud

    def status_target(self) -> str:
        return f"{self.port} @ {self.baud}"

    async def _open(self) -> None:
        if not self.port.strip():
            raise TransportConfigError("serial port is empty")
        if self.baud <= 0:
            raise TransportConfigError(f"invalid serial baud rate: {self.baud}")

        self.logger.info("Opening %s at %d baud", self.port, self.baud)
        try:
            reader, writer = await serial_asyncio_fast.open_serial_connection(
                url=self.port,
                baudrate=self.baud,
            )
        except OSError as exc:
            raise TransportError(f"open serial port {self.port!r}: {exc}") from exc
        self._attach(reader, writer)


__all__ = ["SerialTransport"]
