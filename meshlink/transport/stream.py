"""Shared plumbing for byte-stream links that carry framed payloads."""

from __future__ import annotations

import asyncio
import logging

from ..common import log_hexdump
from ..protocol.frame import encode_frame, read_frame
from .base import NotConnectedError, Transport, TransportClosedError


class StreamTransport(Transport):
    """Frame codec over an asyncio reader/writer pair."""

    def __init__(self) -> None:
        super().__init__()
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._write_lock = asyncio.Lock()

    def _attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    async def _read_payload(self, timeout: float | None) -> bytes:
        reader = self._reader
        if reader is None:
            raise NotConnectedError(f"{self.name} transport is not connected")
        try:
            payload = await read_frame(reader, header_timeout=timeout)
        except asyncio.IncompleteReadError as exc:
            await self._fail(exc)
            raise TransportClosedError(f"{self.name} stream closed by peer") from exc
        except OSError as exc:
            await self._fail(exc)
            raise TransportClosedError(f"{self.name} read failed: {exc}") from exc
        log_hexdump(self.logger, logging.DEBUG, f"{self.name.upper()} <", payload)
        return payload

    async def _write_payload(self, payload: bytes) -> None:
        frame = encode_frame(payload)
        async with self._write_lock:
            writer = self._writer
            if writer is None or writer.is_closing():
                raise NotConnectedError(f"{self.name} transport is not connected")
            try:
                writer.write(frame)
                await writer.drain()
            except OSError as exc:
                await self._fail(exc)
                raise TransportClosedError(f"{self.name} write failed: {exc}") from exc
        log_hexdump(self.logger, logging.DEBUG, f"{self.name.upper()} >", payload)

    async def _teardown(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as exc:
            self.logger.debug("Error while closing %s stream: %s", self.name, exc)


__all__ = ["StreamTransport"]
