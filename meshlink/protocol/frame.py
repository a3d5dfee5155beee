"""Length-prefixed link framing used by the serial and TCP transports.

Frame Structure (big-endian):
    [0x94 0xC3] [length (2 bytes)] [payload (length bytes)]

A reader that lands mid-stream discards bytes until the two-byte magic
matches, then reads the length and payload. Zero-length frames are rejected
on the read side. Bluetooth does not use this framing: each GATT read is one
payload.
"""

from __future__ import annotations

import asyncio

import msgspec
from construct import Bytes, ConstructError, Const, Int16ub, this
from construct import Struct as BinStruct

from ..const import FRAME_HEADER_SIZE, FRAME_MAGIC, MAX_FRAME_PAYLOAD

FRAME_HEADER_STRUCT = BinStruct(
    "magic" / Const(FRAME_MAGIC),
    "length" / Int16ub,
)

FRAME_STRUCT = BinStruct(
    "magic" / Const(FRAME_MAGIC),
    "length" / Int16ub,
    "payload" / Bytes(this.length),
)

_MAGIC_FIRST = FRAME_MAGIC[0]
_MAGIC_SECOND = FRAME_MAGIC[1]


class FrameError(ValueError):
    """Raised for frames that can never be valid."""


class IncompleteFrameError(FrameError):
    """Raised when a buffer ends before a whole frame is available."""


class Frame(msgspec.Struct, frozen=True, kw_only=True):
    """One payload exchanged with the radio over a byte-stream link."""

    payload: bytes

    @staticmethod
    def build(payload: bytes | bytearray | memoryview) -> bytes:
        data = bytes(payload)
        if not data:
            raise FrameError("Payload is empty")
        if len(data) > MAX_FRAME_PAYLOAD:
            raise FrameError(f"Payload too large ({len(data)} bytes); max is {MAX_FRAME_PAYLOAD}")
        return FRAME_STRUCT.build({"length": len(data), "payload": data})

    @staticmethod
    def parse(buffer: bytes | bytearray | memoryview) -> tuple[bytes, int]:
        """Locate and parse the first frame in *buffer*.

        Returns the payload and the number of bytes consumed, including any
        leading noise that was skipped to find the header.
        """
        data = bytes(buffer)
        start = _find_magic(data)
        if start < 0:
            raise IncompleteFrameError("No frame header in buffer")

        header_end = start + FRAME_HEADER_SIZE
        if len(data) < header_end:
            raise IncompleteFrameError("Incomplete frame header")

        try:
            header = FRAME_HEADER_STRUCT.parse(data[start:header_end])
        except ConstructError as e:
            raise FrameError(f"Frame header parsing failed: {e}") from e

        length = header.length
        if length <= 0:
            raise FrameError(f"Invalid frame length: {length}")

        end = header_end + length
        if len(data) < end:
            raise IncompleteFrameError(f"Incomplete frame payload: need {length} bytes, have {len(data) - header_end}")

        return data[header_end:end], end

    def to_bytes(self) -> bytes:
        return self.build(self.payload)

    @classmethod
    def from_bytes(cls, buffer: bytes | bytearray | memoryview) -> "Frame":
        payload, _ = cls.parse(buffer)
        return cls(payload=payload)


def _find_magic(data: bytes) -> int:
    idx = data.find(FRAME_MAGIC)
    if idx >= 0:
        return idx
    # A trailing first magic byte may still complete once more data arrives.
    if data and data[-1] == _MAGIC_FIRST:
        return len(data) - 1
    return -1


def encode_frame(payload: bytes | bytearray | memoryview) -> bytes:
    """Wrap *payload* in the link header."""
    return Frame.build(payload)


def decode_frame(buffer: bytes | bytearray | memoryview) -> tuple[bytes, int]:
    return Frame.parse(buffer)


async def read_frame(reader: asyncio.StreamReader, *, header_timeout: float | None = None) -> bytes:
    """Read one frame from *reader*, skipping noise until the header matches.

    *header_timeout* bounds only the wait for the first byte of the next
    frame. Once a byte has arrived the rest of the frame is read without a
    deadline, so a timeout never leaves a half-consumed frame behind.

    Raises :class:`TimeoutError` when nothing arrives within
    *header_timeout*, :class:`asyncio.IncompleteReadError` when the stream
    ends first and :class:`FrameError` for a zero-length frame.
    """
    async with asyncio.timeout(header_timeout):
        first = await reader.readexactly(1)
    await _resync(reader, first[0])
    header = await reader.readexactly(FRAME_HEADER_SIZE - len(FRAME_MAGIC))
    length = int.from_bytes(header, "big")
    if length <= 0:
        raise FrameError(f"Invalid frame length: {length}")
    return await reader.readexactly(length)


async def _resync(reader: asyncio.StreamReader, byte: int) -> None:
    while True:
        if byte != _MAGIC_FIRST:
            byte = (await reader.readexactly(1))[0]
            continue
        byte = (await reader.readexactly(1))[0]
        if byte == _MAGIC_SECOND:
            return


__all__ = [
    "FRAME_HEADER_STRUCT",
    "FRAME_STRUCT",
    "Frame",
    "FrameError",
    "IncompleteFrameError",
    "decode_frame",
    "encode_frame",
    "read_frame",
]
