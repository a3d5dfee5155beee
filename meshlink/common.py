"""Utility helpers shared across meshlink packages."""

from __future__ import annotations

import logging
from typing import Final

logger = logging.getLogger(__name__)

_TRUE_STRINGS: Final[frozenset[str]] = frozenset(
    {"1", "yes", "on", "true", "enable", "enabled"}
)


def parse_bool(value: object) -> bool:
    """Parse a boolean value safely from various types."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if value is None:
        return False
    s = str(value).lower().strip()
    return s in _TRUE_STRINGS


def parse_int(value: object, default: int) -> int:
    """Parse an integer value safely, handling floats and strings."""
    try:
        return int(float(value))  # type: ignore
    except (ValueError, TypeError):
        return default


def parse_float(value: object, default: float) -> float:
    """Parse a float value safely."""
    try:
        return float(value)  # type: ignore
    except (ValueError, TypeError):
        return default


def log_hexdump(
    logger_instance: logging.Logger, level: int, label: str, data: bytes
) -> None:
    """Log binary data in hexadecimal format.

    Format: [LABEL] LEN=10 HEX=00 01 02 ...
    """
    if not logger_instance.isEnabledFor(level):
        return

    hex_str = " ".join(f"{b:02X}" for b in data)
    logger_instance.log(level, "[%s] LEN=%d HEX=%s", label, len(data), hex_str)


def format_hexdump(data: bytes, prefix: str = "") -> str:
    """Return a multi-line canonical hexdump string."""
    if not data:
        return f"{prefix}<empty>"

    lines: list[str] = []
    for offset in range(0, len(data), 16):
        chunk = data[offset : offset + 16]
        hex_parts = [" ".join(f"{b:02X}" for b in chunk[i : i + 4]) for i in range(0, len(chunk), 4)]
        hex_str = "  ".join(hex_parts).ljust(47)
        ascii_str = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{prefix}{offset:04X}  {hex_str}  |{ascii_str}|")
    return "\n".join(lines)


__all__ = [
    "format_hexdump",
    "log_hexdump",
    "parse_bool",
    "parse_float",
    "parse_int",
]
