"""Logging helpers for the meshlink daemon."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from logging import Handler
from logging.config import dictConfig
from pathlib import Path
from typing import Any

import msgspec

from .model import RuntimeConfig

_RESERVED_LOG_KEYS = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}


def _serialise_value(value: Any) -> Any:
    """Serialise values for JSON logs with strict type handling."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        # Radio payloads are binary; render as [94 C3 00 05].
        return f"[{' '.join(f'{b:02X}' for b in bytes(value))}]"
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """Emit JSON per log line while trimming the shared prefix."""

    PREFIX = "meshlink."

    def format(self, record: logging.LogRecord) -> str:
        logger_name = record.name
        if logger_name.startswith(self.PREFIX):
            logger_name = logger_name[len(self.PREFIX) :]

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": logger_name,
            "message": record.getMessage(),
        }

        extras = {
            key: _serialise_value(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_KEYS and not key.startswith("_")
        }
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return msgspec.json.encode(payload).decode("utf-8")


def _build_handler(log_file: str | None = None) -> Handler:
    if not log_file:
        return logging.StreamHandler()
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(config: RuntimeConfig) -> None:
    """Configure root logging based on runtime settings."""

    level_name = "DEBUG" if config.debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": "meshlink.config.logging.StructuredLogFormatter",
                }
            },
            "handlers": {
                "meshlink": {
                    "()": _build_handler,
                    "log_file": config.log_file,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "root": {
                "level": level_name,
                "handlers": ["meshlink"],
            },
        }
    )

    logging.getLogger("meshlink").info("Logging configured at level %s", level_name)


__all__ = ["StructuredLogFormatter", "configure_logging"]
