"""Settings loader for the meshlink daemon.

Configuration is read from a JSON file, ``$XDG_CONFIG_HOME/meshlink/config.json``
by default. ``MESHLINK_CONFIG`` points at another file. A missing file means
built-in defaults.

Two layouts are accepted and may be mixed: flat keys named like the
:class:`RuntimeConfig` fields, and the nested sections used by desktop
clients (``connection``, ``reconnect``, ``logging``, ``metrics``, ``radio``).
Flat keys win over nested ones.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import msgspec
from marshmallow import ValidationError

from ..common import parse_bool, parse_float, parse_int
from ..const import CONFIG_DIR_NAME, CONFIG_ENV_VAR, CONFIG_FILE_NAME, LOG_FILE_NAME
from .model import RuntimeConfig
from .schema import RuntimeConfigSchema

logger = logging.getLogger("meshlink.config")

_LEVEL_DEBUG = "debug"


def default_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME", "").strip()
    root = Path(base) if base else Path.home() / ".config"
    return root / CONFIG_DIR_NAME


def config_path() -> Path:
    """Return the settings file location, honouring ``MESHLINK_CONFIG``."""
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return default_config_dir() / CONFIG_FILE_NAME


def _load_raw_config(path: Path) -> dict[str, Any]:
    try:
        content = path.read_bytes()
    except FileNotFoundError:
        logger.info("No settings file at %s; using defaults.", path)
        return {}
    except OSError as exc:
        raise ValidationError(f"cannot read settings file {path}: {exc}") from exc

    if not content.strip():
        return {}
    try:
        raw = msgspec.json.decode(content)
    except msgspec.DecodeError as exc:
        raise ValidationError(f"settings file {path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValidationError(f"settings file {path} must contain a JSON object")
    return raw


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, dict) else {}


def _put(flat: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        flat[key] = value


def _millis(value: Any) -> float | None:
    if value is None:
        return None
    millis = parse_float(value, -1.0)
    if millis < 0:
        # Leave the raw value for the schema to reject.
        return value
    return millis / 1000.0


def _flatten_connection(section: dict[str, Any], flat: dict[str, Any]) -> None:
    _put(flat, "connection_type", section.get("type", section.get("connector")))
    _put(flat, "connect_on_startup", section.get("connect_on_startup"))

    serial = _section(section, "serial")
    _put(flat, "serial_port", serial.get("port", section.get("serial_port")))
    _put(flat, "serial_baud", serial.get("baud", section.get("serial_baud")))

    ip = _section(section, "ip")
    _put(flat, "ip_host", ip.get("host", section.get("host")))
    _put(flat, "ip_port", ip.get("port", section.get("port")))

    ble = _section(section, "bluetooth")
    _put(flat, "ble_address", ble.get("address", section.get("bluetooth_address")))
    _put(flat, "ble_adapter", ble.get("adapter", section.get("bluetooth_adapter")))


def _flatten_reconnect(section: dict[str, Any], flat: dict[str, Any]) -> None:
    _put(flat, "reconnect_initial_delay", _millis(section.get("initial_millis")))
    _put(flat, "reconnect_max_delay", _millis(section.get("max_millis")))
    _put(flat, "reconnect_multiplier", section.get("multiplier"))
    _put(flat, "reconnect_jitter", section.get("jitter"))


def _flatten_logging(section: dict[str, Any], flat: dict[str, Any], config_dir: Path) -> None:
    level = section.get("level")
    if isinstance(level, str):
        flat["debug_logging"] = level.strip().lower() == _LEVEL_DEBUG
    if "file" in section:
        _put(flat, "log_file", section.get("file"))
    elif parse_bool(section.get("log_to_file")):
        flat["log_file"] = str(config_dir / LOG_FILE_NAME)


def flatten_settings(raw: dict[str, Any], *, config_dir: Path | None = None) -> dict[str, Any]:
    """Translate a settings document into :class:`RuntimeConfigSchema` input."""
    config_dir = config_dir if config_dir is not None else default_config_dir()
    flat: dict[str, Any] = {}

    _flatten_connection(_section(raw, "connection"), flat)
    _flatten_reconnect(_section(raw, "reconnect"), flat)
    _flatten_logging(_section(raw, "logging"), flat, config_dir)

    metrics = _section(raw, "metrics")
    _put(flat, "metrics_enabled", metrics.get("enabled"))
    _put(flat, "metrics_host", metrics.get("host"))
    _put(flat, "metrics_port", metrics.get("port"))

    radio = _section(raw, "radio")
    _put(flat, "heartbeat_interval", radio.get("heartbeat_interval"))
    _put(flat, "node_stale_seconds", radio.get("node_stale_seconds"))

    field_names = RuntimeConfigSchema().fields.keys()
    for key, value in raw.items():
        if key in field_names:
            flat[key] = value
    return flat


def _coerce_legacy_types(flat: dict[str, Any]) -> dict[str, Any]:
    # Older settings files stored numbers and switches as strings.
    for key in ("serial_baud", "ip_port", "metrics_port"):
        if isinstance(flat.get(key), str):
            flat[key] = parse_int(flat[key], 0)
    for key in ("connect_on_startup", "debug_logging", "metrics_enabled"):
        if isinstance(flat.get(key), str):
            flat[key] = parse_bool(flat[key])
    return flat


def load_runtime_config(path: str | os.PathLike[str] | None = None) -> RuntimeConfig:
    """Load configuration from the settings file or defaults.

    Raises :class:`marshmallow.ValidationError` when the file is unreadable,
    malformed, or holds invalid values.
    """

    target = Path(path) if path is not None else config_path()
    raw = _load_raw_config(target)
    flat = _coerce_legacy_types(flatten_settings(raw, config_dir=target.parent))
    config = RuntimeConfigSchema().load(flat)
    logger.debug("Loaded settings from %s (connection=%s)", target, config.connection_type)
    return config


__all__ = [
    "RuntimeConfig",
    "config_path",
    "default_config_dir",
    "flatten_settings",
    "load_runtime_config",
]
