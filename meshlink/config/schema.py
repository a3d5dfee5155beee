"""Marshmallow schema for RuntimeConfig validation."""

from __future__ import annotations

from typing import Any, Dict

from marshmallow import Schema, ValidationError, fields, post_load, pre_load, validate, validates_schema

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
from .model import CONNECTION_TYPES, RuntimeConfig


class RuntimeConfigSchema(Schema):
    """Declarative validation schema for meshlink configuration."""

    # Connection
    connection_type = fields.Str(
        load_default=DEFAULT_CONNECTION_TYPE,
        validate=validate.OneOf(CONNECTION_TYPES),
    )
    serial_port = fields.Str(load_default=DEFAULT_SERIAL_PORT)
    serial_baud = fields.Int(load_default=DEFAULT_SERIAL_BAUD, validate=validate.Range(min=300))
    ip_host = fields.Str(load_default=DEFAULT_IP_HOST)
    ip_port = fields.Int(load_default=DEFAULT_IP_PORT, validate=validate.Range(min=1, max=65535))
    ble_address = fields.Str(load_default="")
    ble_adapter = fields.Str(load_default=DEFAULT_BLE_ADAPTER)
    connect_on_startup = fields.Bool(load_default=DEFAULT_CONNECT_ON_STARTUP)

    # Reconnect
    reconnect_initial_delay = fields.Float(
        load_default=DEFAULT_RECONNECT_INITIAL_DELAY,
        validate=validate.Range(min=0.01),
    )
    reconnect_max_delay = fields.Float(
        load_default=DEFAULT_RECONNECT_MAX_DELAY,
        validate=validate.Range(min=0.01),
    )
    reconnect_multiplier = fields.Float(
        load_default=DEFAULT_RECONNECT_MULTIPLIER,
        validate=validate.Range(min=1.0),
    )
    reconnect_jitter = fields.Float(
        load_default=DEFAULT_RECONNECT_JITTER,
        validate=validate.Range(min=0.0, max=1.0),
    )

    # System
    debug_logging = fields.Bool(load_default=DEFAULT_DEBUG_LOGGING)
    log_file = fields.Str(load_default=None, allow_none=True)

    metrics_enabled = fields.Bool(load_default=DEFAULT_METRICS_ENABLED)
    metrics_host = fields.Str(load_default=DEFAULT_METRICS_HOST)
    metrics_port = fields.Int(load_default=DEFAULT_METRICS_PORT, validate=validate.Range(min=0, max=65535))

    heartbeat_interval = fields.Float(
        load_default=DEFAULT_HEARTBEAT_INTERVAL,
        validate=validate.Range(min=1.0),
    )
    node_stale_seconds = fields.Float(
        load_default=DEFAULT_NODE_STALE_SECONDS,
        validate=validate.Range(min=1.0),
    )

    @pre_load
    def normalize_strings(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        data = dict(data)
        if isinstance(data.get("connection_type"), str):
            data["connection_type"] = data["connection_type"].strip().lower()
        for key in ("serial_port", "ip_host", "ble_address", "ble_adapter"):
            if isinstance(data.get(key), str):
                data[key] = data[key].strip()
        if data.get("log_file") == "":
            data["log_file"] = None
        return data

    @validates_schema
    def validate_reconnect_window(self, data: Dict[str, Any], **kwargs: Any) -> None:
        if data["reconnect_max_delay"] < data["reconnect_initial_delay"]:
            raise ValidationError(
                "reconnect_max_delay must be greater than or equal to reconnect_initial_delay",
                field_name="reconnect_max_delay",
            )

    @validates_schema
    def validate_endpoint(self, data: Dict[str, Any], **kwargs: Any) -> None:
        match data["connection_type"]:
            case "serial":
                required = "serial_port"
            case "ip":
                required = "ip_host"
            case _:
                required = "ble_address"
        if not data.get(required):
            raise ValidationError(
                f"{required} must be configured for {data['connection_type']} connections",
                field_name=required,
            )

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> RuntimeConfig:
        return RuntimeConfig(**data)


__all__ = ["RuntimeConfigSchema"]
