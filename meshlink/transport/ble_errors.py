"""Classification of Bluetooth stack errors.

BlueZ reports most failures as D-Bus errors whose name is the only stable
signal; everything else is matched on lower-cased message text.
"""

from __future__ import annotations

import sys
from enum import StrEnum

from bleak.exc import BleakDBusError

DBUS_NOT_READY = "org.bluez.Error.NotReady"
DBUS_FAILED = "org.bluez.Error.Failed"
DBUS_IN_PROGRESS = "org.bluez.Error.InProgress"
DBUS_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"


class BleErrorCategory(StrEnum):
    BENIGN_STOP_SCAN = "benign_stop_scan"
    SCAN_IN_PROGRESS = "scan_in_progress"
    BENIGN_ADAPTER_ENABLE = "benign_adapter_enable"
    RETRY_WITH_DISCOVERY = "retry_with_discovery"
    OTHER = "other"


def dbus_error_name(err: BaseException | None) -> str:
    """Return the D-Bus error name carried by ``err`` or its causes."""
    seen: set[int] = set()
    current = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, BleakDBusError):
            return current.dbus_error or ""
        current = current.__cause__ or current.__context__
    return ""


def _message(err: BaseException) -> str:
    return str(err).strip().lower()


def is_benign_stop_scan_error(err: BaseException | None) -> bool:
    if err is None:
        return True
    name = dbus_error_name(err)
    message = _message(err)
    if name == DBUS_NOT_READY:
        return True
    if name == DBUS_FAILED and "no discovery started" in message:
        return True
    return "no scan in progress" in message or "not scanning" in message


def is_scan_in_progress_error(err: BaseException | None) -> bool:
    if err is None:
        return False
    if dbus_error_name(err) == DBUS_IN_PROGRESS:
        return True
    return "already in progress" in _message(err)


def is_benign_enable_adapter_error(err: BaseException | None, *, platform: str | None = None) -> bool:
    """Windows reports "Incorrect function" when the radio is already on."""
    if err is None:
        return False
    if (platform or sys.platform) != "win32":
        return False
    return _message(err).rstrip(".") == "incorrect function"


def should_retry_connect_with_discovery(err: BaseException | None, *, platform: str | None = None) -> bool:
    """True when BlueZ forgot the device object and a fresh scan is needed."""
    if err is None:
        return False
    if not (platform or sys.platform).startswith("linux"):
        return False
    message = _message(err)
    if "org.freedesktop.dbus.properties" not in message or 'method "get"' not in message:
        return False
    return dbus_error_name(err) == DBUS_UNKNOWN_METHOD or "doesn't exist" in message


def classify(err: BaseException | None, *, platform: str | None = None) -> BleErrorCategory:
    if should_retry_connect_with_discovery(err, platform=platform):
        return BleErrorCategory.RETRY_WITH_DISCOVERY
    if is_scan_in_progress_error(err):
        return BleErrorCategory.SCAN_IN_PROGRESS
    if is_benign_stop_scan_error(err):
        return BleErrorCategory.BENIGN_STOP_SCAN
    if is_benign_enable_adapter_error(err, platform=platform):
        return BleErrorCategory.BENIGN_ADAPTER_ENABLE
    return BleErrorCategory.OTHER


__all__ = [
    "BleErrorCategory",
    "classify",
    "dbus_error_name",
    "is_benign_enable_adapter_error",
    "is_benign_stop_scan_error",
    "is_scan_in_progress_error",
    "should_retry_connect_with_discovery",
]
