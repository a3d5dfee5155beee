import pytest
from bleak.exc import BleakDBusError, BleakError

from meshlink.transport import ble_errors
from meshlink.transport.ble_errors import BleErrorCategory

UNKNOWN_GET = (
    'Method "Get" with signature "ss" on interface "org.freedesktop.DBus.Properties" doesn\'t exist'
)


def _dbus(name: str, *body: str) -> BleakDBusError:
    return BleakDBusError(name, list(body))


def test_dbus_error_name_follows_causes() -> None:
    inner = _dbus(ble_errors.DBUS_IN_PROGRESS, "Operation already in progress")
    try:
        try:
            raise inner
        except BleakDBusError as exc:
            raise BleakError("scan failed") from exc
    except BleakError as outer:
        assert ble_errors.dbus_error_name(outer) == ble_errors.DBUS_IN_PROGRESS

    assert ble_errors.dbus_error_name(BleakError("plain")) == ""
    assert ble_errors.dbus_error_name(None) == ""


@pytest.mark.parametrize(
    ("err", "expected"),
    [
        (None, True),
        (_dbus(ble_errors.DBUS_NOT_READY), True),
        (_dbus(ble_errors.DBUS_FAILED, "No discovery started"), True),
        (BleakError("No scan in progress"), True),
        (_dbus(ble_errors.DBUS_FAILED, "Resource busy"), False),
    ],
)
def test_benign_stop_scan(err, expected: bool) -> None:
    assert ble_errors.is_benign_stop_scan_error(err) is expected


def test_scan_in_progress() -> None:
    assert ble_errors.is_scan_in_progress_error(_dbus(ble_errors.DBUS_IN_PROGRESS))
    assert ble_errors.is_scan_in_progress_error(BleakError("Operation already in progress"))
    assert not ble_errors.is_scan_in_progress_error(BleakError("adapter off"))
    assert not ble_errors.is_scan_in_progress_error(None)


def test_adapter_enable_error_only_benign_on_windows() -> None:
    err = OSError("Incorrect function.")
    assert ble_errors.is_benign_enable_adapter_error(err, platform="win32")
    assert not ble_errors.is_benign_enable_adapter_error(err, platform="linux")
    assert not ble_errors.is_benign_enable_adapter_error(OSError("denied"), platform="win32")


def test_retry_with_discovery_needs_linux_and_missing_properties_get() -> None:
    err = _dbus(ble_errors.DBUS_UNKNOWN_METHOD, UNKNOWN_GET)
    assert ble_errors.should_retry_connect_with_discovery(err, platform="linux")
    assert not ble_errors.should_retry_connect_with_discovery(err, platform="darwin")
    assert ble_errors.should_retry_connect_with_discovery(BleakError(UNKNOWN_GET), platform="linux")
    assert not ble_errors.should_retry_connect_with_discovery(BleakError("timeout"), platform="linux")


def test_classify() -> None:
    assert (
        ble_errors.classify(_dbus(ble_errors.DBUS_UNKNOWN_METHOD, UNKNOWN_GET), platform="linux")
        is BleErrorCategory.RETRY_WITH_DISCOVERY
    )
    assert ble_errors.classify(_dbus(ble_errors.DBUS_IN_PROGRESS), platform="linux") is BleErrorCategory.SCAN_IN_PROGRESS
    assert ble_errors.classify(_dbus(ble_errors.DBUS_NOT_READY), platform="linux") is BleErrorCategory.BENIGN_STOP_SCAN
    assert (
        ble_errors.classify(OSError("Incorrect function"), platform="win32") is BleErrorCategory.BENIGN_ADAPTER_ENABLE
    )
    assert ble_errors.classify(BleakError("device gone"), platform="linux") is BleErrorCategory.OTHER
