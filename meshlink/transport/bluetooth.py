"""Bluetooth LE link to a Meshtastic radio.

The radio exposes three characteristics: ``ToRadio`` (write without
response), ``FromRadio`` (read until empty) and ``FromNum`` (notify). Each
FromNum notification means "there is something to read"; a single drain
task turns those into FromRadio reads and queues the payloads for
:meth:`read_frame`. BLE frames carry no magic/length header.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Callable
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from ..common import log_hexdump
from ..const import (
    BLE_ABORT_GRACE,
    BLE_DISCOVER_TIMEOUT,
    BLE_FRAME_QUEUE_SIZE,
    BLE_FROM_NUM_UUID,
    BLE_FROM_RADIO_UUID,
    BLE_MAX_DRAIN_READS,
    BLE_READ_BUFFER_SIZE,
    BLE_SERVICE_UUID,
    BLE_SUBSCRIBE_TIMEOUT,
    BLE_TO_RADIO_UUID,
    DEFAULT_BLE_ADAPTER,
    MAX_FRAME_PAYLOAD,
)
from ..state.queues import FrameQueue, FrameQueueClosed
from .base import (
    NotConnectedError,
    ShortWriteError,
    Transport,
    TransportClosedError,
    TransportConfigError,
    TransportError,
)
from .ble_errors import (
    is_benign_enable_adapter_error,
    is_benign_stop_scan_error,
    is_scan_in_progress_error,
    should_retry_connect_with_discovery,
)

_ADDRESS_RE = re.compile(r"^(?:[0-9A-F]{2}:){5}[0-9A-F]{2}$")

_LINK_ERRORS = (BleakError, OSError, TimeoutError)


def parse_ble_address(address: str) -> str:
    """Validate a BLE MAC address and return it upper-cased."""
    normalized = (address or "").strip().upper()
    if not normalized:
        raise TransportConfigError("bluetooth address is empty")
    if not _ADDRESS_RE.match(normalized):
        raise TransportConfigError(f"invalid bluetooth address {address!r}")
    return normalized


class BluetoothTransport(Transport):
    name = "bluetooth"

    def __init__(
        self,
        address: str,
        adapter: str = DEFAULT_BLE_ADAPTER,
        *,
        client_factory: Callable[..., Any] = BleakClient,
        scanner_factory: Callable[..., Any] = BleakScanner,
        frame_queue_size: int = BLE_FRAME_QUEUE_SIZE,
        discover_timeout: float = BLE_DISCOVER_TIMEOUT,
        subscribe_timeout: float = BLE_SUBSCRIBE_TIMEOUT,
    ) -> None:
        super().__init__()
        self.address = address
        self.adapter = adapter
        self._client_factory = client_factory
        self._scanner_factory = scanner_factory
        self._frame_queue_size = frame_queue_size
        self._discover_timeout = discover_timeout
        self._subscribe_timeout = subscribe_timeout

        self._client: Any = None
        self._to_radio: Any = None
        self._from_radio: Any = None
        self._from_num: Any = None
        self._frames = FrameQueue(frame_queue_size)
        self._frames.close()
        self._drain_requested = asyncio.Event()
        self._drain_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._closing = False
        self._error: BaseException | None = None
        self._background: set[asyncio.Task[None]] = set()

    def status_target(self) -> str:
        return self.address

    @property
    def last_error(self) -> BaseException | None:
        return self._error

    def _adapter_kwargs(self) -> dict[str, Any]:
        if not self.adapter or self.adapter == DEFAULT_BLE_ADAPTER:
            return {}
        return {"adapter": self.adapter}

    async def _open(self) -> None:
        address = parse_ble_address(self.address)
        self._closing = False
        self._error = None

        client = await self._connect_client(address)
        try:
            self._resolve_characteristics(client)
            self._frames = FrameQueue(self._frame_queue_size)
            self._drain_requested.clear()
            await self._subscribe(client)
        except BaseException:
            await self._disconnect_client(client)
            self._to_radio = self._from_radio = self._from_num = None
            raise

        self._client = client
        self._drain_task = asyncio.create_task(self._drain_loop(client), name="meshlink-ble-drain")
        self._request_drain()

    async def _connect_client(self, address: str) -> Any:
        client = self._client_factory(
            address,
            disconnected_callback=self._on_disconnected,
            **self._adapter_kwargs(),
        )
        try:
            await client.connect()
            return client
        except _LINK_ERRORS as exc:
            if not should_retry_connect_with_discovery(exc):
                raise TransportError(f"bluetooth connect to {address} failed: {exc}") from exc
            self.logger.info("Device %s unknown to the adapter; scanning before retry", address)

        device = await self._discover_device(address)
        client = self._client_factory(
            device,
            disconnected_callback=self._on_disconnected,
            **self._adapter_kwargs(),
        )
        try:
            await client.connect()
        except _LINK_ERRORS as exc:
            raise TransportError(f"bluetooth connect to {address} failed after discovery: {exc}") from exc
        return client

    async def _discover_device(self, address: str) -> Any:
        found: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def _on_detection(device: Any, _advertisement: Any) -> None:
            if found.done():
                return
            if str(getattr(device, "address", "")).upper() == address:
                found.set_result(device)

        scanner = self._scanner_factory(detection_callback=_on_detection, **self._adapter_kwargs())
        try:
            await scanner.start()
        except _LINK_ERRORS as exc:
            if is_scan_in_progress_error(exc):
                raise TransportError("bluetooth scan already in progress") from exc
            if not is_benign_enable_adapter_error(exc):
                raise TransportError(f"bluetooth scan failed: {exc}") from exc
            self.logger.debug("Ignoring adapter enable error: %s", exc)

        try:
            async with asyncio.timeout(self._discover_timeout):
                return await found
        except TimeoutError as exc:
            raise TransportError(
                f"bluetooth device {address} not found within {self._discover_timeout:.0f}s"
            ) from exc
        finally:
            await self._stop_scan(scanner)

    async def _stop_scan(self, scanner: Any) -> None:
        try:
            await scanner.stop()
        except _LINK_ERRORS as exc:
            if is_benign_stop_scan_error(exc):
                self.logger.debug("Ignoring stop-scan error: %s", exc)
            else:
                self.logger.warning("Failed to stop bluetooth scan: %s", exc)

    def _resolve_characteristics(self, client: Any) -> None:
        service = client.services.get_service(BLE_SERVICE_UUID)
        if service is None:
            raise TransportError("meshtastic BLE service is not available")
        to_radio = service.get_characteristic(BLE_TO_RADIO_UUID)
        from_radio = service.get_characteristic(BLE_FROM_RADIO_UUID)
        from_num = service.get_characteristic(BLE_FROM_NUM_UUID)
        missing = [
            label
            for label, char in (("ToRadio", to_radio), ("FromRadio", from_radio), ("FromNum", from_num))
            if char is None
        ]
        if missing:
            raise TransportError(f"meshtastic BLE characteristics missing: {', '.join(missing)}")
        self._to_radio = to_radio
        self._from_radio = from_radio
        self._from_num = from_num

    async def _subscribe(self, client: Any) -> None:
        subscribe = asyncio.ensure_future(client.start_notify(self._from_num, self._on_from_num))
        try:
            async with asyncio.timeout(self._subscribe_timeout):
                await asyncio.shield(subscribe)
        except TimeoutError as exc:
            # A hung subscribe only returns once the link drops.
            await self._disconnect_client(client)
            with contextlib.suppress(TimeoutError, *_LINK_ERRORS):
                async with asyncio.timeout(BLE_ABORT_GRACE):
                    await subscribe
            if not subscribe.done():
                subscribe.cancel()
            raise TransportError(
                f"subscribe to FromNum notifications timed out after {self._subscribe_timeout:.0f}s"
            ) from exc
        except _LINK_ERRORS as exc:
            raise TransportError(f"subscribe to FromNum notifications failed: {exc}") from exc

    def _on_from_num(self, _sender: Any, _data: bytearray) -> None:
        self._request_drain()

    def _request_drain(self) -> None:
        # Requests coalesce: one pending drain covers any number of notifications.
        self._drain_requested.set()

    def _on_disconnected(self, _client: Any) -> None:
        if self._closing or not self._connected:
            return
        task = asyncio.get_running_loop().create_task(
            self._fail(TransportClosedError("bluetooth device disconnected"))
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _drain_loop(self, client: Any) -> None:
        while True:
            await self._drain_requested.wait()
            self._drain_requested.clear()
            if self._closing:
                return
            try:
                await self._drain_from_radio(client)
            except (TransportError, *_LINK_ERRORS) as exc:
                await self._fail(exc)
                return

    async def _drain_from_radio(self, client: Any) -> None:
        for _ in range(BLE_MAX_DRAIN_READS):
            payload = bytes(await client.read_gatt_char(self._from_radio))
            if not payload:
                return
            if len(payload) > BLE_READ_BUFFER_SIZE:
                raise TransportError(f"from-radio read of {len(payload)} bytes exceeds buffer")
            log_hexdump(self.logger, logging.DEBUG, "BLE <", payload)
            event = self._frames.put_nowait(payload)
            if event.dropped_chunks:
                self.logger.warning(
                    "BLE frame queue full; dropped %d oldest frame(s)", event.dropped_chunks
                )
        raise TransportError(f"from-radio drain exceeded {BLE_MAX_DRAIN_READS} reads")

    async def read_frame(self, timeout: float | None = None) -> bytes:
        if not self._connected and self._error is not None:
            raise TransportClosedError(f"bluetooth link failed: {self._error}") from self._error
        return await super().read_frame(timeout)

    async def _read_payload(self, timeout: float | None) -> bytes:
        try:
            async with asyncio.timeout(timeout):
                return await self._frames.get()
        except FrameQueueClosed as exc:
            if self._error is not None:
                raise TransportClosedError(f"bluetooth link failed: {self._error}") from self._error
            raise TransportClosedError("transport is closed") from exc

    async def _write_payload(self, payload: bytes) -> None:
        if len(payload) > MAX_FRAME_PAYLOAD:
            raise TransportError(f"payload of {len(payload)} bytes exceeds {MAX_FRAME_PAYLOAD}")
        async with self._write_lock:
            client = self._client
            if client is None or self._to_radio is None:
                raise NotConnectedError("bluetooth transport is not connected")
            limit = getattr(self._to_radio, "max_write_without_response_size", None)
            if isinstance(limit, int) and 0 < limit < len(payload):
                raise ShortWriteError(
                    f"payload of {len(payload)} bytes exceeds ToRadio write size {limit}"
                )
            try:
                await client.write_gatt_char(self._to_radio, payload, response=False)
            except _LINK_ERRORS as exc:
                await self._fail(exc)
                raise TransportClosedError(f"bluetooth write failed: {exc}") from exc
        log_hexdump(self.logger, logging.DEBUG, "BLE >", payload)

    async def _fail(self, exc: BaseException) -> None:
        if self._error is None:
            self._error = exc
        self._frames.close(exc)
        await super()._fail(exc)

    async def _teardown(self) -> None:
        self._closing = True
        self._frames.close()
        client = self._client
        from_num = self._from_num
        self._client = None
        self._to_radio = self._from_radio = self._from_num = None

        drain = self._drain_task
        self._drain_task = None
        if drain is not None and drain is not asyncio.current_task():
            drain.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await drain

        if client is None:
            return
        if from_num is not None:
            try:
                await client.stop_notify(from_num)
            except _LINK_ERRORS as exc:
                self.logger.debug("Failed to disable FromNum notifications: %s", exc)
        await self._disconnect_client(client)

    async def _disconnect_client(self, client: Any) -> None:
        try:
            async with asyncio.timeout(BLE_ABORT_GRACE):
                await client.disconnect()
        except _LINK_ERRORS as exc:
            self.logger.debug("Bluetooth disconnect failed: %s", exc)


__all__ = ["BluetoothTransport", "parse_ble_address"]
