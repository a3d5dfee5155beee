"""Connection supervisor with jittered exponential backoff.

The manager drives one :class:`~meshlink.transport.Transport` through
connect, monitor and retry cycles. Each cycle is one tenacity attempt; the
wait between attempts comes from :class:`JitteredBackoff`, whose delay only
resets on :meth:`ReconnectManager.connect_now` or after a connection stayed
up past the stability threshold.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import msgspec
import tenacity
from transitions import Machine

from ..const import (
    DEFAULT_RECONNECT_INITIAL_DELAY,
    DEFAULT_RECONNECT_JITTER,
    DEFAULT_RECONNECT_MAX_DELAY,
    DEFAULT_RECONNECT_MULTIPLIER,
    RECONNECT_CONNECT_TIMEOUT,
    RECONNECT_EVENT_QUEUE_SIZE,
    RECONNECT_MONITOR_INTERVAL,
    RECONNECT_STABLE_THRESHOLD,
)
from ..metrics import RECONNECT_ATTEMPTS, record_connection_state
from ..protocol.structures import ConnectionState, ConnectionStatus
from ..state.bus import EventBus, Topic
from ..transport.base import Transport, TransportConfigError, TransportError

logger = logging.getLogger("meshlink.reconnect")

ConnectedCallback = Callable[[Transport], Awaitable[None]]
DisconnectedCallback = Callable[[], Awaitable[None]]


class ConnectionLostError(TransportError):
    """Raised inside a cycle when the liveness poll sees the link drop."""


class ReconnectPolicy(msgspec.Struct, frozen=True, kw_only=True):
    initial_delay: float = DEFAULT_RECONNECT_INITIAL_DELAY
    max_delay: float = DEFAULT_RECONNECT_MAX_DELAY
    multiplier: float = DEFAULT_RECONNECT_MULTIPLIER
    jitter: float = DEFAULT_RECONNECT_JITTER
    connect_timeout: float = RECONNECT_CONNECT_TIMEOUT
    monitor_interval: float = RECONNECT_MONITOR_INTERVAL
    stable_threshold: float = RECONNECT_STABLE_THRESHOLD

    def __post_init__(self) -> None:
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")
        if self.connect_timeout <= 0 or self.monitor_interval <= 0:
            raise ValueError("connect_timeout and monitor_interval must be positive")


class JitteredBackoff:
    """Backoff state usable directly as a tenacity ``wait`` strategy."""

    def __init__(self, policy: ReconnectPolicy, *, rng: Callable[[], float] = random.random) -> None:
        self.policy = policy
        self._rng = rng
        self.delay = policy.initial_delay
        self.retry_count = 0

    def reset(self) -> None:
        self.delay = self.policy.initial_delay
        self.retry_count = 0

    def increase(self) -> None:
        self.retry_count += 1
        self.delay = min(self.delay * self.policy.multiplier, self.policy.max_delay)

    def next_delay(self) -> float:
        if self.retry_count == 0:
            return 0.0
        jitter = self.policy.jitter
        if jitter <= 0:
            return self.delay
        factor = 1.0 + (self._rng() - 0.5) * 2 * jitter
        return max(self.delay * factor, self.policy.initial_delay)

    def __call__(self, retry_state: tenacity.RetryCallState) -> float:
        return self.next_delay()


class ReconnectManager:
    """Keep a transport connected until stopped."""

    STATE_DISCONNECTED = ConnectionState.DISCONNECTED.value
    STATE_CONNECTING = ConnectionState.CONNECTING.value
    STATE_CONNECTED = ConnectionState.CONNECTED.value
    STATE_RETRYING = ConnectionState.RETRYING.value

    if TYPE_CHECKING:
        # Triggers generated by transitions.Machine
        fsm_state: str

        def trigger(self, trigger_name: str, *args: Any, **kwargs: Any) -> bool: ...
        def begin_connect(self) -> bool: ...
        def connect_succeeded(self) -> bool: ...
        def connect_failed(self) -> bool: ...
        def connection_lost(self) -> bool: ...
        def halt(self) -> bool: ...

    def __init__(
        self,
        transport: Transport,
        policy: ReconnectPolicy | None = None,
        *,
        bus: EventBus | None = None,
        on_connected: ConnectedCallback | None = None,
        on_disconnected: DisconnectedCallback | None = None,
        rng: Callable[[], float] = random.random,
        event_queue_size: int = RECONNECT_EVENT_QUEUE_SIZE,
    ) -> None:
        self.transport = transport
        self.policy = policy or ReconnectPolicy()
        self.backoff = JitteredBackoff(self.policy, rng=rng)
        self.bus = bus
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self.events: asyncio.Queue[ConnectionStatus] = asyncio.Queue(maxsize=event_queue_size)

        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._last_error: str | None = None
        self._published_state: str | None = None
        self._session_open = False

        self.fsm_state = self.STATE_DISCONNECTED
        self.machine = Machine(
            model=self,
            states=[
                self.STATE_DISCONNECTED,
                self.STATE_CONNECTING,
                self.STATE_CONNECTED,
                self.STATE_RETRYING,
            ],
            initial=self.STATE_DISCONNECTED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
            after_state_change="_after_state_change",
        )
        self.machine.add_transition(
            "begin_connect", [self.STATE_DISCONNECTED, self.STATE_RETRYING], self.STATE_CONNECTING
        )
        self.machine.add_transition("connect_succeeded", self.STATE_CONNECTING, self.STATE_CONNECTED)
        self.machine.add_transition("connect_failed", self.STATE_CONNECTING, self.STATE_RETRYING)
        self.machine.add_transition("connection_lost", self.STATE_CONNECTED, self.STATE_RETRYING)
        self.machine.add_transition("halt", "*", self.STATE_DISCONNECTED)
        self._published_state = self.STATE_DISCONNECTED
        record_connection_state(ConnectionState.DISCONNECTED)

    # --- Queries ---

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(self.fsm_state)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_connected(self) -> bool:
        return self.fsm_state == self.STATE_CONNECTED

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self.state,
            status=self._status_text(),
            error=self._last_error if self.fsm_state != self.STATE_CONNECTED else None,
            target=self.transport.status_target(),
            transport_name=self.transport.name,
        )

    # --- Control ---

    def start(self) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError("reconnect manager already running")
        self._task = asyncio.create_task(self.run(), name="meshlink-reconnect")
        return self._task

    async def stop(self) -> None:
        """Cancel the loop, close the transport and settle in Disconnected."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_transport()
        await self._end_session()
        self.halt()

    def connect_now(self) -> None:
        """Reset backoff and cut any pending wait short."""
        self.backoff.reset()
        self._wake.set()
        logger.info("Immediate connection requested")

    async def replace_transport(self, transport: Transport) -> None:
        """Swap the managed transport, restarting the loop if it was running."""
        was_running = self.running
        await self.stop()
        self.transport = transport
        self._last_error = None
        self.backoff.reset()
        if was_running:
            self.start()

    # --- Loop ---

    async def run(self) -> None:
        retryer = tenacity.AsyncRetrying(
            wait=self.backoff,
            retry=(
                tenacity.retry_if_exception_type(Exception)
                & tenacity.retry_if_not_exception_type(TransportConfigError)
            ),
            before_sleep=self._log_retry_attempt,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    await self._attempt()
        except TransportConfigError as exc:
            logger.error("Connection to %s cannot succeed: %s", self.transport.status_target(), exc)
            self._last_error = str(exc)
            await self._close_transport()
            self.halt()
        except asyncio.CancelledError:
            logger.info("Reconnect loop stopping")
            raise

    async def _attempt(self) -> None:
        try:
            await self._cycle()
        except (TransportError, OSError, TimeoutError):
            raise
        except Exception as exc:
            # Unexpected failure mid-cycle: settle in Disconnected and go round again.
            RECONNECT_ATTEMPTS.labels(outcome="crash").inc()
            logger.error("Reconnect cycle failed unexpectedly: %s", exc, exc_info=exc)
            self._last_error = str(exc) or type(exc).__name__
            await self._close_transport()
            await self._end_session()
            self.backoff.increase()
            self.halt()
            raise

    async def _cycle(self) -> None:
        self.begin_connect()
        logger.info(
            "Connecting to %s (retry %d)",
            self.transport.status_target(),
            self.backoff.retry_count,
        )
        try:
            async with asyncio.timeout(self.policy.connect_timeout):
                await self.transport.connect()
            if self.on_connected is not None:
                await self.on_connected(self.transport)
            self._session_open = True
        except TransportConfigError:
            RECONNECT_ATTEMPTS.labels(outcome="config_error").inc()
            raise
        except (TransportError, OSError, TimeoutError) as exc:
            RECONNECT_ATTEMPTS.labels(outcome="failure").inc()
            self._last_error = str(exc) or type(exc).__name__
            logger.warning("Connection attempt failed: %s", self._last_error)
            await self._close_transport()
            await self._end_session()
            self.backoff.increase()
            self.connect_failed()
            raise

        RECONNECT_ATTEMPTS.labels(outcome="success").inc()
        self._last_error = None
        self.connect_succeeded()
        loop = asyncio.get_running_loop()
        connected_at = loop.time()

        await self._monitor()

        uptime = loop.time() - connected_at
        logger.warning("Connection to %s lost after %.1fs", self.transport.status_target(), uptime)
        self._last_error = "connection lost"
        await self._close_transport()
        await self._end_session()
        if uptime > self.policy.stable_threshold:
            self.backoff.reset()
            logger.debug("Connection was stable; backoff reset")
        self.connection_lost()
        raise ConnectionLostError("connection lost")

    async def _monitor(self) -> None:
        while self.transport.is_connected():
            await asyncio.sleep(self.policy.monitor_interval)

    async def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(seconds):
                    await self._wake.wait()
        self._wake.clear()

    def _log_retry_attempt(self, retry_state: tenacity.RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        if wait > 0:
            logger.info(
                "Waiting %.2fs before reconnecting to %s (retry %d)",
                wait,
                self.transport.status_target(),
                self.backoff.retry_count,
            )

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except (TransportError, OSError) as exc:
            logger.debug("Error while closing transport: %s", exc)

    async def _end_session(self) -> None:
        if not self._session_open:
            return
        self._session_open = False
        if self.on_disconnected is not None:
            await self.on_disconnected()

    # --- Status events ---

    def _status_text(self) -> str:
        match self.fsm_state:
            case self.STATE_CONNECTING:
                return f"Connecting to {self.transport.status_target()}"
            case self.STATE_CONNECTED:
                return f"Connected to {self.transport.status_target()}"
            case self.STATE_RETRYING:
                return f"Retrying {self.transport.status_target()}"
            case _:
                return "Disconnected"

    def _after_state_change(self) -> None:
        self._publish_status()

    def _publish_status(self) -> None:
        if self.fsm_state == self._published_state:
            return
        self._published_state = self.fsm_state
        status = self.status()
        record_connection_state(status.state)
        logger.debug("Connection state -> %s", status.state.value)
        try:
            self.events.put_nowait(status)
        except asyncio.QueueFull:
            logger.warning("Connection event queue full; dropping %s notice", status.state.value)
        if self.bus is not None:
            self.bus.publish(Topic.CONN_STATUS, status)


__all__ = [
    "ConnectionLostError",
    "JitteredBackoff",
    "ReconnectManager",
    "ReconnectPolicy",
]
