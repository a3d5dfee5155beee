#!/usr/bin/env python3
"""Async orchestrator for the meshlink daemon.

Architecture:
    main() -> MeshlinkDaemon -> TaskGroup
        ├── reconnect (ReconnectManager, owns the transport)
        │     └── radio read loop + heartbeat (RadioClient, per session)
        ├── node-discovery (NodeDiscoveryProjection)
        ├── persistence (PersistenceProjection, when stores are given)
        ├── event-log (text messages and discoveries)
        ├── prometheus-exporter (optional)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import NoReturn

import uvloop
from marshmallow import ValidationError

from meshlink.config.logging import configure_logging
from meshlink.config.model import RuntimeConfig
from meshlink.config.settings import load_runtime_config
from meshlink.metrics import PrometheusExporter
from meshlink.protocol.structures import ChatMessage, NodeDiscovered
from meshlink.services.discovery import NodeDiscoveryProjection
from meshlink.services.radio import RadioClient
from meshlink.services.reconnect import ReconnectManager
from meshlink.state.bus import EventBus, Topic
from meshlink.state.nodes import NodeDirectory
from meshlink.state.stores import MessageStore, NodeStore, Notifier, PersistenceProjection
from meshlink.transport import Transport, build_transport

logger = logging.getLogger("meshlink")

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class MeshlinkDaemon:
    """Wire the bus, node directory, radio client and reconnect loop together."""

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        transport: Transport | None = None,
        messages: MessageStore | None = None,
        nodes: NodeStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config
        self.bus = EventBus()
        self.directory = NodeDirectory(config.node_stale_seconds)
        self.radio = RadioClient(
            self.bus,
            self.directory,
            heartbeat_interval=config.heartbeat_interval,
        )
        self.discovery = NodeDiscoveryProjection(self.bus)
        self.persistence: PersistenceProjection | None = None
        if messages is not None or nodes is not None or notifier is not None:
            self.persistence = PersistenceProjection(
                self.bus,
                messages=messages,
                nodes=nodes,
                notifier=notifier,
                directory=self.directory,
            )
        self.reconnect = ReconnectManager(
            transport or build_transport(config.endpoint()),
            config.reconnect_policy(),
            bus=self.bus,
            on_connected=self.radio.start,
            on_disconnected=self.radio.stop,
        )
        self.exporter: PrometheusExporter | None = None
        if config.metrics_enabled:
            self.exporter = PrometheusExporter(config.metrics_host, config.metrics_port)
        self._stop_requested = asyncio.Event()

    def request_stop(self) -> None:
        if not self._stop_requested.is_set():
            logger.info("Shutdown requested")
        self._stop_requested.set()

    async def _log_events(self) -> None:
        with self.bus.subscribe(Topic.MESSAGE_RECEIVED, Topic.NODE_DISCOVERED) as sub:
            async for event in sub:
                match event.payload:
                    case ChatMessage() as message:
                        logger.info(
                            "Message %s %s on %s: %s",
                            "to" if message.direction == "out" else "from",
                            message.sender_id,
                            message.chat_id,
                            message.text,
                        )
                    case NodeDiscovered() as discovered:
                        name = discovered.node.display_name if discovered.node else discovered.node_id
                        logger.info("New node on the mesh: %s (%s)", discovered.node_id, name)

    async def _restore_baseline(self) -> None:
        if self.persistence is None or self.persistence.nodes is None:
            return
        known = await self.persistence.stored_node_ids()
        self.discovery.reset_from_store(known)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)

    async def run(self) -> None:
        """Main async entry point; returns once :meth:`request_stop` is called."""
        self._install_signal_handlers()
        if self.exporter is not None:
            self.exporter.start()

        try:
            await self._restore_baseline()
            async with asyncio.TaskGroup() as task_group:
                workers = [
                    task_group.create_task(self.discovery.run(), name="meshlink-discovery"),
                    task_group.create_task(self._log_events(), name="meshlink-event-log"),
                ]
                if self.persistence is not None:
                    workers.append(
                        task_group.create_task(self.persistence.run(), name="meshlink-persistence")
                    )

                if self.config.connect_on_startup:
                    self.reconnect.start()
                else:
                    logger.info("connect_on_startup disabled; waiting without a radio link")

                await self._stop_requested.wait()
                await self.reconnect.stop()
                for worker in workers:
                    worker.cancel()
        except* Exception as exc_group:
            for group_exc in exc_group.exceptions:
                logger.critical(
                    "Unhandled exception in main task group: %s",
                    group_exc,
                    exc_info=group_exc,
                )
            raise
        finally:
            if self.reconnect.running:
                await self.reconnect.stop()
            if self.exporter is not None:
                self.exporter.stop()
            self._remove_signal_handlers()
            logger.info("meshlink daemon stopped.")


def main() -> NoReturn:  # pragma: no cover (Entry point wrapper)
    try:
        config = load_runtime_config()
    except ValidationError as exc:
        sys.stderr.write(f"meshlink: invalid configuration: {exc.messages}\n")
        sys.exit(2)
    configure_logging(config)

    logger.info(
        "Starting meshlink daemon. Connection: %s %s",
        config.connection_type,
        config.target,
    )

    try:
        daemon = MeshlinkDaemon(config)
        asyncio.run(daemon.run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during daemon execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
