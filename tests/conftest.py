"""Pytest configuration for meshlink tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from meshlink.config.model import RuntimeConfig
from meshlink.state.bus import EventBus
from meshlink.state.nodes import NodeDirectory
from tests.mocks import FakeClock, FakeTransport


@pytest.fixture(scope="session")
def event_loop_policy():
    """Provide uvloop event loop policy for pytest-asyncio."""
    import warnings

    import uvloop

    with warnings.catch_warnings():
        warnings.filterwarnings(
            "ignore",
            message=".*AbstractEventLoopPolicy.*",
            category=DeprecationWarning,
        )
        policy = uvloop.EventLoopPolicy()
    return policy


@pytest.fixture(autouse=True)
def reset_logging_handlers() -> Iterator[None]:
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture(autouse=True)
def _isolated_config_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep load_runtime_config() away from the developer's real settings."""
    monkeypatch.delenv("MESHLINK_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


@pytest.fixture()
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        connection_type="serial",
        serial_port="/dev/ttyUSB0",
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        heartbeat_interval=60.0,
    )


@pytest.fixture()
def bus() -> EventBus:
    return EventBus(buffer=32)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def directory(clock: FakeClock) -> NodeDirectory:
    return NodeDirectory(600.0, clock=clock)


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()
