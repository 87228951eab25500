"""
Global pytest configuration and fixtures for action-fanout tests.

Provides in-memory brokers, fast runtime settings and isolated metrics so that
every test runs without a real RabbitMQ broker.
"""

import asyncio
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from action_fanout.config import FanoutSettings, RuntimeSettings, TopologySettings
from action_fanout.events import Event
from action_fanout.messaging.backends import BackendConfig, BackendType, InMemoryBackend, InMemoryBroker
from action_fanout.metrics import FanoutMetrics


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def broker() -> InMemoryBroker:
    """Provide a private in-memory broker."""
    return InMemoryBroker()


@pytest.fixture
def backend_factory(broker) -> Callable[..., InMemoryBackend]:
    """Create unconnected client connections to the test broker."""

    def factory(name: str = "test") -> InMemoryBackend:
        return InMemoryBackend(BackendConfig(backend_type=BackendType.MEMORY, name=name), broker=broker)

    return factory


@pytest.fixture
def topology() -> TopologySettings:
    return TopologySettings()


@pytest.fixture
def runtime_settings() -> RuntimeSettings:
    """Runtime settings with short delays so tests finish quickly."""
    return RuntimeSettings(
        poll_interval=0.02,
        redelivery_delay=0.01,
        reconnect_delay=0.01,
        reconnect_max_delay=0.05,
    )


@pytest.fixture
def metrics() -> FanoutMetrics:
    """Metrics bound to a private registry."""
    return FanoutMetrics(CollectorRegistry())


@pytest.fixture
def settings(temp_dir, runtime_settings) -> FanoutSettings:
    """Settings for the in-memory backend with the audit log in a temp directory."""
    return FanoutSettings(
        broker={"backend": BackendType.MEMORY},
        runtime=runtime_settings,
        audit={"path": temp_dir / "audit-log.json"},
    )


@pytest.fixture
def purchase_event() -> Event:
    return Event.create(
        "purchase",
        "bob456",
        {"productId": "LAPTOP-001", "amount": 1299.99, "currency": "USD"},
    )


@pytest.fixture
def login_event() -> Event:
    return Event.create(
        "login", "alice123", {"ipAddress": "192.168.1.100", "device": "iPhone Safari"}
    )


@pytest.fixture
def profile_update_event() -> Event:
    return Event.create(
        "profile_update",
        "alice123",
        {"field": "phoneNumber", "oldValue": "+1-555-0100", "newValue": "+1-555-0200"},
    )


async def _eventually(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    """Await until a predicate holds, failing the test after a timeout."""
    return _eventually
