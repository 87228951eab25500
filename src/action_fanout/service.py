"""
Service wiring for publishers and consumer roles.

Builds backends, policies and subscriber runtimes from :class:`FanoutSettings`
and runs them until a termination signal arrives. :func:`run_demo` runs all
four roles in one process against an in-memory broker.
"""

import asyncio
import logging
import signal
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .audit import AuditRecordStore, create_audit_store
from .config import ConsumerRole, FanoutSettings
from .events import ActionKind, Event
from .messaging.backends import BackendFactory, BackendType, InMemoryBroker, MessageBackend
from .metrics import serve_metrics
from .policies import (
    AnalyticsPolicy,
    AuditPolicy,
    CacheClient,
    CacheInvalidatorPolicy,
    ConsumerPolicy,
    NotificationPolicy,
    NotificationSender,
)
from .publisher import ActionPublisher
from .subscriber import SubscriberRuntime
from .topology import setup_topology

logger = logging.getLogger(__name__)


def create_backend(
    settings: FanoutSettings, name: str = "default", broker: InMemoryBroker | None = None
) -> MessageBackend:
    """Create one broker connection as configured."""
    return BackendFactory.create_backend(settings.broker.to_backend_config(name), broker=broker)


def create_policy(
    role: ConsumerRole | str,
    settings: FanoutSettings,
    sender: NotificationSender | None = None,
    cache: CacheClient | None = None,
    audit_store: AuditRecordStore | None = None,
) -> ConsumerPolicy:
    role = ConsumerRole(role)
    if role == ConsumerRole.ANALYTICS:
        return AnalyticsPolicy()
    if role == ConsumerRole.NOTIFICATION:
        return NotificationPolicy(sender)
    if role == ConsumerRole.AUDIT:
        return AuditPolicy(audit_store or create_audit_store(settings.audit))
    if role == ConsumerRole.CACHE:
        return CacheInvalidatorPolicy(cache)
    raise ValueError(f"Unsupported consumer role: {role}")


def create_runtime(
    role: ConsumerRole | str,
    settings: FanoutSettings,
    broker: InMemoryBroker | None = None,
    policy: ConsumerPolicy | None = None,
) -> SubscriberRuntime:
    role = ConsumerRole(role)
    return SubscriberRuntime(
        policy=policy or create_policy(role, settings),
        backend=create_backend(settings, name=f"{role.value}-consumer", broker=broker),
        topology=settings.topology,
        settings=settings.runtime,
    )


async def setup(settings: FanoutSettings, broker: InMemoryBroker | None = None) -> dict[str, str]:
    """Declare the exchange and all role queues and bind them."""
    backend = create_backend(settings, name="setup", broker=broker)
    await backend.connect()
    try:
        return await setup_topology(backend, settings.topology)
    finally:
        await backend.disconnect()


async def publish_action(
    settings: FanoutSettings,
    action_kind: str,
    subject_id: str,
    payload: Mapping[str, Any] | None = None,
    broker: InMemoryBroker | None = None,
) -> Event:
    """Publish a single action and disconnect."""
    async with ActionPublisher(
        create_backend(settings, name="publisher", broker=broker), settings.topology
    ) as publisher:
        return await publisher.publish_action(action_kind, subject_id, payload)


async def run_consumer(role: ConsumerRole | str, settings: FanoutSettings) -> Mapping[str, Any]:
    """Run one consumer role until SIGINT or SIGTERM; return its final policy snapshot."""
    runtime = create_runtime(role, settings)
    if settings.metrics.port is not None:
        serve_metrics(settings.metrics.port, settings.metrics.address)

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        await runtime.start()
        consuming = asyncio.create_task(runtime.wait())
        stopping = asyncio.create_task(stop_requested.wait())
        await asyncio.wait({consuming, stopping}, return_when=asyncio.FIRST_COMPLETED)
        stopping.cancel()
        try:
            if not consuming.done():
                await runtime.stop()
        finally:
            await consuming
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)

    return runtime.policy.snapshot()


@dataclass(frozen=True)
class DemoAction:
    action_kind: str
    subject_id: str
    payload: dict[str, Any] = field(default_factory=dict)


DEMO_ACTIONS: tuple[DemoAction, ...] = (
    DemoAction(
        ActionKind.LOGIN.value,
        "alice123",
        {"ipAddress": "192.168.1.100", "device": "iPhone Safari"},
    ),
    DemoAction(
        ActionKind.PURCHASE.value,
        "bob456",
        {"productId": "LAPTOP-001", "amount": 1299.99, "currency": "USD"},
    ),
    DemoAction(
        ActionKind.PROFILE_UPDATE.value,
        "alice123",
        {"field": "phoneNumber", "oldValue": "+1-555-0100", "newValue": "+1-555-0200"},
    ),
    *(
        DemoAction(
            ActionKind.LOGIN.value,
            f"user{i}",
            {"ipAddress": f"192.168.1.{i}", "device": "Chrome Browser"},
        )
        for i in range(5)
    ),
)


@dataclass
class DemoResult:
    events: list[Event]
    snapshots: dict[str, Mapping[str, Any]]
    runtime_stats: dict[str, Mapping[str, Any]]


async def run_demo(
    settings: FanoutSettings,
    actions: tuple[DemoAction, ...] = DEMO_ACTIONS,
    timeout: float = 10.0,
) -> DemoResult:
    """Publish the demo actions to all four roles on a private in-memory broker."""
    settings = settings.model_copy(
        update={"broker": settings.broker.model_copy(update={"backend": BackendType.MEMORY})}
    )
    broker = InMemoryBroker()
    await setup(settings, broker=broker)

    runtimes = [create_runtime(role, settings, broker=broker) for role in ConsumerRole]
    events = []
    try:
        for runtime in runtimes:
            await runtime.start()

        async with ActionPublisher(
            create_backend(settings, name="demo-publisher", broker=broker), settings.topology
        ) as publisher:
            for action in actions:
                events.append(
                    await publisher.publish_action(
                        action.action_kind, action.subject_id, action.payload
                    )
                )

        await asyncio.wait_for(_drained(runtimes, len(events)), timeout=timeout)
    finally:
        for runtime in runtimes:
            await runtime.stop()

    return DemoResult(
        events=events,
        snapshots={runtime.role: runtime.policy.snapshot() for runtime in runtimes},
        runtime_stats={runtime.role: runtime.stats() for runtime in runtimes},
    )


async def _drained(runtimes: list[SubscriberRuntime], expected: int) -> None:
    while any(runtime.stats()["acked"] < expected for runtime in runtimes):
        await asyncio.sleep(0.01)
