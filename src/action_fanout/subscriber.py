"""
Subscriber Runtime

Runs one consumer role: pulls events from the role's durable queue one at a
time, hands each to the role's policy and acknowledges it only after the
policy returns. A failed event is negatively acknowledged with requeue so the
broker redelivers it; bodies that are not event documents are rejected without
requeue. Transport failures mid-run trigger a reconnect with exponential
backoff, after which the queue and binding are re-declared.

Redelivery after a crash between a policy's side effects and the ack repeats
those effects; policies must tolerate duplicates.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from .config import ConsumerRole, RuntimeSettings, TopologySettings
from .exceptions import EventDecodeError
from .messaging.backends import MessageBackend
from .messaging.core import Delivery, Subscription
from .messaging.exceptions import MessagingError, TransportError
from .messaging.serialization import JSONEventSerializer
from .metrics import FanoutMetrics, get_metrics
from .policies.base import ConsumerPolicy
from .topology import ensure_queue

logger = logging.getLogger(__name__)


class SubscriberRuntime:
    """Sequential consumer loop for a single consumer role."""

    def __init__(
        self,
        policy: ConsumerPolicy,
        backend: MessageBackend,
        topology: TopologySettings | None = None,
        settings: RuntimeSettings | None = None,
        queue: str | None = None,
        serializer: JSONEventSerializer | None = None,
        metrics: FanoutMetrics | None = None,
    ):
        self.policy = policy
        self.backend = backend
        self.topology = topology or TopologySettings()
        self.settings = settings or RuntimeSettings()
        self.queue = queue or self.topology.queue_for(ConsumerRole(policy.role))
        self.serializer = serializer or JSONEventSerializer()
        self.metrics = metrics or get_metrics()

        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._stats = {
            "consumed": 0,
            "acked": 0,
            "failed": 0,
            "rejected": 0,
            "redelivered_seen": 0,
            "reconnects": 0,
        }

    @property
    def role(self) -> str:
        return self.policy.role

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Connect, ensure the queue is bound and start consuming in the background.

        Raises:
            TransportError: the broker is unreachable
            MessagingError: the exchange or queue conflicts with existing topology
        """
        if self.running:
            raise RuntimeError(f"Subscriber runtime for {self.role} is already running")

        try:
            await self._connect()
        except MessagingError as e:
            logger.error("%s runtime could not start on queue %s: %s", self.role, self.queue, e)
            raise

        self._stopping.clear()
        self._task = asyncio.create_task(self._consume_loop(), name=f"subscriber-{self.role}")
        self.metrics.set_running(self.role, True)
        logger.info("%s runtime consuming from %s", self.role, self.queue)

    async def run(self) -> None:
        """Start and consume until :meth:`stop` is called."""
        await self.start()
        await self.wait()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Stop pulling events; an in-flight event is finished and settled first."""
        if self._task is None:
            return
        logger.info("Stopping %s runtime", self.role)
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None

    def stats(self) -> Mapping[str, Any]:
        snapshot: dict[str, Any] = dict(self._stats)
        snapshot["role"] = self.role
        snapshot["queue"] = self.queue
        snapshot["running"] = self.running
        return MappingProxyType(snapshot)

    async def _connect(self) -> None:
        await self.backend.connect()
        await ensure_queue(self.backend, self.topology, self.queue)
        self._subscription = await self.backend.subscribe(self.queue)

    async def _consume_loop(self) -> None:
        try:
            while not self._stopping.is_set():
                try:
                    delivery = await self._subscription.next(timeout=self.settings.poll_interval)
                    if delivery is not None:
                        await self._process(delivery)
                except MessagingError as e:
                    if self._stopping.is_set():
                        break
                    logger.warning("%s runtime lost its broker connection: %s", self.role, e)
                    await self._reconnect()
        finally:
            await self._shutdown()

    async def _process(self, delivery: Delivery) -> None:
        self._stats["consumed"] += 1
        if delivery.redelivered:
            self._stats["redelivered_seen"] += 1

        try:
            event = self.serializer.deserialize(delivery.body)
        except EventDecodeError as e:
            logger.error(
                "%s runtime rejecting undecodable message %s from %s: %s",
                self.role,
                delivery.delivery_tag,
                self.queue,
                e,
            )
            await self.backend.nack(delivery, requeue=False)
            self._stats["rejected"] += 1
            self.metrics.record_handled(self.role, "rejected")
            return

        started = time.perf_counter()
        try:
            await self.policy.handle(event)
        except Exception:
            duration = time.perf_counter() - started
            logger.exception(
                "%s policy failed on %s event %s; leaving it for redelivery",
                self.role,
                event.action_kind,
                event.event_id,
            )
            self._stats["failed"] += 1
            self.metrics.record_handled(self.role, "failed", duration)
            await self._pause(self.settings.redelivery_delay)
            await self.backend.nack(delivery, requeue=True)
            return

        await self.backend.ack(delivery)
        self._stats["acked"] += 1
        self.metrics.record_handled(self.role, "acked", time.perf_counter() - started)
        logger.debug("%s acked %s event %s", self.role, event.action_kind, event.event_id)

    async def _reconnect(self) -> None:
        delay = self.settings.reconnect_delay
        attempt = 0

        while not self._stopping.is_set():
            attempt += 1
            await self._release()
            try:
                await self._connect()
            except MessagingError as e:
                max_attempts = self.settings.max_reconnect_attempts
                if max_attempts is not None and attempt >= max_attempts:
                    logger.error(
                        "%s runtime giving up after %d reconnect attempt(s): %s",
                        self.role,
                        attempt,
                        e,
                    )
                    raise TransportError(
                        f"{self.role} runtime could not reconnect to the broker", cause=e
                    ) from e
                logger.warning(
                    "%s reconnect attempt %d failed: %s; retrying in %.1fs",
                    self.role,
                    attempt,
                    e,
                    delay,
                )
                await self._pause(delay)
                delay = min(delay * 2, self.settings.reconnect_max_delay)
                continue

            self._stats["reconnects"] += 1
            self.metrics.record_reconnect(self.role)
            logger.info("%s runtime reconnected after %d attempt(s)", self.role, attempt)
            return

    async def _release(self) -> None:
        subscription, self._subscription = self._subscription, None
        try:
            if subscription is not None:
                await subscription.close()
            await self.backend.disconnect()
        except Exception as e:
            logger.warning("%s runtime could not release its connection cleanly: %s", self.role, e)

    async def _shutdown(self) -> None:
        await self._release()
        try:
            await self.policy.close()
        finally:
            self.metrics.set_running(self.role, False)
            logger.info("%s runtime stopped: %s", self.role, dict(self._stats))

    async def _pause(self, delay: float) -> None:
        # Returns early when a stop is requested
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
