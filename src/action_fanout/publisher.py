"""
User Action Publisher

Validates actions, turns them into events and hands them to the fanout
exchange as persistent JSON messages. The exchange is declared on every
connect so publishing never depends on a separate setup step having run.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from .config import TopologySettings
from .events import ActionKind, Event
from .exceptions import PublishError
from .messaging.backends import MessageBackend
from .messaging.exceptions import MessagingError
from .messaging.serialization import JSONEventSerializer, SerializationError
from .metrics import FanoutMetrics, get_metrics
from .topology import declare_exchange

logger = logging.getLogger(__name__)


class ActionPublisher:
    """Publishes user action events to the broadcast channel."""

    def __init__(
        self,
        backend: MessageBackend,
        topology: TopologySettings | None = None,
        serializer: JSONEventSerializer | None = None,
        metrics: FanoutMetrics | None = None,
        declare_on_connect: bool = True,
    ):
        self.backend = backend
        self.topology = topology or TopologySettings()
        self.serializer = serializer or JSONEventSerializer()
        self.metrics = metrics or get_metrics()
        self.declare_on_connect = declare_on_connect

        self._published_count = 0
        self._failed_count = 0

    @property
    def exchange(self) -> str:
        return self.topology.exchange

    async def connect(self) -> None:
        """Connect to the broker and declare the exchange."""
        try:
            if not self.backend.is_connected:
                await self.backend.connect()
            if self.declare_on_connect:
                await declare_exchange(self.backend, self.topology)
        except MessagingError as e:
            raise PublishError(f"Publisher could not connect to broker: {e}", cause=e) from e
        logger.info("Publisher connected to exchange %s", self.exchange)

    async def close(self) -> None:
        await self.backend.disconnect()
        logger.info(
            "Publisher closed (published=%d, failed=%d)",
            self._published_count,
            self._failed_count,
        )

    async def publish_action(
        self,
        action_kind: str | ActionKind,
        subject_id: str,
        payload: Mapping[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> Event:
        """Build an event from an action and publish it.

        Raises:
            EventValidationError: the action is not a valid event
            PublishError: the broker did not accept the event
        """
        event = Event.create(action_kind, subject_id, payload, occurred_at)
        await self.publish(event)
        return event

    async def publish(self, event: Event) -> None:
        """Publish an already-built event as a persistent message."""
        try:
            body = self.serializer.serialize(event)
            await self.backend.publish(
                self.exchange,
                body,
                durable=True,
                content_type=self.serializer.content_type,
            )
        except (MessagingError, SerializationError) as e:
            self._failed_count += 1
            self.metrics.record_publish_failure(self.exchange)
            raise PublishError(
                f"Failed to publish {event.action_kind} event to {self.exchange}: {e}",
                event_id=event.event_id,
                cause=e,
            ) from e

        self._published_count += 1
        self.metrics.record_published(self.exchange, event.action_kind)
        logger.info(
            "Published %s for %s (event %s)", event.action_kind, event.subject_id, event.event_id
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "exchange": self.exchange,
            "connected": self.backend.is_connected,
            "published_count": self._published_count,
            "failed_count": self._failed_count,
        }

    async def __aenter__(self) -> "ActionPublisher":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
