"""
Core Broadcast Channel Abstractions

Provides the exchange, queue, delivery and subscription abstractions shared by
every broker backend.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .serialization import JSON_CONTENT_TYPE

logger = logging.getLogger(__name__)


class ExchangeType(Enum):
    """Exchange types for message routing."""

    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"
    HEADERS = "headers"


@dataclass(frozen=True)
class ExchangeConfig:
    """Configuration for a broadcast channel (exchange)."""

    name: str
    exchange_type: ExchangeType = ExchangeType.FANOUT
    durable: bool = True


@dataclass(frozen=True)
class QueueConfig:
    """Configuration for a subscription queue."""

    name: str
    durable: bool = True


@dataclass
class Delivery:
    """One delivered copy of a published message, awaiting ack or nack."""

    body: bytes
    queue: str
    delivery_tag: int
    content_type: str = JSON_CONTENT_TYPE
    redelivered: bool = False
    persistent: bool = True

    # Broker-native message handle used for ack/nack
    raw: Any = field(default=None, repr=False, compare=False)


class Subscription(ABC):
    """Manual-acknowledgment subscription to one queue."""

    def __init__(self, queue: str):
        self.queue = queue
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def next(self, timeout: float | None = None) -> Delivery | None:
        """Wait for the next delivery; return None if ``timeout`` elapses first."""

    @abstractmethod
    async def close(self) -> None:
        """Release the subscription, returning unacknowledged deliveries to the queue."""

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
