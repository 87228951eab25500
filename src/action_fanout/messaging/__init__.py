"""
Broadcast channel messaging: exchange and queue abstractions, broker backends
and the event wire codec.
"""

from .backends import (
    BackendConfig,
    BackendFactory,
    BackendType,
    InMemoryBackend,
    InMemoryBroker,
    MessageBackend,
    RabbitMQBackend,
)
from .core import Delivery, ExchangeConfig, ExchangeType, QueueConfig, Subscription
from .exceptions import (
    ChannelConflictError,
    ChannelNotFoundError,
    MessagingError,
    QueueConflictError,
    QueueNotFoundError,
    TransportError,
)
from .serialization import JSON_CONTENT_TYPE, JSONEventSerializer, SerializationError

__all__ = [
    "JSON_CONTENT_TYPE",
    "BackendConfig",
    "BackendFactory",
    "BackendType",
    "ChannelConflictError",
    "ChannelNotFoundError",
    "Delivery",
    "ExchangeConfig",
    "ExchangeType",
    "InMemoryBackend",
    "InMemoryBroker",
    "JSONEventSerializer",
    "MessageBackend",
    "MessagingError",
    "QueueConfig",
    "QueueConflictError",
    "QueueNotFoundError",
    "RabbitMQBackend",
    "SerializationError",
    "Subscription",
    "TransportError",
]
