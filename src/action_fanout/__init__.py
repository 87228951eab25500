"""
action-fanout: broadcast user actions to independent consumer roles.

A publisher hands each user action to a durable fanout exchange; every bound
consumer queue receives its own copy, and each consumer role applies its own
policy (analytics, notification, audit, cache invalidation) with
at-least-once delivery.
"""

__version__ = "1.0.0"

from .config import ConsumerRole, FanoutSettings, load_settings
from .events import ActionKind, Event
from .exceptions import (
    AuditStoreError,
    EventDecodeError,
    EventValidationError,
    FanoutError,
    PublishError,
)
from .publisher import ActionPublisher
from .subscriber import SubscriberRuntime

__all__ = [
    "ActionKind",
    "ActionPublisher",
    "AuditStoreError",
    "ConsumerRole",
    "Event",
    "EventDecodeError",
    "EventValidationError",
    "FanoutError",
    "FanoutSettings",
    "PublishError",
    "SubscriberRuntime",
    "__version__",
    "load_settings",
]
