"""
Consumer policies: the decision logic applied by each consumer role.
"""

from .analytics import AnalyticsPolicy
from .audit import AuditPolicy
from .base import ConsumerPolicy, Effect, handles
from .cache import CacheClient, CacheInvalidatorPolicy, InMemoryCacheClient
from .notification import (
    LoggingNotificationSender,
    Notification,
    NotificationChannel,
    NotificationPolicy,
    NotificationSender,
)

__all__ = [
    "AnalyticsPolicy",
    "AuditPolicy",
    "CacheClient",
    "CacheInvalidatorPolicy",
    "ConsumerPolicy",
    "Effect",
    "InMemoryCacheClient",
    "LoggingNotificationSender",
    "Notification",
    "NotificationChannel",
    "NotificationPolicy",
    "NotificationSender",
    "handles",
]
