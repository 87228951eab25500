"""
Notification consumer policy.

Decides which user-facing notifications an action triggers and hands them to a
:class:`NotificationSender`.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..config import ConsumerRole
from ..events import ActionKind, Event
from .base import ConsumerPolicy, Effect, handles

logger = logging.getLogger(__name__)

NOTIFY = "notify"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"


@dataclass(frozen=True)
class Notification:
    """A message to deliver to the acting user."""

    channel: NotificationChannel
    recipient: str
    template: str
    message: str
    event_id: str | None = None


class NotificationSender(ABC):
    """Delivery port for notifications."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver one notification."""


class LoggingNotificationSender(NotificationSender):
    """Sender that logs each notification and keeps it for inspection."""

    def __init__(self):
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            "Sending %s notification to %s: %s",
            notification.channel.value,
            notification.recipient,
            notification.message,
        )


def _notify(
    event: Event, channel: NotificationChannel, template: str, message: str
) -> Effect:
    return Effect(
        NOTIFY,
        event.subject_id,
        {"channel": channel, "template": template, "message": message, "event_id": event.event_id},
    )


def _order_line(product_id: Any, amount: Any) -> str:
    """Confirmation text built from whichever order fields are present."""
    if product_id is not None and amount is not None:
        return f"Order: {product_id} - ${amount}"
    if product_id is not None:
        return f"Order: {product_id}"
    if amount is not None:
        return f"Order total: ${amount}"
    return "Thank you for your purchase"


class NotificationPolicy(ConsumerPolicy):
    """Login alerts, purchase confirmations and profile change notices."""

    role = ConsumerRole.NOTIFICATION.value

    def __init__(self, sender: NotificationSender | None = None):
        self.sender = sender or LoggingNotificationSender()
        self._sent_by_channel: Counter = Counter()
        self._sent_by_template: Counter = Counter()

    @handles(ActionKind.LOGIN)
    def login_alert(self, event: Event) -> Iterable[Effect]:
        effects = [
            _notify(
                event,
                NotificationChannel.EMAIL,
                "login_alert",
                f"Login alert for user {event.subject_id}",
            )
        ]
        device = self.expect(event, "device")
        if device is not None:
            effects.append(
                _notify(event, NotificationChannel.PUSH, "login_push", f"New login from {device}")
            )
        return effects

    @handles(ActionKind.PURCHASE)
    def purchase_confirmation(self, event: Event) -> Iterable[Effect]:
        product_id = self.expect(event, "productId")
        amount = self.expect(event, "amount")
        return [
            _notify(
                event,
                NotificationChannel.EMAIL,
                "purchase_confirmation",
                _order_line(product_id, amount),
            ),
            _notify(
                event,
                NotificationChannel.SMS,
                "purchase_sms",
                "Your order has been confirmed!",
            ),
        ]

    @handles(ActionKind.PROFILE_UPDATE)
    def profile_change(self, event: Event) -> Iterable[Effect]:
        effects = []
        changed_field = self.expect(event, "field")
        if changed_field is not None:
            effects.append(
                _notify(
                    event,
                    NotificationChannel.EMAIL,
                    "profile_change",
                    f"Your {changed_field} has been updated",
                )
            )
        effects.append(
            _notify(
                event,
                NotificationChannel.PUSH,
                "security_alert",
                "Security alert: your profile was changed",
            )
        )
        return effects

    def on_unmatched(self, event: Event) -> Iterable[Effect]:
        logger.info("No notification configured for: %s", event.action_kind)
        return []

    async def apply_effect(self, effect: Effect) -> None:
        if effect.action != NOTIFY:
            raise ValueError(f"Unsupported notification effect: {effect.action}")

        notification = Notification(
            channel=effect.params["channel"],
            recipient=effect.target,
            template=effect.params["template"],
            message=effect.params["message"],
            event_id=effect.params.get("event_id"),
        )
        await self.sender.send(notification)
        self._sent_by_channel[notification.channel.value] += 1
        self._sent_by_template[notification.template] += 1

    def _state(self) -> dict[str, Any]:
        return {
            "sent": sum(self._sent_by_channel.values()),
            "by_channel": dict(self._sent_by_channel),
            "by_template": dict(self._sent_by_template),
        }
