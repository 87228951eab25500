"""
Analytics consumer policy: per-kind and total action counters.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from ..config import ConsumerRole
from ..events import ActionKind, Event
from .base import ConsumerPolicy, Effect, handles

logger = logging.getLogger(__name__)

TOTAL = "total"
INCREMENT = "increment"


class AnalyticsPolicy(ConsumerPolicy):
    """Counts actions by kind; every event, known or not, counts toward the total."""

    role = ConsumerRole.ANALYTICS.value

    def __init__(self):
        self._counts: dict[str, int] = {kind.value: 0 for kind in ActionKind}
        self._counts[TOTAL] = 0
        self._last_event_at: dict[str, datetime] = {}

    @handles(ActionKind.LOGIN, ActionKind.PURCHASE, ActionKind.PROFILE_UPDATE)
    def count_known(self, event: Event) -> Iterable[Effect]:
        return [
            Effect(INCREMENT, event.action_kind, {"occurred_at": event.occurred_at}),
            Effect(INCREMENT, TOTAL),
        ]

    def on_unmatched(self, event: Event) -> Iterable[Effect]:
        logger.debug("Counting unrecognized action kind %r toward total only", event.action_kind)
        return [Effect(INCREMENT, TOTAL)]

    async def apply_effect(self, effect: Effect) -> None:
        if effect.action != INCREMENT:
            raise ValueError(f"Unsupported analytics effect: {effect.action}")

        self._counts[effect.target] = self._counts.get(effect.target, 0) + 1
        occurred_at = effect.params.get("occurred_at")
        if occurred_at is not None:
            previous = self._last_event_at.get(effect.target)
            if previous is None or occurred_at > previous:
                self._last_event_at[effect.target] = occurred_at

    def count(self, kind: str) -> int:
        return self._counts.get(kind, 0)

    @property
    def total(self) -> int:
        return self._counts[TOTAL]

    def _state(self) -> dict[str, Any]:
        state: dict[str, Any] = dict(self._counts)
        state["last_event_at"] = {k: v.isoformat() for k, v in self._last_event_at.items()}
        return state
