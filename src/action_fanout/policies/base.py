"""
Consumer Policy Base

A consumer policy maps an event to a list of local effects and applies them.
Handlers are registered per action kind with the :func:`handles` decorator;
kinds without a handler fall through to :meth:`ConsumerPolicy.on_unmatched`,
which never raises.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar

from ..events import ActionKind, Event, Scalar

logger = logging.getLogger(__name__)

_HANDLES_ATTR = "__handles_kinds__"


@dataclass(frozen=True)
class Effect:
    """One local side effect decided for an event."""

    action: str
    target: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if not isinstance(self.params, MappingProxyType):
            object.__setattr__(self, "params", MappingProxyType(dict(self.params)))


def handles(*kinds: str | ActionKind) -> Callable:
    """Register the decorated method as the decision handler for ``kinds``."""

    def decorator(func: Callable) -> Callable:
        setattr(
            func,
            _HANDLES_ATTR,
            tuple(k.value if isinstance(k, ActionKind) else k for k in kinds),
        )
        return func

    return decorator


class ConsumerPolicy(ABC):
    """Decision logic and local state for one consumer role."""

    role: ClassVar[str] = "consumer"
    _handlers: ClassVar[dict[str, str]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        handlers = dict(cls._handlers)
        for name, attr in cls.__dict__.items():
            for kind in getattr(attr, _HANDLES_ATTR, ()):
                handlers[kind] = name
        cls._handlers = handlers

    @classmethod
    def handled_kinds(cls) -> frozenset[str]:
        return frozenset(cls._handlers)

    def decide(self, event: Event) -> list[Effect]:
        """Map an event to effects without touching local state."""
        handler_name = self._handlers.get(event.action_kind)
        if handler_name is None:
            return list(self.on_unmatched(event))
        return list(getattr(self, handler_name)(event))

    def on_unmatched(self, event: Event) -> Iterable[Effect]:
        """Effects for an action kind with no registered handler."""
        logger.info("%s: no policy for action kind %r", self.role, event.action_kind)
        return []

    async def apply(self, effects: Iterable[Effect]) -> None:
        for effect in effects:
            await self.apply_effect(effect)

    @abstractmethod
    async def apply_effect(self, effect: Effect) -> None:
        """Perform one effect and update local state."""

    async def handle(self, event: Event) -> list[Effect]:
        """Decide and apply the effects of one event, returning them."""
        effects = self.decide(event)
        await self.apply(effects)
        return effects

    async def close(self) -> None:
        """Release resources held by the policy."""

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only view of the policy's local state."""
        return MappingProxyType(self._state())

    @abstractmethod
    def _state(self) -> dict[str, Any]:
        """Copy of the local state."""

    def expect(self, event: Event, name: str) -> Scalar:
        """Payload field a handler depends on; absence is logged and returns None."""
        value = event.get(name)
        if value is None:
            logger.debug(
                "%s: %s event %s has no %r; skipping dependent effect",
                self.role,
                event.action_kind,
                event.event_id,
                name,
            )
        return value
