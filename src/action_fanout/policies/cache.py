"""
Cache invalidation consumer policy.

Purchases and profile updates make cached user and product views stale. The
``invalidated`` counter is incremented once per invalidation (a purchase with a
product id counts twice); ``skipped`` is incremented once per event that needs
no invalidation.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from ..config import ConsumerRole
from ..events import ActionKind, Event
from .base import ConsumerPolicy, Effect, handles

logger = logging.getLogger(__name__)

INVALIDATE = "invalidate"
SKIP = "skip"


def user_cache_keys(subject_id: str) -> tuple[str, ...]:
    return (f"user:{subject_id}:profile", f"user:{subject_id}:preferences")


def product_cache_keys(product_id: str) -> tuple[str, ...]:
    return (f"product:{product_id}:details",)


class CacheClient(ABC):
    """Port to the cache holding derived user and product views."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""


class InMemoryCacheClient(CacheClient):
    """Dictionary-backed cache for tests and single-process runs."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})
        self.deleted: list[str] = []

    async def get(self, key: str) -> Any:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self.deleted.append(key)
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed


class CacheInvalidatorPolicy(ConsumerPolicy):
    """Invalidates cached views made stale by an action."""

    role = ConsumerRole.CACHE.value

    def __init__(self, cache: CacheClient | None = None):
        self.cache = cache or InMemoryCacheClient()
        self._invalidated = 0
        self._skipped = 0

    def _invalidate_user(self, subject_id: str) -> Effect:
        return Effect(INVALIDATE, f"user:{subject_id}", {"keys": user_cache_keys(subject_id)})

    @handles(ActionKind.PURCHASE)
    def invalidate_purchase(self, event: Event) -> Iterable[Effect]:
        effects = [self._invalidate_user(event.subject_id)]
        product_id = self.expect(event, "productId")
        if product_id is not None:
            product_id = str(product_id)
            effects.append(
                Effect(INVALIDATE, f"product:{product_id}", {"keys": product_cache_keys(product_id)})
            )
        return effects

    @handles(ActionKind.PROFILE_UPDATE)
    def invalidate_profile(self, event: Event) -> Iterable[Effect]:
        return [self._invalidate_user(event.subject_id)]

    @handles(ActionKind.LOGIN)
    def skip_login(self, event: Event) -> Iterable[Effect]:
        return [Effect(SKIP, event.action_kind)]

    def on_unmatched(self, event: Event) -> Iterable[Effect]:
        logger.debug("No cache invalidation configured for %r", event.action_kind)
        return [Effect(SKIP, event.action_kind)]

    async def apply_effect(self, effect: Effect) -> None:
        if effect.action == SKIP:
            self._skipped += 1
            return
        if effect.action != INVALIDATE:
            raise ValueError(f"Unsupported cache effect: {effect.action}")

        keys = effect.params["keys"]
        await self.cache.delete(*keys)
        self._invalidated += 1
        logger.info("Invalidated %s (keys cleared: %s)", effect.target, ", ".join(keys))

    def _state(self) -> dict[str, Any]:
        return {"invalidated": self._invalidated, "skipped": self._skipped}
