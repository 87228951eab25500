"""
Audit consumer policy.

Every event, known kind or not, produces one audit entry. Entries that fail to
persist are kept in a pending buffer and written ahead of the next entry.
"""

import logging
from collections.abc import Iterable
from typing import Any

from ..audit import AuditEntry, AuditRecordStore, LogIdGenerator, compliance_flags
from ..config import ConsumerRole
from ..events import ActionKind, Event
from ..exceptions import AuditStoreError
from .base import ConsumerPolicy, Effect, handles

logger = logging.getLogger(__name__)

APPEND = "append_entry"


class AuditPolicy(ConsumerPolicy):
    """Appends a compliance-flagged audit entry for every action."""

    role = ConsumerRole.AUDIT.value

    def __init__(self, store: AuditRecordStore, log_ids: LogIdGenerator | None = None):
        self.store = store
        self.log_ids = log_ids or LogIdGenerator()
        self._pending: list[AuditEntry] = []
        self._appended = 0
        self._failed_writes = 0
        self._last_log_id: str | None = None

    @handles(ActionKind.LOGIN, ActionKind.PURCHASE, ActionKind.PROFILE_UPDATE)
    def record(self, event: Event) -> Iterable[Effect]:
        return [
            Effect(
                APPEND,
                event.event_id,
                {"event": event, "flags": tuple(compliance_flags(event.action_kind))},
            )
        ]

    def on_unmatched(self, event: Event) -> Iterable[Effect]:
        return self.record(event)

    async def apply_effect(self, effect: Effect) -> None:
        if effect.action != APPEND:
            raise ValueError(f"Unsupported audit effect: {effect.action}")

        event: Event = effect.params["event"]
        entry = AuditEntry.from_event(event, self.log_ids(), flags=effect.params["flags"])
        self._pending.append(entry)
        try:
            flushed = await self.flush_pending()
        except Exception:
            # The event will be redelivered and recorded again
            self._pending.remove(entry)
            raise
        if not flushed:
            return
        logger.info(
            "Audit entry %s: %s by %s [%s]",
            entry.log_id,
            entry.action_kind,
            entry.subject_id,
            ", ".join(flag.value for flag in entry.compliance_flags),
        )

    async def flush_pending(self) -> bool:
        """Write buffered entries in order; return True when nothing is left pending."""
        if not self._pending:
            return True

        batch = list(self._pending)
        try:
            await self.store.append_many(batch)
        except AuditStoreError as e:
            self._failed_writes += 1
            logger.warning(
                "Audit store write failed; %d entr%s pending retry on next append: %s",
                len(batch),
                "y" if len(batch) == 1 else "ies",
                e,
            )
            return False

        del self._pending[: len(batch)]
        self._appended += len(batch)
        self._last_log_id = batch[-1].log_id
        return True

    @property
    def pending(self) -> tuple[AuditEntry, ...]:
        return tuple(self._pending)

    async def close(self) -> None:
        if not await self.flush_pending():
            logger.warning(
                "Closing audit policy with %d unwritten entr%s",
                len(self._pending),
                "y" if len(self._pending) == 1 else "ies",
            )

    def _state(self) -> dict[str, Any]:
        return {
            "appended": self._appended,
            "pending": len(self._pending),
            "failed_writes": self._failed_writes,
            "last_log_id": self._last_log_id,
        }
