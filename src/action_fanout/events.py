"""
User Action Events

Defines the immutable event that is broadcast to every consumer role, together
with its wire mapping.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Union

from .exceptions import EventDecodeError, EventValidationError

Scalar = Union[str, int, float, bool, None]

_SCALAR_TYPES = (str, int, float, bool, type(None))


def _payload_problem(payload: Mapping[str, Any]) -> str | None:
    """Describe why a payload is not a flat map of scalars, or None if it is."""
    for key, value in payload.items():
        if not isinstance(key, str):
            return f"payload key {key!r} is not a string"
        if not isinstance(value, _SCALAR_TYPES):
            return f"payload value for {key!r} must be a scalar, got {type(value).__name__}"
    return None


class ActionKind(str, Enum):
    """Known user action kinds. The set is open: other kinds are valid events."""

    LOGIN = "login"
    PURCHASE = "purchase"
    PROFILE_UPDATE = "profile_update"

    @classmethod
    def parse(cls, value: str) -> "ActionKind | None":
        """Return the known kind for ``value`` or None for unrecognized kinds."""
        try:
            return cls(value)
        except ValueError:
            return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """A user action broadcast to all consumer roles.

    Instances are never mutated. The payload is exposed as a read-only
    mapping; use :meth:`get` for kind-dependent optional fields.
    """

    action_kind: str
    subject_id: str
    occurred_at: datetime = field(default_factory=_utcnow)
    payload: Mapping[str, Scalar] = field(default_factory=dict, hash=False)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not isinstance(self.payload, MappingProxyType):
            object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @classmethod
    def create(
        cls,
        action_kind: str | ActionKind,
        subject_id: str,
        payload: Mapping[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> "Event":
        """Validate the inputs of an action and build an event from them."""
        kind = action_kind.value if isinstance(action_kind, ActionKind) else action_kind

        if not isinstance(kind, str) or not kind.strip():
            raise EventValidationError("action kind must be a non-empty string")
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise EventValidationError("subject id must be a non-empty string")

        payload = dict(payload or {})
        problem = _payload_problem(payload)
        if problem:
            raise EventValidationError(problem)

        if occurred_at is None:
            occurred_at = _utcnow()
        elif occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)

        return cls(
            action_kind=kind,
            subject_id=subject_id,
            occurred_at=occurred_at,
            payload=payload,
        )

    @property
    def kind(self) -> ActionKind | None:
        """Known action kind, or None when the kind is unrecognized."""
        return ActionKind.parse(self.action_kind)

    def get(self, key: str, default: Scalar = None) -> Scalar:
        """Optional payload field access; absence is never an error."""
        return self.payload.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Convert the event to its wire mapping."""
        return {
            "actionKind": self.action_kind,
            "subjectId": self.subject_id,
            "occurredAt": self.occurred_at.isoformat(),
            "payload": dict(self.payload),
            "eventId": self.event_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Event":
        """Create an event from its wire mapping."""
        try:
            action_kind = data["actionKind"]
            subject_id = data["subjectId"]
            occurred_at = datetime.fromisoformat(data["occurredAt"])
        except (KeyError, TypeError, ValueError) as e:
            raise EventDecodeError(f"Invalid event document: {e}", cause=e) from e

        payload = data.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise EventDecodeError("Invalid event document: payload is not a mapping")
        if not isinstance(action_kind, str) or not isinstance(subject_id, str):
            raise EventDecodeError("Invalid event document: kind and subject must be strings")
        problem = _payload_problem(payload)
        if problem:
            raise EventDecodeError(f"Invalid event document: {problem}")

        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)

        kwargs = {}
        if data.get("eventId"):
            kwargs["event_id"] = str(data["eventId"])

        return cls(
            action_kind=action_kind,
            subject_id=subject_id,
            occurred_at=occurred_at,
            payload=payload,
            **kwargs,
        )
