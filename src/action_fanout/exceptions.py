"""
Fanout Exceptions

Custom exceptions for event construction, publishing and audit persistence.
"""


class FanoutError(Exception):
    """Base exception for all action-fanout errors."""

    def __init__(self, message: str, event_id: str | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.event_id = event_id
        self.cause = cause


class EventValidationError(FanoutError):
    """Raised when an action cannot be turned into a valid event."""


class EventDecodeError(FanoutError):
    """Raised when a delivered body is not a valid event document."""


class PublishError(FanoutError):
    """Raised when the publisher cannot hand an event to the broadcast channel."""


class AuditStoreError(FanoutError):
    """Raised when the audit record store cannot read or persist entries."""
