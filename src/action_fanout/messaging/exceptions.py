"""
Messaging Exceptions

Errors raised by broadcast channel backends.
"""

from ..exceptions import FanoutError


class MessagingError(FanoutError):
    """Base exception for broker and channel errors."""


class TransportError(MessagingError):
    """Raised when the connection to the broker fails or drops."""


class ChannelNotFoundError(MessagingError):
    """Raised when a channel (exchange) has not been declared."""


class ChannelConflictError(MessagingError):
    """Raised when a channel is re-declared with a different kind or durability."""


class QueueNotFoundError(MessagingError):
    """Raised when a subscription queue has not been declared."""


class QueueConflictError(MessagingError):
    """Raised when a queue is re-declared with a different durability."""
