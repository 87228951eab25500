"""
Event Wire Serialization

Encodes events into the JSON documents carried by the broadcast channel and
decodes delivered bodies back into events.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from ..events import Event
from ..exceptions import EventDecodeError, FanoutError

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


class SerializationError(FanoutError):
    """Exception raised during event serialization."""


@dataclass
class SerializationConfig:
    """Configuration for event serialization."""

    encoding: str = "utf-8"
    json_ensure_ascii: bool = False
    json_sort_keys: bool = False


class JSONEventSerializer:
    """JSON serializer for user action events."""

    content_type = JSON_CONTENT_TYPE

    def __init__(self, config: SerializationConfig | None = None):
        self.config = config or SerializationConfig()

    def serialize(self, event: Event) -> bytes:
        """Serialize an event to JSON bytes."""
        try:
            json_str = json.dumps(
                event.to_dict(),
                ensure_ascii=self.config.json_ensure_ascii,
                sort_keys=self.config.json_sort_keys,
            )
            return json_str.encode(self.config.encoding)
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Failed to serialize event to JSON: {e!s}", event_id=event.event_id, cause=e
            ) from e

    def deserialize(self, data: bytes) -> Event:
        """Deserialize JSON bytes to an event."""
        try:
            document: Any = json.loads(data.decode(self.config.encoding))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EventDecodeError(f"Failed to deserialize event from JSON: {e!s}", cause=e) from e

        if not isinstance(document, dict):
            raise EventDecodeError(
                f"Event document must be a JSON object, got {type(document).__name__}"
            )

        return Event.from_dict(document)
