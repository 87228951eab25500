"""
Unit tests for the event wire codec.
"""

import json

import pytest

from action_fanout.exceptions import EventDecodeError
from action_fanout.messaging.serialization import (
    JSON_CONTENT_TYPE,
    JSONEventSerializer,
    SerializationConfig,
)


@pytest.mark.unit
class TestJSONEventSerializer:
    """Test suite for JSONEventSerializer."""

    def test_content_type(self):
        """Test that events travel as JSON."""
        assert JSONEventSerializer().content_type == JSON_CONTENT_TYPE == "application/json"

    def test_serialize_produces_wire_document(self, purchase_event):
        """Test the serialized body is a UTF-8 JSON wire document."""
        body = JSONEventSerializer().serialize(purchase_event)
        document = json.loads(body.decode("utf-8"))

        assert set(document) == {"actionKind", "subjectId", "occurredAt", "payload", "eventId"}
        assert document["payload"]["productId"] == "LAPTOP-001"

    def test_deserialize_restores_event(self, profile_update_event):
        """Test decoding a serialized body."""
        serializer = JSONEventSerializer()

        assert serializer.deserialize(serializer.serialize(profile_update_event)) == profile_update_event

    def test_sort_keys_option(self, login_event):
        """Test serializer configuration is honored."""
        serializer = JSONEventSerializer(SerializationConfig(json_sort_keys=True))
        document = json.loads(serializer.serialize(login_event))

        assert list(document) == sorted(document)

    @pytest.mark.parametrize("body", [b"not json", b"\xff\xfe", b"[1, 2, 3]", b'"login"'])
    def test_deserialize_rejects_non_event_bodies(self, body):
        """Test that undecodable bodies raise EventDecodeError."""
        with pytest.raises(EventDecodeError):
            JSONEventSerializer().deserialize(body)
