"""
Unit tests for the event envelope.
"""

import json
import uuid
from datetime import timezone

import pytest
from pydantic import ValidationError

from eventsync.exceptions import ConfigurationError, SerializationError
from eventsync.messaging.envelope import PROTOCOL_VERSION, Envelope, EventType, envelope


@pytest.mark.unit
class TestEventType:
    """Test event type parsing."""

    def test_parse_accepts_enum_and_names(self):
        assert EventType.parse(EventType.USER_CREATED) is EventType.USER_CREATED
        assert EventType.parse("FAVORITE_ADDED") is EventType.FAVORITE_ADDED
        assert EventType.parse("favorite_added") is EventType.FAVORITE_ADDED

    def test_parse_unknown_is_loud(self):
        with pytest.raises(ConfigurationError) as exc_info:
            EventType.parse("NOT_AN_EVENT")
        assert exc_info.value.error_code == "UNKNOWN_EVENT_TYPE"


@pytest.mark.unit
class TestEnvelope:
    """Test envelope construction and wire format."""

    def test_factory_stamps_metadata(self):
        """A fresh envelope carries id, timestamp, origin, version and retry count 0."""
        env = envelope(EventType.USER_CREATED, {"id": 7}, origin_service="users")

        uuid.UUID(env.id)
        assert env.event_type is EventType.USER_CREATED
        assert env.data == {"id": 7}
        assert env.metadata.origin_service == "users"
        assert env.metadata.version == PROTOCOL_VERSION
        assert env.metadata.timestamp.tzinfo is not None
        assert env.metadata.timestamp.utcoffset() == timezone.utc.utcoffset(None)
        assert env.retry_count == 0
        assert env.attempt == 1

    def test_ids_are_unique(self):
        assert envelope("USER_CREATED").id != envelope("USER_CREATED").id

    def test_wire_format_uses_camel_case(self):
        env = envelope(EventType.FAVORITE_ADDED, {"userId": 1}, origin_service="main")
        wire = json.loads(env.to_bytes())

        assert wire["eventType"] == "FAVORITE_ADDED"
        assert wire["data"] == {"userId": 1}
        assert wire["metadata"]["originService"] == "main"
        assert wire["metadata"]["retryCount"] == 0
        assert wire["metadata"]["version"] == "1.0"
        assert "timestamp" in wire["metadata"]
        assert env.to_dict() == wire

    def test_decodes_payload_from_another_service(self):
        raw = json.dumps(
            {
                "id": "abc-123",
                "eventType": "RESERVATION_CREATED",
                "data": {"userId": 3, "placeId": 9},
                "metadata": {
                    "timestamp": "2024-05-01T10:00:00Z",
                    "originService": "main-service",
                    "version": "1.0",
                    "retryCount": 2,
                },
            }
        ).encode()

        env = Envelope.from_bytes(raw)

        assert env.id == "abc-123"
        assert env.event_type is EventType.RESERVATION_CREATED
        assert env.metadata.origin_service == "main-service"
        assert env.retry_count == 2
        assert env.attempt == 3

    def test_decode_is_inverse_of_encode(self):
        env = envelope(EventType.USER_UPDATED, {"userId": 1, "newData": {"name": "x"}})
        assert Envelope.from_bytes(env.to_bytes()) == env

    def test_envelope_is_immutable(self):
        env = envelope(EventType.USER_CREATED)
        with pytest.raises(ValidationError):
            env.data = {"changed": True}

    def test_retry_changes_produce_copies(self):
        env = envelope(EventType.USER_CREATED, {"id": 1})
        retry = env.next_attempt().next_attempt()

        assert env.retry_count == 0
        assert retry.retry_count == 2
        assert retry.id == env.id
        assert retry.data == env.data
        assert retry.reset_retries().retry_count == 0

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json at all",
            b"[]",
            b'{"eventType": "NOT_A_TYPE", "data": {}}',
            b'{"data": {"userId": 1}}',
            b'{"eventType": "USER_CREATED", "metadata": {"retryCount": -1}}',
            b'{"eventType": "USER_CREATED", "data": "not-a-dict"}',
        ],
    )
    def test_malformed_payloads_are_poison(self, raw):
        with pytest.raises(SerializationError) as exc_info:
            Envelope.from_bytes(raw)
        assert exc_info.value.error_code == "POISON_MESSAGE"
