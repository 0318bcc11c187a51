"""
Event envelope.

The envelope is the only shape moved by the transports. It is validated at
the boundary: anything that does not decode into an ``Envelope`` is a poison
message and raises ``SerializationError``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..exceptions import ConfigurationError, SerializationError

PROTOCOL_VERSION = "1.0"


class EventType(str, Enum):
    """Domain events exchanged between services."""

    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    USER_LOGGED_IN = "USER_LOGGED_IN"

    RESERVATION_CREATED = "RESERVATION_CREATED"
    RESERVATION_CANCELLED = "RESERVATION_CANCELLED"
    RESERVATION_UPDATED = "RESERVATION_UPDATED"

    FAVORITE_ADDED = "FAVORITE_ADDED"
    FAVORITE_REMOVED = "FAVORITE_REMOVED"
    FAVORITES_CLEARED = "FAVORITES_CLEARED"

    EMAIL_NOTIFICATION = "EMAIL_NOTIFICATION"
    PUSH_NOTIFICATION = "PUSH_NOTIFICATION"

    HEALTH_CHECK = "HEALTH_CHECK"

    @classmethod
    def parse(cls, value: "EventType | str") -> "EventType":
        """Resolve an event type name, failing loudly for unknown names."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ConfigurationError(
                f"Unknown event type: {value}",
                error_code="UNKNOWN_EVENT_TYPE",
                details={"event_type": str(value)},
            )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvelopeMetadata(BaseModel):
    """Envelope metadata. ``retry_count`` is owned by the transport."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    timestamp: datetime = Field(default_factory=_utcnow)
    origin_service: str = "unknown"
    version: str = PROTOCOL_VERSION
    retry_count: int = Field(default=0, ge=0)


class Envelope(BaseModel):
    """Immutable, self-describing unit moved by the messaging layer."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)

    @property
    def retry_count(self) -> int:
        return self.metadata.retry_count

    @property
    def attempt(self) -> int:
        """1-based number of the delivery attempt this copy represents."""
        return self.metadata.retry_count + 1

    def next_attempt(self) -> "Envelope":
        """Copy of this envelope with the retry counter incremented."""
        return self._with_retry_count(self.metadata.retry_count + 1)

    def reset_retries(self) -> "Envelope":
        """Copy of this envelope with a fresh retry budget (DLQ replay)."""
        return self._with_retry_count(0)

    def _with_retry_count(self, retry_count: int) -> "Envelope":
        metadata = self.metadata.model_copy(update={"retry_count": retry_count})
        return self.model_copy(update={"metadata": metadata})

    def to_dict(self) -> dict[str, Any]:
        """Wire representation with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes | str) -> "Envelope":
        """Decode an envelope, raising ``SerializationError`` on any malformed input."""
        try:
            return cls.model_validate_json(raw)
        except (ValidationError, ValueError, TypeError) as e:
            raise SerializationError(
                f"Payload is not a valid envelope: {e}",
                error_code="POISON_MESSAGE",
                details={"size": len(raw) if raw is not None else 0},
            )


def envelope(
    event_type: EventType | str,
    data: dict[str, Any] | None = None,
    origin_service: str = "unknown",
) -> Envelope:
    """Build a fresh envelope stamped with id, timestamp, origin and ``retry_count=0``."""
    return Envelope(
        event_type=EventType.parse(event_type),
        data=dict(data or {}),
        metadata=EnvelopeMetadata(origin_service=origin_service),
    )
