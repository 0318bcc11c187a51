"""
Exception hierarchy for eventsync.

Transport problems are represented by ``TransportConnectionError`` and are
handled internally by the publisher and the cache service. Only
``ConfigurationError`` is meant to reach application code.
"""

from typing import Any


class EventSyncError(Exception):
    """Base exception for all eventsync errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigurationError(EventSyncError):
    """Raised when configuration is invalid or an event type is unbound."""


class TransportConnectionError(EventSyncError):
    """Raised when a transport connection is refused, closed or timed out."""


class TransportUnavailableError(TransportConnectionError):
    """Raised when a transport gave up reconnecting and must not be retried."""


class SerializationError(EventSyncError):
    """Raised when a payload cannot be decoded as an envelope."""


class ProcessingError(EventSyncError):
    """Raised when a handler fails to process a valid envelope."""

    def __init__(
        self,
        message: str,
        message_id: str | None = None,
        attempt: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, error_code="PROCESSING_FAILED", details=details)
        self.message_id = message_id
        self.attempt = attempt
