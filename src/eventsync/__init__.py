"""
eventsync - cross-service event propagation and cache coherence.

Services publish domain events through a non-blocking ``Publisher``, consume
them with a ``ConsumerRuntime`` that retries and dead-letters, and keep their
derived-data cache coherent with an ``InvalidationPolicy``.
"""

__version__ = "0.1.0"

from .cache import CacheService, InvalidationPolicy
from .config import EventSyncConfig, get_config, load_config
from .exceptions import (
    ConfigurationError,
    EventSyncError,
    ProcessingError,
    SerializationError,
    TransportConnectionError,
    TransportUnavailableError,
)
from .messaging import ConsumerRuntime, Envelope, EventType, Publisher, create_transport
from .service import EventSyncService, create_app

__all__ = [
    "CacheService",
    "ConfigurationError",
    "ConsumerRuntime",
    "Envelope",
    "EventSyncConfig",
    "EventSyncError",
    "EventSyncService",
    "EventType",
    "InvalidationPolicy",
    "ProcessingError",
    "Publisher",
    "SerializationError",
    "TransportConnectionError",
    "TransportUnavailableError",
    "__version__",
    "create_app",
    "create_transport",
    "get_config",
    "load_config",
]
