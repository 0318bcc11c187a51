"""
Transport adapter interface.

A transport owns its connections and exposes the same small surface for
every backend: explicit connect/close, send, subscribe/receive for durable
queues, and a health check. The consumer runtime pulls ``Delivery`` objects
and reports the outcome back through them.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from ..config import TransportConfig
from ..exceptions import ConfigurationError
from .envelope import Envelope, EventType
from .registry import BindingRegistry

BroadcastHandler = Callable[[Envelope], Awaitable[None]]


@dataclass
class HealthReport:
    """Result of a transport round trip."""

    healthy: bool
    latency_ms: float | None = None
    error: str | None = None
    transport: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QueueStats:
    """Depth of a consumed queue and of its dead-letter queue."""

    event_type: str
    queue: str
    dead_letter_queue: str
    length: int = 0
    dead_letter_length: int = 0
    consumers: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Delivery(ABC):
    """A message pulled from a durable queue, awaiting an outcome."""

    def __init__(self, raw: bytes, queue: str, event_type: EventType):
        self.raw = raw
        self.queue = queue
        self.event_type = event_type

    @abstractmethod
    async def ack(self) -> None:
        """Remove the message from its queue."""

    @abstractmethod
    async def requeue(self, envelope: Envelope) -> None:
        """Put ``envelope`` (already carrying its new retry count) back on the queue."""

    @abstractmethod
    async def dead_letter(self, reason: str) -> None:
        """Move the original message to the dead-letter destination."""


class TransportAdapter(ABC):
    """Abstract transport backend."""

    name = "abstract"
    supports_broadcast = False

    def __init__(self, registry: BindingRegistry, config: TransportConfig | None = None):
        self.registry = registry
        self.config = config or TransportConfig()
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    def queue_for(self, event_type: EventType) -> str:
        """Name of the durable queue consumed for ``event_type``."""
        return self.registry.store_binding(event_type).queue

    @abstractmethod
    async def connect(self) -> None:
        """Open connections and declare static topology."""

    @abstractmethod
    async def close(self) -> None:
        """Close connections; safe to call more than once."""

    @abstractmethod
    async def send(self, envelope: Envelope) -> None:
        """Deliver ``envelope`` to its bound destination."""

    @abstractmethod
    async def subscribe(self, event_type: EventType) -> str:
        """Prepare the durable queue for ``event_type`` and return its name."""

    @abstractmethod
    async def unsubscribe(self, event_type: EventType) -> None:
        """Stop receiving for ``event_type``."""

    @abstractmethod
    async def receive(self, event_type: EventType, timeout: float) -> Delivery | None:
        """Wait up to ``timeout`` seconds for the next delivery."""

    @abstractmethod
    async def health_check(self) -> HealthReport:
        """Perform a real round trip against the backend."""

    @abstractmethod
    async def queue_stats(self, event_type: EventType) -> QueueStats:
        """Report queue and dead-letter depth for ``event_type``."""

    @abstractmethod
    async def replay_dead_letters(self, event_type: EventType, limit: int = 100) -> int:
        """Move up to ``limit`` dead letters back to the live queue."""

    async def subscribe_channel(self, event_type: EventType, handler: BroadcastHandler) -> str:
        """Register a fire-and-forget broadcast listener."""
        raise ConfigurationError(
            f"Transport '{self.name}' does not support broadcast channels",
            error_code="BROADCAST_UNSUPPORTED",
        )

    def status(self) -> dict[str, Any]:
        return {"transport": self.name, "ready": self.is_ready}

    async def __aenter__(self) -> "TransportAdapter":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
