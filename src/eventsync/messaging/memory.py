"""
In-process transport.

Used by tests and by single-process development setups. It follows the same
delivery contract as the networked transports: bytes on the wire, a
per-event-type queue, a dead-letter list per queue, and broadcast channels.
"""

import asyncio
import time
from collections import defaultdict

from ..config import TransportConfig
from ..exceptions import SerializationError, TransportConnectionError
from ..logger import get_logger
from .envelope import Envelope, EventType
from .registry import BindingRegistry
from .transport import BroadcastHandler, Delivery, HealthReport, QueueStats, TransportAdapter

logger = get_logger(__name__)


class InMemoryDelivery(Delivery):
    def __init__(self, transport: "InMemoryTransport", raw: bytes, event_type: EventType):
        super().__init__(raw, transport.queue_for(event_type), event_type)
        self._transport = transport

    async def ack(self) -> None:
        pass

    async def requeue(self, envelope: Envelope) -> None:
        self._transport._check_available()
        await self._transport._queue(self.event_type).put(envelope.to_bytes())

    async def dead_letter(self, reason: str) -> None:
        self._transport._dead_letters[self.event_type].append(self.raw)
        logger.warning("Message moved to dead-letter list", queue=self.queue, reason=reason)


class InMemoryTransport(TransportAdapter):
    """Transport backed by asyncio queues."""

    name = "memory"
    supports_broadcast = True

    def __init__(self, registry: BindingRegistry, config: TransportConfig | None = None):
        super().__init__(registry, config)
        self._queues: dict[EventType, asyncio.Queue] = {}
        self._dead_letters: dict[EventType, list[bytes]] = defaultdict(list)
        self._channels: dict[EventType, list[BroadcastHandler]] = defaultdict(list)
        self._subscribed: set[EventType] = set()
        self._available = True
        self.sent: list[Envelope] = []

    def _queue(self, event_type: EventType) -> asyncio.Queue:
        if event_type not in self._queues:
            self._queues[event_type] = asyncio.Queue()
        return self._queues[event_type]

    def _check_available(self) -> None:
        if not self._available:
            raise TransportConnectionError("In-memory transport is unavailable")

    def set_available(self, available: bool) -> None:
        """Simulate an outage (``False``) or a recovery (``True``)."""
        self._available = available
        self._ready = available

    async def connect(self) -> None:
        self._check_available()
        self._ready = True
        logger.info("Connected to in-memory transport")

    async def close(self) -> None:
        self._ready = False
        self._subscribed.clear()
        self._channels.clear()
        logger.info("Disconnected from in-memory transport")

    async def send(self, envelope: Envelope) -> None:
        self._check_available()
        self.registry.require(envelope.event_type)

        payload = envelope.to_bytes()
        await self._queue(envelope.event_type).put(payload)
        self.sent.append(envelope)

        for handler in list(self._channels.get(envelope.event_type, [])):
            try:
                await handler(Envelope.from_bytes(payload))
            except Exception as e:
                logger.error(
                    "Broadcast handler failed",
                    event_type=envelope.event_type.value,
                    error=str(e),
                )

    async def subscribe(self, event_type: EventType) -> str:
        self._check_available()
        self._subscribed.add(event_type)
        self._queue(event_type)
        return self.queue_for(event_type)

    async def unsubscribe(self, event_type: EventType) -> None:
        self._subscribed.discard(event_type)

    async def subscribe_channel(self, event_type: EventType, handler: BroadcastHandler) -> str:
        self._channels[event_type].append(handler)
        return self.registry.store_binding(event_type).channel

    async def receive(self, event_type: EventType, timeout: float) -> Delivery | None:
        self._check_available()
        try:
            raw = await asyncio.wait_for(self._queue(event_type).get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return InMemoryDelivery(self, raw, event_type)

    async def health_check(self) -> HealthReport:
        start = time.perf_counter()
        if not self._available:
            return HealthReport(healthy=False, error="unavailable", transport=self.name)
        return HealthReport(
            healthy=True,
            latency_ms=(time.perf_counter() - start) * 1000,
            transport=self.name,
        )

    async def queue_stats(self, event_type: EventType) -> QueueStats:
        binding = self.registry.store_binding(event_type)
        return QueueStats(
            event_type=event_type.value,
            queue=binding.queue,
            dead_letter_queue=binding.dead_letter_queue,
            length=self._queue(event_type).qsize(),
            dead_letter_length=len(self._dead_letters[event_type]),
            consumers=1 if event_type in self._subscribed else 0,
        )

    async def replay_dead_letters(self, event_type: EventType, limit: int = 100) -> int:
        self._check_available()
        dead = self._dead_letters[event_type]
        replayed = 0
        kept: list[bytes] = []
        while dead and replayed < limit:
            raw = dead.pop(0)
            try:
                envelope = Envelope.from_bytes(raw)
            except SerializationError:
                kept.append(raw)
                continue
            await self._queue(event_type).put(envelope.reset_retries().to_bytes())
            replayed += 1
        dead[:0] = kept
        return replayed

    def inject(self, event_type: EventType, raw: bytes) -> None:
        """Put raw bytes on a queue, bypassing envelope encoding."""
        self._queue(event_type).put_nowait(raw)

    def dead_letters(self, event_type: EventType) -> list[bytes]:
        return list(self._dead_letters[event_type])

    def pending(self, event_type: EventType) -> int:
        return self._queue(event_type).qsize()

    def status(self) -> dict:
        status = super().status()
        status["subscribed"] = sorted(e.value for e in self._subscribed)
        return status
