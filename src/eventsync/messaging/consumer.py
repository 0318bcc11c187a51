"""
Consumer runtime.

One supervised task per consumed queue pulls deliveries from the transport
and drives each through::

    RECEIVED -> PROCESSING -> ACKNOWLEDGED | REQUEUED | DEAD_LETTERED

A handler failure consumes one attempt. Attempts are counted by the
envelope's ``retry_count``, so the budget survives process restarts. An
envelope that cannot be decoded is dead-lettered at once without touching
the handler or the budget.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from ..exceptions import (
    ConfigurationError,
    SerializationError,
    TransportConnectionError,
    TransportUnavailableError,
)
from ..logger import bind_message_id, get_logger, reset_message_id
from ..metrics import MessagingMetrics, get_metrics
from .envelope import Envelope, EventType
from .registry import BindingRegistry
from .transport import Delivery, TransportAdapter

logger = get_logger(__name__)

Handler = Callable[[Envelope], Awaitable[Any]]

MAX_BACKOFF = 30.0


class DeliveryState(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    ACKNOWLEDGED = "acknowledged"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class QueueState:
    """Per-queue counters exposed on the status endpoint."""

    event_type: str
    queue: str
    subscribed: bool = False
    broadcast: bool = False
    given_up: bool = False
    processed: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConsumerRuntime:
    """Runs registered handlers against their queues until stopped."""

    def __init__(
        self,
        transport: TransportAdapter,
        registry: BindingRegistry | None = None,
        max_retries: int | None = None,
        consume_timeout: float | None = None,
        metrics: MessagingMetrics | None = None,
    ):
        self.transport = transport
        self.registry = registry or transport.registry
        self.max_retries = max_retries or transport.config.max_retries
        self.consume_timeout = consume_timeout or transport.config.consume_timeout
        self.reconnect_delay = transport.config.reconnect_delay
        self.metrics = metrics or get_metrics()

        self._handlers: dict[EventType, Handler] = {}
        self._broadcast: dict[EventType, Handler] = {}
        self._states: dict[EventType, QueueState] = {}
        self._tasks: dict[EventType, asyncio.Task] = {}
        self._shutdown = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register(self, event_type: EventType | str, handler: Handler, broadcast: bool = False) -> None:
        """
        Attach ``handler`` to the queue bound to ``event_type``.

        With ``broadcast=True`` the handler listens on the fan-out channel
        instead (at-most-once, no retry).
        """
        binding = self.registry.require(event_type)
        event_type = binding.event_type
        if self._running:
            raise ConfigurationError("Handlers must be registered before start()")
        if broadcast and not self.transport.supports_broadcast:
            raise ConfigurationError(
                f"Transport '{self.transport.name}' does not support broadcast channels",
                error_code="BROADCAST_UNSUPPORTED",
            )

        target = self._broadcast if broadcast else self._handlers
        if event_type in target:
            raise ConfigurationError(
                f"Handler already registered for {event_type.value}",
                error_code="DUPLICATE_HANDLER",
            )
        target[event_type] = handler

        queue = binding.store.channel if broadcast else self.transport.queue_for(event_type)
        self._states.setdefault(
            event_type, QueueState(event_type=event_type.value, queue=queue, broadcast=broadcast)
        )

    async def start(self) -> None:
        if self._running:
            return
        self._shutdown.clear()
        self._running = True

        for event_type, handler in self._broadcast.items():
            try:
                await self.transport.subscribe_channel(event_type, handler)
                self._states[event_type].subscribed = True
            except TransportConnectionError as e:
                self._states[event_type].last_error = str(e)
                logger.error("Channel subscription failed", event_type=event_type.value, error=str(e))

        for event_type in self._handlers:
            self._states[event_type].given_up = False
            self._tasks[event_type] = asyncio.create_task(
                self._supervise(event_type), name=f"consumer:{event_type.value}"
            )
        logger.info("Consumer runtime started", queues=[e.value for e in self._handlers])

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal shutdown and wait for in-flight deliveries to finish."""
        if not self._running:
            return
        self._shutdown.set()
        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for event_type in self._handlers:
            self._states[event_type].subscribed = False
            try:
                await self.transport.unsubscribe(event_type)
            except TransportConnectionError as e:
                logger.debug("Unsubscribe failed", event_type=event_type.value, error=str(e))

        self._tasks.clear()
        self._running = False
        logger.info("Consumer runtime stopped")

    async def _supervise(self, event_type: EventType) -> None:
        state = self._states[event_type]
        failures = 0
        while not self._shutdown.is_set():
            try:
                if not state.subscribed:
                    await self.transport.subscribe(event_type)
                    state.subscribed = True
                    logger.info("Subscribed", event_type=event_type.value, queue=state.queue)

                delivery = await self.transport.receive(event_type, self.consume_timeout)
                failures = 0
                if delivery is not None:
                    await self.process(delivery)
            except asyncio.CancelledError:
                raise
            except TransportUnavailableError as e:
                # The adapter will not come back on its own; idle until stop().
                state.subscribed = False
                state.given_up = True
                state.last_error = str(e)
                logger.error(
                    "Transport unavailable, consumer idle until restart",
                    event_type=event_type.value,
                    error=str(e),
                )
                await self._shutdown.wait()
                return
            except Exception as e:
                failures += 1
                state.subscribed = False
                state.last_error = str(e)
                delay = min(self.reconnect_delay * failures, MAX_BACKOFF)
                logger.warning(
                    "Consumer loop error, backing off",
                    event_type=event_type.value,
                    error=str(e),
                    delay=delay,
                )
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass

    async def process(self, delivery: Delivery) -> DeliveryState:
        """Run one delivery through the handler and settle it with the transport."""
        state = self._states[delivery.event_type]
        handler = self._handlers[delivery.event_type]

        try:
            env = Envelope.from_bytes(delivery.raw)
        except SerializationError as e:
            return await self._dead_letter(delivery, state, f"poison: {e}")
        if env.event_type is not delivery.event_type:
            return await self._dead_letter(
                delivery,
                state,
                f"poison: {env.event_type.value} envelope on {delivery.queue}",
            )

        token = bind_message_id(env.id)
        try:
            try:
                await handler(env)
            except Exception as e:
                state.last_error = str(e)
                logger.error(
                    "Handler failed",
                    event_type=env.event_type.value,
                    attempt=env.attempt,
                    max_retries=self.max_retries,
                    error=str(e),
                    exc_info=e,
                )
                if env.attempt < self.max_retries:
                    return await self._requeue(delivery, state, env)
                return await self._dead_letter(delivery, state, f"retries exhausted: {e}")

            await delivery.ack()
            state.processed += 1
            self.metrics.record_delivery(delivery.queue, "ack")
            return DeliveryState.ACKNOWLEDGED
        finally:
            reset_message_id(token)

    async def _requeue(self, delivery: Delivery, state: QueueState, env: Envelope) -> DeliveryState:
        retry = env.next_attempt()
        await delivery.requeue(retry)
        state.requeued += 1
        self.metrics.record_delivery(delivery.queue, "requeue")
        logger.info("Message requeued", queue=delivery.queue, retry_count=retry.retry_count)
        return DeliveryState.REQUEUED

    async def _dead_letter(self, delivery: Delivery, state: QueueState, reason: str) -> DeliveryState:
        await delivery.dead_letter(reason)
        state.dead_lettered += 1
        self.metrics.record_delivery(delivery.queue, "dead_letter")
        return DeliveryState.DEAD_LETTERED

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "max_retries": self.max_retries,
            "queues": [state.to_dict() for state in self._states.values()],
        }
