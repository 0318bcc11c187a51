"""
AMQP broker transport.

Each event type is published to a durable topic exchange with its routing
key. A consuming service gets a durable queue bound to that key whose
``x-dead-letter-exchange`` points at ``{exchange}.dlx``; the dead-letter
exchange routes the same key into ``{queue}.dlq``.

Reconnection is handled here rather than by ``connect_robust``: when the
connection drops the adapter marks itself not ready, schedules a reconnect
after ``reconnect_delay`` seconds and re-registers every active consumer once
the broker is back.
"""

import asyncio
import time
from typing import Any

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPError, ChannelClosed, ChannelInvalidStateError

from ..config import RabbitMQConfig, TransportConfig
from ..exceptions import SerializationError, TransportConnectionError
from ..logger import get_logger
from .envelope import Envelope, EventType, envelope
from .registry import BindingRegistry, BrokerBinding
from .transport import Delivery, HealthReport, QueueStats, TransportAdapter

logger = get_logger(__name__)

RETRY_COUNT_HEADER = "x-retry-count"

BROKER_ERRORS = (AMQPError, ChannelInvalidStateError, OSError, asyncio.TimeoutError)


def _amqp_message(envelope: Envelope) -> aio_pika.Message:
    return aio_pika.Message(
        body=envelope.to_bytes(),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        message_id=envelope.id,
        headers={RETRY_COUNT_HEADER: envelope.retry_count},
    )


class RabbitMQDelivery(Delivery):
    def __init__(
        self,
        transport: "RabbitMQTransport",
        message: AbstractIncomingMessage,
        binding: BrokerBinding,
        event_type: EventType,
    ):
        super().__init__(message.body, binding.queue, event_type)
        self._transport = transport
        self._message = message
        self._binding = binding

    async def ack(self) -> None:
        try:
            await self._message.ack()
        except BROKER_ERRORS as e:
            raise TransportConnectionError(f"Failed to ack message on {self.queue}: {e}")

    async def requeue(self, envelope: Envelope) -> None:
        # The copy goes through the default exchange so only this queue sees
        # it again; the original is acked once the copy is safely published.
        await self._transport._publish(self._binding, envelope, to_queue=True)
        await self.ack()

    async def dead_letter(self, reason: str) -> None:
        try:
            await self._message.reject(requeue=False)
        except BROKER_ERRORS as e:
            raise TransportConnectionError(f"Failed to dead-letter message on {self.queue}: {e}")
        logger.warning(
            "Message rejected to dead-letter exchange",
            queue=self.queue,
            dead_letter_exchange=self._binding.dead_letter_exchange,
            reason=reason,
        )


class RabbitMQTransport(TransportAdapter):
    """Topic-exchange transport built on aio-pika."""

    name = "rabbitmq"

    def __init__(
        self,
        registry: BindingRegistry,
        config: TransportConfig | None = None,
        rabbitmq: RabbitMQConfig | None = None,
    ):
        super().__init__(registry, config)
        self.rabbitmq = rabbitmq or RabbitMQConfig()
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[EventType, AbstractQueue] = {}
        self._consumer_tags: dict[EventType, str] = {}
        self._buffers: dict[EventType, asyncio.Queue] = {}
        self._subscriptions: set[EventType] = set()
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False

    def queue_for(self, event_type: EventType) -> str:
        return self.registry.broker_binding(event_type).queue

    async def connect(self) -> None:
        """Connect to the broker and declare every bound exchange."""
        async with self._connect_lock:
            if self._ready:
                return
            self._closing = False
            try:
                self._connection = await aio_pika.connect(
                    self.rabbitmq.url,
                    timeout=self.config.connection_timeout,
                    heartbeat=self.rabbitmq.heartbeat,
                )
                self._connection.close_callbacks.add(self._on_connection_closed)
                await self._open_channel()
                for exchange in self.registry.exchanges():
                    await self._exchange(exchange)
                for event_type in sorted(self._subscriptions):
                    await self._start_consumer(event_type)
            except BROKER_ERRORS as e:
                logger.error("Failed to connect to RabbitMQ", error=str(e))
                await self._discard_connection()
                raise TransportConnectionError(f"Failed to connect to RabbitMQ: {e}")

            self._ready = True
            logger.info(
                "Connected to RabbitMQ",
                exchanges=self.registry.exchanges(),
                consumers=len(self._consumer_tags),
            )

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        self._subscriptions.clear()
        await self._discard_connection()
        logger.info("Disconnected from RabbitMQ")

    async def _discard_connection(self) -> None:
        self._ready = False
        connection, self._connection = self._connection, None
        self._channel = None
        self._exchanges.clear()
        self._drop_consumers()
        if connection is not None and not connection.is_closed:
            connection.close_callbacks.discard(self._on_connection_closed)
            try:
                await connection.close()
            except BROKER_ERRORS as e:
                logger.debug("Error while closing RabbitMQ connection", error=str(e))

    def _on_connection_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._closing:
            return
        self._ready = False
        logger.warning(
            "RabbitMQ connection closed, scheduling reconnect",
            error=str(exc) if exc else None,
            delay=self.config.reconnect_delay,
        )
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing and not self._ready:
            await asyncio.sleep(self.config.reconnect_delay)
            if self._closing:
                return
            await self._discard_connection()
            try:
                await self.connect()
            except TransportConnectionError:
                logger.warning("RabbitMQ reconnect failed", delay=self.config.reconnect_delay)

    async def _ensure_connected(self) -> None:
        if self._ready and self._channel is not None and not self._channel.is_closed:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            raise TransportConnectionError("RabbitMQ is reconnecting")
        await self._discard_connection()
        await self.connect()

    def _drop_consumers(self) -> None:
        self._queues.clear()
        self._consumer_tags.clear()
        # Unacked deliveries die with their channel and are redelivered.
        for buffer in self._buffers.values():
            while not buffer.empty():
                buffer.get_nowait()

    async def _open_channel(self) -> None:
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self.config.prefetch_count)
        self._exchanges.clear()

    async def _reopen_channel(self) -> None:
        """Replace a closed channel and restart every consumer on the new one."""
        self._drop_consumers()
        await self._open_channel()
        for event_type in sorted(self._subscriptions):
            await self._start_consumer(event_type)
        logger.info("Reopened RabbitMQ channel", consumers=len(self._consumer_tags))

    async def _exchange(self, name: str) -> AbstractExchange:
        """Declared exchange ``name``, declaring it on first use."""
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = await self._channel.declare_exchange(
                name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            self._exchanges[name] = exchange
        return exchange

    async def _publish_once(self, binding: BrokerBinding, envelope: Envelope, to_queue: bool) -> None:
        if to_queue:
            exchange, routing_key = self._channel.default_exchange, binding.queue
        else:
            exchange, routing_key = await self._exchange(binding.exchange), binding.routing_key
        await exchange.publish(_amqp_message(envelope), routing_key=routing_key)

    async def _publish(
        self, binding: BrokerBinding, envelope: Envelope, to_queue: bool = False
    ) -> None:
        """Publish to the binding's exchange, or straight to its queue with ``to_queue``."""
        target = binding.queue if to_queue else binding.exchange
        await self._ensure_connected()
        try:
            await self._publish_once(binding, envelope, to_queue)
            return
        except ChannelClosed as e:
            # A closed channel loses its declarations and consumers; reopen and try once more.
            logger.warning("RabbitMQ channel closed during publish", error=str(e))
        except BROKER_ERRORS as e:
            raise TransportConnectionError(f"Failed to publish to {target}: {e}")

        try:
            await self._reopen_channel()
            await self._publish_once(binding, envelope, to_queue)
        except BROKER_ERRORS as e:
            raise TransportConnectionError(f"Failed to publish to {target}: {e}")

    async def send(self, envelope: Envelope) -> None:
        binding = self.registry.broker_binding(envelope.event_type)
        await self._publish(binding, envelope)
        logger.debug(
            "Published event",
            event_type=envelope.event_type.value,
            exchange=binding.exchange,
            routing_key=binding.routing_key,
            message_id=envelope.id,
        )

    async def _declare_topology(self, binding: BrokerBinding) -> tuple[AbstractQueue, AbstractQueue]:
        exchange = await self._exchange(binding.exchange)
        dead_letter_exchange = await self._exchange(binding.dead_letter_exchange)

        queue = await self._channel.declare_queue(
            binding.queue,
            durable=True,
            arguments={"x-dead-letter-exchange": binding.dead_letter_exchange},
        )
        await queue.bind(exchange, routing_key=binding.routing_key)

        dead_letter_queue = await self._channel.declare_queue(binding.dead_letter_queue, durable=True)
        await dead_letter_queue.bind(dead_letter_exchange, routing_key=binding.routing_key)
        return queue, dead_letter_queue

    async def _start_consumer(self, event_type: EventType) -> None:
        binding = self.registry.broker_binding(event_type)
        queue, _ = await self._declare_topology(binding)
        buffer = self._buffers.setdefault(event_type, asyncio.Queue())

        async def on_message(message: AbstractIncomingMessage) -> None:
            await buffer.put(message)

        self._queues[event_type] = queue
        self._consumer_tags[event_type] = await queue.consume(on_message, no_ack=False)
        logger.info("Consuming queue", queue=binding.queue, routing_key=binding.routing_key)

    async def subscribe(self, event_type: EventType) -> str:
        binding = self.registry.broker_binding(event_type)
        self._subscriptions.add(event_type)
        await self._ensure_connected()
        if event_type not in self._consumer_tags:
            try:
                await self._start_consumer(event_type)
            except BROKER_ERRORS as e:
                raise TransportConnectionError(f"Failed to subscribe to {binding.queue}: {e}")
        return binding.queue

    async def unsubscribe(self, event_type: EventType) -> None:
        self._subscriptions.discard(event_type)
        queue = self._queues.pop(event_type, None)
        tag = self._consumer_tags.pop(event_type, None)
        if queue is not None and tag is not None:
            try:
                await queue.cancel(tag)
            except BROKER_ERRORS as e:
                logger.debug("Failed to cancel consumer", error=str(e))

    async def receive(self, event_type: EventType, timeout: float) -> Delivery | None:
        if event_type not in self._consumer_tags:
            await self.subscribe(event_type)
        buffer = self._buffers[event_type]
        try:
            message = await asyncio.wait_for(buffer.get(), timeout=timeout)
        except asyncio.TimeoutError:
            if not self._ready:
                raise TransportConnectionError("RabbitMQ connection lost")
            return None
        return RabbitMQDelivery(self, message, self.registry.broker_binding(event_type), event_type)

    async def health_check(self) -> HealthReport:
        """Publish a HEALTH_CHECK envelope and time the round trip."""
        start = time.perf_counter()
        try:
            ping = envelope(EventType.HEALTH_CHECK, {"ping": True}, origin_service="healthcheck")
            await self._publish(self.registry.broker_binding(EventType.HEALTH_CHECK), ping)
        except TransportConnectionError as e:
            return HealthReport(healthy=False, error=str(e), transport=self.name)
        return HealthReport(
            healthy=True,
            latency_ms=(time.perf_counter() - start) * 1000,
            transport=self.name,
        )

    async def queue_stats(self, event_type: EventType) -> QueueStats:
        binding = self.registry.broker_binding(event_type)
        await self._ensure_connected()
        try:
            queue, dead_letter_queue = await self._declare_topology(binding)
        except BROKER_ERRORS as e:
            raise TransportConnectionError(f"Failed to inspect {binding.queue}: {e}")

        declared = queue.declaration_result
        dead = dead_letter_queue.declaration_result
        return QueueStats(
            event_type=event_type.value,
            queue=binding.queue,
            dead_letter_queue=binding.dead_letter_queue,
            length=declared.message_count or 0,
            dead_letter_length=dead.message_count or 0,
            consumers=declared.consumer_count,
        )

    async def replay_dead_letters(self, event_type: EventType, limit: int = 100) -> int:
        binding = self.registry.broker_binding(event_type)
        await self._ensure_connected()
        replayed = 0
        try:
            _, dead_letter_queue = await self._declare_topology(binding)
            pending = min(limit, dead_letter_queue.declaration_result.message_count or 0)
            for _ in range(pending):
                message = await dead_letter_queue.get(no_ack=False, fail=False)
                if message is None:
                    break
                try:
                    replay = Envelope.from_bytes(message.body).reset_retries()
                except SerializationError as e:
                    logger.warning("Leaving undecodable dead letter in place", error=str(e))
                    await message.nack(requeue=True)
                    continue
                await self._publish(binding, replay)
                await message.ack()
                replayed += 1
        except BROKER_ERRORS as e:
            raise TransportConnectionError(f"Failed to replay {binding.dead_letter_queue}: {e}")

        logger.info("Replayed dead letters", queue=binding.dead_letter_queue, count=replayed)
        return replayed

    def status(self) -> dict[str, Any]:
        status = super().status()
        status["exchanges"] = self.registry.exchanges()
        status["subscribed"] = sorted(e.value for e in self._subscriptions)
        status["reconnecting"] = bool(self._reconnect_task and not self._reconnect_task.done())
        return status
