"""
Key-value store transport.

Every envelope is written twice: ``LPUSH`` onto the durable list of its
binding (consumed with ``BRPOP``) and ``PUBLISH`` on its channel for
fire-and-forget listeners. Dead letters go to ``dlq:{queue}``.

Three clients are kept, one per role, so a blocking ``BRPOP`` or an active
subscription never stalls publishing. Each client retries a failed command
with capped exponential backoff; once ``max_reconnect_attempts`` consecutive
operations have failed on connection errors the transport stops trying and
reports itself permanently unavailable until ``connect()`` is called again.
"""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio.client import PubSub
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from ..config import RedisConfig, TransportConfig
from ..exceptions import SerializationError, TransportConnectionError, TransportUnavailableError
from ..logger import get_logger
from .envelope import Envelope, EventType
from .registry import BindingRegistry, StoreBinding
from .transport import BroadcastHandler, Delivery, HealthReport, QueueStats, TransportAdapter

logger = get_logger(__name__)

T = TypeVar("T")

BACKOFF_BASE = 0.1


class RedisDelivery(Delivery):
    def __init__(
        self,
        transport: "RedisTransport",
        raw: bytes,
        binding: StoreBinding,
        event_type: EventType,
    ):
        super().__init__(raw, binding.queue, event_type)
        self._transport = transport
        self._binding = binding

    async def ack(self) -> None:
        # BRPOP already removed the item.
        pass

    async def requeue(self, envelope: Envelope) -> None:
        await self._transport._execute(
            "requeue", lambda: self._transport._commands.lpush(self.queue, envelope.to_bytes())
        )

    async def dead_letter(self, reason: str) -> None:
        await self._transport._execute(
            "dead_letter",
            lambda: self._transport._commands.lpush(self._binding.dead_letter_queue, self.raw),
        )
        logger.warning(
            "Message moved to dead-letter list",
            queue=self.queue,
            dead_letter_queue=self._binding.dead_letter_queue,
            reason=reason,
        )


class RedisTransport(TransportAdapter):
    """List-plus-channel transport built on redis.asyncio."""

    name = "redis"
    supports_broadcast = True

    def __init__(
        self,
        registry: BindingRegistry,
        config: TransportConfig | None = None,
        redis_config: RedisConfig | None = None,
    ):
        super().__init__(registry, config)
        self.redis_config = redis_config or RedisConfig()
        self._publisher: redis.Redis | None = None
        self._subscriber: redis.Redis | None = None
        self._commands: redis.Redis | None = None
        self._pubsubs: list[PubSub] = []
        self._listeners: list[asyncio.Task] = []
        self._subscribed: set[EventType] = set()
        self._failures = 0
        self._given_up = False

    def _client(self) -> redis.Redis:
        cfg = self.redis_config
        return redis.Redis(
            host=cfg.host,
            port=cfg.port,
            db=cfg.db,
            username=cfg.username,
            password=cfg.password,
            socket_connect_timeout=self.config.connection_timeout,
            retry=Retry(
                ExponentialBackoff(cap=cfg.reconnect_backoff_cap, base=BACKOFF_BASE),
                cfg.max_reconnect_attempts,
            ),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            decode_responses=False,
        )

    @property
    def given_up(self) -> bool:
        return self._given_up

    async def connect(self) -> None:
        """Open the publisher, subscriber and command clients."""
        if self._ready:
            return
        self._given_up = False
        self._failures = 0
        await self._close_clients()
        self._publisher = self._client()
        self._subscriber = self._client()
        self._commands = self._client()
        try:
            for client in (self._publisher, self._subscriber, self._commands):
                await client.ping()
        except RedisError as e:
            logger.error(
                "Failed to connect to Redis",
                host=self.redis_config.host,
                port=self.redis_config.port,
                error=str(e),
            )
            await self._close_clients()
            raise TransportConnectionError(f"Failed to connect to Redis: {e}")

        self._ready = True
        logger.info("Connected to Redis", host=self.redis_config.host, port=self.redis_config.port)

    async def close(self) -> None:
        for task in self._listeners:
            task.cancel()
        for task in self._listeners:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._listeners.clear()

        for pubsub in self._pubsubs:
            try:
                await pubsub.aclose()
            except RedisError as e:
                logger.debug("Error while closing subscription", error=str(e))
        self._pubsubs.clear()
        self._subscribed.clear()

        await self._close_clients()
        logger.info("Disconnected from Redis")

    async def _close_clients(self) -> None:
        self._ready = False
        for client in (self._publisher, self._subscriber, self._commands):
            if client is None:
                continue
            try:
                await client.aclose()
            except RedisError as e:
                logger.debug("Error while closing Redis client", error=str(e))
        self._publisher = self._subscriber = self._commands = None

    def _check_available(self) -> None:
        if self._given_up:
            raise TransportUnavailableError(
                "Redis reconnect attempts exhausted",
                error_code="TRANSPORT_GAVE_UP",
                details={"attempts": self._failures},
            )
        if self._commands is None:
            raise TransportConnectionError("Redis transport is not connected")

    async def _ensure_connected(self) -> None:
        if self._commands is None and not self._given_up:
            await self.connect()
        self._check_available()

    async def _execute(self, operation: str, command: Callable[[], Awaitable[T]]) -> T:
        """Run a command, translating client errors and tracking consecutive failures."""
        await self._ensure_connected()
        try:
            result = await command()
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._failures += 1
            self._ready = False
            if self._failures >= self.redis_config.max_reconnect_attempts:
                self._given_up = True
                logger.error(
                    "Giving up on Redis after repeated connection failures",
                    operation=operation,
                    attempts=self._failures,
                )
                raise TransportUnavailableError(
                    f"Redis unavailable after {self._failures} attempts: {e}",
                    error_code="TRANSPORT_GAVE_UP",
                )
            raise TransportConnectionError(f"Redis {operation} failed: {e}")
        except RedisError as e:
            raise TransportConnectionError(f"Redis {operation} failed: {e}")

        self._failures = 0
        self._ready = True
        return result

    async def send(self, envelope: Envelope) -> None:
        binding = self.registry.store_binding(envelope.event_type)
        payload = envelope.to_bytes()
        max_length = self.redis_config.max_queue_length

        async def push_and_publish() -> Any:
            async with self._publisher.pipeline(transaction=True) as pipe:
                pipe.lpush(binding.queue, payload)
                if max_length:
                    # Lists nobody consumes must not grow forever; BRPOP takes
                    # from the tail, so the oldest entries are trimmed.
                    pipe.ltrim(binding.queue, 0, max_length - 1)
                pipe.publish(binding.channel, payload)
                return await pipe.execute()

        await self._execute("send", push_and_publish)
        logger.debug(
            "Published event",
            event_type=envelope.event_type.value,
            queue=binding.queue,
            channel=binding.channel,
            message_id=envelope.id,
        )

    async def subscribe(self, event_type: EventType) -> str:
        binding = self.registry.store_binding(event_type)
        await self._ensure_connected()
        self._subscribed.add(event_type)
        return binding.queue

    async def unsubscribe(self, event_type: EventType) -> None:
        self._subscribed.discard(event_type)

    async def receive(self, event_type: EventType, timeout: float) -> Delivery | None:
        binding = self.registry.store_binding(event_type)
        # BRPOP takes whole seconds; 0 would block forever.
        seconds = max(1, math.ceil(timeout))
        result = await self._execute(
            "receive", lambda: self._commands.brpop([binding.queue], timeout=seconds)
        )
        if result is None:
            return None
        _, raw = result
        return RedisDelivery(self, raw, binding, event_type)

    async def subscribe_channel(self, event_type: EventType, handler: BroadcastHandler) -> str:
        binding = self.registry.store_binding(event_type)
        await self._ensure_connected()
        pubsub = self._subscriber.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(binding.channel)
        except RedisError as e:
            raise TransportConnectionError(f"Failed to subscribe to {binding.channel}: {e}")

        self._pubsubs.append(pubsub)
        self._listeners.append(asyncio.create_task(self._listen(pubsub, binding.channel, handler)))
        logger.info("Subscribed to channel", channel=binding.channel)
        return binding.channel

    async def _listen(self, pubsub: PubSub, channel: str, handler: BroadcastHandler) -> None:
        while True:
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as e:
                logger.warning("Channel listener error", channel=channel, error=str(e))
                await asyncio.sleep(self.config.reconnect_delay)
                continue
            if not message or message.get("type") != "message":
                continue
            try:
                await handler(Envelope.from_bytes(message["data"]))
            except SerializationError as e:
                logger.warning("Ignoring undecodable broadcast", channel=channel, error=str(e))
            except Exception as e:
                logger.error("Broadcast handler failed", channel=channel, error=str(e))

    async def health_check(self) -> HealthReport:
        start = time.perf_counter()
        try:
            await self._execute("ping", lambda: self._commands.ping())
        except TransportConnectionError as e:
            return HealthReport(healthy=False, error=str(e), transport=self.name)
        return HealthReport(
            healthy=True,
            latency_ms=(time.perf_counter() - start) * 1000,
            transport=self.name,
        )

    async def queue_stats(self, event_type: EventType) -> QueueStats:
        binding = self.registry.store_binding(event_type)
        length = await self._execute("llen", lambda: self._commands.llen(binding.queue))
        dead = await self._execute("llen", lambda: self._commands.llen(binding.dead_letter_queue))
        return QueueStats(
            event_type=event_type.value,
            queue=binding.queue,
            dead_letter_queue=binding.dead_letter_queue,
            length=length,
            dead_letter_length=dead,
        )

    async def replay_dead_letters(self, event_type: EventType, limit: int = 100) -> int:
        binding = self.registry.store_binding(event_type)
        dead = await self._execute("llen", lambda: self._commands.llen(binding.dead_letter_queue))

        replayed = 0
        for _ in range(min(limit, dead)):
            raw = await self._execute("rpop", lambda: self._commands.rpop(binding.dead_letter_queue))
            if raw is None:
                break
            try:
                replay = Envelope.from_bytes(raw).reset_retries()
            except SerializationError as e:
                logger.warning("Leaving undecodable dead letter in place", error=str(e))
                await self._execute(
                    "lpush", lambda: self._commands.lpush(binding.dead_letter_queue, raw)
                )
                continue
            await self._execute(
                "lpush", lambda: self._commands.lpush(binding.queue, replay.to_bytes())
            )
            replayed += 1

        logger.info("Replayed dead letters", queue=binding.dead_letter_queue, count=replayed)
        return replayed

    def status(self) -> dict[str, Any]:
        status = super().status()
        status["subscribed"] = sorted(e.value for e in self._subscribed)
        status["channels"] = len(self._pubsubs)
        status["given_up"] = self._given_up
        return status
