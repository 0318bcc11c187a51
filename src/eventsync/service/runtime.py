"""
Process wiring.

``EventSyncService`` builds the transport, publisher, consumer runtime,
cache and invalidation policy from configuration and owns their lifecycle.
"""

import asyncio
import signal
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from ..cache.invalidation import InvalidationPolicy
from ..cache.manager import CacheService
from ..config import EventSyncConfig, get_config
from ..exceptions import TransportConnectionError
from ..health import CacheHealthCheck, HealthManager, TransportHealthCheck
from ..logger import LogConfig, get_logger, setup_logging
from ..messaging.consumer import ConsumerRuntime
from ..messaging.envelope import Envelope, EventType
from ..messaging.factory import create_transport
from ..messaging.publisher import Publisher
from ..messaging.registry import BindingRegistry, default_registry
from ..messaging.transport import TransportAdapter
from ..metrics import MessagingMetrics, get_metrics

logger = get_logger(__name__)

Handler = Callable[[Envelope], Awaitable[Any]]


def configure_logging(config: EventSyncConfig) -> None:
    setup_logging(LogConfig.from_config(config))


async def log_event(env: Envelope) -> None:
    """Fallback handler for subscribed events without an invalidation rule."""
    logger.info(
        "Event received",
        event_type=env.event_type.value,
        origin_service=env.metadata.origin_service,
        attempt=env.attempt,
    )


class EventSyncService:
    """Long-running event propagation and cache-coherence process."""

    def __init__(
        self,
        config: EventSyncConfig | None = None,
        registry: BindingRegistry | None = None,
        transport: TransportAdapter | None = None,
        cache: CacheService | None = None,
        metrics: MessagingMetrics | None = None,
    ):
        self.config = config or get_config()
        self.registry = registry or default_registry()
        self.metrics = metrics or get_metrics()
        self.transport = transport or create_transport(self.config, self.registry)

        self.publisher = Publisher(
            self.transport,
            self.registry,
            service_name=self.config.service.name,
            outbox_size=self.config.transport.outbox_size,
            metrics=self.metrics,
        )
        self.consumer = ConsumerRuntime(
            self.transport,
            self.registry,
            max_retries=self.config.transport.max_retries,
            consume_timeout=self.config.transport.consume_timeout,
            metrics=self.metrics,
        )

        if cache is None and self.config.cache.enabled:
            cache = CacheService.from_config(
                self.config.cache,
                self.config.redis,
                reconnect_interval=self.config.transport.reconnect_delay,
                metrics=self.metrics,
            )
        self.cache = cache
        self.invalidation = (
            InvalidationPolicy(cache)
            if cache is not None and self.config.cache.invalidate_on_events
            else None
        )

        checks = [TransportHealthCheck(self.publisher)]
        if self.cache is not None:
            checks.append(CacheHealthCheck(self.cache))
        self.health = HealthManager(checks)

        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)
        self._stopping = asyncio.Event()
        self._started = False
        self._registered = False

        for name in self.config.transport.subscribe:
            self.subscribe(name)

    @property
    def subscriptions(self) -> list[EventType]:
        return list(self._handlers)

    def subscribe(self, event_type: EventType | str, handler: Handler | None = None) -> None:
        """
        Consume ``event_type``.

        Without an explicit handler the invalidation rule for the event type
        is used, or a logging handler when no rule covers it.
        """
        binding = self.registry.require(event_type)
        event_type = binding.event_type
        if handler is None:
            if self._handlers.get(event_type):
                return
            if self.invalidation is not None and event_type in self.invalidation.event_types:
                handler = self.invalidation.handler_for(event_type)
            else:
                handler = log_event
        self._handlers[event_type].append(handler)

    def on(self, event_type: EventType | str) -> Callable[[Handler], Handler]:
        """Decorator form of ``subscribe``."""

        def decorator(handler: Handler) -> Handler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def _composite(self, handlers: list[Handler]) -> Handler:
        if len(handlers) == 1:
            return handlers[0]

        async def run_all(env: Envelope) -> None:
            for handler in handlers:
                await handler(env)

        return run_all

    async def start(self) -> None:
        if self._started:
            return
        self._stopping.clear()

        try:
            await self.transport.connect()
        except TransportConnectionError as e:
            # Consumers and the publisher outbox keep retrying in the background.
            logger.error("Transport unavailable at startup", error=str(e))
        self.metrics.set_transport_ready(self.transport.name, self.transport.is_ready)

        if self.cache is not None:
            await self.cache.connect()

        if not self._registered:
            for event_type, handlers in self._handlers.items():
                self.consumer.register(event_type, self._composite(handlers))
            self._registered = True
        await self.consumer.start()

        self._started = True
        logger.info(
            "Service started",
            service=self.config.service.name,
            transport=self.transport.name,
            subscriptions=[e.value for e in self._handlers],
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop consumers, flush pending publishes and close connections."""
        if not self._started:
            return
        await self.consumer.stop(timeout)
        await self.publisher.close(timeout)
        if self.cache is not None:
            await self.cache.close()
        await self.transport.close()
        self.metrics.set_transport_ready(self.transport.name, False)
        self._started = False
        logger.info("Service stopped", service=self.config.service.name)

    def request_stop(self) -> None:
        self._stopping.set()

    async def run_until_signalled(self) -> None:
        """Run until SIGINT or SIGTERM, then shut down gracefully."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                pass

        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    async def check_health(self) -> dict[str, Any]:
        result = await self.health.check_all()
        self.metrics.set_transport_ready(self.transport.name, self.transport.is_ready)
        result["transport"] = self.transport.name
        result["cache"] = result["checks"].get("cache", {}).get("status", "disabled")
        return result

    def status(self) -> dict[str, Any]:
        """Configured destinations and live consumer state."""
        kind = self.transport.name
        publishes = []
        for binding in self.registry:
            entry: dict[str, Any] = {"event_type": binding.event_type.value}
            if kind == "rabbitmq":
                entry["exchange"] = binding.broker.exchange
                entry["routing_key"] = binding.broker.routing_key
            else:
                entry["channel"] = binding.store.channel
                entry["queue"] = binding.store.queue
            publishes.append(entry)

        consumer_status = self.consumer.status()
        live = {q["event_type"]: q for q in consumer_status["queues"]}
        subscribes = []
        for event_type in self._handlers:
            queue = live.get(event_type.value) or {
                "event_type": event_type.value,
                "queue": self.transport.queue_for(event_type),
                "subscribed": False,
            }
            subscribes.append(queue)

        return {
            "service": self.config.service.name,
            "version": self.config.service.version,
            "transport": self.transport.status(),
            "running": consumer_status["running"],
            "max_retries": consumer_status["max_retries"],
            "publishes": publishes,
            "subscribes": subscribes,
            "publisher": {
                "pending": self.publisher.pending,
                "outbox": len(self.publisher.outbox),
            },
            "cache": self.cache.get_stats() if self.cache is not None else None,
        }
