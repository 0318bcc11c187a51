"""
Prometheus metrics for event delivery and cache coherence.
"""

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, generate_latest

from .logger import get_logger

logger = get_logger(__name__)


class MessagingMetrics:
    """Counters shared by the publisher, the consumer runtime and the cache."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or REGISTRY

        self.events_published_total = Counter(
            "eventsync_events_published_total",
            "Envelopes handed to the transport",
            ["event_type", "status"],
            registry=self.registry,
        )
        self.outbox_size = Gauge(
            "eventsync_outbox_size",
            "Envelopes waiting for the transport to come back",
            registry=self.registry,
        )
        self.deliveries_total = Counter(
            "eventsync_deliveries_total",
            "Consumed deliveries by outcome",
            ["queue", "outcome"],
            registry=self.registry,
        )
        self.cache_operations_total = Counter(
            "eventsync_cache_operations_total",
            "Cache operations by result",
            ["operation", "result"],
            registry=self.registry,
        )
        self.cache_pattern_keys_total = Counter(
            "eventsync_cache_pattern_keys_total",
            "Keys removed or failed during pattern invalidation",
            ["result"],
            registry=self.registry,
        )
        self.transport_ready = Gauge(
            "eventsync_transport_ready",
            "Transport readiness (1=ready, 0=not ready)",
            ["transport"],
            registry=self.registry,
        )

    def record_publish(self, event_type: str, status: str) -> None:
        self.events_published_total.labels(event_type=event_type, status=status).inc()

    def record_delivery(self, queue: str, outcome: str) -> None:
        self.deliveries_total.labels(queue=queue, outcome=outcome).inc()

    def record_cache(self, operation: str, result: str) -> None:
        self.cache_operations_total.labels(operation=operation, result=result).inc()

    def record_pattern_keys(self, deleted: int, failed: int) -> None:
        if deleted:
            self.cache_pattern_keys_total.labels(result="deleted").inc(deleted)
        if failed:
            self.cache_pattern_keys_total.labels(result="failed").inc(failed)

    def set_transport_ready(self, transport: str, ready: bool) -> None:
        self.transport_ready.labels(transport=transport).set(1 if ready else 0)

    def render(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)


# Global metrics instance
_metrics: MessagingMetrics | None = None


def get_metrics() -> MessagingMetrics:
    """Get the process-wide metrics, registering them on first use."""
    global _metrics
    if _metrics is None:
        _metrics = MessagingMetrics()
        logger.debug("Messaging metrics registered")
    return _metrics
