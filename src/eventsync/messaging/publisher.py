"""
Non-blocking event publisher.

``publish`` validates the destination binding, stamps an envelope and hands
the send to a background task, returning before any network I/O happens.
Sends that fail on a transport error are parked in a bounded outbox and
retried once the transport comes back, so brief outages do not lose events.
"""

import asyncio
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..exceptions import TransportConnectionError, TransportUnavailableError
from ..logger import get_logger
from ..metrics import MessagingMetrics, get_metrics
from .envelope import Envelope, EventType, envelope
from .registry import BindingRegistry
from .transport import HealthReport, TransportAdapter

logger = get_logger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """Acceptance receipt; delivery happens in the background."""

    accepted: bool
    envelope_id: str
    event_type: EventType


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Publisher:
    """Fire-and-forget publisher with an in-process outbox."""

    def __init__(
        self,
        transport: TransportAdapter,
        registry: BindingRegistry | None = None,
        service_name: str = "unknown",
        outbox_size: int = 1000,
        retry_interval: float | None = None,
        metrics: MessagingMetrics | None = None,
    ):
        self.transport = transport
        self.registry = registry or transport.registry
        self.service_name = service_name
        self.outbox_size = outbox_size
        self.retry_interval = (
            retry_interval if retry_interval is not None else transport.config.reconnect_delay
        )
        self.metrics = metrics or get_metrics()
        self.last_health: HealthReport | None = None

        self._tasks: set[asyncio.Task] = set()
        self._outbox: deque[Envelope] = deque()
        self._drain_task: asyncio.Task | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        """Sends in flight plus envelopes waiting in the outbox."""
        return len(self._tasks) + len(self._outbox)

    @property
    def outbox(self) -> list[Envelope]:
        return list(self._outbox)

    def publish(self, event_type: EventType | str, data: dict[str, Any] | None = None) -> PublishResult:
        """
        Accept an event for delivery.

        Raises ``ConfigurationError`` when the event type is unknown or
        unbound. Transport failures are never raised here.
        """
        self.registry.require(event_type)
        env = envelope(event_type, data, origin_service=self.service_name)
        self._dispatch(env)
        return PublishResult(accepted=True, envelope_id=env.id, event_type=env.event_type)

    def publish_batch(
        self, events: Iterable[tuple[EventType | str, dict[str, Any] | None]]
    ) -> list[PublishResult]:
        """Accept several events; every binding is validated before any is sent."""
        events = list(events)
        for event_type, _ in events:
            self.registry.require(event_type)
        return [self.publish(event_type, data) for event_type, data in events]

    def _dispatch(self, env: Envelope) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called outside the event loop; the next flush delivers it.
            self._park(env, "no running event loop")
            return

        task = loop.create_task(self._send(env))
        self._tasks.add(task)
        task.add_done_callback(self._on_send_done)

    async def _send(self, env: Envelope) -> None:
        try:
            await self.transport.send(env)
        except TransportConnectionError as e:
            self._park(env, str(e))
            return
        except Exception as e:
            self.metrics.record_publish(env.event_type.value, "failed")
            logger.error(
                "Background publish failed",
                event_type=env.event_type.value,
                message_id=env.id,
                error=str(e),
                exc_info=e,
            )
            return
        self.metrics.record_publish(env.event_type.value, "sent")
        logger.debug("Event sent", event_type=env.event_type.value, message_id=env.id)

    def _on_send_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)

    def _park(self, env: Envelope, reason: str) -> None:
        if len(self._outbox) >= self.outbox_size:
            dropped = self._outbox.popleft()
            self.metrics.record_publish(dropped.event_type.value, "dropped")
            logger.warning(
                "Outbox full, dropping oldest event",
                event_type=dropped.event_type.value,
                message_id=dropped.id,
            )

        self._outbox.append(env)
        self.metrics.outbox_size.set(len(self._outbox))
        self.metrics.record_publish(env.event_type.value, "deferred")
        logger.warning(
            "Transport unavailable, event kept for retry",
            event_type=env.event_type.value,
            message_id=env.id,
            reason=reason,
            outbox=len(self._outbox),
        )
        self._ensure_drain()

    def _ensure_drain(self) -> None:
        if self._closed or (self._drain_task and not self._drain_task.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._drain_task = loop.create_task(self._drain_loop())

    async def _drain_loop(self) -> None:
        while self._outbox and not self._closed:
            await asyncio.sleep(self.retry_interval)
            try:
                await self._drain_outbox()
            except TransportUnavailableError as e:
                logger.error(
                    "Transport gave up, outbox left undelivered",
                    outbox=len(self._outbox),
                    error=str(e),
                )
                return
            except TransportConnectionError as e:
                logger.info("Outbox retry deferred", outbox=len(self._outbox), error=str(e))

    async def _drain_outbox(self) -> int:
        """Send parked envelopes in order, stopping at the first failure."""
        sent = 0
        while self._outbox:
            env = self._outbox[0]
            await self.transport.send(env)
            self._outbox.popleft()
            self.metrics.outbox_size.set(len(self._outbox))
            self.metrics.record_publish(env.event_type.value, "sent")
            sent += 1
        if sent:
            logger.info("Outbox drained", sent=sent)
        return sent

    async def health_check(self, timeout: float = 5.0) -> HealthReport:
        """Round trip through the transport; the only awaited network call."""
        try:
            report = await asyncio.wait_for(self.transport.health_check(), timeout=timeout)
        except asyncio.TimeoutError:
            report = HealthReport(
                healthy=False, error=f"timed out after {timeout}s", transport=self.transport.name
            )
        except TransportConnectionError as e:
            report = HealthReport(healthy=False, error=str(e), transport=self.transport.name)
        self.last_health = report
        return report

    async def flush(self, timeout: float = 10.0) -> bool:
        """Wait for in-flight sends and try the outbox once; True when nothing is left."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
        if self._outbox:
            try:
                await asyncio.wait_for(self._drain_outbox(), timeout=timeout)
            except (TransportConnectionError, asyncio.TimeoutError) as e:
                logger.warning("Outbox not fully flushed", outbox=len(self._outbox), error=str(e))
        return not self._tasks and not self._outbox

    async def close(self, timeout: float = 10.0) -> None:
        await self.flush(timeout)
        self._closed = True
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        if self._outbox:
            logger.warning("Publisher closed with undelivered events", outbox=len(self._outbox))

    # User events

    def user_created(self, user: dict[str, Any]) -> PublishResult:
        return self.publish(
            EventType.USER_CREATED,
            {
                "id": user.get("id"),
                "name": user.get("name"),
                "email": user.get("email"),
                "role": user.get("role"),
                "createdAt": user.get("createdAt") or user.get("created_at"),
            },
        )

    def user_updated(
        self, user_id: Any, old_data: dict[str, Any], new_data: dict[str, Any]
    ) -> PublishResult:
        return self.publish(
            EventType.USER_UPDATED,
            {"userId": user_id, "oldData": old_data, "newData": new_data, "updatedAt": _now()},
        )

    def user_deleted(self, user_id: Any, email: str | None = None) -> PublishResult:
        return self.publish(
            EventType.USER_DELETED, {"userId": user_id, "email": email, "deletedAt": _now()}
        )

    def user_logged_in(self, user_id: Any, email: str) -> PublishResult:
        return self.publish(
            EventType.USER_LOGGED_IN, {"userId": user_id, "email": email, "loginAt": _now()}
        )

    # Reservation events

    def reservation_created(self, reservation: dict[str, Any]) -> PublishResult:
        return self.publish(
            EventType.RESERVATION_CREATED,
            {
                "id": reservation.get("id"),
                "userId": reservation.get("userId"),
                "placeId": reservation.get("placeId"),
                "reservedAt": reservation.get("reservedAt"),
                "peopleCount": reservation.get("peopleCount"),
                "status": reservation.get("status") or "confirmed",
                "createdAt": reservation.get("createdAt") or _now(),
            },
        )

    def reservation_cancelled(self, reservation_id: Any, reason: str | None = None) -> PublishResult:
        return self.publish(
            EventType.RESERVATION_CANCELLED,
            {"reservationId": reservation_id, "reason": reason, "cancelledAt": _now()},
        )

    def reservation_updated(self, reservation_id: Any, updates: dict[str, Any]) -> PublishResult:
        return self.publish(
            EventType.RESERVATION_UPDATED,
            {"reservationId": reservation_id, "updates": updates, "updatedAt": _now()},
        )

    # Favorite events

    def favorite_added(
        self, user_id: Any, place_id: Any, favorite_data: dict[str, Any] | None = None
    ) -> PublishResult:
        favorite_data = favorite_data or {}
        return self.publish(
            EventType.FAVORITE_ADDED,
            {
                "userId": user_id,
                "placeId": place_id,
                "favoriteId": favorite_data.get("favoriteId"),
                "favoriteData": favorite_data,
                "addedAt": favorite_data.get("addedAt") or _now(),
            },
        )

    def favorite_removed(self, user_id: Any, place_id: Any) -> PublishResult:
        return self.publish(
            EventType.FAVORITE_REMOVED,
            {"userId": user_id, "placeId": place_id, "removedAt": _now()},
        )

    def favorites_cleared(self, user_id: Any) -> PublishResult:
        return self.publish(EventType.FAVORITES_CLEARED, {"userId": user_id, "clearedAt": _now()})
