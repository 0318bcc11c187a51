"""
Destination bindings.

Every event type a service publishes or consumes resolves to exactly one
binding per transport: an (exchange, routing key, queue) triple for the
broker and a (channel, queue) pair for the key-value store.
"""

from collections.abc import Iterator
from dataclasses import dataclass

from ..exceptions import ConfigurationError
from .envelope import EventType

DLX_SUFFIX = ".dlx"
DLQ_SUFFIX = ".dlq"
STORE_DLQ_PREFIX = "dlq:"


@dataclass(frozen=True)
class BrokerBinding:
    """Topic-exchange destination."""

    exchange: str
    routing_key: str
    queue: str

    @property
    def dead_letter_exchange(self) -> str:
        return f"{self.exchange}{DLX_SUFFIX}"

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.queue}{DLQ_SUFFIX}"


@dataclass(frozen=True)
class StoreBinding:
    """Pub/sub channel plus list-backed queue."""

    channel: str
    queue: str

    @property
    def dead_letter_queue(self) -> str:
        return f"{STORE_DLQ_PREFIX}{self.queue}"


@dataclass(frozen=True)
class DestinationBinding:
    event_type: EventType
    broker: BrokerBinding
    store: StoreBinding


class BindingRegistry:
    """Static event type -> destination mapping."""

    def __init__(self) -> None:
        self._bindings: dict[EventType, DestinationBinding] = {}

    def register(
        self,
        event_type: EventType | str,
        broker: BrokerBinding,
        store: StoreBinding,
    ) -> DestinationBinding:
        event_type = EventType.parse(event_type)
        if event_type in self._bindings:
            raise ConfigurationError(
                f"Event type {event_type.value} is already bound",
                error_code="DUPLICATE_BINDING",
            )

        binding = DestinationBinding(event_type=event_type, broker=broker, store=store)
        self._bindings[event_type] = binding
        return binding

    def require(self, event_type: EventType | str) -> DestinationBinding:
        """Resolve the binding for ``event_type`` or fail with ``ConfigurationError``."""
        event_type = EventType.parse(event_type)
        binding = self._bindings.get(event_type)
        if binding is None:
            raise ConfigurationError(
                f"No destination bound for event type {event_type.value}",
                error_code="UNBOUND_EVENT_TYPE",
                details={"event_type": event_type.value},
            )
        return binding

    def broker_binding(self, event_type: EventType | str) -> BrokerBinding:
        return self.require(event_type).broker

    def store_binding(self, event_type: EventType | str) -> StoreBinding:
        return self.require(event_type).store

    def event_types(self) -> list[EventType]:
        return list(self._bindings)

    def exchanges(self) -> list[str]:
        """Distinct broker exchanges, in registration order."""
        return list(dict.fromkeys(b.broker.exchange for b in self._bindings.values()))

    def __contains__(self, event_type: object) -> bool:
        try:
            return EventType.parse(event_type) in self._bindings  # type: ignore[arg-type]
        except ConfigurationError:
            return False

    def __iter__(self) -> Iterator[DestinationBinding]:
        return iter(self._bindings.values())

    def __len__(self) -> int:
        return len(self._bindings)


# (event type, exchange, routing key, broker queue, store channel, store queue)
DEFAULT_BINDINGS: list[tuple[EventType, str, str, str, str, str]] = [
    (EventType.USER_CREATED, "user_events", "user.created",
     "user_created_main_queue", "user:created", "queue:user_created_main"),
    (EventType.USER_UPDATED, "user_events", "user.updated",
     "user_updated_queue", "user:updated", "queue:user_updated"),
    (EventType.USER_DELETED, "user_events", "user.deleted",
     "user_deleted_main_queue", "user:deleted", "queue:user_deleted_main"),
    (EventType.USER_LOGGED_IN, "user_events", "user.logged_in",
     "user_logged_in_main_queue", "user:logged_in", "queue:user_logged_in_main"),
    (EventType.RESERVATION_CREATED, "reservation_events", "reservation.created",
     "reservation_created_users_queue", "reservation:created", "queue:reservation_created_users"),
    (EventType.RESERVATION_CANCELLED, "reservation_events", "reservation.cancelled",
     "reservation_cancelled_users_queue", "reservation:cancelled",
     "queue:reservation_cancelled_users"),
    (EventType.RESERVATION_UPDATED, "reservation_events", "reservation.updated",
     "reservation_updated_queue", "reservation:updated", "queue:reservation_updated"),
    (EventType.FAVORITE_ADDED, "favorite_events", "favorite.added",
     "favorite_added_users_queue", "favorite:added", "queue:favorite_added_users"),
    (EventType.FAVORITE_REMOVED, "favorite_events", "favorite.removed",
     "favorite_removed_users_queue", "favorite:removed", "queue:favorite_removed_users"),
    (EventType.FAVORITES_CLEARED, "favorite_events", "favorites.cleared",
     "favorites_cleared_queue", "favorite:cleared", "queue:favorites_cleared"),
    (EventType.EMAIL_NOTIFICATION, "notification_events", "notification.email",
     "email_notifications_queue", "notification:email", "queue:email_notifications"),
    (EventType.PUSH_NOTIFICATION, "notification_events", "notification.push",
     "push_notifications_queue", "notification:push", "queue:push_notifications"),
    (EventType.HEALTH_CHECK, "user_events", "health.check",
     "health_check_queue", "health:check", "queue:health_check"),
]


def default_registry() -> BindingRegistry:
    """Registry with the bindings shared by the user and main services."""
    registry = BindingRegistry()
    for event_type, exchange, routing_key, queue, channel, store_queue in DEFAULT_BINDINGS:
        registry.register(
            event_type,
            broker=BrokerBinding(exchange=exchange, routing_key=routing_key, queue=queue),
            store=StoreBinding(channel=channel, queue=store_queue),
        )
    return registry
