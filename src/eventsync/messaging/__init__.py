"""
Event propagation between services.

Provides the event envelope, destination bindings, pluggable transports
(AMQP broker, key-value store, in-memory), a non-blocking publisher and a
consumer runtime with bounded retry and dead-lettering.
"""

from .consumer import ConsumerRuntime, DeliveryState, QueueState
from .envelope import PROTOCOL_VERSION, Envelope, EnvelopeMetadata, EventType, envelope
from .factory import TransportFactory, create_transport
from .memory import InMemoryTransport
from .publisher import PublishResult, Publisher
from .rabbitmq import RabbitMQTransport
from .redis import RedisTransport
from .registry import (
    BindingRegistry,
    BrokerBinding,
    DestinationBinding,
    StoreBinding,
    default_registry,
)
from .transport import Delivery, HealthReport, QueueStats, TransportAdapter

__all__ = [
    "PROTOCOL_VERSION",
    "BindingRegistry",
    "BrokerBinding",
    "ConsumerRuntime",
    "Delivery",
    "DeliveryState",
    "DestinationBinding",
    "Envelope",
    "EnvelopeMetadata",
    "EventType",
    "HealthReport",
    "InMemoryTransport",
    "PublishResult",
    "Publisher",
    "QueueState",
    "QueueStats",
    "RabbitMQTransport",
    "RedisTransport",
    "StoreBinding",
    "TransportAdapter",
    "TransportFactory",
    "create_transport",
    "default_registry",
    "envelope",
]
