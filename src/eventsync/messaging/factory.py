"""Factory for creating transport adapters."""

from ..config import EventSyncConfig, TransportKind
from ..exceptions import ConfigurationError
from .memory import InMemoryTransport
from .rabbitmq import RabbitMQTransport
from .redis import RedisTransport
from .registry import BindingRegistry, default_registry
from .transport import TransportAdapter


class TransportFactory:
    """Factory for creating transport adapters."""

    @staticmethod
    def create_transport(
        config: EventSyncConfig, registry: BindingRegistry | None = None
    ) -> TransportAdapter:
        """Create the transport selected by ``config.transport.kind``."""
        registry = registry or default_registry()
        kind = config.transport.kind

        if kind == TransportKind.RABBITMQ:
            return RabbitMQTransport(registry, config.transport, config.rabbitmq)
        if kind == TransportKind.REDIS:
            return RedisTransport(registry, config.transport, config.redis)
        if kind == TransportKind.MEMORY:
            return InMemoryTransport(registry, config.transport)

        raise ConfigurationError(f"Unsupported transport kind: {kind}")


def create_transport(
    config: EventSyncConfig, registry: BindingRegistry | None = None
) -> TransportAdapter:
    return TransportFactory.create_transport(config, registry)
