"""
Global pytest configuration and fixtures for eventsync testing.

Tests run against the in-memory transport and cache backend; the networked
adapters are exercised with mocked aio-pika and redis clients.
"""

import asyncio
import os
import uuid
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from eventsync.cache.manager import CacheService, InMemoryCacheBackend
from eventsync.config import LEGACY_ENV_VARS, TransportConfig, set_config
from eventsync.messaging.envelope import Envelope, EventType, envelope
from eventsync.messaging.memory import InMemoryTransport
from eventsync.messaging.registry import BindingRegistry, default_registry
from eventsync.metrics import MessagingMetrics


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep host environment variables and global config out of the tests."""
    for name in list(os.environ):
        if name.upper().startswith("EVENTSYNC_") or name in LEGACY_ENV_VARS:
            monkeypatch.delenv(name, raising=False)
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def metrics() -> MessagingMetrics:
    """Metrics bound to a private registry."""
    return MessagingMetrics(CollectorRegistry())


@pytest.fixture
def registry() -> BindingRegistry:
    return default_registry()


@pytest.fixture
def transport_config() -> TransportConfig:
    """Fast timings so supervised loops settle quickly."""
    return TransportConfig(
        kind="memory",
        max_retries=3,
        reconnect_delay=0.01,
        consume_timeout=0.05,
    )


@pytest_asyncio.fixture
async def memory_transport(registry, transport_config) -> InMemoryTransport:
    transport = InMemoryTransport(registry, transport_config)
    await transport.connect()
    yield transport
    await transport.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_backend(clock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(clock=clock)


@pytest_asyncio.fixture
async def cache(cache_backend, metrics) -> CacheService:
    service = CacheService(
        cache_backend,
        default_ttl=60,
        max_retries=3,
        retry_delay=0,
        reconnect_interval=0,
        metrics=metrics,
    )
    await service.connect()
    yield service
    await service.close()


@pytest.fixture
def make_envelope():
    """Build envelopes with sensible defaults."""

    def factory(
        event_type: EventType = EventType.FAVORITE_ADDED,
        data: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> Envelope:
        env = envelope(
            event_type,
            data if data is not None else {"userId": 1, "placeId": 2},
            origin_service="test-service",
        )
        for _ in range(retry_count):
            env = env.next_attempt()
        return env

    return factory


@pytest.fixture
def eventually():
    """Poll a condition until it holds or the timeout expires."""

    async def wait(condition, timeout: float = 2.0, interval: float = 0.01) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if condition():
                return True
            await asyncio.sleep(interval)
        return condition()

    return wait


@pytest.fixture
def test_service_name() -> str:
    """Generate a unique test service name."""
    return f"test-service-{uuid.uuid4().hex[:8]}"
