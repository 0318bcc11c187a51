"""
Fail-open cache for derived data.

The cache is an optimization, never a dependency: when the backend is down
reads are misses and writes report ``False``; nothing raises to the caller.
Transient errors are retried with a linear backoff and a single reconnect
before the final attempt.

Values are stored as JSON with a TTL. Keys are plain strings; pattern
deletion uses glob syntax (``user:favorites:*``).
"""

import asyncio
import fnmatch
import json
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from ..config import CacheConfig, RedisConfig
from ..exceptions import TransportConnectionError
from ..logger import get_logger
from ..metrics import MessagingMetrics, get_metrics

logger = get_logger(__name__)

T = TypeVar("T")

PAGE_TTL = 1800


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    skipped: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["hit_rate"] = self.hit_rate
        return data


@dataclass
class PatternDeleteResult:
    pattern: str
    matched: int = 0
    deleted: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


class CacheBackendInterface(ABC):
    """
    Abstract cache backend.

    Backends raise ``TransportConnectionError`` for any connection or
    command failure; the service above them decides what to do about it.
    """

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """Whether commands can be sent right now."""

    @abstractmethod
    async def connect(self) -> None:
        """Open (or reopen) the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Raw value for ``key`` or ``None``."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> bool:
        """Store ``value`` for ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Delete ``key``; returns the number of keys removed."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """Keys matching the glob ``pattern``."""

    @abstractmethod
    async def ping(self) -> None:
        """Round trip to the backend."""


class InMemoryCacheBackend(CacheBackendInterface):
    """Process-local backend with monotonic-clock expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[bytes, float]] = {}
        self._available = True
        self._connected = False
        self._failures_pending = 0
        self.connect_calls = 0

    @property
    def is_ready(self) -> bool:
        return self._available and self._connected

    def set_available(self, available: bool) -> None:
        """Simulate an outage (``False``) or a recovery (``True``)."""
        self._available = available

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` commands fail with a connection error."""
        self._failures_pending = count

    def _command(self) -> None:
        if not self._available:
            raise TransportConnectionError("In-memory cache is unavailable")
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise TransportConnectionError("Simulated cache failure")

    def _purge_expired(self, key: str) -> None:
        entry = self._data.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._data[key]

    async def connect(self) -> None:
        self.connect_calls += 1
        if not self._available:
            raise TransportConnectionError("In-memory cache is unavailable")
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def get(self, key: str) -> bytes | None:
        self._command()
        self._purge_expired(key)
        entry = self._data.get(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: bytes, ttl: int) -> bool:
        self._command()
        self._data[key] = (value, self._clock() + ttl)
        return True

    async def delete(self, key: str) -> int:
        self._command()
        self._purge_expired(key)
        return 1 if self._data.pop(key, None) is not None else 0

    async def keys(self, pattern: str) -> list[str]:
        self._command()
        for key in list(self._data):
            self._purge_expired(key)
        return [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]

    async def ping(self) -> None:
        self._command()


class RedisCacheBackend(CacheBackendInterface):
    """Redis backend using ``SETEX`` and ``SCAN``."""

    def __init__(
        self,
        redis_config: RedisConfig | None = None,
        key_prefix: str = "",
        connection_timeout: float = 5.0,
    ):
        self.redis_config = redis_config or RedisConfig()
        self.key_prefix = key_prefix
        self.connection_timeout = connection_timeout
        self.redis: redis.Redis | None = None
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready and self.redis is not None

    def _get_key(self, key: str) -> str:
        """Get full cache key with prefix."""
        return f"{self.key_prefix}{key}"

    def _strip_key(self, full_key: bytes | str) -> str:
        if isinstance(full_key, bytes):
            full_key = full_key.decode("utf-8")
        return full_key[len(self.key_prefix):] if self.key_prefix else full_key

    async def connect(self) -> None:
        """Connect to Redis."""
        await self.close()
        cfg = self.redis_config
        self.redis = redis.Redis(
            host=cfg.host,
            port=cfg.port,
            db=cfg.db,
            username=cfg.username,
            password=cfg.password,
            socket_connect_timeout=self.connection_timeout,
            socket_timeout=self.connection_timeout,
            decode_responses=False,
        )
        try:
            await self.redis.ping()
        except RedisError as e:
            self._ready = False
            raise TransportConnectionError(f"Failed to connect to Redis cache: {e}")
        self._ready = True
        logger.info("Connected to Redis cache", host=cfg.host, port=cfg.port)

    async def close(self) -> None:
        self._ready = False
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except RedisError as e:
                logger.debug("Error while closing Redis cache client", error=str(e))
            self.redis = None

    async def _call(self, command: Callable[[], Awaitable[T]]) -> T:
        if self.redis is None:
            raise TransportConnectionError("Redis cache is not connected")
        try:
            return await command()
        except RedisError as e:
            self._ready = False
            raise TransportConnectionError(str(e))

    async def get(self, key: str) -> bytes | None:
        return await self._call(lambda: self.redis.get(self._get_key(key)))

    async def set(self, key: str, value: bytes, ttl: int) -> bool:
        return bool(await self._call(lambda: self.redis.setex(self._get_key(key), ttl, value)))

    async def delete(self, key: str) -> int:
        return await self._call(lambda: self.redis.delete(self._get_key(key)))

    async def keys(self, pattern: str) -> list[str]:
        async def scan() -> list[str]:
            return [
                self._strip_key(k) async for k in self.redis.scan_iter(match=self._get_key(pattern))
            ]

        return await self._call(scan)

    async def ping(self) -> None:
        await self._call(lambda: self.redis.ping())


class CacheService:
    """JSON cache with fail-open semantics over a ``CacheBackendInterface``."""

    def __init__(
        self,
        backend: CacheBackendInterface,
        default_ttl: int = 3600,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        reconnect_interval: float = 5.0,
        metrics: MessagingMetrics | None = None,
    ):
        self.backend = backend
        self.default_ttl = default_ttl
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.reconnect_interval = reconnect_interval
        self.metrics = metrics or get_metrics()
        self.stats = CacheStats()
        self._reconnect_task: asyncio.Task | None = None
        self._last_reconnect = 0.0

    @classmethod
    def from_config(
        cls, cache: CacheConfig, redis_config: RedisConfig, **kwargs: Any
    ) -> "CacheService":
        backend = RedisCacheBackend(redis_config, key_prefix=cache.key_prefix)
        return cls(
            backend,
            default_ttl=cache.default_ttl,
            max_retries=cache.max_retries,
            retry_delay=cache.retry_delay,
            **kwargs,
        )

    @property
    def is_ready(self) -> bool:
        return self.backend.is_ready

    async def connect(self) -> bool:
        """Connect the backend; a failure leaves the cache in fail-open mode."""
        try:
            await self.backend.connect()
        except TransportConnectionError as e:
            logger.warning("Cache unavailable, continuing without it", error=str(e))
            return False
        return True

    async def close(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        await self.backend.close()

    def _schedule_reconnect(self) -> None:
        now = time.monotonic()
        if self._reconnect_task and not self._reconnect_task.done():
            return
        if now - self._last_reconnect < self.reconnect_interval:
            return
        self._last_reconnect = now
        try:
            self._reconnect_task = asyncio.get_running_loop().create_task(self.connect())
        except RuntimeError:
            pass

    async def _execute(
        self, operation: str, key: str, command: Callable[[], Awaitable[T]], fallback: T
    ) -> T:
        """Run ``command`` with retry; return ``fallback`` instead of raising."""
        if not self.backend.is_ready:
            self.stats.skipped += 1
            self.metrics.record_cache(operation, "unavailable")
            logger.warning("Cache not ready, skipping", operation=operation, key=key)
            self._schedule_reconnect()
            return fallback

        async def before_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Cache operation failed",
                operation=operation,
                key=key,
                attempt=retry_state.attempt_number,
                max_retries=self.max_retries,
                error=str(retry_state.outcome.exception()),
            )
            # One reconnect, right before the final attempt.
            if retry_state.attempt_number == self.max_retries - 1:
                await self.connect()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception_type(TransportConnectionError),
            before_sleep=before_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await command()
        except TransportConnectionError as e:
            self.stats.errors += 1
            self.metrics.record_cache(operation, "error")
            logger.error("Cache operation gave up", operation=operation, key=key, error=str(e))
        return fallback

    async def get(self, key: str) -> Any | None:
        """Cached value for ``key`` or ``None`` on miss or failure."""
        raw = await self._execute("get", key, lambda: self.backend.get(key), None)
        if raw is None:
            self.stats.misses += 1
            self.metrics.record_cache("get", "miss")
            return None
        try:
            value = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Discarding undecodable cache entry", key=key, error=str(e))
            self.stats.misses += 1
            self.metrics.record_cache("get", "miss")
            return None
        self.stats.hits += 1
        self.metrics.record_cache("get", "hit")
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            data = json.dumps(value, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.error("Value is not serializable", key=key, error=str(e))
            return False

        ttl = ttl or self.default_ttl
        result = await self._execute("set", key, lambda: self.backend.set(key, data, ttl), False)
        if result:
            self.stats.sets += 1
            self.metrics.record_cache("set", "ok")
            logger.debug("Cache set", key=key, ttl=ttl)
        return bool(result)

    async def delete(self, key: str) -> bool:
        """Remove ``key``. An absent key counts as success."""
        removed = await self._execute("delete", key, lambda: self.backend.delete(key), None)
        if removed is None:
            return False
        if removed:
            self.stats.deletes += removed
        self.metrics.record_cache("delete", "ok")
        return True

    async def delete_pattern(self, pattern: str) -> bool:
        """Delete every key matching ``pattern``; True when none failed."""
        return (await self.delete_pattern_detailed(pattern)).ok

    async def delete_pattern_detailed(self, pattern: str) -> PatternDeleteResult:
        result = PatternDeleteResult(pattern=pattern)
        keys = await self._execute("keys", pattern, lambda: self.backend.keys(pattern), None)
        if keys is None:
            result.failed = 1
            return result
        result.matched = len(keys)
        if not keys:
            logger.debug("No keys matched pattern", pattern=pattern)
            return result

        for key in keys:
            try:
                result.deleted += await self.backend.delete(key)
            except TransportConnectionError as e:
                result.failed += 1
                logger.warning("Failed to delete key", key=key, pattern=pattern, error=str(e))

        self.stats.deletes += result.deleted
        self.metrics.record_pattern_keys(result.deleted, result.failed)
        logger.info(
            "Pattern invalidated",
            pattern=pattern,
            matched=result.matched,
            deleted=result.deleted,
            failed=result.failed,
        )
        return result

    async def get_or_set(
        self, key: str, factory: Callable[[], Awaitable[Any]], ttl: int | None = None
    ) -> Any:
        """Cache-aside read: return the cached value or compute and store it."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def set_page(self, key: str, data: Any, page: int = 1, ttl: int = PAGE_TTL) -> bool:
        return await self.set(f"{key}:page:{page}", data, ttl)

    async def get_page(self, key: str, page: int = 1) -> Any | None:
        return await self.get(f"{key}:page:{page}")

    async def invalidate_user(self, user_id: Any) -> bool:
        results = [
            await self.delete(f"user:{user_id}"),
            await self.delete(f"user:profile:{user_id}"),
            await self.delete_pattern(f"user:{user_id}:*"),
        ]
        return all(results)

    async def invalidate_all_users(self) -> bool:
        results = [await self.delete_pattern("users:*"), await self.delete_pattern("user:*")]
        return all(results)

    async def test_connection(self) -> dict[str, Any]:
        """Write, read back and compare a short-lived test entry."""
        key = f"connection:test:{int(time.time() * 1000)}"
        sample = {"test": True, "timestamp": datetime.now(timezone.utc).isoformat()}
        stored = await self.set(key, sample, ttl=10)
        loaded = await self.get(key)
        return {
            "success": stored and loaded is not None,
            "set": stored,
            "get": loaded is not None,
            "data_match": loaded == sample,
        }

    async def health_check(self) -> dict[str, Any]:
        """Ping the backend; never raises."""
        if not self.backend.is_ready:
            return {"healthy": False, "error": "not connected"}
        start = time.perf_counter()
        try:
            await self.backend.ping()
        except TransportConnectionError as e:
            return {"healthy": False, "error": str(e)}
        return {"healthy": True, "latency_ms": (time.perf_counter() - start) * 1000}

    def get_stats(self) -> dict[str, Any]:
        stats = self.stats.to_dict()
        stats["ready"] = self.backend.is_ready
        return stats
