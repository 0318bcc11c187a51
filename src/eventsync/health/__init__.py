"""
Health checks for eventsync.

This module provides:
- A small health check framework with per-check timeouts
- Checks for the event transport and the cache
- Status aggregation for the health endpoint

The transport decides liveness. The cache is fail-open, so an unreachable
cache only degrades the service.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..cache.manager import CacheService
from ..logger import get_logger
from ..messaging.publisher import Publisher

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health check status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthCheckResult(BaseModel):
    """Result of a health check."""

    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    latency_ms: float | None = None
    duration_ms: float = 0.0
    timestamp: float = 0.0


class HealthCheck(ABC):
    """Abstract base class for health checks."""

    def __init__(self, name: str, timeout: float = 5.0):
        self.name = name
        self.timeout = timeout

    @abstractmethod
    async def check(self) -> HealthCheckResult:
        """Perform the health check."""

    async def run_check(self) -> HealthCheckResult:
        """Run the health check with timeout and error handling."""
        start_time = time.time()

        try:
            result = await asyncio.wait_for(self.check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Health check timed out", check=self.name, timeout=self.timeout)
            result = HealthCheckResult(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check timed out after {self.timeout}s",
            )
        except Exception as e:
            logger.error("Health check failed", check=self.name, error=str(e))
            result = HealthCheckResult(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check failed: {e}",
                details={"error": str(e)},
            )

        result.duration_ms = (time.time() - start_time) * 1000
        result.timestamp = time.time()
        return result


class TransportHealthCheck(HealthCheck):
    """Round trip through the publisher's transport."""

    def __init__(self, publisher: Publisher, name: str = "transport", timeout: float = 5.0):
        super().__init__(name, timeout)
        self.publisher = publisher

    async def check(self) -> HealthCheckResult:
        report = await self.publisher.health_check(timeout=self.timeout)
        details = {"transport": report.transport, "outbox": len(self.publisher.outbox)}
        if report.error:
            details["error"] = report.error

        if not report.healthy:
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Transport round trip failed: {report.error}",
                details=details,
            )
        return HealthCheckResult(
            name=self.name,
            status=HealthStatus.HEALTHY,
            message="Transport round trip succeeded",
            details=details,
            latency_ms=report.latency_ms,
        )


class CacheHealthCheck(HealthCheck):
    """Ping the cache backend."""

    def __init__(self, cache: CacheService, name: str = "cache", timeout: float = 5.0):
        super().__init__(name, timeout)
        self.cache = cache

    async def check(self) -> HealthCheckResult:
        result = await self.cache.health_check()
        if not result["healthy"]:
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.DEGRADED,
                message="Cache unavailable, serving without it",
                details={"error": result.get("error")},
            )
        return HealthCheckResult(
            name=self.name,
            status=HealthStatus.HEALTHY,
            message="Cache is reachable",
            latency_ms=result.get("latency_ms"),
        )


class HealthManager:
    """Manager for running and aggregating health checks."""

    def __init__(self, checks: list[HealthCheck] | None = None):
        self.checks: list[HealthCheck] = list(checks or [])
        self.last_results: dict[str, HealthCheckResult] = {}

    def add_check(self, check: HealthCheck) -> None:
        """Add a health check."""
        self.checks.append(check)
        logger.debug("Added health check", check=check.name)

    async def run_all_checks(self) -> dict[str, HealthCheckResult]:
        """Run all health checks concurrently."""
        results = await asyncio.gather(*(check.run_check() for check in self.checks))
        self.last_results = {result.name: result for result in results}
        return self.last_results

    async def check_all(self) -> dict[str, Any]:
        """Aggregated health status."""
        results = await self.run_all_checks()
        statuses = [result.status for result in results.values()]

        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        transport = results.get("transport")
        return {
            "status": overall,
            "healthy": overall != HealthStatus.UNHEALTHY,
            "latency_ms": transport.latency_ms if transport else None,
            "checks": {name: result.model_dump(mode="json") for name, result in results.items()},
            "timestamp": time.time(),
        }


__all__ = [
    "CacheHealthCheck",
    "HealthCheck",
    "HealthCheckResult",
    "HealthManager",
    "HealthStatus",
    "TransportHealthCheck",
]
