"""
Derived-data cache with event-driven invalidation.
"""

from .invalidation import (
    InvalidationPolicy,
    InvalidationResult,
    InvalidationRule,
    default_rules,
    is_pattern,
)
from .manager import (
    CacheBackendInterface,
    CacheService,
    CacheStats,
    InMemoryCacheBackend,
    PatternDeleteResult,
    RedisCacheBackend,
)

__all__ = [
    "CacheBackendInterface",
    "CacheService",
    "CacheStats",
    "InMemoryCacheBackend",
    "InvalidationPolicy",
    "InvalidationResult",
    "InvalidationRule",
    "PatternDeleteResult",
    "RedisCacheBackend",
    "default_rules",
    "is_pattern",
]
