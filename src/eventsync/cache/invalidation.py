"""
Event-driven cache invalidation.

Each rule maps an event type to key templates formatted against the event
data. A template containing glob characters is deleted as a pattern,
anything else as a single key. Deleting an absent key succeeds, so applying
a rule twice leaves the cache in the same state as applying it once.
"""

import string
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..exceptions import ProcessingError
from ..logger import get_logger
from ..messaging.envelope import Envelope, EventType
from .manager import CacheService

if TYPE_CHECKING:
    from ..messaging.consumer import ConsumerRuntime

logger = get_logger(__name__)

GLOB_CHARS = frozenset("*?[")

_formatter = string.Formatter()


def is_pattern(key: str) -> bool:
    return any(ch in GLOB_CHARS for ch in key)


@dataclass(frozen=True)
class InvalidationRule:
    """Keys to drop when ``event_type`` is consumed."""

    event_type: EventType
    targets: tuple[str, ...]

    def keys_for(self, data: dict[str, Any]) -> list[str]:
        """Render templates against ``data``, skipping those with missing fields."""
        keys = []
        for template in self.targets:
            fields = [name for _, name, _, _ in _formatter.parse(template) if name]
            missing = [name for name in fields if data.get(name) is None]
            if missing:
                logger.debug(
                    "Skipping invalidation target",
                    event_type=self.event_type.value,
                    template=template,
                    missing=missing,
                )
                continue
            keys.append(template.format_map(data))
        return list(dict.fromkeys(keys))


@dataclass
class InvalidationResult:
    event_type: EventType
    deleted_keys: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def rule(event_type: EventType, *targets: str) -> InvalidationRule:
    return InvalidationRule(event_type=event_type, targets=tuple(targets))


def default_rules() -> list[InvalidationRule]:
    """Rules for the derived data cached by the main service."""
    favorites = (
        "user:favorites:{userId}",
        "user:favorites:stats:{userId}",
        "user:favorite:{userId}:{placeId}",
        "user:favorite:{userId}:*",
    )
    reservation_changed = (
        "reservations:all",
        "reservations:stats",
        "reservations:*",
        "place:capacity:*",
    )
    user_changed = (
        "user:{userId}",
        "user:profile:{userId}",
        "user:{userId}:*",
        "users:*",
    )
    return [
        rule(EventType.FAVORITE_ADDED, *favorites),
        rule(EventType.FAVORITE_REMOVED, *favorites),
        rule(
            EventType.FAVORITES_CLEARED,
            "user:favorites:{userId}",
            "user:favorites:stats:{userId}",
            "user:favorite:{userId}:*",
            "user:{userId}:favorites:*",
        ),
        rule(
            EventType.RESERVATION_CREATED,
            "reservations:all",
            "reservations:stats",
            "reservations:user:{userId}",
            "reservations:place:{placeId}",
            "place:capacity:{placeId}:*",
            "availability:{placeId}:*",
        ),
        rule(EventType.RESERVATION_CANCELLED, *reservation_changed),
        rule(EventType.RESERVATION_UPDATED, *reservation_changed),
        rule(EventType.USER_CREATED, "users:*"),
        rule(EventType.USER_UPDATED, *user_changed),
        rule(EventType.USER_DELETED, *user_changed),
    ]


class InvalidationPolicy:
    """Applies invalidation rules to a ``CacheService``."""

    def __init__(self, cache: CacheService, rules: Iterable[InvalidationRule] | None = None):
        self.cache = cache
        self._rules: dict[EventType, InvalidationRule] = {}
        for r in default_rules() if rules is None else rules:
            self.add_rule(r)

    def add_rule(self, rule: InvalidationRule) -> None:
        """Add a rule; targets for an already-covered event type are merged."""
        existing = self._rules.get(rule.event_type)
        if existing is not None:
            merged = tuple(dict.fromkeys(existing.targets + rule.targets))
            rule = InvalidationRule(event_type=rule.event_type, targets=merged)
        self._rules[rule.event_type] = rule

    @property
    def event_types(self) -> list[EventType]:
        return list(self._rules)

    def keys_for(self, env: Envelope) -> list[str]:
        r = self._rules.get(env.event_type)
        return r.keys_for(env.data) if r else []

    async def apply(self, env: Envelope) -> InvalidationResult:
        result = InvalidationResult(event_type=env.event_type)
        for key in self.keys_for(env):
            if is_pattern(key):
                ok = await self.cache.delete_pattern(key)
                target = result.patterns
            else:
                ok = await self.cache.delete(key)
                target = result.deleted_keys
            (target if ok else result.failed).append(key)

        logger.info(
            "Cache invalidated",
            event_type=env.event_type.value,
            keys=len(result.deleted_keys),
            patterns=len(result.patterns),
            failed=len(result.failed),
        )
        return result

    def handler_for(self, event_type: EventType | str) -> Callable[[Envelope], Awaitable[None]]:
        """
        Consumer handler for ``event_type``.

        Raises ``ProcessingError`` when any target could not be removed so
        the delivery is retried instead of leaving stale entries behind.
        """
        event_type = EventType.parse(event_type)

        async def handle(env: Envelope) -> None:
            result = await self.apply(env)
            if not result.ok:
                raise ProcessingError(
                    f"Cache invalidation incomplete for {env.event_type.value}",
                    message_id=env.id,
                    attempt=env.attempt,
                    details={"failed": result.failed},
                )

        handle.__name__ = f"invalidate_{event_type.value.lower()}"
        return handle

    def register_with(
        self, runtime: "ConsumerRuntime", event_types: Iterable[EventType | str] | None = None
    ) -> list[EventType]:
        """Register an invalidation handler for every covered event type."""
        selected = (
            self.event_types if event_types is None else [EventType.parse(e) for e in event_types]
        )
        registered = []
        for event_type in selected:
            if event_type not in self._rules:
                continue
            runtime.register(event_type, self.handler_for(event_type))
            registered.append(event_type)
        return registered
