"""
Observability events for the sentinel controller.

Provides in-process pub/sub for the discrete conditions the controller reports
(sentinel health, quorum, primary changes, apply outcomes). Subscribers such as
the log and metrics subscribers turn them into output; the core never formats
or transports them itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

from loguru import logger

from ..models import RedisAddress, SentinelHealth


class EventKind(str, Enum):
    """Kinds of controller events."""

    SENTINEL_HEALTH = "sentinel_health"
    QUORUM_LOST = "quorum_lost"
    QUORUM_REGAINED = "quorum_regained"
    PRIMARY_CHANGED = "primary_changed"
    APPLY_SUCCEEDED = "apply_succeeded"
    APPLY_CONFLICTED = "apply_conflicted"
    APPLY_FAILED = "apply_failed"


@dataclass(frozen=True)
class ControllerEvent:
    """Immutable controller event.

    Only the fields relevant to ``kind`` are set.

    Attributes:
        kind: What happened
        endpoint_id: Sentinel the event concerns (health events)
        health: New sentinel health (health events)
        previous_health: Sentinel health before the transition
        old_address: Previous primary / published address
        new_address: New primary / desired address
        epoch: Resolved-primary epoch the event relates to
        attempts: Apply attempts used (apply events)
        reason: Free-form context (e.g. "insufficient_reachable", "not_found")
    """

    kind: EventKind
    endpoint_id: Optional[str] = None
    health: Optional[SentinelHealth] = None
    previous_health: Optional[SentinelHealth] = None
    old_address: Optional[RedisAddress] = None
    new_address: Optional[RedisAddress] = None
    epoch: Optional[int] = None
    attempts: Optional[int] = None
    reason: Optional[str] = None


class EventSubscriber(Protocol):
    """Protocol for event subscribers.

    Subscribers must be async callables accepting ControllerEvent.
    Exceptions are caught and logged to prevent cascade failures.
    """

    async def __call__(self, event: ControllerEvent) -> None:
        """Handle controller event."""
        ...


class EventBus:
    """In-process pub/sub bus for controller events.

    A subscriber may restrict itself to some event kinds; it then only sees
    those. A failing subscriber is logged and skipped, the publisher never
    sees the error. Best-effort delivery in registration order.

    Example:
        bus = EventBus()

        async def page_someone(event: ControllerEvent):
            ...

        bus.subscribe(page_someone, kinds={EventKind.QUORUM_LOST, EventKind.APPLY_FAILED})
        await bus.publish(ControllerEvent(kind=EventKind.QUORUM_LOST))
    """

    def __init__(self) -> None:
        # callback -> kinds it wants (None: all)
        self._subs: dict[EventSubscriber, Optional[frozenset[EventKind]]] = {}

    def subscribe(
        self, callback: EventSubscriber, kinds: Optional[Iterable[EventKind]] = None
    ) -> None:
        """Add a subscriber, or replace the kind filter of an existing one."""
        wanted = frozenset(kinds) if kinds is not None else None
        self._subs[callback] = wanted
        names = "all kinds" if wanted is None else ",".join(sorted(k.value for k in wanted))
        logger.debug(f"Event subscriber added for {names} (total: {len(self._subs)})")

    def unsubscribe(self, callback: EventSubscriber) -> None:
        """Remove a subscriber; no-op if it is not subscribed."""
        if callback in self._subs:
            del self._subs[callback]
            logger.debug(f"Event subscriber removed (total: {len(self._subs)})")

    async def publish(self, event: ControllerEvent) -> None:
        delivered = 0
        for callback, kinds in list(self._subs.items()):
            if kinds is not None and event.kind not in kinds:
                continue
            delivered += 1
            try:
                await callback(event)
            except Exception as exc:
                logger.warning(
                    f"Subscriber {_describe(callback)} failed on {event.kind.value} "
                    f"(ignored): {type(exc).__name__}: {exc}"
                )
        logger.debug(f"Event {event.kind.value} delivered to {delivered} subscriber(s)")

    @property
    def subscriber_count(self) -> int:
        """Number of active subscribers."""
        return len(self._subs)


def _describe(callback: EventSubscriber) -> str:
    return getattr(callback, "__qualname__", None) or type(callback).__name__
