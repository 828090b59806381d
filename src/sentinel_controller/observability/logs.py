"""Log subscriber: renders controller events through loguru."""

from __future__ import annotations

from loguru import logger

from ..models import SentinelHealth
from .events import ControllerEvent, EventKind


async def log_event(event: ControllerEvent) -> None:
    """Event-bus subscriber writing one log line per event."""
    kind = event.kind
    if kind == EventKind.SENTINEL_HEALTH:
        prev = event.previous_health.value if event.previous_health else "-"
        now = event.health.value if event.health else "-"
        if event.health is SentinelHealth.CONNECTED:
            logger.info(f"Sentinel {event.endpoint_id} {prev} -> {now}")
        else:
            logger.warning(f"Sentinel {event.endpoint_id} {prev} -> {now} ({event.reason})")
    elif kind == EventKind.QUORUM_LOST:
        logger.warning(f"Quorum lost ({event.reason}); keeping primary {event.old_address}")
    elif kind == EventKind.QUORUM_REGAINED:
        logger.info(f"Quorum regained on {event.new_address}")
    elif kind == EventKind.PRIMARY_CHANGED:
        logger.info(
            f"Primary changed {event.old_address} -> {event.new_address} (epoch {event.epoch})"
        )
    elif kind == EventKind.APPLY_SUCCEEDED:
        logger.success(
            f"Routing target now {event.new_address} "
            f"(epoch {event.epoch}, attempts {event.attempts})"
        )
    elif kind == EventKind.APPLY_CONFLICTED:
        logger.debug(f"Routing target changed underneath us (attempt {event.attempts}); re-reading")
    elif kind == EventKind.APPLY_FAILED:
        logger.error(
            f"Failed to publish {event.new_address} (epoch {event.epoch}): {event.reason}; "
            f"will retry on next pass"
        )
