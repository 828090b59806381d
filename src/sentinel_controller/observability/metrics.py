"""
Prometheus metrics for the sentinel controller.

Metrics live in the global REGISTRY; ``record_event`` is an event-bus
subscriber that keeps them current. Expose them with
``prometheus_client.start_http_server``.
"""

from prometheus_client import Counter, Gauge

from ..models import SentinelHealth
from .events import ControllerEvent, EventKind


SENTINEL_HEALTH = Gauge(
    "sentinel_controller_sentinel_health",
    "1 if the sentinel is in the given health state, else 0",
    ["endpoint", "state"],
)

SENTINEL_TRANSITIONS_TOTAL = Counter(
    "sentinel_controller_sentinel_transitions_total",
    "Sentinel health transitions",
    ["endpoint", "state"],
)

QUORUM_AVAILABLE = Gauge(
    "sentinel_controller_quorum_available",
    "1 while sentinels agree on a primary by quorum, 0 while quorum is lost",
)

PRIMARY_EPOCH = Gauge(
    "sentinel_controller_primary_epoch",
    "Epoch of the currently resolved primary",
)

PRIMARY_CHANGES_TOTAL = Counter(
    "sentinel_controller_primary_changes_total",
    "Accepted primary changes",
)

APPLY_TOTAL = Counter(
    "sentinel_controller_apply_total",
    "Routing target apply outcomes",
    ["outcome"],
)


class MetricsRegistry:
    """Centralized access to the controller's metrics."""

    sentinel_health = SENTINEL_HEALTH
    sentinel_transitions_total = SENTINEL_TRANSITIONS_TOTAL
    quorum_available = QUORUM_AVAILABLE
    primary_epoch = PRIMARY_EPOCH
    primary_changes_total = PRIMARY_CHANGES_TOTAL
    apply_total = APPLY_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()


_APPLY_OUTCOMES = {
    EventKind.APPLY_SUCCEEDED: "succeeded",
    EventKind.APPLY_CONFLICTED: "conflicted",
    EventKind.APPLY_FAILED: "failed",
}


async def record_event(event: ControllerEvent) -> None:
    """Event-bus subscriber updating the Prometheus metrics."""
    m = metrics_registry
    if event.kind == EventKind.SENTINEL_HEALTH and event.health is not None:
        for state in SentinelHealth:
            m.sentinel_health.labels(endpoint=event.endpoint_id, state=state.value).set(
                1 if state is event.health else 0
            )
        m.sentinel_transitions_total.labels(
            endpoint=event.endpoint_id, state=event.health.value
        ).inc()
    elif event.kind == EventKind.QUORUM_LOST:
        m.quorum_available.set(0)
    elif event.kind == EventKind.QUORUM_REGAINED:
        m.quorum_available.set(1)
    elif event.kind == EventKind.PRIMARY_CHANGED:
        m.primary_changes_total.inc()
        if event.epoch is not None:
            m.primary_epoch.set(event.epoch)
    elif event.kind in _APPLY_OUTCOMES:
        m.apply_total.labels(outcome=_APPLY_OUTCOMES[event.kind]).inc()
