"""Routing-target stores and the reconciliation engine."""

from .engine import ReconcileOutcome, ReconciliationEngine
from .kubernetes import KubernetesEndpointsStore
from .store import (
    Applied,
    ApplyResult,
    Conflict,
    InMemoryRoutingTargetStore,
    NotFound,
    RoutingTargetStore,
)

__all__ = [
    "Applied",
    "ApplyResult",
    "Conflict",
    "InMemoryRoutingTargetStore",
    "KubernetesEndpointsStore",
    "NotFound",
    "ReconcileOutcome",
    "ReconciliationEngine",
    "RoutingTargetStore",
]
