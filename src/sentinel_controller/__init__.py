"""Redis Sentinel service controller.

Tracks the Redis primary agreed on by a quorum of sentinels and keeps a
routing target (a Kubernetes Endpoints object) pointed at it:

- SentinelConnection / SentinelRegistry: failure-isolated sentinel views
- QuorumResolver: quorum arithmetic with debounce
- ReconciliationEngine: compare-and-swap apply with bounded retry
- SentinelController: the serialized control loop
- EventBus: observability hooks (log and Prometheus subscribers included)

Usage:
    from sentinel_controller import SentinelController, get_settings
    from sentinel_controller.reconcile import KubernetesEndpointsStore

    async with KubernetesEndpointsStore.in_cluster() as store:
        async with SentinelController.from_settings(get_settings(), store) as ctl:
            await ctl.wait_closed()
"""

from .config import ControllerSettings, get_settings
from .controller import ControllerHealth, PassResult, SentinelController
from .errors import (
    ApplyConflict,
    ApplyExhausted,
    ConfigurationError,
    ControllerError,
    InvalidSentinelResponse,
    QuorumLost,
    SentinelUnreachable,
    StoreUnavailable,
    TargetNotFound,
)
from .models import (
    PrimaryView,
    QuorumSnapshot,
    ReconciliationState,
    RedisAddress,
    ResolvedPrimary,
    RoutingTarget,
    SentinelEndpoint,
    SentinelHealth,
    quorum_size,
)
from .observability import ControllerEvent, EventBus, EventKind
from .policy import RetryPolicy, default_retry_classifier, retry_async
from .quorum import QuorumResolver

__version__ = "0.1.0"
__all__ = [
    # runtime
    "SentinelController",
    "ControllerHealth",
    "PassResult",
    "QuorumResolver",
    "ControllerSettings",
    "get_settings",
    # policies
    "RetryPolicy",
    "default_retry_classifier",
    "retry_async",
    # model
    "PrimaryView",
    "QuorumSnapshot",
    "ReconciliationState",
    "RedisAddress",
    "ResolvedPrimary",
    "RoutingTarget",
    "SentinelEndpoint",
    "SentinelHealth",
    "quorum_size",
    # events
    "ControllerEvent",
    "EventBus",
    "EventKind",
    # errors
    "ControllerError",
    "ConfigurationError",
    "SentinelUnreachable",
    "InvalidSentinelResponse",
    "QuorumLost",
    "StoreUnavailable",
    "TargetNotFound",
    "ApplyConflict",
    "ApplyExhausted",
]
