"""Observability hooks: the event bus plus log and metrics subscribers."""

from .events import ControllerEvent, EventBus, EventKind, EventSubscriber
from .logs import log_event
from .metrics import MetricsRegistry, metrics_registry, record_event

__all__ = [
    "ControllerEvent",
    "EventBus",
    "EventKind",
    "EventSubscriber",
    "log_event",
    "MetricsRegistry",
    "metrics_registry",
    "record_event",
]
