"""Orchestration event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Emits events as Prometheus metrics
- NullEventEmitter: Discards events (for testing)
"""

from src.conductor.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.conductor.events.metrics import (
    ConductorMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
    get_metrics,
)
from src.conductor.events.models import ConductorEvent, EventType

__all__ = [
    "ConductorEvent",
    "EventType",
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "ConductorMetrics",
    "get_metrics",
    "generate_metrics_output",
    "EventSinkType",
    "create_event_emitter",
]
