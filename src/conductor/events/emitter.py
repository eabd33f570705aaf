"""Event emitter implementations for orchestration observability.

- EventEmitter: Abstract interface
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

The orchestrator emits through this interface without knowing which
sinks are configured.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from prometheus_client import CollectorRegistry

from src.conductor.events.models import ConductorEvent, EventType


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Event sinks the orchestrator can be configured with.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for orchestration event emitters.

    Implementations are called from async contexts and must not block
    event handling; the orchestrator logs and swallows emitter failures.
    """

    @abstractmethod
    async def emit(self, event: ConductorEvent) -> None:
        """Publish the event to the sink."""
        pass

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that writes events as structured log entries.

    Levels by event type:
    - STATE_TRANSITION, SPAWN_TRIGGERED, COMPLETION: INFO
    - SPAWN_SUPPRESSED: DEBUG (an expected outcome)
    - ERROR: ERROR
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.STATE_TRANSITION: logging.INFO,
            EventType.SPAWN_TRIGGERED: logging.INFO,
            EventType.SPAWN_SUPPRESSED: logging.DEBUG,
            EventType.COMPLETION: logging.INFO,
            EventType.ERROR: logging.ERROR,
        }

    async def emit(self, event: ConductorEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Conductor event: %s for %s",
            event.event_type.value,
            event.issue_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Failures in one child are logged and do not affect the others.

    Example:
        >>> composite = CompositeEventEmitter([LoggingEventEmitter(), MetricsEventEmitter()])
        >>> await composite.emit(event)
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: ConductorEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "issue_id": event.issue_id,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: ConductorEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
    registry: Optional[CollectorRegistry] = None,
) -> EventEmitter:
    """Create an emitter for the requested sinks.

    No sinks means logging only; more than one sink yields a
    CompositeEventEmitter.

    Example:
        >>> isinstance(create_event_emitter(), LoggingEventEmitter)
        True
        >>> emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    # metrics imports this module
    from src.conductor.events.metrics import MetricsEventEmitter

    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []
    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            emitters.append(MetricsEventEmitter(registry=registry))
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
