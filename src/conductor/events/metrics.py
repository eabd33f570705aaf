"""Prometheus metrics for orchestration observability.

Metrics Defined:
- conductor_state_transitions_total: Label state transitions
- conductor_spawns_total: Spawn attempts by outcome
- conductor_completions_total: Issues completed by merged pull requests
- conductor_issue_cycle_seconds: Issue creation to completion time
- conductor_errors_total: Errors by processing stage

Metrics are exposed at the `/metrics` endpoint in Prometheus format.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.conductor.events.emitter import EventEmitter
from src.conductor.events.models import ConductorEvent, EventType


logger = logging.getLogger(__name__)


# One minute to four weeks
CYCLE_TIME_BUCKETS = (
    60.0,
    600.0,
    3600.0,
    4 * 3600.0,
    86400.0,
    3 * 86400.0,
    7 * 86400.0,
    14 * 86400.0,
    28 * 86400.0,
)


class ConductorMetrics:
    """Container for all orchestrator Prometheus metrics.

    Pass a custom CollectorRegistry in tests to avoid duplicate
    registration against the global REGISTRY.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.state_transitions_total = Counter(
            "conductor_state_transitions_total",
            "Issue state transitions applied",
            labelnames=["repository", "from_state", "to_state"],
            registry=self.registry,
        )

        self.spawns_total = Counter(
            "conductor_spawns_total",
            "Spawn attempts by outcome",
            labelnames=["repository", "outcome"],
            registry=self.registry,
        )

        self.completions_total = Counter(
            "conductor_completions_total",
            "Issues completed by merged pull requests",
            labelnames=["repository"],
            registry=self.registry,
        )

        self.issue_cycle_seconds = Histogram(
            "conductor_issue_cycle_seconds",
            "Time from issue creation to completion in seconds",
            labelnames=["repository"],
            buckets=CYCLE_TIME_BUCKETS,
            registry=self.registry,
        )

        self.errors_total = Counter(
            "conductor_errors_total",
            "Errors surfaced to the operator channel",
            labelnames=["repository", "stage"],
            registry=self.registry,
        )


_default_metrics: Optional[ConductorMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> ConductorMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return ConductorMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = ConductorMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Prometheus text exposition for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: state_transitions_total
    - SPAWN_TRIGGERED / SPAWN_SUPPRESSED: spawns_total by outcome
    - COMPLETION: completions_total and issue_cycle_seconds
    - ERROR: errors_total by stage
    """

    def __init__(
        self,
        metrics: Optional[ConductorMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> ConductorMetrics:
        return self._metrics

    async def emit(self, event: ConductorEvent) -> None:
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                self._metrics.state_transitions_total.labels(
                    repository=event.repository,
                    from_state=event.details.get("from_state", "unknown"),
                    to_state=event.details.get("to_state", "unknown"),
                ).inc()
            elif event.event_type in (EventType.SPAWN_TRIGGERED, EventType.SPAWN_SUPPRESSED):
                self._metrics.spawns_total.labels(
                    repository=event.repository,
                    outcome=event.details.get("outcome", event.event_type.value),
                ).inc()
            elif event.event_type == EventType.COMPLETION:
                self._metrics.completions_total.labels(repository=event.repository).inc()
                duration = event.details.get("duration_seconds")
                if duration is not None:
                    self._metrics.issue_cycle_seconds.labels(
                        repository=event.repository,
                    ).observe(float(duration))
            elif event.event_type == EventType.ERROR:
                self._metrics.errors_total.labels(
                    repository=event.repository,
                    stage=event.details.get("stage", "unknown"),
                ).inc()
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                    "error": str(e),
                },
            )
