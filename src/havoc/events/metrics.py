"""Prometheus metrics for run observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- havoc_runs_processed_total: Counter of runs that reached a terminal status
- havoc_runs_failed_total: Counter of run errors, by status at failure
- havoc_run_duration_seconds: Histogram of run wall-clock time
- havoc_runs_by_status: Gauge of runs currently in each status

The MetricsEventEmitter keeps these up to date from run events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from havoc.events.emitter import EventEmitter
from havoc.events.models import RunEvent, RunEventType


logger = logging.getLogger(__name__)


# Covers 10 seconds to 1 hour; the default sandbox budget is 10 minutes
DEFAULT_DURATION_BUCKETS = (
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    900.0,
    1800.0,
    3600.0,
)

# These match RunStatus values from state/models.py
RUN_STATUSES = (
    "pending",
    "cloning",
    "analyzing",
    "planning",
    "editing",
    "testing",
    "reviewing",
    "publishing",
    "done",
    "failed",
)

UNKNOWN_REPOSITORY = "unknown"


class HavocMetrics:
    """Container for all Havoc Prometheus metrics.

    Supports a custom registry so tests do not collide with the default one.

    Attributes:
        registry: The Prometheus registry for these metrics.
        runs_processed_total: Labels: repository, result (success/failure).
        runs_failed_total: Labels: repository, status.
        run_duration_seconds: Labels: repository.
        runs_by_status: Labels: status.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_processed_total = Counter(
            "havoc_runs_processed_total",
            "Total number of runs that reached a terminal status",
            labelnames=["repository", "result"],
            registry=self.registry,
        )

        self.runs_failed_total = Counter(
            "havoc_runs_failed_total",
            "Total number of runs that failed, by status at failure",
            labelnames=["repository", "status"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "havoc_run_duration_seconds",
            "Wall-clock time of a run in seconds",
            labelnames=["repository"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.runs_by_status = Gauge(
            "havoc_runs_by_status",
            "Current number of runs in each status",
            labelnames=["status"],
            registry=self.registry,
        )

        for status in RUN_STATUSES:
            self.runs_by_status.labels(status=status).set(0)

    def record_run_processed(self, repository: str, success: bool) -> None:
        result = "success" if success else "failure"
        self.runs_processed_total.labels(repository=repository, result=result).inc()

    def record_run_failed(self, repository: str, status: str) -> None:
        self.runs_failed_total.labels(repository=repository, status=status).inc()

    def record_run_duration(self, repository: str, duration_seconds: float) -> None:
        self.run_duration_seconds.labels(repository=repository).observe(
            duration_seconds
        )

    def update_status_count(self, status: str, delta: int) -> None:
        """Move the per-status gauge by `delta`, never below zero."""
        if status in RUN_STATUSES:
            gauge = self.runs_by_status.labels(status=status)
            current = gauge._value.get()
            gauge.set(max(0, current + delta))


_default_metrics: Optional[HavocMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> HavocMetrics:
    """Get the global metrics instance, or a fresh one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return HavocMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = HavocMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in Prometheus text format for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Handles:
    - STATUS: moves the runs_by_status gauge from `from_status` to `status`
    - ERROR: increments runs_failed_total
    - COMPLETION: increments runs_processed_total and observes duration

    Other event types are ignored.
    """

    def __init__(
        self,
        metrics: Optional[HavocMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> HavocMetrics:
        return self._metrics

    async def emit(self, event: RunEvent) -> None:
        """Update metrics based on the run event.

        Args:
            event: The run event to process.
        """
        try:
            if event.event_type == RunEventType.STATUS:
                self._handle_status(event)
            elif event.event_type == RunEventType.ERROR:
                self._handle_error(event)
            elif event.event_type == RunEventType.COMPLETION:
                self._handle_completion(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "run_id": event.run_id,
                    "error": str(e),
                },
            )

    def _handle_status(self, event: RunEvent) -> None:
        from_status = event.data.get("from_status")
        to_status = event.data.get("status")

        if from_status:
            self._metrics.update_status_count(from_status, -1)

        if to_status:
            self._metrics.update_status_count(to_status, +1)

    def _handle_error(self, event: RunEvent) -> None:
        self._metrics.record_run_failed(
            repository=event.repository or UNKNOWN_REPOSITORY,
            status=event.data.get("status", "unknown"),
        )

    def _handle_completion(self, event: RunEvent) -> None:
        repository = event.repository or UNKNOWN_REPOSITORY
        self._metrics.record_run_processed(
            repository=repository,
            success=bool(event.data.get("success")),
        )

        duration = event.data.get("duration_seconds")
        if duration is not None:
            self._metrics.record_run_duration(
                repository=repository,
                duration_seconds=float(duration),
            )
