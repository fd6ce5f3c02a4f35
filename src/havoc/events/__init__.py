"""Run event emission, buffering and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- RunEventBuffer: Keeps the most recent events of each run
- MetricsEventEmitter: Updates Prometheus metrics
- NullEventEmitter: Discards events

Helpers:
- safe_emit: Fire-and-forget emission used by pipeline code
- create_event_emitter: Creates emitters based on configuration
"""

from havoc.events.buffer import MAX_EVENTS_PER_RUN, RunEventBuffer, get_event_buffer
from havoc.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
    safe_emit,
)
from havoc.events.metrics import (
    HavocMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
    get_metrics,
)
from havoc.events.models import RunEvent, RunEventType

__all__ = [
    # Event models
    "RunEvent",
    "RunEventType",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "RunEventBuffer",
    "MAX_EVENTS_PER_RUN",
    "get_event_buffer",
    "safe_emit",
    # Metrics
    "HavocMetrics",
    "get_metrics",
    "generate_metrics_output",
    # Factory and configuration
    "EventSinkType",
    "create_event_emitter",
]
