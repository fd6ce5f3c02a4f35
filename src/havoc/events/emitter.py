"""Event emitter implementations for run observability.

This module defines the abstract EventEmitter interface and the concrete
emitters that do not need extra infrastructure:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

The per-run ring buffer lives in buffer.py and the Prometheus emitter in
metrics.py. Event emission is fire-and-forget: `safe_emit` is the helper
pipeline code uses so a failing sink can never fail a run.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from havoc.events.models import RunEvent, RunEventType


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks supported by the service.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
        BUFFER: Keep recent events per run for clients following a run.
    """

    LOGGING = "logging"
    METRICS = "metrics"
    BUFFER = "buffer"


class EventEmitter(ABC):
    """Abstract base class for run event emitters.

    Implementations must be async-safe and should not raise for sink
    failures they can handle themselves.
    """

    @abstractmethod
    async def emit(self, event: RunEvent) -> None:
        """Emit a run event to the sink.

        Args:
            event: The run event to emit.
        """
        ...

    async def close(self) -> None:
        """Release any resources held by the emitter."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Events are logged at a level derived from their type: ERROR events at
    ERROR, COMMAND and FILE events at DEBUG, everything else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            RunEventType.ERROR: logging.ERROR,
            RunEventType.COMMAND: logging.DEBUG,
            RunEventType.FILE: logging.DEBUG,
        }

    async def emit(self, event: RunEvent) -> None:
        """Emit event as a structured log entry.

        Args:
            event: The run event to log.
        """
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Run event: %s for %s: %s",
            event.event_type.value,
            event.run_id,
            event.message,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Each child is called independently; a failure in one is logged and
    does not prevent delivery to the others.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        """Get a copy of the list of child emitters."""
        return list(self._emitters)

    async def emit(self, event: RunEvent) -> None:
        """Emit event to all child emitters.

        Args:
            event: The run event to emit.
        """
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
                        "run_id": event.run_id,
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

    async def emit(self, event: RunEvent) -> None:
        pass


async def safe_emit(emitter: Optional[EventEmitter], event: RunEvent) -> None:
    """Emit an event, logging and swallowing any sink failure.

    Args:
        emitter: The emitter to use. None is accepted and ignored.
        event: The run event to emit.
    """
    if emitter is None:
        return
    try:
        await emitter.emit(event)
    except Exception as e:
        logger.warning(
            "Failed to emit run event",
            extra={
                "run_id": event.run_id,
                "event_type": event.event_type.value,
                "error": str(e),
            },
        )


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an event emitter for the requested sinks.

    Args:
        sink_types: Sink types to enable. If None or empty, returns a
            LoggingEventEmitter.
        logger_name: Optional logger name for the LoggingEventEmitter.

    Returns:
        A single emitter, or a CompositeEventEmitter when several sinks
        are requested.
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []

    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # metrics.py imports this module
            from havoc.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter())
        elif sink_type == EventSinkType.BUFFER:
            from havoc.events.buffer import get_event_buffer

            emitters.append(get_event_buffer())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)

    if len(emitters) == 1:
        return emitters[0]

    return CompositeEventEmitter(emitters)
