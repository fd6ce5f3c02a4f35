"""Per-run ring buffer of recent events.

Clients following a run read its recent events from here, and can
subscribe to be called for each new one. Each run keeps at most
MAX_EVENTS_PER_RUN events; older ones are dropped. A run's events are
released `retention_seconds` after its completion event.
"""

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from havoc.events.emitter import EventEmitter
from havoc.events.models import RunEvent, RunEventType

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_RUN = 200
COMPLETED_RUN_RETENTION_SECONDS = 3600

Subscriber = Callable[[RunEvent], None]
Clock = Callable[[], float]


class RunEventBuffer(EventEmitter):
    """Bounded in-memory event history keyed by run id.

    Finished runs are pruned lazily whenever a new event arrives.

    Attributes:
        max_events: Capacity of each run's buffer.
        retention_seconds: How long a completed run's events stay readable.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        max_events: int = MAX_EVENTS_PER_RUN,
        retention_seconds: float = COMPLETED_RUN_RETENTION_SECONDS,
        clock: Clock = time.monotonic,
    ):
        self.max_events = max_events
        self.retention_seconds = retention_seconds
        self.clock = clock
        self._events: Dict[str, Deque[RunEvent]] = {}
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._completed_at: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._events)

    async def emit(self, event: RunEvent) -> None:
        """Append the event to its run's buffer and notify subscribers."""
        self.prune_completed()

        buffer = self._events.get(event.run_id)
        if buffer is None:
            buffer = deque(maxlen=self.max_events)
            self._events[event.run_id] = buffer
        buffer.append(event)

        if event.event_type == RunEventType.COMPLETION:
            self._completed_at[event.run_id] = self.clock()

        for subscriber in list(self._subscribers.get(event.run_id, [])):
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(
                    "Run event subscriber failed",
                    extra={"run_id": event.run_id, "error": str(e)},
                )

    def get_events(self, run_id: str) -> List[RunEvent]:
        """Return the buffered events for a run, oldest first."""
        return list(self._events.get(run_id, ()))

    def clear(self, run_id: str) -> None:
        """Drop a run's buffered events and subscribers."""
        self._events.pop(run_id, None)
        self._subscribers.pop(run_id, None)
        self._completed_at.pop(run_id, None)

    def prune_completed(self) -> int:
        """Clear runs whose completion is older than the retention window.

        Returns:
            Number of runs cleared.
        """
        cutoff = self.clock() - self.retention_seconds
        expired = [
            run_id
            for run_id, completed_at in self._completed_at.items()
            if completed_at <= cutoff
        ]
        for run_id in expired:
            self.clear(run_id)

        if expired:
            logger.debug("Pruned completed run events", extra={"runs": len(expired)})
        return len(expired)

    def subscribe(self, run_id: str, callback: Subscriber) -> Callable[[], None]:
        """Call `callback` for every new event of a run.

        Args:
            run_id: The run to follow.
            callback: Called synchronously with each new event.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.setdefault(run_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(run_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[run_id]

        return unsubscribe


_default_buffer: Optional[RunEventBuffer] = None


def get_event_buffer() -> RunEventBuffer:
    """Get the process-wide event buffer."""
    global _default_buffer
    if _default_buffer is None:
        _default_buffer = RunEventBuffer()
    return _default_buffer
