"""In-process run queue.

Runs are started as asyncio tasks as soon as they are submitted; a
semaphore holds them in the waiting state until one of the
`max_concurrent` slots frees up. Nothing is persisted: runs still waiting
when the process exits are lost and stay in pending.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from havoc.orchestrator import PipelineInput, PipelineResult


logger = logging.getLogger(__name__)

RunHandler = Callable[[PipelineInput], Awaitable[PipelineResult]]


class QueueClosedError(Exception):
    """Raised when submitting to a queue that has been shut down."""


@dataclass
class QueueStats:
    """Counts of runs by queue state.

    `failed` counts runs whose handler raised. A run that finished with an
    unsuccessful PipelineResult is `completed`.
    """

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class RunQueue:
    """Bounded-concurrency executor for pipeline runs.

    Attributes:
        max_concurrent: Maximum number of runs executing at once.
    """

    def __init__(self, handler: RunHandler, max_concurrent: int = 3):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._handler = handler
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: Dict[str, "asyncio.Task[Optional[PipelineResult]]"] = {}
        self._stats = QueueStats()
        self._closed = False

    def submit(self, pipeline_input: PipelineInput) -> "asyncio.Task[Optional[PipelineResult]]":
        """Schedule a run. Must be called from a running event loop.

        Raises:
            QueueClosedError: If the queue has been shut down.
            ValueError: If a run with the same id is already queued.
        """
        if self._closed:
            raise QueueClosedError("Run queue is shut down")

        run_id = pipeline_input.run_id
        if run_id in self._tasks:
            raise ValueError(f"Run {run_id} is already queued")

        self._stats.waiting += 1
        task = asyncio.create_task(self._execute(pipeline_input), name=f"havoc-run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))

        logger.info(
            "Enqueued run",
            extra={
                "run_id": run_id,
                "repository": pipeline_input.repository,
                "issue_number": pipeline_input.issue_number,
                "waiting": self._stats.waiting,
            },
        )
        return task

    async def _execute(self, pipeline_input: PipelineInput) -> Optional[PipelineResult]:
        run_id = pipeline_input.run_id
        started = False
        try:
            async with self._semaphore:
                self._stats.waiting -= 1
                started = True
                self._stats.active += 1
                try:
                    result = await self._handler(pipeline_input)
                finally:
                    self._stats.active -= 1
        except asyncio.CancelledError:
            if not started:
                self._stats.waiting -= 1
            logger.warning("Run cancelled", extra={"run_id": run_id})
            raise
        except Exception:
            self._stats.failed += 1
            logger.exception("Run handler raised", extra={"run_id": run_id})
            return None

        self._stats.completed += 1
        logger.info(
            "Run processed",
            extra={"run_id": run_id, "success": result.success},
        )
        return result

    def stats(self) -> QueueStats:
        return QueueStats(
            waiting=self._stats.waiting,
            active=self._stats.active,
            completed=self._stats.completed,
            failed=self._stats.failed,
        )

    def pending_run_ids(self) -> List[str]:
        """Ids of runs that are waiting or executing."""
        return list(self._tasks)

    async def join(self) -> None:
        """Wait until every submitted run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self, cancel: bool = False) -> None:
        """Stop accepting runs and wait for the ones already submitted.

        Args:
            cancel: Cancel outstanding runs instead of waiting for them.
        """
        self._closed = True
        if cancel:
            for task in list(self._tasks.values()):
                task.cancel()
        await self.join()
        logger.info("Run queue shut down", extra={"cancelled": cancel})
