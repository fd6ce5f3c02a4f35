"""Tests for the in-process run queue.

**Validates: bounded concurrency, queue statistics, duplicate and closed
submissions, and shutdown**
"""

import asyncio
from typing import List

import pytest

from havoc.orchestrator import PipelineInput, PipelineResult
from havoc.queue import QueueClosedError, RunQueue


def run_async(coro):
    return asyncio.run(coro)


def _make_input(run_id: str) -> PipelineInput:
    return PipelineInput(
        run_id=run_id,
        owner="octo",
        repo="app",
        issue_number=1,
        issue_title="t",
        issue_body="",
    )


class GatedHandler:
    """Handler that blocks every run until released, tracking concurrency."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.started: List[str] = []

    async def __call__(self, pipeline_input: PipelineInput) -> PipelineResult:
        self.started.append(pipeline_input.run_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return PipelineResult(run_id=pipeline_input.run_id, success=True)


def test_max_concurrent_must_be_positive():
    async def handler(_):
        return None

    with pytest.raises(ValueError):
        RunQueue(handler, max_concurrent=0)


def test_concurrency_is_bounded():
    async def scenario():
        handler = GatedHandler()
        queue = RunQueue(handler, max_concurrent=2)
        for i in range(5):
            queue.submit(_make_input(f"run-{i}"))

        await asyncio.sleep(0.05)
        during = queue.stats()
        pending = queue.pending_run_ids()
        handler.release.set()
        await queue.join()
        return handler, during, pending, queue.stats()

    handler, during, pending, after = run_async(scenario())

    assert handler.max_active == 2
    assert (during.waiting, during.active) == (3, 2)
    assert len(pending) == 5
    assert (after.waiting, after.active, after.completed, after.failed) == (0, 0, 5, 0)
    assert handler.started == [f"run-{i}" for i in range(5)]


def test_handler_exception_counts_as_failed():
    async def handler(pipeline_input):
        raise RuntimeError("boom")

    async def scenario():
        queue = RunQueue(handler)
        task = queue.submit(_make_input("run-1"))
        result = await task
        return result, queue.stats()

    result, stats = run_async(scenario())

    assert result is None
    assert stats.failed == 1
    assert stats.completed == 0


def test_unsuccessful_result_counts_as_completed():
    async def handler(pipeline_input):
        return PipelineResult(run_id=pipeline_input.run_id, success=False, error="policy")

    async def scenario():
        queue = RunQueue(handler)
        result = await queue.submit(_make_input("run-1"))
        return result, queue.stats()

    result, stats = run_async(scenario())

    assert not result.success
    assert stats.completed == 1


def test_duplicate_run_id_rejected():
    async def scenario():
        handler = GatedHandler()
        queue = RunQueue(handler)
        queue.submit(_make_input("run-1"))
        try:
            queue.submit(_make_input("run-1"))
        finally:
            handler.release.set()
            await queue.join()

    with pytest.raises(ValueError):
        run_async(scenario())


def test_shutdown_waits_and_closes():
    async def scenario():
        handler = GatedHandler()
        queue = RunQueue(handler)
        task = queue.submit(_make_input("run-1"))
        asyncio.get_running_loop().call_later(0.01, handler.release.set)
        await queue.shutdown()
        with pytest.raises(QueueClosedError):
            queue.submit(_make_input("run-2"))
        return task.result(), queue.stats()

    result, stats = run_async(scenario())

    assert result.success
    assert stats.completed == 1


def test_shutdown_with_cancel():
    async def scenario():
        handler = GatedHandler()
        queue = RunQueue(handler, max_concurrent=1)
        queue.submit(_make_input("run-1"))
        queue.submit(_make_input("run-2"))
        await asyncio.sleep(0.01)
        await queue.shutdown(cancel=True)
        return queue.stats(), queue.pending_run_ids()

    stats, pending = run_async(scenario())

    assert (stats.waiting, stats.active, stats.completed) == (0, 0, 0)
    assert pending == []
