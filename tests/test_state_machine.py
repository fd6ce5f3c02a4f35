"""Tests for the run state machine and the in-memory run repository.

**Validates: linear stage transitions, failure from any non-terminal status,
immutability of terminal runs, timestamped history and optimistic locking**
"""

import asyncio
from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from havoc.state.machine import (
    InvalidTransitionError,
    RunImmutableError,
    RunNotFoundError,
    RunStateMachine,
    VersionConflictError,
)
from havoc.state.models import (
    VALID_TRANSITIONS,
    RunStatus,
    is_terminal_status,
    is_valid_transition,
)
from havoc.state.repository import DatabaseError, InMemoryRunRepository


def run_async(coro):
    return asyncio.run(coro)


PIPELINE = [
    RunStatus.CLONING,
    RunStatus.ANALYZING,
    RunStatus.PLANNING,
    RunStatus.EDITING,
    RunStatus.TESTING,
    RunStatus.REVIEWING,
    RunStatus.PUBLISHING,
    RunStatus.DONE,
]


def _make_machine() -> RunStateMachine:
    return RunStateMachine(InMemoryRunRepository())


async def _create(machine: RunStateMachine, run_id: str = "run-1"):
    return await machine.create(run_id, "octo", "app", 42, "Fix crash", "It crashes")


async def _advance(machine: RunStateMachine, run_id: str, statuses: List[RunStatus]):
    run = None
    for status in statuses:
        run = await machine.transition(run_id, status)
    return run


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


class TestTransitionTable:
    def test_linear_pipeline(self):
        previous = RunStatus.PENDING
        for status in PIPELINE:
            assert is_valid_transition(previous, status)
            previous = status

    def test_every_non_terminal_status_may_fail(self):
        for status in [RunStatus.PENDING] + PIPELINE[:-1]:
            assert is_valid_transition(status, RunStatus.FAILED)

    def test_terminal_statuses(self):
        assert is_terminal_status(RunStatus.DONE)
        assert is_terminal_status(RunStatus.FAILED)
        assert VALID_TRANSITIONS[RunStatus.DONE] == []

    def test_stages_cannot_be_skipped(self):
        assert not is_valid_transition(RunStatus.PENDING, RunStatus.ANALYZING)
        assert not is_valid_transition(RunStatus.TESTING, RunStatus.EDITING)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestCreate:
    def test_new_run_is_pending(self):
        machine = _make_machine()

        run = run_async(_create(machine))

        assert run.status == RunStatus.PENDING
        assert run.version == 1
        assert run.repository == "octo/app"
        assert run.status_history == []

    def test_empty_ids_rejected(self):
        machine = _make_machine()

        with pytest.raises(ValueError):
            run_async(machine.create("", "octo", "app", 1, "t", ""))
        with pytest.raises(ValueError):
            run_async(machine.create("run-1", "", "app", 1, "t", ""))

    def test_duplicate_run_rejected(self):
        machine = _make_machine()
        run_async(_create(machine))

        with pytest.raises(DatabaseError):
            run_async(_create(machine))


class TestTransition:
    def test_full_pipeline_to_done(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            return await _advance(machine, "run-1", PIPELINE)

        run = run_async(scenario())

        assert run.status == RunStatus.DONE
        assert run.completed_at is not None
        assert run.version == len(PIPELINE) + 1
        assert [t.to_status for t in run.status_history] == PIPELINE
        timestamps = [t.timestamp for t in run.status_history]
        assert timestamps == sorted(timestamps)

    def test_failure_records_error(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            await machine.transition("run-1", RunStatus.CLONING)
            return await machine.transition("run-1", RunStatus.FAILED, error="clone failed")

        run = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error == "clone failed"
        assert run.status_history[-1].details == {"error": "clone failed"}
        assert run.completed_at is not None

    def test_failure_without_error_gets_placeholder(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            return await machine.transition("run-1", RunStatus.FAILED)

        assert run_async(scenario()).error == "Unknown error (no details provided)"

    def test_invalid_transition(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            await machine.transition("run-1", RunStatus.EDITING)

        with pytest.raises(InvalidTransitionError) as exc_info:
            run_async(scenario())
        assert exc_info.value.from_status == RunStatus.PENDING

    def test_terminal_run_cannot_transition(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            await machine.transition("run-1", RunStatus.FAILED, error="x")
            await machine.transition("run-1", RunStatus.FAILED, error="y")

        with pytest.raises(InvalidTransitionError):
            run_async(scenario())

    def test_missing_run(self):
        with pytest.raises(RunNotFoundError):
            run_async(_make_machine().transition("nope", RunStatus.CLONING))


class TestArtifacts:
    def test_set_plan_keeps_status(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            await _advance(machine, "run-1", PIPELINE[:3])
            return await machine.set_plan("run-1", {"summary": "s", "tasks": []})

        run = run_async(scenario())

        assert run.status == RunStatus.PLANNING
        assert run.plan == {"summary": "s", "tasks": []}

    def test_set_artifacts_and_pr(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            await _advance(machine, "run-1", PIPELINE[:7])
            await machine.set_artifacts("run-1", "# card", {"summary": "ok"}, 91, {"passed": True})
            await machine.set_pr("run-1", "https://github.com/octo/app/pull/5", 5, "havoc/issue-42-abc")
            return await machine.get("run-1")

        run = run_async(scenario())

        assert run.intent_card == "# card"
        assert run.confidence_score == 91
        assert run.policy_result == {"passed": True}
        assert run.pr_number == 5
        assert run.branch_name == "havoc/issue-42-abc"

    def test_terminal_run_is_immutable(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            await machine.transition("run-1", RunStatus.FAILED, error="x")
            await machine.set_plan("run-1", {})

        with pytest.raises(RunImmutableError):
            run_async(scenario())

    def test_set_pr_rejects_non_positive_number(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            await machine.set_pr("run-1", "url", 0, "branch")

        with pytest.raises(ValueError):
            run_async(scenario())


@given(targets=st.lists(st.sampled_from(list(RunStatus)), max_size=15))
@settings(max_examples=100)
def test_only_valid_transitions_are_applied(targets):
    machine = _make_machine()

    async def scenario():
        await _create(machine)
        applied = []
        for target in targets:
            current = (await machine.get("run-1")).status
            try:
                await machine.transition("run-1", target, error="boom")
            except InvalidTransitionError:
                assert not is_valid_transition(current, target)
            else:
                assert is_valid_transition(current, target)
                applied.append(target)
        return applied, await machine.get("run-1")

    applied, run = run_async(scenario())

    assert [t.to_status for t in run.status_history] == applied
    assert run.version == len(applied) + 1


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TestInMemoryRunRepository:
    def test_version_conflict(self):
        machine = _make_machine()

        async def scenario():
            run = await _create(machine)
            stale = run.model_copy(update={"version": 2, "status": RunStatus.CLONING})
            await machine.transition("run-1", RunStatus.CLONING)
            return await machine.repository.update_with_version(stale)

        assert run_async(scenario()) is False

    def test_conflict_surfaces_as_error(self):
        repository = InMemoryRunRepository()
        machine = RunStateMachine(repository)

        async def scenario():
            run = await _create(machine)
            await machine._update(run, plan={})
            await machine._update(run, plan={"again": True})

        with pytest.raises(VersionConflictError):
            run_async(scenario())

    def test_returned_runs_are_copies(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine)
            run = await machine.get("run-1")
            run.issue_title = "changed"
            return await machine.get("run-1")

        assert run_async(scenario()).issue_title == "Fix crash"

    def test_list_by_status(self):
        machine = _make_machine()

        async def scenario():
            await _create(machine, "run-1")
            await _create(machine, "run-2")
            await machine.transition("run-2", RunStatus.CLONING)
            return (
                await machine.list_by_status(RunStatus.PENDING),
                await machine.list_by_status(RunStatus.CLONING),
            )

        pending, cloning = run_async(scenario())

        assert [r.id for r in pending] == ["run-1"]
        assert [r.id for r in cloning] == ["run-2"]

    def test_health_check(self):
        assert run_async(InMemoryRunRepository().health_check()) is True
