"""Run state machine implementation.

RunStateMachine is the only writer of run state. It validates status
transitions, records them with timestamps, stores error details on failure,
stamps completion times, and refuses to touch a run once it is terminal.

Persistence goes through the RunRepository protocol, implemented in
repository.py for PostgreSQL and in memory.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from havoc.state.models import (
    Run,
    RunStatus,
    StatusTransition,
    is_terminal_status,
    is_valid_transition,
)


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid status transition is attempted.

    Attributes:
        from_status: The current status.
        to_status: The attempted target status.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_status: RunStatus,
        to_status: RunStatus,
        message: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or (
            f"Invalid transition from {from_status.value} to {to_status.value}"
        )
        super().__init__(self.message)


class RunNotFoundError(Exception):
    """Raised when a run does not exist in the repository.

    Attributes:
        run_id: The run ID that was not found.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class RunImmutableError(Exception):
    """Raised when writing to a run that already reached a terminal status.

    Attributes:
        run_id: The run ID.
        status: The run's terminal status.
    """

    def __init__(self, run_id: str, status: RunStatus):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} is {status.value} and can no longer change")


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        run_id: The run ID with the conflict.
        expected_version: The version that was expected.
        actual_version: The actual version in storage.
    """

    def __init__(
        self,
        run_id: str,
        expected_version: int,
        actual_version: Optional[int] = None,
    ):
        self.run_id = run_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = f"Version conflict for run {run_id}: expected {expected_version}"
        if actual_version is not None:
            message += f", found {actual_version}"
        super().__init__(message)


@runtime_checkable
class RunRepository(Protocol):
    """Protocol defining the interface for run persistence.

    The repository is responsible for:
    - Persisting new runs
    - Retrieving runs by id or status
    - Implementing optimistic locking via the version field
    """

    async def save(self, run: Run) -> None:
        """Save a new run.

        Raises:
            Exception: If the save operation fails.
        """
        ...

    async def get(self, run_id: str) -> Optional[Run]:
        """Get a run by id, or None if it does not exist."""
        ...

    async def list_by_status(self, status: RunStatus) -> List[Run]:
        """List all runs currently in a given status."""
        ...

    async def update_with_version(self, run: Run) -> bool:
        """Update a run with optimistic locking.

        The update is applied only if the stored version equals
        `run.version - 1`.

        Returns:
            True if update succeeded, False if version conflict.
        """
        ...


class RunStateMachine:
    """State machine for managing run progression.

    Invariants:
    - Only transitions listed in VALID_TRANSITIONS are allowed
    - Every transition is recorded with a timestamp in status_history
    - Transitions to FAILED always carry an error message
    - Terminal runs are never modified
    - Each update increments the version for optimistic locking

    Example:
        >>> machine = RunStateMachine(InMemoryRunRepository())
        >>> run = await machine.create("run-1", "octo", "app", 42, "Fix crash", "")
        >>> run = await machine.transition("run-1", RunStatus.CLONING)
    """

    def __init__(self, repository: RunRepository):
        """Initialize the state machine with a repository.

        Args:
            repository: The run repository for persistence.
        """
        self.repository = repository

    async def create(
        self,
        run_id: str,
        owner: str,
        repo: str,
        issue_number: int,
        issue_title: str,
        issue_body: str,
        installation_id: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> Run:
        """Create a new run in the PENDING status and persist it.

        Raises:
            ValueError: If run_id, owner or repo is empty.
            Exception: If persistence fails.
        """
        if not run_id:
            raise ValueError("run_id cannot be empty")
        if not owner or not repo:
            raise ValueError("owner and repo cannot be empty")

        now = datetime.now(timezone.utc)
        run = Run(
            id=run_id,
            owner=owner,
            repo=repo,
            issue_number=issue_number,
            issue_title=issue_title,
            issue_body=issue_body or "",
            installation_id=installation_id,
            user_id=user_id,
            status=RunStatus.PENDING,
            started_at=now,
            updated_at=now,
            version=1,
        )

        logger.info(
            "Creating run",
            extra={
                "run_id": run_id,
                "repository": run.repository,
                "issue_number": issue_number,
            },
        )

        await self.repository.save(run)
        return run

    async def _load_mutable(self, run_id: str) -> Run:
        run = await self.repository.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if is_terminal_status(run.status):
            raise RunImmutableError(run_id, run.status)
        return run

    async def _update(self, run: Run, **changes: Any) -> Run:
        changes["updated_at"] = datetime.now(timezone.utc)
        changes["version"] = run.version + 1
        updated = run.model_copy(update=changes)

        success = await self.repository.update_with_version(updated)
        if not success:
            raise VersionConflictError(run.id, run.version)
        return updated

    async def transition(
        self,
        run_id: str,
        to_status: RunStatus,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Run:
        """Move a run to a new status.

        Args:
            run_id: The run identifier.
            to_status: The target status.
            error: Error message, stored when moving to FAILED.
            details: Optional metadata recorded with the transition.

        Returns:
            The updated run.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            InvalidTransitionError: If the transition is not valid.
            VersionConflictError: If a concurrent update occurred.
        """
        details = dict(details or {})

        run = await self.repository.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        from_status = run.status
        if not is_valid_transition(from_status, to_status):
            logger.warning(
                "Invalid status transition attempted",
                extra={
                    "run_id": run_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidTransitionError(from_status, to_status)

        now = datetime.now(timezone.utc)
        changes: Dict[str, Any] = {"status": to_status}

        if to_status == RunStatus.FAILED:
            if not error:
                error = "Unknown error (no details provided)"
                logger.warning(
                    "Transition to FAILED without error details",
                    extra={"run_id": run_id},
                )
            details.setdefault("error", error)
            changes["error"] = error

        if is_terminal_status(to_status):
            changes["completed_at"] = now

        changes["status_history"] = run.status_history + [
            StatusTransition(
                from_status=from_status,
                to_status=to_status,
                timestamp=now,
                details=details,
            )
        ]

        logger.info(
            "Transitioning run",
            extra={
                "run_id": run_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "version": run.version + 1,
            },
        )

        return await self._update(run, **changes)

    async def set_plan(self, run_id: str, plan: Dict[str, Any]) -> Run:
        """Store the implementation plan without changing status.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            RunImmutableError: If the run is terminal.
            VersionConflictError: If a concurrent update occurred.
        """
        run = await self._load_mutable(run_id)
        return await self._update(run, plan=plan)

    async def set_artifacts(
        self,
        run_id: str,
        intent_card: str,
        review: Dict[str, Any],
        confidence_score: int,
        policy_result: Dict[str, Any],
    ) -> Run:
        """Store the review, confidence score, policy result and intent card.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            RunImmutableError: If the run is terminal.
            VersionConflictError: If a concurrent update occurred.
        """
        run = await self._load_mutable(run_id)
        return await self._update(
            run,
            intent_card=intent_card,
            review=review,
            confidence_score=confidence_score,
            policy_result=policy_result,
        )

    async def set_pr(
        self,
        run_id: str,
        pr_url: str,
        pr_number: int,
        branch_name: str,
    ) -> Run:
        """Record the opened pull request.

        Raises:
            ValueError: If pr_number is not positive.
            RunNotFoundError: If the run doesn't exist.
            RunImmutableError: If the run is terminal.
            VersionConflictError: If a concurrent update occurred.
        """
        if pr_number <= 0:
            raise ValueError("pr_number must be positive")

        run = await self._load_mutable(run_id)
        return await self._update(
            run,
            pr_url=pr_url,
            pr_number=pr_number,
            branch_name=branch_name,
        )

    async def get(self, run_id: str) -> Optional[Run]:
        """Get the current state of a run."""
        return await self.repository.get(run_id)

    async def list_by_status(self, status: RunStatus) -> List[Run]:
        """List all runs in a given status."""
        return await self.repository.list_by_status(status)
