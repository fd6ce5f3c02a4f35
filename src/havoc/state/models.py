"""Run state models.

This module defines the data models for a Havoc run, including:
- RunStatus: Enum of all run statuses
- StatusTransition: Record of a status change with timestamp and details
- Run: Complete state of one pipeline execution for one issue
- VALID_TRANSITIONS: Map defining allowed status transitions

A run moves linearly through the pipeline stages. Any non-terminal status
may move to `failed`; `done` and `failed` are terminal and a run in a
terminal status is immutable.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Pipeline statuses a run progresses through.

    Status Flow:
        pending → cloning → analyzing → planning → editing → testing
        → reviewing → publishing → done

    Any non-terminal status can transition to 'failed'.

    Attributes:
        PENDING: Run created, sandbox not yet provisioned.
        CLONING: Provisioning the sandbox and cloning the repository.
        ANALYZING: Gathering codebase context and analyzing the issue.
        PLANNING: Generating the implementation plan.
        EDITING: Executing plan tasks in the sandbox.
        TESTING: Running tests and lint.
        REVIEWING: Self-review, confidence scoring and policy gates.
        PUBLISHING: Opening the pull request or reporting on the issue.
        DONE: Pull request opened.
        FAILED: Run ended without a pull request.
    """

    PENDING = "pending"
    CLONING = "cloning"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    EDITING = "editing"
    TESTING = "testing"
    REVIEWING = "reviewing"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


class StatusTransition(BaseModel):
    """Record of a status change of a run.

    Attributes:
        from_status: The status before the transition.
        to_status: The status after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata about the transition.
    """

    from_status: RunStatus = Field(
        ...,
        description="The run status before this transition",
    )

    to_status: RunStatus = Field(
        ...,
        description="The run status after this transition",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Optional metadata about the transition",
    )


class Run(BaseModel):
    """Complete state of one pipeline execution.

    The issue inputs are set at creation and never change. Everything else
    is written by the orchestrator through the state machine. The run is
    persisted with optimistic locking via the version field.

    Attributes:
        id: Opaque unique run identifier.
        owner: Repository owner.
        repo: Repository name.
        issue_number: Issue the run works on.
        issue_title: Issue title at trigger time.
        issue_body: Issue body at trigger time.
        installation_id: GitHub App installation, if any.
        user_id: User who triggered the run, if known.
        status: Current status.
        status_history: Ordered list of all status transitions.
        plan: Serialized implementation plan.
        intent_card: Rendered intent card Markdown.
        review: Serialized self-review.
        confidence_score: Final confidence score, 0-100.
        policy_result: Serialized policy gate result.
        pr_url: URL of the opened pull request.
        pr_number: Number of the opened pull request.
        branch_name: Branch the changes were pushed to.
        error: Error message if the run failed.
        started_at: When the run was created (UTC).
        completed_at: When the run reached a terminal status (UTC).
        updated_at: When the run was last updated (UTC).
        version: Optimistic locking version.
    """

    id: str = Field(..., min_length=1, description="Unique run identifier")
    owner: str = Field(..., min_length=1, description="Repository owner")
    repo: str = Field(..., min_length=1, description="Repository name")
    issue_number: int = Field(..., gt=0, description="Issue number")
    issue_title: str = Field(default="", description="Issue title")
    issue_body: str = Field(default="", description="Issue body")
    installation_id: Optional[int] = Field(
        default=None,
        description="GitHub App installation id",
    )
    user_id: Optional[str] = Field(
        default=None,
        description="Identifier of the user who triggered the run",
    )

    status: RunStatus = Field(
        default=RunStatus.PENDING,
        description="The current status of the run",
    )

    status_history: List[StatusTransition] = Field(
        default_factory=list,
        description="Ordered list of all status transitions",
    )

    plan: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Implementation plan produced by the planner",
    )

    intent_card: Optional[str] = Field(
        default=None,
        description="Rendered intent card Markdown",
    )

    review: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Self-review result",
    )

    confidence_score: Optional[int] = Field(
        default=None,
        ge=0,
        le=100,
        description="Final confidence score",
    )

    policy_result: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Policy gate result",
    )

    pr_url: Optional[str] = Field(default=None, description="Pull request URL")
    pr_number: Optional[int] = Field(
        default=None,
        gt=0,
        description="Pull request number",
    )
    branch_name: Optional[str] = Field(default=None, description="Pushed branch")

    error: Optional[str] = Field(
        default=None,
        description="Error message if the run failed",
    )

    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the run was created (UTC)",
    )

    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the run reached a terminal status (UTC)",
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the run was last updated (UTC)",
    )

    version: int = Field(
        default=1,
        ge=1,
        description="Optimistic locking version for concurrent update protection",
    )

    @property
    def repository(self) -> str:
        """Full repository path in format "{owner}/{repo}"."""
        return f"{self.owner}/{self.repo}"


# Linear pipeline; every non-terminal status may also fail.
_PIPELINE_ORDER: List[RunStatus] = [
    RunStatus.PENDING,
    RunStatus.CLONING,
    RunStatus.ANALYZING,
    RunStatus.PLANNING,
    RunStatus.EDITING,
    RunStatus.TESTING,
    RunStatus.REVIEWING,
    RunStatus.PUBLISHING,
]

VALID_TRANSITIONS: Dict[RunStatus, List[RunStatus]] = {
    status: [
        _PIPELINE_ORDER[i + 1] if i + 1 < len(_PIPELINE_ORDER) else RunStatus.DONE,
        RunStatus.FAILED,
    ]
    for i, status in enumerate(_PIPELINE_ORDER)
}
VALID_TRANSITIONS[RunStatus.DONE] = []
VALID_TRANSITIONS[RunStatus.FAILED] = []


def is_valid_transition(from_status: RunStatus, to_status: RunStatus) -> bool:
    """Check if a status transition is valid.

    Args:
        from_status: The current run status.
        to_status: The target run status.

    Returns:
        bool: True if the transition is valid, False otherwise.

    Example:
        >>> is_valid_transition(RunStatus.PENDING, RunStatus.CLONING)
        True
        >>> is_valid_transition(RunStatus.DONE, RunStatus.FAILED)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal_status(status: RunStatus) -> bool:
    """Check if a status is terminal (has no outgoing transitions).

    Example:
        >>> is_terminal_status(RunStatus.FAILED)
        True
        >>> is_terminal_status(RunStatus.TESTING)
        False
    """
    return len(VALID_TRANSITIONS.get(status, [])) == 0
