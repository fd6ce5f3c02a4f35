"""GitHub webhook trigger models.

A trigger is the part of a webhook delivery that starts a run: the issue,
the repository it lives in and how Havoc was invoked.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class TriggerSource(str, Enum):
    """How a run was requested.

    Attributes:
        LABEL: The issue was labeled `havoc` or `havoc-run`.
        COMMENT: A `/havoc` command was posted on the issue.
    """

    LABEL = "label"
    COMMENT = "comment"


class RunTrigger(BaseModel):
    """Parsed webhook event that should start a run.

    Attributes:
        source: How the run was requested.
        owner: Repository owner (user or organization).
        repo: Repository name without owner prefix.
        issue_number: The issue to work on.
        title: Issue title.
        body: Issue body; may be empty.
        labels: Label names on the issue.
        sender: Login of the user who labeled or commented.
        installation_id: GitHub App installation, when delivered to an app.
    """

    source: TriggerSource = Field(
        ...,
        description="How the run was requested",
    )

    owner: str = Field(..., min_length=1, description="Repository owner")
    repo: str = Field(..., min_length=1, description="Repository name")

    issue_number: int = Field(
        ...,
        gt=0,
        description="The issue number within the repository",
    )

    title: str = Field(default="", description="Issue title")
    body: str = Field(default="", description="Issue body (may be empty)")

    labels: List[str] = Field(
        default_factory=list,
        description="Label names attached to the issue",
    )

    sender: Optional[str] = Field(
        default=None,
        description="Login of the user who triggered the run",
    )

    installation_id: Optional[int] = Field(
        default=None,
        description="GitHub App installation id",
    )

    @property
    def full_repository(self) -> str:
        """Repository path in format "{owner}/{repo}"."""
        return f"{self.owner}/{self.repo}"

    @property
    def issue_id(self) -> str:
        """Issue identifier in format "{owner}/{repo}#{issue_number}"."""
        return f"{self.owner}/{self.repo}#{self.issue_number}"
