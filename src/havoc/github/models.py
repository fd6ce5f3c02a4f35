"""GitHub data models used by the client and the pipeline."""

from typing import Any, Dict, List

from pydantic import BaseModel, Field


class Issue(BaseModel):
    """Issue data returned by the GitHub API.

    Attributes:
        number: Issue number within the repository.
        title: Issue title.
        body: Issue body; empty when GitHub returns null.
        labels: Label names.
        user: Login of the issue author.
        state: open or closed.
    """

    number: int = Field(..., gt=0)
    title: str
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    user: str = "unknown"
    state: str = "open"

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "Issue":
        labels = [
            label if isinstance(label, str) else label.get("name", "")
            for label in data.get("labels") or []
        ]
        return cls(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            labels=[name for name in labels if name],
            user=(data.get("user") or {}).get("login") or "unknown",
            state=data.get("state") or "open",
        )


class PRCreateRequest(BaseModel):
    """Request to open a pull request.

    Attributes:
        title: Pull request title.
        body: Pull request body in Markdown.
        head_branch: Branch containing the changes.
        base_branch: Branch to merge into.
    """

    title: str = Field(..., min_length=1)
    body: str = ""
    head_branch: str = Field(..., min_length=1)
    base_branch: str = Field(default="main", min_length=1)


class PullRequest(BaseModel):
    """Pull request data returned by the GitHub API."""

    number: int = Field(..., gt=0)
    url: str
    title: str = ""
    body: str = ""
    head: str = ""
    base: str = ""

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PullRequest":
        return cls(
            number=data["number"],
            url=data["html_url"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            head=(data.get("head") or {}).get("ref", ""),
            base=(data.get("base") or {}).get("ref", ""),
        )
