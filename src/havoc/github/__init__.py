"""GitHub access: REST client, git plumbing and credentials."""

from havoc.github.client import GitHubAPIError, GitHubClient, RateLimitError
from havoc.github.credentials import CredentialProvider, StaticTokenProvider
from havoc.github.git import (
    AuthError,
    CloneError,
    GitError,
    GitOperations,
    generate_branch_name,
)
from havoc.github.models import Issue, PRCreateRequest, PullRequest

__all__ = [
    "AuthError",
    "CloneError",
    "CredentialProvider",
    "GitError",
    "GitHubAPIError",
    "GitHubClient",
    "GitOperations",
    "Issue",
    "PRCreateRequest",
    "PullRequest",
    "RateLimitError",
    "StaticTokenProvider",
    "generate_branch_name",
]
