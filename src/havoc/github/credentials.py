"""Source-control credentials.

The pipeline asks for a token per repository and never inspects it.
"""

from typing import Protocol, runtime_checkable

from havoc.github.git import AuthError


@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies an access token for a repository."""

    async def get_token(self, owner: str, repo: str) -> str:
        """Return a token with clone, push and pull request access.

        Raises:
            AuthError: If no token is available for the repository.
        """
        ...


class StaticTokenProvider:
    """Returns the same token for every repository."""

    def __init__(self, token: str):
        self._token = token

    async def get_token(self, owner: str, repo: str) -> str:
        if not self._token:
            raise AuthError(f"No authentication token available for {owner}/{repo}")
        return self._token
