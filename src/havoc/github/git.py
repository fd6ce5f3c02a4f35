"""Host-side git plumbing.

Clones the repository into the run's workspace, creates the working
branch and pushes it. The workspace is the directory mounted into the
sandbox, so changes made by the sandbox are visible here. Commands run
with asyncio subprocesses; access tokens are redacted from every error
message and log line.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Set


logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 300
BRANCH_PREFIX = "havoc"
REDACTED = "***"

_AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "invalid username or password",
    "permission denied",
    "403",
)


class GitError(Exception):
    """Raised when a git command fails.

    Attributes:
        command: The git subcommand that failed.
        detail: Redacted error output.
        returncode: Exit code, if the command ran.
    """

    def __init__(self, command: str, message: str, returncode: Optional[int] = None):
        self.command = command
        self.detail = message
        self.returncode = returncode
        super().__init__(f"git {command} failed: {message}")


class CloneError(GitError):
    """Raised when cloning the repository fails."""

    def __init__(self, repository: str, message: str, returncode: Optional[int] = None):
        self.repository = repository
        super().__init__("clone", f"{repository}: {message}", returncode)


class AuthError(Exception):
    """Raised when no usable credentials exist for a repository."""


def generate_branch_name(issue_number: int, run_id: str) -> str:
    """Branch for a run, e.g. havoc/issue-42-abcdefgh."""
    return f"{BRANCH_PREFIX}/issue-{issue_number}-{run_id[:8]}"


def _redact(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


class GitOperations:
    """Runs git against a workspace directory on the host.

    Attributes:
        clone_host: Host to clone from, e.g. github.com.
        timeout_seconds: Deadline for each git command.
    """

    def __init__(
        self,
        clone_host: str = "github.com",
        timeout_seconds: int = GIT_TIMEOUT_SECONDS,
    ):
        self.clone_host = clone_host
        self.timeout_seconds = timeout_seconds
        self._secrets: Set[str] = set()

    def clone_url(self, owner: str, repo: str, token: str) -> str:
        return f"https://x-access-token:{token}@{self.clone_host}/{owner}/{repo}.git"

    async def _git(self, args: List[str], cwd: Optional[str] = None) -> str:
        """Run a git command and return its stdout.

        Raises:
            GitError: If git exits non-zero, times out or cannot be run.
        """
        command = args[0]
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise GitError(
                command, f"timed out after {self.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise GitError(command, f"failed to execute git: {exc}") from exc

        if process.returncode != 0:
            message = _redact(stderr.decode(errors="replace").strip(), self._secrets)
            raise GitError(command, message, process.returncode)

        return stdout.decode(errors="replace")

    async def clone(self, owner: str, repo: str, token: str, target_dir: str) -> None:
        """Shallow-clone a repository into target_dir.

        The authenticated URL stays configured as `origin` so a later push
        reuses the same credentials.

        Raises:
            AuthError: If token is empty or the remote rejects it.
            CloneError: If the clone fails for another reason.
        """
        repository = f"{owner}/{repo}"
        if not token:
            raise AuthError(f"No authentication token available for {repository}")

        self._secrets.add(token)
        logger.info(
            "Cloning repository",
            extra={"repository": repository, "target_dir": target_dir},
        )

        try:
            await self._git(
                ["clone", "--depth", "1", self.clone_url(owner, repo, token), target_dir]
            )
        except GitError as exc:
            message = exc.detail
            if any(marker in message.lower() for marker in _AUTH_FAILURE_MARKERS):
                raise AuthError(
                    f"Authentication failed cloning {repository}: {message}"
                ) from exc
            raise CloneError(repository, message, exc.returncode) from exc

    async def create_branch(self, repo_dir: str, branch: str, base_branch: str) -> None:
        """Fetch base_branch and check out a new branch from it.

        Raises:
            GitError: If fetching or checking out fails.
        """
        await self._git(["fetch", "origin", base_branch], cwd=repo_dir)
        await self._git(
            ["checkout", "-b", branch, f"origin/{base_branch}"], cwd=repo_dir
        )
        logger.info(
            "Created branch",
            extra={"branch": branch, "base_branch": base_branch},
        )

    async def push(self, repo_dir: str, branch: str) -> None:
        """Push branch to origin and set it as upstream.

        Raises:
            GitError: If the push fails.
        """
        await self._git(["push", "--set-upstream", "origin", branch], cwd=repo_dir)
        logger.info("Pushed branch", extra={"branch": branch})
