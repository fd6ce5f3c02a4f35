"""Docker sandbox lifecycle for pipeline runs.

Each run gets one long-lived container bound read-write to the run's host
workspace at /workspace. Commands are executed inside it with separate
stdout and stderr capture and a per-command deadline. Cleanup removes both
the container and the workspace and never raises.
"""

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

logger = logging.getLogger(__name__)

CONTAINER_WORKDIR = "/workspace"
CONTAINER_NAME_PREFIX = "havoc-sandbox-"
DEFAULT_EXEC_TIMEOUT_SECONDS = 600
STOP_TIMEOUT_SECONDS = 5
# Slack on top of the in-container kill before the host gives up waiting
TIMEOUT_GRACE_SECONDS = 10
# `timeout --signal=KILL` exits with 128 + SIGKILL
KILLED_EXIT_CODE = 137

# One full CPU: quota equals period
CPU_PERIOD_US = 100000


@dataclass
class ExecResult:
    """Result of one command executed inside a sandbox.

    Attributes:
        exit_code: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    exit_code: int
    stdout: str
    stderr: str


class ProvisioningError(Exception):
    """Raised when the sandbox container cannot be created."""

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        super().__init__(f"Failed to provision sandbox for run {run_id}: {message}")


class CommandTimeoutError(TimeoutError):
    """Raised when a sandboxed command exceeds its deadline."""

    def __init__(self, command: Sequence[str], timeout_seconds: int):
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Command timed out after {timeout_seconds}s: {' '.join(self.command)}"
        )


def _decode(stream: Optional[bytes]) -> str:
    if not stream:
        return ""
    return stream.decode("utf-8", errors="replace")


class Sandbox:
    """A running sandbox container and its host workspace.

    Attributes:
        run_id: The run this sandbox belongs to.
        workspace_dir: Host directory mounted at /workspace.
        timeout_seconds: Default per-command deadline.
    """

    def __init__(
        self,
        run_id: str,
        workspace_dir: str,
        container: Optional[Any] = None,
        timeout_seconds: int = DEFAULT_EXEC_TIMEOUT_SECONDS,
    ):
        self.run_id = run_id
        self.workspace_dir = workspace_dir
        self.timeout_seconds = timeout_seconds
        self._container = container
        self._cleaned_up = False

    @property
    def container_id(self) -> Optional[str]:
        if self._container is None:
            return None
        return self._container.id

    async def exec(
        self,
        command: Sequence[str],
        timeout_seconds: Optional[int] = None,
    ) -> ExecResult:
        """Execute a command vector inside the container.

        The command is wrapped in coreutils `timeout --signal=KILL` so the
        process is killed inside the container when the deadline passes,
        even if the host stops waiting first.

        Args:
            command: Argument vector, e.g. ["sh", "-c", "npm test"].
            timeout_seconds: Deadline override; defaults to the sandbox's.

        Returns:
            ExecResult with exit code and demultiplexed output.

        Raises:
            CommandTimeoutError: If the command exceeds its deadline.
            RuntimeError: If the container was never started.
        """
        if self._container is None:
            raise RuntimeError(f"Sandbox for run {self.run_id} has no container")

        timeout = timeout_seconds or self.timeout_seconds
        wrapped = ["timeout", "--signal=KILL", str(timeout), *command]

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self._container.exec_run,
                    wrapped,
                    demux=True,
                    workdir=CONTAINER_WORKDIR,
                ),
                timeout=timeout + TIMEOUT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise CommandTimeoutError(command, timeout) from exc

        elapsed = time.monotonic() - started
        if result.exit_code == KILLED_EXIT_CODE and elapsed >= timeout:
            raise CommandTimeoutError(command, timeout)

        stdout, stderr = result.output if result.output else (None, None)
        return ExecResult(
            exit_code=result.exit_code,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )

    async def cleanup(self) -> None:
        """Stop and remove the container, then delete the workspace.

        Best-effort and idempotent: every failure is logged and swallowed.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True

        if self._container is not None:
            await asyncio.to_thread(self._remove_container)

        if self.workspace_dir and os.path.exists(self.workspace_dir):
            try:
                await asyncio.to_thread(shutil.rmtree, self.workspace_dir)
                logger.info(
                    "Removed sandbox workspace",
                    extra={"run_id": self.run_id, "workspace": self.workspace_dir},
                )
            except OSError:
                logger.exception(
                    "Failed to remove sandbox workspace",
                    extra={"run_id": self.run_id, "workspace": self.workspace_dir},
                )

    def _remove_container(self) -> None:
        container = self._container
        try:
            container.stop(timeout=STOP_TIMEOUT_SECONDS)
        except DockerException:
            # Already stopped
            pass

        try:
            container.remove(force=True)
            logger.info(
                "Removed sandbox container",
                extra={"run_id": self.run_id, "container_id": container.id},
            )
        except DockerException:
            logger.exception(
                "Failed to remove sandbox container",
                extra={"run_id": self.run_id, "container_id": container.id},
            )


class SandboxManager:
    """Creates and maintains sandbox containers.

    The Docker client is created lazily from the environment so the
    manager can be constructed without a reachable daemon.

    Attributes:
        image: Sandbox image name.
        memory_limit: Container memory limit (swap is set equal).
        user: User the container runs as.
        timeout_seconds: Default per-command deadline.
    """

    def __init__(
        self,
        image: str = "havoc-sandbox",
        memory_limit: str = "2g",
        user: str = "havoc",
        timeout_seconds: int = DEFAULT_EXEC_TIMEOUT_SECONDS,
        client: Optional[Any] = None,
    ):
        self.image = image
        self.memory_limit = memory_limit
        self.user = user
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _environment(self) -> Dict[str, str]:
        home = f"/home/{self.user}"
        return {
            "HOME": home,
            "NPM_CONFIG_PREFIX": f"{home}/.npm-global",
            "PATH": (
                f"{home}/.npm-global/bin:/usr/local/sbin:/usr/local/bin:"
                "/usr/sbin:/usr/bin:/sbin:/bin"
            ),
        }

    async def create(
        self,
        run_id: str,
        workspace_dir: str,
        timeout_seconds: Optional[int] = None,
    ) -> Sandbox:
        """Start a sandbox container for a run.

        Args:
            run_id: Run identifier; names the container.
            workspace_dir: Host directory to bind at /workspace. Created if
                missing and removed again if the container fails to start.
            timeout_seconds: Per-command deadline for the sandbox.

        Returns:
            The started Sandbox.

        Raises:
            ProvisioningError: If the workspace or container cannot be created.
        """
        try:
            os.makedirs(workspace_dir, exist_ok=True)
        except OSError as exc:
            raise ProvisioningError(run_id, f"cannot create workspace: {exc}") from exc

        name = f"{CONTAINER_NAME_PREFIX}{run_id}"
        try:
            container = await asyncio.to_thread(
                self.client.containers.run,
                self.image,
                command=["sleep", "infinity"],
                name=name,
                working_dir=CONTAINER_WORKDIR,
                user=self.user,
                environment=self._environment(),
                volumes={
                    os.path.abspath(workspace_dir): {
                        "bind": CONTAINER_WORKDIR,
                        "mode": "rw",
                    }
                },
                mem_limit=self.memory_limit,
                memswap_limit=self.memory_limit,
                cpu_period=CPU_PERIOD_US,
                cpu_quota=CPU_PERIOD_US,
                network_mode="bridge",
                security_opt=["no-new-privileges"],
                detach=True,
            )
        except DockerException as exc:
            logger.error(
                "Failed to create sandbox container",
                extra={"run_id": run_id, "error": str(exc)},
            )
            await asyncio.to_thread(shutil.rmtree, workspace_dir, ignore_errors=True)
            raise ProvisioningError(run_id, str(exc)) from exc

        logger.info(
            "Created sandbox container",
            extra={"run_id": run_id, "container_id": container.id, "name": name},
        )

        return Sandbox(
            run_id=run_id,
            workspace_dir=workspace_dir,
            container=container,
            timeout_seconds=timeout_seconds or self.timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def list_sandboxes(self) -> List[Any]:
        """List all Havoc sandbox containers, running or stopped."""
        return self.client.containers.list(
            all=True, filters={"name": CONTAINER_NAME_PREFIX}
        )

    def cleanup_all_sandboxes(self) -> int:
        """Force-remove every Havoc sandbox container.

        Returns:
            Number of containers removed.
        """
        removed = 0
        for container in self.list_sandboxes():
            try:
                container.remove(force=True)
                removed += 1
            except NotFound:
                pass
            except DockerException:
                logger.exception(
                    "Failed to remove sandbox container",
                    extra={"container_id": container.id},
                )
        logger.info("Removed stale sandboxes", extra={"count": removed})
        return removed

    def check_docker(self) -> bool:
        """Return True if the Docker daemon answers a ping."""
        try:
            return bool(self.client.ping())
        except DockerException:
            return False

    def check_sandbox_image(self) -> bool:
        """Return True if the sandbox image is present locally."""
        try:
            self.client.images.get(self.image)
            return True
        except ImageNotFound:
            return False
        except DockerException:
            return False
