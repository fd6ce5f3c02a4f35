"""Allow-listed command runner on top of a sandbox.

Every command an agent asks for goes through SandboxRunner.run, which
checks it against the repository's allowed command prefixes before it
reaches the container. Rejected commands get a failing ExecResult; the
runner never raises for them. All attempts are kept in an audit log.

The file and git helpers issue fixed argument vectors directly to the
sandbox; only their paths and contents come from agents.
"""

import logging
import posixpath
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from havoc.config import HavocConfig, is_command_allowed
from havoc.events.emitter import EventEmitter, safe_emit
from havoc.events.models import RunEvent, RunEventType
from havoc.sandbox.manager import CONTAINER_WORKDIR, ExecResult, Sandbox

logger = logging.getLogger(__name__)

BOT_NAME = "Havoc"
BOT_EMAIL = "havoc@usehavoc.dev"

SOURCE_FILE_PATTERNS = ["*.ts", "*.tsx", "*.js", "*.jsx", "*.py", "*.go", "*.rs"]

NPM_LINT_COMMAND = "npm run lint --if-present 2>/dev/null"
ESLINT_COMMAND = "npx eslint . --ext .js,.ts,.jsx,.tsx 2>/dev/null || true"


# Quoting can grow content up to 5x; stays under Linux's 128 KiB per argument
WRITE_CHUNK_CHARS = 16 * 1024


def normalize_workspace_path(file_path: str) -> Optional[str]:
    """Reduce a path to its canonical workspace-relative form.

    `./a`, `src/../a` and `/workspace/a` all become `a`. Other absolute
    paths, paths leaving the workspace and the workspace root itself give
    None.
    """
    path = posixpath.normpath(file_path.strip())
    if path.startswith(CONTAINER_WORKDIR + "/"):
        path = path[len(CONTAINER_WORKDIR) + 1:]
    if path.startswith("/") or path in (".", "..") or path.startswith("../"):
        return None
    return path


@dataclass
class CommandRecord:
    """One entry of the runner's audit log.

    Attributes:
        command: The command line as requested.
        result: What came back (synthetic for rejected commands).
        allowed: Whether the allow-list let it through.
        timestamp: When it was requested (UTC).
    """

    command: str
    result: ExecResult
    allowed: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SandboxRunner:
    """Runs agent-requested commands and file operations in a sandbox.

    Attributes:
        sandbox: The sandbox commands are executed in.
        config: Repository config supplying allowed commands and test command.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        config: HavocConfig,
        emitter: Optional[EventEmitter] = None,
    ):
        self.sandbox = sandbox
        self.config = config
        self._emitter = emitter
        self._command_log: List[CommandRecord] = []

    @property
    def workspace_path(self) -> str:
        return self.sandbox.workspace_dir

    def get_command_log(self) -> List[CommandRecord]:
        """Return a copy of the audit log."""
        return list(self._command_log)

    async def _emit(
        self,
        event_type: RunEventType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await safe_emit(
            self._emitter,
            RunEvent(
                run_id=self.sandbox.run_id,
                event_type=event_type,
                message=message,
                data=data or {},
            ),
        )

    @staticmethod
    def _resolve(path: str) -> str:
        return posixpath.join(CONTAINER_WORKDIR, path)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def run(self, command: str) -> ExecResult:
        """Run a shell command if the allow-list permits it.

        Args:
            command: Full command line, e.g. "npm test".

        Returns:
            The command's ExecResult, or exit code 1 with a
            "Command not allowed" message when rejected.
        """
        if not is_command_allowed(command, self.config.allowed_commands):
            result = ExecResult(
                exit_code=1,
                stdout="",
                stderr=(
                    f"Command not allowed: {command}. Allowed commands: "
                    f"{', '.join(self.config.allowed_commands)}"
                ),
            )
            self._command_log.append(
                CommandRecord(command=command, result=result, allowed=False)
            )
            logger.warning(
                "Rejected command",
                extra={"run_id": self.sandbox.run_id, "command": command},
            )
            await self._emit(
                RunEventType.COMMAND, f"rejected: {command}", {"allowed": False}
            )
            return result

        await self._emit(RunEventType.COMMAND, command)
        result = await self.sandbox.exec(["sh", "-c", command])
        self._command_log.append(
            CommandRecord(command=command, result=result, allowed=True)
        )
        logger.debug(
            "Executed command",
            extra={
                "run_id": self.sandbox.run_id,
                "command": command,
                "exit_code": result.exit_code,
            },
        )
        return result

    async def run_all(self, commands: List[str]) -> List[ExecResult]:
        """Run commands in order, stopping after the first failure."""
        results: List[ExecResult] = []
        for command in commands:
            result = await self.run(command)
            results.append(result)
            if result.exit_code != 0:
                break
        return results

    async def install_dependencies(self) -> ExecResult:
        """Install dependencies with the package manager the lockfile implies."""
        if await self.file_exists("pnpm-lock.yaml"):
            return await self.run("pnpm install")
        if await self.file_exists("yarn.lock"):
            return await self.run("yarn install")
        return await self.run("npm install")

    async def run_tests(self, test_command: Optional[str] = None) -> ExecResult:
        return await self.run(test_command or self.config.test_command)

    async def run_lint(self) -> ExecResult:
        """Run the project's lint script, falling back to eslint.

        The eslint fallback always exits 0; lint never blocks on its own.
        """
        await self._emit(RunEventType.COMMAND, NPM_LINT_COMMAND)
        npm_lint = await self.sandbox.exec(["sh", "-c", NPM_LINT_COMMAND])
        if npm_lint.exit_code == 0:
            return npm_lint

        await self._emit(RunEventType.COMMAND, ESLINT_COMMAND)
        return await self.sandbox.exec(["sh", "-c", ESLINT_COMMAND])

    # -------------------------------------------------------------------------
    # Git
    # -------------------------------------------------------------------------

    async def stage_all(self) -> ExecResult:
        await self._emit(RunEventType.COMMAND, "git add .")
        return await self.sandbox.exec(["git", "add", "."])

    async def diff_staged(self) -> ExecResult:
        """Run `git diff --cached`, keeping exit code and stderr."""
        return await self.sandbox.exec(["git", "diff", "--cached"])

    async def get_staged_diff(self) -> str:
        return (await self.diff_staged()).stdout

    async def get_diff(self) -> str:
        result = await self.sandbox.exec(["git", "diff"])
        return result.stdout

    async def commit(self, message: str) -> ExecResult:
        """Commit staged changes under the bot identity."""
        await self.sandbox.exec(["git", "config", "user.email", BOT_EMAIL])
        await self.sandbox.exec(["git", "config", "user.name", BOT_NAME])

        await self._emit(RunEventType.COMMAND, f'git commit -m "{message}"')
        return await self.sandbox.exec(["git", "commit", "-m", message])

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    async def read_file(self, file_path: str) -> Optional[str]:
        """Return the file's content, or None if it cannot be read."""
        await self._emit(RunEventType.FILE, f"read {file_path}")
        result = await self.sandbox.exec(["cat", self._resolve(file_path)])
        if result.exit_code != 0:
            return None
        return result.stdout

    async def write_file(self, file_path: str, content: str) -> ExecResult:
        """Write content to a file and check that it landed.

        Content and path are shell-quoted, so any bytes in either are
        written literally. Large content is written in WRITE_CHUNK_CHARS
        pieces, the first truncating the file and the rest appending.
        """
        await self._emit(RunEventType.FILE, f"write {file_path}")
        target = shlex.quote(self._resolve(file_path))
        chunks = [
            content[i:i + WRITE_CHUNK_CHARS]
            for i in range(0, len(content), WRITE_CHUNK_CHARS)
        ] or [""]

        for index, chunk in enumerate(chunks):
            redirect = ">" if index == 0 else ">>"
            result = await self.sandbox.exec(
                ["sh", "-c", f"printf '%s' {shlex.quote(chunk)} {redirect} {target}"]
            )
            if result.exit_code != 0:
                return result

        if not await self.file_exists(file_path):
            return ExecResult(
                exit_code=1,
                stdout=result.stdout,
                stderr=f"File was not written: {file_path}",
            )
        return result

    async def remove_file(self, file_path: str) -> ExecResult:
        await self._emit(RunEventType.FILE, f"delete {file_path}")
        return await self.sandbox.exec(["rm", "-f", self._resolve(file_path)])

    async def mkdir(self, dir_path: str) -> ExecResult:
        await self._emit(RunEventType.FILE, f"mkdir {dir_path}")
        return await self.sandbox.exec(["mkdir", "-p", self._resolve(dir_path)])

    async def file_exists(self, file_path: str) -> bool:
        result = await self.sandbox.exec(["test", "-f", self._resolve(file_path)])
        return result.exit_code == 0

    async def list_files(self, directory: str = ".") -> List[str]:
        """List source files under a directory, relative to the workspace.

        Returns:
            Paths like "./src/index.ts"; empty if the listing fails.
        """
        name_args: List[str] = []
        for pattern in SOURCE_FILE_PATTERNS:
            if name_args:
                name_args.append("-o")
            name_args.extend(["-name", pattern])

        result = await self.sandbox.exec(
            ["find", directory, "-type", "f", "(", *name_args, ")"]
        )
        if result.exit_code != 0:
            return []
        return [line for line in result.stdout.split("\n") if line]
