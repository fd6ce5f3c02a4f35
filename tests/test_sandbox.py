"""Tests for the Docker sandbox and the allow-listed runner.

**Validates: container provisioning options, exec demultiplexing and
timeouts, best-effort cleanup, allow-list rejection without exec, the
audit log, and file/git helpers issuing fixed argument vectors**
"""

import asyncio
import os
import time
from types import SimpleNamespace
from typing import Callable, List, Optional, Sequence
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from havoc.config import HavocConfig
from havoc.events.buffer import RunEventBuffer
from havoc.events.models import RunEventType
from havoc.sandbox.manager import (
    CommandTimeoutError,
    ExecResult,
    ProvisioningError,
    Sandbox,
    SandboxManager,
)
from havoc.sandbox.runner import (
    WRITE_CHUNK_CHARS,
    SandboxRunner,
    normalize_workspace_path,
)


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_container(exit_code: int = 0, stdout: bytes = b"", stderr: bytes = b""):
    container = MagicMock()
    container.id = "abc123"
    container.exec_run.return_value = SimpleNamespace(
        exit_code=exit_code, output=(stdout, stderr)
    )
    return container


class FakeSandbox:
    """Sandbox stand-in that records argument vectors."""

    def __init__(
        self,
        responder: Optional[Callable[[List[str]], ExecResult]] = None,
        run_id: str = "run-1",
    ):
        self.run_id = run_id
        self.workspace_dir = "/tmp/havoc/run-1"
        self.calls: List[List[str]] = []
        self._responder = responder or (lambda cmd: ExecResult(0, "", ""))

    async def exec(self, command: Sequence[str], timeout_seconds=None) -> ExecResult:
        self.calls.append(list(command))
        return self._responder(list(command))


def _make_runner(responder=None, config: Optional[HavocConfig] = None, emitter=None):
    sandbox = FakeSandbox(responder)
    return SandboxRunner(sandbox, config or HavocConfig(), emitter), sandbox


# ---------------------------------------------------------------------------
# SandboxManager
# ---------------------------------------------------------------------------


class TestSandboxManagerCreate:
    def test_starts_hardened_container(self, tmp_path):
        client = MagicMock()
        client.containers.run.return_value = _make_container()
        manager = SandboxManager(
            image="havoc-sandbox", memory_limit="1g", user="havoc", client=client
        )
        workspace = tmp_path / "run-1"

        sandbox = run_async(manager.create("run-1", str(workspace)))

        assert workspace.is_dir()
        assert sandbox.container_id == "abc123"
        assert sandbox.run_id == "run-1"

        args, kwargs = client.containers.run.call_args
        assert args[0] == "havoc-sandbox"
        assert kwargs["name"] == "havoc-sandbox-run-1"
        assert kwargs["mem_limit"] == "1g"
        assert kwargs["memswap_limit"] == "1g"
        assert kwargs["cpu_quota"] == kwargs["cpu_period"]
        assert kwargs["network_mode"] == "bridge"
        assert kwargs["security_opt"] == ["no-new-privileges"]
        assert kwargs["user"] == "havoc"
        assert kwargs["working_dir"] == "/workspace"
        assert kwargs["volumes"][os.path.abspath(str(workspace))]["bind"] == "/workspace"
        assert kwargs["environment"]["HOME"] == "/home/havoc"

    def test_docker_failure_raises_provisioning_error(self, tmp_path):
        client = MagicMock()
        client.containers.run.side_effect = APIError("no such image")
        manager = SandboxManager(client=client)

        with pytest.raises(ProvisioningError) as exc_info:
            run_async(manager.create("run-2", str(tmp_path / "run-2")))

        assert exc_info.value.run_id == "run-2"
        assert "run-2" in str(exc_info.value)
        assert not (tmp_path / "run-2").exists()

    def test_timeout_defaults_to_manager_setting(self, tmp_path):
        client = MagicMock()
        client.containers.run.return_value = _make_container()
        manager = SandboxManager(timeout_seconds=120, client=client)

        sandbox = run_async(manager.create("run-3", str(tmp_path / "w")))

        assert sandbox.timeout_seconds == 120


class TestSandboxManagerMaintenance:
    def test_check_docker(self):
        client = MagicMock()
        client.ping.return_value = True
        assert SandboxManager(client=client).check_docker()

        client.ping.side_effect = DockerException("daemon down")
        assert not SandboxManager(client=client).check_docker()

    def test_check_sandbox_image(self):
        client = MagicMock()
        assert SandboxManager(client=client).check_sandbox_image()

        client.images.get.side_effect = ImageNotFound("missing")
        assert not SandboxManager(client=client).check_sandbox_image()

    def test_cleanup_all_sandboxes_counts_removed(self):
        gone = MagicMock()
        gone.remove.side_effect = NotFound("gone")
        client = MagicMock()
        client.containers.list.return_value = [MagicMock(), gone, MagicMock()]

        removed = SandboxManager(client=client).cleanup_all_sandboxes()

        assert removed == 2
        client.containers.list.assert_called_once_with(
            all=True, filters={"name": "havoc-sandbox-"}
        )


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


class TestSandboxExec:
    def test_wraps_command_and_demuxes_output(self):
        container = _make_container(exit_code=3, stdout=b"out", stderr=b"err")
        sandbox = Sandbox("run-1", "/tmp/x", container, timeout_seconds=30)

        result = run_async(sandbox.exec(["npm", "test"]))

        assert result == ExecResult(exit_code=3, stdout="out", stderr="err")
        args, kwargs = container.exec_run.call_args
        assert args[0] == ["timeout", "--signal=KILL", "30", "npm", "test"]
        assert kwargs["demux"] is True
        assert kwargs["workdir"] == "/workspace"

    def test_missing_streams_decode_to_empty(self):
        container = MagicMock()
        container.exec_run.return_value = SimpleNamespace(exit_code=0, output=(None, None))
        sandbox = Sandbox("run-1", "/tmp/x", container)

        result = run_async(sandbox.exec(["true"]))

        assert result.stdout == ""
        assert result.stderr == ""

    def test_timeout_override(self):
        container = _make_container()
        sandbox = Sandbox("run-1", "/tmp/x", container, timeout_seconds=30)

        run_async(sandbox.exec(["ls"], timeout_seconds=5))

        assert container.exec_run.call_args[0][0][:3] == ["timeout", "--signal=KILL", "5"]

    def test_killed_after_deadline_raises_timeout(self):
        container = MagicMock()

        def slow_exec(*args, **kwargs):
            time.sleep(1.1)
            return SimpleNamespace(exit_code=137, output=(b"", b""))

        container.exec_run.side_effect = slow_exec
        sandbox = Sandbox("run-1", "/tmp/x", container, timeout_seconds=1)

        with pytest.raises(CommandTimeoutError) as exc_info:
            run_async(sandbox.exec(["sleep", "100"]))

        assert exc_info.value.timeout_seconds == 1
        assert exc_info.value.command == ["sleep", "100"]

    def test_exec_without_container(self):
        with pytest.raises(RuntimeError):
            run_async(Sandbox("run-1", "/tmp/x").exec(["ls"]))


class TestSandboxCleanup:
    def test_removes_container_and_workspace(self, tmp_path):
        workspace = tmp_path / "run-1"
        workspace.mkdir()
        (workspace / "file.txt").write_text("x")
        container = _make_container()
        sandbox = Sandbox("run-1", str(workspace), container)

        run_async(sandbox.cleanup())

        container.stop.assert_called_once()
        container.remove.assert_called_once_with(force=True)
        assert not workspace.exists()

    def test_idempotent_and_never_raises(self, tmp_path):
        container = _make_container()
        container.stop.side_effect = DockerException("already stopped")
        container.remove.side_effect = DockerException("boom")
        sandbox = Sandbox("run-1", str(tmp_path / "missing"), container)

        run_async(sandbox.cleanup())
        run_async(sandbox.cleanup())

        assert container.remove.call_count == 1


# ---------------------------------------------------------------------------
# SandboxRunner
# ---------------------------------------------------------------------------


class TestRunnerAllowList:
    def test_rejected_command_never_reaches_sandbox(self):
        runner, sandbox = _make_runner()

        result = run_async(runner.run("rm -rf /"))

        assert result.exit_code == 1
        assert result.stderr.startswith("Command not allowed: rm -rf /")
        assert sandbox.calls == []

        log = runner.get_command_log()
        assert len(log) == 1
        assert log[0].allowed is False

    def test_allowed_command_runs_through_shell(self):
        runner, sandbox = _make_runner(lambda cmd: ExecResult(0, "ok", ""))

        result = run_async(runner.run("npm test"))

        assert result.stdout == "ok"
        assert sandbox.calls == [["sh", "-c", "npm test"]]
        assert runner.get_command_log()[0].allowed is True

    def test_run_all_stops_after_first_failure(self):
        def responder(cmd):
            return ExecResult(1 if cmd[-1] == "npm run build" else 0, "", "")

        runner, sandbox = _make_runner(responder)

        results = run_async(runner.run_all(["git status", "npm run build", "npm test"]))

        assert [r.exit_code for r in results] == [0, 1]
        assert len(sandbox.calls) == 2

    def test_command_events_emitted(self):
        buffer = RunEventBuffer()
        runner, _ = _make_runner(emitter=buffer)

        run_async(runner.run("git status"))
        run_async(runner.run("curl evil"))

        events = buffer.get_events("run-1")
        assert [e.event_type for e in events] == [RunEventType.COMMAND, RunEventType.COMMAND]
        assert events[1].data == {"allowed": False}

    def test_run_tests_uses_configured_command(self):
        runner, sandbox = _make_runner(config=HavocConfig(test_command="pytest -q"))

        run_async(runner.run_tests())
        run_async(runner.run_tests("go test ./..."))

        assert sandbox.calls == [["sh", "-c", "pytest -q"], ["sh", "-c", "go test ./..."]]


class TestRunnerInstallAndLint:
    def test_install_prefers_pnpm_lockfile(self):
        def responder(cmd):
            if cmd[:2] == ["test", "-f"]:
                return ExecResult(0 if cmd[2].endswith("pnpm-lock.yaml") else 1, "", "")
            return ExecResult(0, "", "")

        runner, sandbox = _make_runner(responder)

        run_async(runner.install_dependencies())

        assert sandbox.calls[-1] == ["sh", "-c", "pnpm install"]

    def test_install_falls_back_to_npm(self):
        def responder(cmd):
            return ExecResult(1 if cmd[0] == "test" else 0, "", "")

        runner, sandbox = _make_runner(responder)

        run_async(runner.install_dependencies())

        assert sandbox.calls[-1] == ["sh", "-c", "npm install"]

    def test_lint_falls_back_to_eslint(self):
        def responder(cmd):
            return ExecResult(1 if "npm run lint" in cmd[-1] else 0, "", "")

        runner, sandbox = _make_runner(responder)

        run_async(runner.run_lint())

        assert len(sandbox.calls) == 2
        assert "eslint" in sandbox.calls[1][-1]


class TestNormalizeWorkspacePath:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("src/a.ts", "src/a.ts"),
            ("./.env", ".env"),
            ("src/../.env", ".env"),
            (".//src//a.ts", "src/a.ts"),
            ("/workspace/.env", ".env"),
            ("/workspace/src/../package.json", "package.json"),
        ],
    )
    def test_aliases_collapse(self, path, expected):
        assert normalize_workspace_path(path) == expected

    @pytest.mark.parametrize(
        "path",
        [
            "/etc/passwd",
            "../outside.txt",
            "src/../../x",
            "/workspace/../etc/passwd",
            "/workspace",
            ".",
            "",
        ],
    )
    def test_paths_outside_workspace(self, path):
        assert normalize_workspace_path(path) is None


class TestRunnerFiles:
    def test_read_file_resolves_under_workspace(self):
        runner, sandbox = _make_runner(lambda cmd: ExecResult(0, "content", ""))

        assert run_async(runner.read_file("src/a.ts")) == "content"
        assert sandbox.calls == [["cat", "/workspace/src/a.ts"]]

    def test_read_missing_file_returns_none(self):
        runner, _ = _make_runner(lambda cmd: ExecResult(1, "", "No such file"))

        assert run_async(runner.read_file("nope.ts")) is None

    def test_write_file_quotes_content(self):
        runner, sandbox = _make_runner()
        content = "it's $HOME `whoami`\n"

        result = run_async(runner.write_file("src/a b.ts", content))

        assert result.exit_code == 0
        shell = sandbox.calls[0]
        assert shell[:2] == ["sh", "-c"]
        assert shell[2].startswith("printf '%s' ")
        assert "'/workspace/src/a b.ts'" in shell[2]
        assert "$HOME" in shell[2]
        assert sandbox.calls[1] == ["test", "-f", "/workspace/src/a b.ts"]

    def test_large_content_is_written_in_chunks(self):
        runner, sandbox = _make_runner()
        content = "'" * (2 * WRITE_CHUNK_CHARS + 10)

        result = run_async(runner.write_file("big.txt", content))

        assert result.exit_code == 0
        writes = [call[2] for call in sandbox.calls if call[0] == "sh"]
        assert len(writes) == 3
        assert writes[0].endswith("> /workspace/big.txt")
        assert all(w.endswith(">> /workspace/big.txt") for w in writes[1:])
        assert all(len(w.encode()) < 128 * 1024 for w in writes)

    def test_empty_content_truncates_file(self):
        runner, sandbox = _make_runner()

        run_async(runner.write_file("empty.txt", ""))

        assert sandbox.calls[0] == ["sh", "-c", "printf '%s' '' > /workspace/empty.txt"]

    def test_write_file_verifies_result(self):
        def responder(cmd):
            return ExecResult(1 if cmd[0] == "test" else 0, "", "")

        runner, _ = _make_runner(responder)

        result = run_async(runner.write_file("a.ts", "x"))

        assert result.exit_code == 1
        assert "not written" in result.stderr

    def test_remove_and_mkdir(self):
        runner, sandbox = _make_runner()

        run_async(runner.remove_file("old.ts"))
        run_async(runner.mkdir("src/new"))

        assert sandbox.calls == [
            ["rm", "-f", "/workspace/old.ts"],
            ["mkdir", "-p", "/workspace/src/new"],
        ]

    def test_list_files(self):
        runner, sandbox = _make_runner(
            lambda cmd: ExecResult(0, "./src/a.ts\n./main.go\n", "")
        )

        assert run_async(runner.list_files()) == ["./src/a.ts", "./main.go"]
        assert sandbox.calls[0][:4] == ["find", ".", "-type", "f"]

    def test_list_files_failure_is_empty(self):
        runner, _ = _make_runner(lambda cmd: ExecResult(1, "", "boom"))

        assert run_async(runner.list_files("src")) == []


class TestRunnerGit:
    def test_commit_sets_identity(self):
        runner, sandbox = _make_runner()

        run_async(runner.commit("feat: add thing (#1)"))

        assert sandbox.calls[0][:3] == ["git", "config", "user.email"]
        assert sandbox.calls[1][:3] == ["git", "config", "user.name"]
        assert sandbox.calls[2] == ["git", "commit", "-m", "feat: add thing (#1)"]

    def test_staged_diff(self):
        runner, sandbox = _make_runner(lambda cmd: ExecResult(0, "diff --git a b", ""))

        assert run_async(runner.get_staged_diff()) == "diff --git a b"
        assert sandbox.calls == [["git", "diff", "--cached"]]
