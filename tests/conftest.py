"""Pytest configuration for all tests.

Shared fakes:
- WorkspaceSandbox: a dict-backed sandbox understanding the argument
  vectors SandboxRunner issues, so agents run against a real runner
- ScriptedLLM: an LLMClient whose answers are queued up front
"""

import posixpath
import shlex
from typing import Dict, List, Optional, Sequence, Union

import pytest

from havoc.config import HavocConfig
from havoc.llm.client import LLMClient
from havoc.sandbox.manager import ExecResult
from havoc.sandbox.runner import SandboxRunner

WORKDIR = "/workspace/"


class WorkspaceSandbox:
    """In-memory stand-in for a sandbox container."""

    def __init__(
        self,
        files: Optional[Dict[str, str]] = None,
        run_id: str = "run-1",
        commands: Optional[Dict[str, ExecResult]] = None,
    ):
        self.run_id = run_id
        self.workspace_dir = f"/tmp/havoc/{run_id}"
        self.files: Dict[str, str] = dict(files or {})
        self.commands: Dict[str, ExecResult] = dict(commands or {})
        self.calls: List[List[str]] = []

    @staticmethod
    def _rel(path: str) -> str:
        path = posixpath.normpath(path)
        return path[len(WORKDIR):] if path.startswith(WORKDIR) else path

    async def exec(self, command: Sequence[str], timeout_seconds=None) -> ExecResult:
        argv = list(command)
        self.calls.append(argv)
        program = argv[0]

        if program == "cat":
            path = self._rel(argv[1])
            if path in self.files:
                return ExecResult(0, self.files[path], "")
            return ExecResult(1, "", f"cat: {path}: No such file or directory")
        if program == "test":
            return ExecResult(0 if self._rel(argv[2]) in self.files else 1, "", "")
        if program == "rm":
            self.files.pop(self._rel(argv[2]), None)
            return ExecResult(0, "", "")
        if program == "mkdir":
            return ExecResult(0, "", "")
        if program == "find":
            listing = "".join(f"./{path}\n" for path in sorted(self.files))
            return ExecResult(0, listing, "")
        if program == "sh" and argv[2].startswith("printf "):
            parts = shlex.split(argv[2])
            path = self._rel(parts[4])
            if parts[3] == ">>":
                self.files[path] = self.files.get(path, "") + parts[2]
            else:
                self.files[path] = parts[2]
            return ExecResult(0, "", "")
        if program == "sh":
            return self.commands.get(argv[2], ExecResult(0, "", ""))
        return ExecResult(0, "", "")


class ScriptedLLM(LLMClient):
    """LLMClient answering from a queue; exceptions in the queue are raised."""

    def __init__(self, responses: Optional[List[Union[str, Exception]]] = None):
        super().__init__(
            llm_url="http://llm.test/v1",
            model_name="test-model",
            retry_delay_seconds=0,
        )
        self.responses: List[Union[str, Exception]] = list(responses or [])
        self.prompts: List[str] = []

    async def ask(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def havoc_env(monkeypatch):
    """Set the minimum environment HavocSettings requires."""
    monkeypatch.setenv("HAVOC_GITHUB_TOKEN", "ghp_test_token")
    monkeypatch.setenv("HAVOC_LLM_URL", "http://llm.test:8000/v1")
    return monkeypatch


@pytest.fixture
def workspace():
    """Factory for a runner over an in-memory workspace."""

    def make(files=None, config=None, commands=None, emitter=None):
        sandbox = WorkspaceSandbox(files, commands=commands)
        runner = SandboxRunner(sandbox, config or HavocConfig(), emitter)
        return runner, sandbox

    return make


@pytest.fixture
def scripted_llm():
    return ScriptedLLM
