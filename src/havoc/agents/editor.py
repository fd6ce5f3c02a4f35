"""Task executor agent.

Executes sorted plan tasks one by one against the sandbox workspace:
create and test tasks generate new files, modify tasks rewrite an existing
file through the LLM, and delete tasks remove a file. Each task yields a
TaskResult with a display diff. A failing task is recorded as skipped and
execution moves on to the next one.
"""

import logging
import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from havoc.agents.analyzer import CodebaseContext
from havoc.agents.planner import Task, TaskType
from havoc.config import HavocConfig, is_file_protected
from havoc.events.emitter import EventEmitter, safe_emit
from havoc.events.models import RunEvent, RunEventType
from havoc.llm.client import LLMClient
from havoc.sandbox.runner import SandboxRunner, normalize_workspace_path

logger = logging.getLogger(__name__)


class TaskAction(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    SKIPPED = "skipped"


@dataclass
class TaskResult:
    """Outcome of one executed task.

    Attributes:
        task_id: Id of the plan task.
        success: Whether the file operation completed.
        file: Repository-relative path the task acted on.
        action: What happened to the file.
        error: Why the task was skipped, if it was.
        diff: Display diff of the change, if any.
    """

    task_id: int
    success: bool
    file: str
    action: TaskAction
    error: Optional[str] = None
    diff: Optional[str] = None


class TaskExecutionError(Exception):
    """Raised inside the executor when a task's file operation fails.

    Always absorbed into a skipped TaskResult; never leaves execute_tasks.
    """

    def __init__(self, task_id: int, file: str, message: str):
        self.task_id = task_id
        self.file = file
        super().__init__(message)


def strip_code_fence_lines(text: str) -> str:
    """Drop an opening ``` line and, if it is the last line, the closing one."""
    cleaned = text.strip()
    if not cleaned.startswith("```"):
        return cleaned

    lines = cleaned.split("\n")
    lines.pop(0)
    if lines and lines[-1] == "```":
        lines.pop()
    return "\n".join(lines)


def generate_simple_diff(old_content: str, new_content: str, filename: str) -> str:
    """Build a display diff by aligning lines at equal indexes.

    A single hunk starts two lines before the first differing line.
    Differing lines are shown as removed and added, equal lines inside the
    hunk as context. This is not a minimal diff. Identical content gives an
    empty string.
    """
    old_lines = old_content.split("\n")
    new_lines = new_content.split("\n")

    diff = [f"--- a/{filename}", f"+++ b/{filename}"]
    in_hunk = False

    for i in range(max(len(old_lines), len(new_lines))):
        old_line = old_lines[i] if i < len(old_lines) else None
        new_line = new_lines[i] if i < len(new_lines) else None

        if old_line != new_line:
            if not in_hunk:
                hunk_start = max(0, i - 2)
                diff.append(f"@@ -{hunk_start + 1} +{hunk_start + 1} @@")
                in_hunk = True
            if old_line is not None:
                diff.append(f"-{old_line}")
            if new_line is not None:
                diff.append(f"+{new_line}")
        elif in_hunk:
            diff.append(f" {old_line}")

    if not in_hunk:
        return ""
    return "\n".join(diff)


def _new_file_diff(file: str, code: str, label: str) -> str:
    added = "\n".join(f"+ {line}" for line in code.split("\n"))
    return f"+++ {file} ({label})\n{added}"


def combine_diffs(results: List[TaskResult]) -> str:
    """Join the non-empty task diffs with blank lines."""
    return "\n\n".join(r.diff for r in results if r.diff)


class TaskExecutor:
    """Executes plan tasks inside a sandbox.

    Attributes:
        runner: Runner bound to the run's sandbox.
        config: Repository config supplying protected files.
        llm: LLM client used to generate and edit code.
    """

    def __init__(
        self,
        runner: SandboxRunner,
        config: HavocConfig,
        llm: LLMClient,
        emitter: Optional[EventEmitter] = None,
    ):
        self.runner = runner
        self.config = config
        self.llm = llm
        self._emitter = emitter

    async def _emit(self, event_type: RunEventType, message: str, task: Task) -> None:
        await safe_emit(
            self._emitter,
            RunEvent(
                run_id=self.runner.sandbox.run_id,
                event_type=event_type,
                message=message,
                data={"file": task.file, "action": task.kind},
            ),
        )

    async def execute_all(
        self, tasks: List[Task], context: CodebaseContext
    ) -> List[TaskResult]:
        """Execute tasks sequentially in the given order."""
        results: List[TaskResult] = []

        for task in tasks:
            logger.info(
                "Executing task",
                extra={"task_id": task.id, "task_type": task.kind, "file": task.file},
            )
            await self._emit(
                RunEventType.TASK, f"Task {task.id}: {task.description}", task
            )

            result = await self.execute(task, context)
            results.append(result)

            if not result.success:
                logger.warning(
                    "Task failed",
                    extra={"task_id": task.id, "file": task.file, "error": result.error},
                )
                await self._emit(
                    RunEventType.ERROR, f"Task {task.id} failed: {result.error}", task
                )

        return results

    async def execute(self, task: Task, context: CodebaseContext) -> TaskResult:
        """Execute one task, turning any failure into a skipped result.

        The task's path is normalized first so aliases such as `./.env` or
        `/workspace/.env` hit the protected-file check like `.env` does.
        """
        file = normalize_workspace_path(task.file)
        if file is None:
            return self._skipped(task, f"File is outside the workspace: {task.file}")
        if file != task.file:
            task = task.model_copy(update={"file": file})

        if is_file_protected(task.file, self.config.protected_files):
            return self._skipped(task, f"File is protected: {task.file}")

        try:
            if task.kind == TaskType.CREATE:
                return await self._create_file(task, context)
            if task.kind == TaskType.MODIFY:
                return await self._modify_file(task, context)
            if task.kind == TaskType.DELETE:
                return await self._delete_file(task)
            if task.kind == TaskType.TEST:
                return await self._create_test_file(task, context)
            return self._skipped(task, f"Unknown task type: {task.kind}")
        except Exception as e:
            return self._skipped(task, str(e))

    @staticmethod
    def _skipped(task: Task, error: str) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            success=False,
            file=task.file,
            action=TaskAction.SKIPPED,
            error=error,
        )

    async def _ensure_parent_dir(self, file: str) -> None:
        directory = posixpath.dirname(file)
        if directory and directory != ".":
            await self.runner.mkdir(directory)

    async def _write(self, task: Task, content: str) -> None:
        result = await self.runner.write_file(task.file, content)
        if result.exit_code != 0:
            raise TaskExecutionError(task.id, task.file, result.stderr)

    async def _create_file(self, task: Task, context: CodebaseContext) -> TaskResult:
        await self._ensure_parent_dir(task.file)

        code = await self.llm.generate_code(
            task.details,
            f"Language: {context.language}, Framework: {context.framework or 'None'}, "
            f"File: {task.file}",
        )
        await self._write(task, code)

        return TaskResult(
            task_id=task.id,
            success=True,
            file=task.file,
            action=TaskAction.CREATED,
            diff=_new_file_diff(task.file, code, "new file"),
        )

    async def _create_test_file(
        self, task: Task, context: CodebaseContext
    ) -> TaskResult:
        code = await self.llm.generate_code(
            f"Write tests for: {task.details}",
            f"Language: {context.language}, Framework: {context.framework or 'None'}, "
            f"Test file: {task.file}",
        )

        await self._ensure_parent_dir(task.file)
        await self._write(task, code)

        return TaskResult(
            task_id=task.id,
            success=True,
            file=task.file,
            action=TaskAction.CREATED,
            diff=_new_file_diff(task.file, code, "new test file"),
        )

    async def _modify_file(self, task: Task, context: CodebaseContext) -> TaskResult:
        existing = await self.runner.read_file(task.file)
        if existing is None:
            return await self._create_file(task, context)

        prompt = f"""You are modifying an existing file. Apply the following changes.

## File: {task.file}

## Current Content
```
{existing}
```

## Requested Changes
{task.details}

## Instructions
- Apply the requested changes to the file
- Maintain the existing code style
- Keep all existing functionality unless explicitly asked to change it
- Output ONLY the complete modified file content, no explanations

## Output
Return the complete modified file:"""

        modified = strip_code_fence_lines(await self.llm.ask(prompt))
        await self._write(task, modified)

        return TaskResult(
            task_id=task.id,
            success=True,
            file=task.file,
            action=TaskAction.MODIFIED,
            diff=generate_simple_diff(existing, modified, task.file) or None,
        )

    async def _delete_file(self, task: Task) -> TaskResult:
        result = await self.runner.remove_file(task.file)
        if result.exit_code != 0:
            raise TaskExecutionError(task.id, task.file, result.stderr)

        return TaskResult(
            task_id=task.id,
            success=True,
            file=task.file,
            action=TaskAction.DELETED,
            diff=f"--- {task.file} (deleted)",
        )


async def execute_tasks(
    tasks: List[Task],
    runner: SandboxRunner,
    config: HavocConfig,
    llm: LLMClient,
    context: CodebaseContext,
    emitter: Optional[EventEmitter] = None,
) -> List[TaskResult]:
    """Execute sorted tasks and return one result per task, in order."""
    executor = TaskExecutor(runner, config, llm, emitter)
    return await executor.execute_all(tasks, context)
