"""Planner agent and task ordering.

create_plan asks the LLM for a file-level implementation plan.
validate_plan reports dependency problems in a plan, and sort_tasks orders
tasks so every task comes after the tasks it depends on.
"""

import logging
from enum import Enum
from typing import Dict, List, Set

from pydantic import BaseModel, ConfigDict, Field

from havoc.agents.analyzer import AnalysisResult
from havoc.llm.client import LLMClient
from havoc.sandbox.runner import SandboxRunner


logger = logging.getLogger(__name__)

MAX_SAMPLE_FILES = 5
MAX_SAMPLE_FILE_CHARS = 5000
SAMPLE_EXCERPT_CHARS = 1000

PLAN_SYSTEM_PROMPT = "Return ONLY valid JSON. No markdown code blocks. No explanations."


class TaskType(str, Enum):
    """Actions a plan task can take on its file."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    TEST = "test"


class Task(BaseModel):
    """One file-level step of a plan.

    `kind` is kept as a plain string so an unknown action from the LLM
    reaches the executor, which skips it, instead of failing the plan.

    Attributes:
        id: Task number; dependencies must point at lower ids.
        kind: create, modify, delete or test. Serialized as "type".
        file: Repository-relative path the task acts on.
        description: Short description for humans.
        details: Instructions for the code generator.
        dependencies: Ids of tasks that must run first.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int
    kind: str = Field(alias="type")
    file: str
    description: str = ""
    details: str = ""
    dependencies: List[int] = Field(default_factory=list)


class Plan(BaseModel):
    """Implementation plan for an issue."""

    summary: str = ""
    approach: str = ""
    tasks: List[Task] = Field(default_factory=list)
    test_strategy: str = ""
    risks: List[str] = Field(default_factory=list)


class PlanValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


def _build_plan_prompt(analysis: AnalysisResult, samples: Dict[str, str]) -> str:
    spec, context = analysis.spec, analysis.context
    sample_sections = "\n\n".join(
        f"### {file}\n```\n{content[:SAMPLE_EXCERPT_CHARS]}\n```"
        for file, content in samples.items()
    )

    return f"""You are an expert software engineer creating a detailed implementation plan.

## Issue Specification
- Type: {spec.type.value}
- Summary: {spec.summary}
- Requirements: {", ".join(spec.requirements)}
- Affected Areas: {", ".join(spec.affected_areas)}
- Acceptance Criteria: {", ".join(spec.acceptance_criteria)}

## Codebase Context
- Language: {context.language}
- Framework: {context.framework or "None"}
- Test Framework: {context.test_framework or "None"}
- Files: {", ".join(context.relevant_files[:20])}

## Sample File Contents
{sample_sections}

## Task
Create a detailed implementation plan with specific tasks. Each task should:
1. Target a specific file
2. Have a clear action (create, modify, delete, or test)
3. Include detailed instructions
4. List dependencies on other tasks (only tasks with a lower id)

## Output Format
Return ONLY valid JSON, no markdown, no explanations:
{{"summary": "...", "approach": "...", "tasks": [{{"id": 1, "type": "modify", "file": "src/example.ts", "description": "...", "details": "...", "dependencies": []}}], "test_strategy": "...", "risks": ["..."]}}

Valid task types: create, modify, delete, test
Keep descriptions SHORT (under 100 chars). No special characters in strings."""


async def create_plan(
    analysis: AnalysisResult,
    runner: SandboxRunner,
    llm: LLMClient,
) -> Plan:
    """Ask the LLM for an implementation plan.

    A few small relevant files are read from the workspace and included
    in the prompt as samples of the codebase.

    Raises:
        GenerationError: If the LLM cannot produce a valid plan.
    """
    samples: Dict[str, str] = {}
    for file in analysis.context.relevant_files[:MAX_SAMPLE_FILES]:
        content = await runner.read_file(file)
        if content and len(content) < MAX_SAMPLE_FILE_CHARS:
            samples[file] = content

    plan = await llm.ask_structured(
        _build_plan_prompt(analysis, samples),
        Plan,
        system_prompt=PLAN_SYSTEM_PROMPT,
    )
    logger.info("Created plan", extra={"task_count": len(plan.tasks)})
    return plan


def validate_plan(plan: Plan) -> PlanValidation:
    """Collect every dependency problem in a plan.

    A dependency is reported when it names a task that does not exist, and
    separately when it points at the same or a later task id.
    """
    errors: List[str] = []
    task_ids = {task.id for task in plan.tasks}

    for task in plan.tasks:
        for dep in task.dependencies:
            if dep not in task_ids:
                errors.append(f"Task {task.id} depends on non-existent task {dep}")
            if dep >= task.id:
                errors.append(f"Task {task.id} has forward dependency on task {dep}")

    return PlanValidation(valid=not errors, errors=errors)


def sort_tasks(tasks: List[Task]) -> List[Task]:
    """Order tasks so that each comes after its dependencies.

    Depth-first post-order from each task in input order. Each task is
    emitted once; dependencies on missing ids are skipped, and a task is
    marked visited before its dependencies so cycles terminate.
    """
    task_map = {task.id: task for task in tasks}
    visited: Set[int] = set()
    ordered: List[Task] = []

    def visit(task_id: int) -> None:
        if task_id in visited:
            return
        visited.add(task_id)

        task = task_map.get(task_id)
        if task is None:
            return

        for dep in task.dependencies:
            visit(dep)

        ordered.append(task)

    for task in tasks:
        visit(task.id)

    return ordered


def format_plan(plan: Plan) -> str:
    """Render a plan as Markdown."""
    task_lines = []
    for task in plan.tasks:
        entry = f"{task.id}. **[{task.kind.upper()}]** {task.file}\n   {task.description}"
        if task.dependencies:
            entry += f"\n   _Depends on: {', '.join(str(d) for d in task.dependencies)}_"
        task_lines.append(entry)

    tasks = "\n\n".join(task_lines)
    risks = "\n".join(f"- {risk}" for risk in plan.risks)

    return f"""## Implementation Plan

### Summary
{plan.summary}

### Approach
{plan.approach}

### Tasks
{tasks}

### Test Strategy
{plan.test_strategy}

### Risks
{risks}
"""
