"""Issue analyzer agent.

Gathers context about the cloned codebase through the sandbox runner and
asks the LLM to turn the issue into a structured IssueSpec.
"""

import json
import logging
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from havoc.llm.client import LLMClient
from havoc.sandbox.runner import SandboxRunner


logger = logging.getLogger(__name__)

MAX_DEPENDENCIES = 20
MAX_RELEVANT_FILES = 50
EXCLUDED_PATH_PARTS = {"node_modules", ".git"}

# First match wins
FRAMEWORK_PACKAGES = [
    ("next", "Next.js"),
    ("react", "React"),
    ("vue", "Vue"),
    ("express", "Express"),
    ("fastify", "Fastify"),
]

TEST_FRAMEWORK_PACKAGES = [
    ("jest", "Jest"),
    ("vitest", "Vitest"),
    ("mocha", "Mocha"),
]


class IssueType(str, Enum):
    """Kind of change an issue asks for."""

    BUG = "bug"
    FEATURE = "feature"
    REFACTOR = "refactor"
    DOCS = "docs"
    OTHER = "other"


class IssueSpec(BaseModel):
    """Structured specification extracted from an issue.

    Attributes:
        type: Kind of change requested.
        summary: One-paragraph summary of the work.
        requirements: Concrete requirements the change must meet.
        affected_areas: Parts of the codebase expected to change.
        assumptions: Assumptions made while interpreting the issue.
        out_of_scope: Work explicitly excluded.
        acceptance_criteria: Conditions for the issue to count as done.
    """

    type: IssueType = Field(default=IssueType.OTHER)
    summary: str = Field(default="")
    requirements: List[str] = Field(default_factory=list)
    affected_areas: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
    out_of_scope: List[str] = Field(default_factory=list)
    acceptance_criteria: List[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: object) -> object:
        """Map unrecognised issue types to `other`."""
        if isinstance(v, str):
            value = v.strip().lower()
            valid = {t.value for t in IssueType}
            if value not in valid:
                logger.warning(
                    "Invalid issue type from LLM, defaulting to other",
                    extra={"received_type": v},
                )
                return IssueType.OTHER
            return value
        return v


class CodebaseContext(BaseModel):
    """What the analyzer learned about the repository."""

    language: str = "unknown"
    framework: Optional[str] = None
    test_framework: Optional[str] = None
    relevant_files: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    spec: IssueSpec
    context: CodebaseContext


def _is_excluded(path: str) -> bool:
    return any(part in EXCLUDED_PATH_PARTS for part in path.split("/"))


async def gather_codebase_context(runner: SandboxRunner) -> CodebaseContext:
    """Inspect the workspace for language, frameworks and source files.

    Args:
        runner: Runner bound to the run's sandbox.

    Returns:
        The detected CodebaseContext. Detection failures leave defaults.
    """
    context = CodebaseContext()

    package_json = await runner.read_file("package.json")
    if package_json:
        try:
            pkg = json.loads(package_json)
            all_deps = {
                **(pkg.get("dependencies") or {}),
                **(pkg.get("devDependencies") or {}),
            }
            context.language = "javascript/typescript"
            context.framework = next(
                (name for dep, name in FRAMEWORK_PACKAGES if dep in all_deps), None
            )
            context.test_framework = next(
                (name for dep, name in TEST_FRAMEWORK_PACKAGES if dep in all_deps),
                None,
            )
            context.dependencies = list(all_deps)[:MAX_DEPENDENCIES]
        except (ValueError, AttributeError) as e:
            logger.warning("Failed to parse package.json", extra={"error": str(e)})

    if await runner.file_exists("go.mod"):
        context.language = "go"
    elif await runner.file_exists("Cargo.toml"):
        context.language = "rust"
    elif await runner.file_exists("requirements.txt") or await runner.file_exists(
        "pyproject.toml"
    ):
        context.language = "python"

    files = await runner.list_files(".")
    context.relevant_files = [f for f in files if not _is_excluded(f)][
        :MAX_RELEVANT_FILES
    ]

    return context


def _build_analysis_prompt(title: str, body: str, context: CodebaseContext) -> str:
    return f"""You are an expert software engineer analyzing a GitHub issue. Extract a structured specification from this issue.

## Issue Title
{title}

## Issue Body
{body or "(no description provided)"}

## Codebase Context
- Language: {context.language}
- Framework: {context.framework or "None detected"}
- Test Framework: {context.test_framework or "None detected"}
- Key Dependencies: {", ".join(context.dependencies[:10])}

## Task
Analyze this issue and extract a structured specification. Determine:
1. The type of change (bug fix, feature, refactor, docs, or other)
2. A clear summary of what needs to be done
3. Specific requirements that must be met
4. Areas of the codebase that will be affected
5. Assumptions being made
6. What is explicitly out of scope
7. Acceptance criteria for completion

## Output Format
Respond with a JSON object:
{{
  "type": "bug" | "feature" | "refactor" | "docs" | "other",
  "summary": "Brief summary of the change",
  "requirements": ["requirement 1", "requirement 2"],
  "affected_areas": ["area 1", "area 2"],
  "assumptions": ["assumption 1", "assumption 2"],
  "out_of_scope": ["item 1", "item 2"],
  "acceptance_criteria": ["criteria 1", "criteria 2"]
}}"""


async def analyze_issue(
    title: str,
    body: str,
    runner: SandboxRunner,
    llm: LLMClient,
) -> AnalysisResult:
    """Analyze an issue against the cloned codebase.

    Args:
        title: Issue title.
        body: Issue body.
        runner: Runner bound to the run's sandbox.
        llm: LLM client.

    Returns:
        The issue spec and codebase context.

    Raises:
        GenerationError: If the LLM cannot produce a valid spec.
    """
    context = await gather_codebase_context(runner)
    spec = await llm.ask_structured(
        _build_analysis_prompt(title, body, context), IssueSpec
    )

    logger.info(
        "Analyzed issue",
        extra={
            "issue_type": spec.type.value,
            "language": context.language,
            "relevant_files": len(context.relevant_files),
        },
    )
    return AnalysisResult(spec=spec, context=context)


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def format_analysis(result: AnalysisResult) -> str:
    """Render an analysis as Markdown."""
    spec, context = result.spec, result.context
    return f"""## Issue Analysis

### Type
{spec.type.value}

### Summary
{spec.summary}

### Requirements
{_bullets(spec.requirements)}

### Affected Areas
{_bullets(spec.affected_areas)}

### Assumptions
{_bullets(spec.assumptions)}

### Out of Scope
{_bullets(spec.out_of_scope)}

### Acceptance Criteria
{_bullets(spec.acceptance_criteria)}

---

### Codebase Context
- **Language:** {context.language}
- **Framework:** {context.framework or "None"}
- **Test Framework:** {context.test_framework or "None"}
- **Relevant Files:** {len(context.relevant_files)} files identified
"""
