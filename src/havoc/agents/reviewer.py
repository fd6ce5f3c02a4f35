"""Self-review agent.

Asks the LLM to review the combined diff of a run against the original
issue and the test and lint outcomes, producing a structured ReviewResult.
A run that produced no diff is approved without calling the LLM.
"""

import logging
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from havoc.agents.editor import TaskResult, combine_diffs
from havoc.agents.tester import LintResults, TestResults
from havoc.llm.client import LLMClient


logger = logging.getLogger(__name__)

REVIEW_SYSTEM_PROMPT = "Return ONLY valid JSON. No explanations."


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Assessment(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    NEEDS_DISCUSSION = "needs_discussion"


ASSESSMENT_EMOJI = {
    Assessment.APPROVE: "✅",
    Assessment.REQUEST_CHANGES: "⚠️",
    Assessment.NEEDS_DISCUSSION: "💬",
}

SEVERITY_EMOJI = {
    Severity.LOW: "🟢",
    Severity.MEDIUM: "🟡",
    Severity.HIGH: "🟠",
    Severity.CRITICAL: "🔴",
}


class ReviewItem(BaseModel):
    """A single issue, suggestion or risk raised by the reviewer."""

    severity: Severity = Severity.LOW
    file: Optional[str] = None
    line: Optional[int] = None
    message: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        if isinstance(v, str):
            value = v.strip().lower()
            return value if value in {s.value for s in Severity} else Severity.LOW
        return v if v is not None else Severity.LOW


class ReviewResult(BaseModel):
    """Structured self-review of a run's changes.

    Attributes:
        summary: Short overall summary.
        issues: Problems found in the change.
        suggestions: Optional improvements.
        risks: Potential regressions or hazards.
        overall_assessment: approve, request_changes or needs_discussion.
        confidence: Reviewer confidence, 0-100.
    """

    summary: str = ""
    issues: List[ReviewItem] = Field(default_factory=list)
    suggestions: List[ReviewItem] = Field(default_factory=list)
    risks: List[ReviewItem] = Field(default_factory=list)
    overall_assessment: Assessment = Field(
        default=Assessment.NEEDS_DISCUSSION,
        validation_alias=AliasChoices("overall_assessment", "overallAssessment"),
    )
    confidence: int = 0

    @field_validator("issues", "suggestions", "risks", mode="before")
    @classmethod
    def coerce_items(cls, v: Any) -> Any:
        """Accept bare strings as low-severity items."""
        if v is None:
            return []
        if isinstance(v, list):
            return [{"message": item} if isinstance(item, str) else item for item in v]
        return v

    @field_validator("overall_assessment", mode="before")
    @classmethod
    def normalize_assessment(cls, v: Any) -> Any:
        if isinstance(v, str):
            value = v.strip().lower().replace(" ", "_")
            valid = {a.value for a in Assessment}
            return value if value in valid else Assessment.NEEDS_DISCUSSION
        return v if v is not None else Assessment.NEEDS_DISCUSSION

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> int:
        try:
            value = round(float(v))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, value))


def _build_review_prompt(
    diff: str,
    tests: TestResults,
    lint: LintResults,
    title: str,
    body: str,
) -> str:
    error = f"- Error: {tests.error}" if tests.error else ""
    return f"""You are an expert code reviewer performing a thorough review of AI-generated code changes.

## Original Issue
**Title:** {title}
**Description:** {body}

## Code Changes
```diff
{diff}
```

## Test Results
- Tests Ran: {tests.ran}
- Tests Passed: {tests.passed}
- Pass Rate: {tests.pass_rate:.1f}%
- Total Tests: {tests.total}
{error}

## Lint Results
- Lint Passed: {lint.passed}
- Errors: {lint.errors}
- Warnings: {lint.warnings}

## Review Instructions
Perform a comprehensive code review. Consider:
1. Does the change correctly address the issue?
2. Are there any bugs or logical errors?
3. Are edge cases handled?
4. Is the code style consistent?
5. Are there potential security issues?
6. Could this change cause regressions?
7. Is the test coverage adequate?

## Output Format
Return ONLY valid JSON, no markdown:
{{"summary": "...", "issues": [{{"severity": "low", "file": "src/a.ts", "line": 1, "message": "..."}}], "suggestions": [], "risks": [], "overall_assessment": "approve", "confidence": 85}}

Valid severities: low, medium, high, critical
Valid assessments: approve, request_changes, needs_discussion
Confidence: 0-100 integer
Keep all text SHORT and simple. No special characters."""


async def self_review(
    task_results: List[TaskResult],
    tests: TestResults,
    lint: LintResults,
    title: str,
    body: str,
    llm: LLMClient,
) -> ReviewResult:
    """Review the run's changes.

    Returns:
        The LLM's review, or a fixed approval when there is no diff.

    Raises:
        GenerationError: If the LLM cannot produce a valid review.
    """
    diff = combine_diffs(task_results)
    if not diff:
        return ReviewResult(
            summary="No changes to review",
            overall_assessment=Assessment.APPROVE,
            confidence=100,
        )

    review = await llm.ask_structured(
        _build_review_prompt(diff, tests, lint, title, body),
        ReviewResult,
        system_prompt=REVIEW_SYSTEM_PROMPT,
    )
    logger.info(
        "Self-review complete",
        extra={
            "assessment": review.overall_assessment.value,
            "confidence": review.confidence,
            "issues": len(review.issues),
        },
    )
    return review


def format_review_result(review: ReviewResult) -> str:
    """Render a review as Markdown for a pull request comment."""
    assessment = review.overall_assessment
    label = assessment.value.replace("_", " ").upper()

    output = f"""## Self-Review

### Summary
{review.summary or "No summary provided."}

### Overall Assessment
{ASSESSMENT_EMOJI[assessment]} **{label}**

### Confidence Score
**{review.confidence}%**

"""

    if review.issues:
        output += "### Issues Found\n"
        for issue in review.issues:
            output += f"{SEVERITY_EMOJI[issue.severity]} **[{issue.severity.value.upper()}]**"
            if issue.file:
                output += f" `{issue.file}`"
            if issue.line:
                output += f":{issue.line}"
            output += f"\n   {issue.message}\n\n"

    if review.suggestions:
        output += "### Suggestions\n"
        for suggestion in review.suggestions:
            output += f"{SEVERITY_EMOJI[suggestion.severity]} "
            if suggestion.file:
                output += f"`{suggestion.file}`: "
            output += f"{suggestion.message}\n\n"

    if review.risks:
        output += "### Potential Risks\n"
        for risk in review.risks:
            output += (
                f"{SEVERITY_EMOJI[risk.severity]} **[{risk.severity.value.upper()}]** "
                f"{risk.message}\n\n"
            )

    if not (review.issues or review.suggestions or review.risks):
        output += "\n✨ No issues, suggestions, or risks identified. Code looks good!\n"

    return output
