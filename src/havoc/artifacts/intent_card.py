"""Intent card generation.

The intent card is the explanation attached to every pull request Havoc
opens: what the issue asked for, what was changed and why, which tests
were added, the risks found, and how confident the run is.
"""

import re
from datetime import datetime, timezone
from typing import List

from pydantic import BaseModel, Field

from havoc.agents.analyzer import AnalysisResult
from havoc.agents.editor import TaskAction, TaskResult
from havoc.agents.planner import Plan
from havoc.agents.reviewer import ReviewResult
from havoc.artifacts.confidence import ConfidenceBreakdown, get_confidence_level


HAVOC_URL = "https://usehavoc.dev"

PR_TITLE_PREFIXES = {
    "bug": "fix",
    "feature": "feat",
    "refactor": "refactor",
    "docs": "docs",
    "other": "chore",
}

RISK_EMOJI = {
    "critical": "🔴",
    "high": "🟠",
    "medium": "🟡",
}

_TAG_PREFIX = re.compile(r"^\[.*?\]\s*")
_CONVENTIONAL_PREFIX = re.compile(
    r"^(fix|feat|add|update|remove|refactor):\s*", re.IGNORECASE
)


class FileChange(BaseModel):
    file: str
    action: str
    rationale: str


class RiskItem(BaseModel):
    severity: str
    description: str


class IntentCard(BaseModel):
    """Everything a reviewer needs to understand a run's pull request."""

    run_id: str
    issue_number: int
    issue_title: str
    issue_summary: str = ""
    type: str = "other"
    scope: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
    approach: str = ""
    files_changed: List[FileChange] = Field(default_factory=list)
    tests_added: List[str] = Field(default_factory=list)
    risk_assessment: List[RiskItem] = Field(default_factory=list)
    confidence_score: int
    confidence_breakdown: ConfidenceBreakdown
    self_review_summary: str = ""
    generated_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


def generate_intent_card(
    run_id: str,
    issue_number: int,
    issue_title: str,
    analysis: AnalysisResult,
    plan: Plan,
    task_results: List[TaskResult],
    review: ReviewResult,
    confidence_score: int,
    breakdown: ConfidenceBreakdown,
) -> IntentCard:
    """Assemble an intent card from a run's artifacts.

    The rationale for each changed file is the description of the first
    plan task targeting it. Tests added are successfully created files
    whose path contains "test".
    """
    descriptions = {}
    for task in plan.tasks:
        descriptions.setdefault(task.file, task.description)

    files_changed = [
        FileChange(
            file=r.file,
            action=r.action.value,
            rationale=descriptions.get(r.file) or "N/A",
        )
        for r in task_results
        if r.success
    ]

    tests_added = [
        r.file
        for r in task_results
        if r.success and r.action == TaskAction.CREATED and "test" in r.file
    ]

    risks = [RiskItem(severity="medium", description=risk) for risk in plan.risks]
    risks.extend(
        RiskItem(severity=risk.severity.value, description=risk.message)
        for risk in review.risks
    )

    return IntentCard(
        run_id=run_id,
        issue_number=issue_number,
        issue_title=issue_title,
        issue_summary=analysis.spec.summary,
        type=analysis.spec.type.value,
        scope=analysis.spec.affected_areas,
        assumptions=analysis.spec.assumptions,
        approach=plan.approach,
        files_changed=files_changed,
        tests_added=tests_added,
        risk_assessment=risks,
        confidence_score=confidence_score,
        confidence_breakdown=breakdown,
        self_review_summary=review.summary,
    )


def _bullets(items: List[str], empty: str) -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def format_intent_card(card: IntentCard) -> str:
    """Render an intent card as Markdown."""
    _, confidence_emoji, _ = get_confidence_level(card.confidence_score)
    breakdown = card.confidence_breakdown

    if card.files_changed:
        files = "\n".join(
            f"| `{f.file}` | {f.action} | {f.rationale} |" for f in card.files_changed
        )
    else:
        files = "| _No files_ | _n/a_ | _n/a_ |"

    if card.tests_added:
        tests = "\n".join(f"- `{t}`" for t in card.tests_added)
    else:
        tests = "_No new tests added_"

    if card.risk_assessment:
        risks = "\n".join(
            f"{RISK_EMOJI.get(r.severity, '🟢')} **[{(r.severity or 'low').upper()}]** "
            f"{r.description}"
            for r in card.risk_assessment
        )
    else:
        risks = "✅ No significant risks identified"

    return f"""# 📋 Intent Card

> **Every AI-generated PR deserves an explanation.**

## Issue Summary
**#{card.issue_number}:** {card.issue_title}

{card.issue_summary}

## Change Type
`{(card.type or "unknown").upper()}`

## Scope and Assumptions

### Affected Areas
{_bullets(card.scope, "_No areas listed_")}

### Assumptions
{_bullets(card.assumptions, "_No assumptions listed_")}

## Planned Approach
{card.approach}

## Files Changed

| File | Action | Rationale |
|------|--------|-----------|
{files}

## Tests Added
{tests}

## Risk Assessment

{risks}

## Confidence Score

{confidence_emoji} **{card.confidence_score}%**

| Signal | Score |
|--------|-------|
| Tests Passing | {breakdown.tests_passing}% |
| Lint Clean | {breakdown.lint_clean}% |
| Change Complexity | {breakdown.change_complexity}% |
| Dependency Risk | {breakdown.dependency_risk}% |
| Behavior Risk | {breakdown.behavior_risk}% |
| Self-Review | {breakdown.self_review}% |

## Self-Review Summary
{card.self_review_summary}

---

<sub>Generated by [Havoc]({HAVOC_URL}) | Run ID: `{card.run_id}` | {card.generated_at}</sub>
"""


def generate_pr_title(card: IntentCard) -> str:
    """Build a conventional-commit style PR title.

    Example:
        "[BUG] Fix: Crash on empty config" for issue 7 of type bug becomes
        "fix: crash on empty config (#7)".
    """
    prefix = PR_TITLE_PREFIXES.get(card.type, "chore")

    title = card.issue_title.lower()
    title = _TAG_PREFIX.sub("", title, count=1)
    title = _CONVENTIONAL_PREFIX.sub("", title, count=1).strip()

    return f"{prefix}: {title} (#{card.issue_number})"


def generate_pr_body(card: IntentCard, diff: str) -> str:
    """Build the pull request body with the intent card and diff folded in."""
    changes = "\n".join(
        f"- **{f.action}** `{f.file}`: {f.rationale}" for f in card.files_changed
    )

    if card.tests_added:
        tests = "### New Tests\n" + "\n".join(f"- `{t}`" for t in card.tests_added)
    else:
        tests = "_No new tests_"

    diff_section = ""
    if diff:
        diff_section = (
            "<details>\n<summary>View Diff</summary>\n\n"
            f"```diff\n{diff}\n```\n\n</details>\n\n"
        )

    return f"""## Summary

This PR addresses issue #{card.issue_number}: **{card.issue_title}**

{card.issue_summary}

## Changes

{changes}

## Test Results

{tests}

## Confidence Score: {card.confidence_score}%

<details>
<summary>📋 View Full Intent Card</summary>

{format_intent_card(card)}

</details>

{diff_section}---

🤖 _This PR was automatically generated by [Havoc]({HAVOC_URL})_
"""
