"""Confidence scoring.

Combines six signals from a run into a single 0-100 score:

    tests_passing      0.30
    lint_clean         0.10
    change_complexity  0.20
    dependency_risk    0.15
    behavior_risk      0.15
    self_review        0.10

Every function here is pure; the same inputs always give the same score.
"""

import math
from typing import Dict, List, Tuple

from pydantic import BaseModel

from havoc.agents.editor import TaskAction, TaskResult
from havoc.agents.planner import Plan
from havoc.agents.reviewer import Assessment, ReviewResult, Severity
from havoc.agents.tester import LintResults, TestResults


WEIGHTS: Dict[str, float] = {
    "tests_passing": 0.30,
    "lint_clean": 0.10,
    "change_complexity": 0.20,
    "dependency_risk": 0.15,
    "behavior_risk": 0.15,
    "self_review": 0.10,
}

SIGNAL_LABELS: Dict[str, str] = {
    "tests_passing": "Tests Passing",
    "lint_clean": "Lint Clean",
    "change_complexity": "Change Complexity",
    "dependency_risk": "Dependency Risk",
    "behavior_risk": "Behavior Risk",
    "self_review": "Self-Review",
}

HIGH_CONFIDENCE_THRESHOLD = 80
MEDIUM_CONFIDENCE_THRESHOLD = 60

REVIEW_RISK_PENALTIES = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
}

REVIEW_ISSUE_PENALTIES = {
    Severity.CRITICAL: 30,
    Severity.HIGH: 20,
    Severity.MEDIUM: 10,
    Severity.LOW: 3,
}


class ConfidenceBreakdown(BaseModel):
    """Rounded sub-scores behind a confidence score, each 0-100."""

    tests_passing: int
    lint_clean: int
    change_complexity: int
    dependency_risk: int
    behavior_risk: int
    self_review: int


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up.

    Python's round() rounds half to even, which would score 92.5 as 92.
    """
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def _tests_score(results: TestResults) -> float:
    if not results.ran:
        return 50
    if not results.passed:
        return max(0.0, results.pass_rate - 20)
    return results.pass_rate


def _lint_score(results: LintResults) -> float:
    if not results.ran:
        return 70
    if results.passed:
        return 100
    error_penalty = min(50, results.errors * 10)
    warning_penalty = min(20, results.warnings * 2)
    return max(0, 100 - error_penalty - warning_penalty)


def _complexity_score(task_results: List[TaskResult], plan: Plan) -> float:
    successful = sum(1 for r in task_results if r.success)
    total = len(plan.tasks)

    score = successful / total * 100 if total > 0 else 50.0

    if total > 10:
        score -= (total - 10) * 2

    file_changes = sum(
        1 for r in task_results if r.success and r.action != TaskAction.SKIPPED
    )
    if file_changes > 5:
        score -= (file_changes - 5) * 3

    return _clamp(score)


def _dependency_score(plan: Plan) -> float:
    score = 100

    for task in plan.tasks:
        details = task.details.lower()
        if "npm install" in details or "add dependency" in details:
            score -= 15
        if "external api" in details or "third-party" in details:
            score -= 10

    for risk in plan.risks:
        text = risk.lower()
        if "dependency" in text or "package" in text:
            score -= 10

    return max(0, score)


def _behavior_score(plan: Plan, review: ReviewResult) -> float:
    score = 100

    for task in plan.tasks:
        file = task.file.lower()
        details = task.details.lower()

        if "migration" in file or "database" in details or "schema" in details:
            score -= 15
        if "auth" in file or "security" in details or "password" in details:
            score -= 10
        if "config" in file or ".env" in file:
            score -= 5

    for risk in review.risks:
        score -= REVIEW_RISK_PENALTIES[risk.severity]

    return max(0, score)


def _self_review_score(review: ReviewResult) -> float:
    score = review.confidence

    if review.overall_assessment == Assessment.APPROVE:
        score = max(score, 70)
    elif review.overall_assessment == Assessment.REQUEST_CHANGES:
        score = min(score, 50)
    elif review.overall_assessment == Assessment.NEEDS_DISCUSSION:
        score = min(score, 60)

    for issue in review.issues:
        score -= REVIEW_ISSUE_PENALTIES[issue.severity]

    return _clamp(score)


def calculate_confidence_score(
    task_results: List[TaskResult],
    tests: TestResults,
    lint: LintResults,
    review: ReviewResult,
    plan: Plan,
) -> Tuple[int, ConfidenceBreakdown]:
    """Calculate the weighted confidence score for a run.

    Args:
        task_results: Results of every executed task.
        tests: Test run outcome.
        lint: Lint run outcome.
        review: Self-review outcome.
        plan: The plan the tasks came from.

    Returns:
        Tuple of (score, breakdown). The score is clamped to [0, 100] and
        both the score and the breakdown values are rounded half up.
    """
    signals = {
        "tests_passing": _tests_score(tests),
        "lint_clean": _lint_score(lint),
        "change_complexity": _complexity_score(task_results, plan),
        "dependency_risk": _dependency_score(plan),
        "behavior_risk": _behavior_score(plan, review),
        "self_review": _self_review_score(review),
    }

    weighted = sum(value * WEIGHTS[name] for name, value in signals.items())
    score = int(_clamp(round_half_up(weighted)))

    breakdown = ConfidenceBreakdown(
        **{name: round_half_up(value) for name, value in signals.items()}
    )
    return score, breakdown


def get_confidence_level(score: int) -> Tuple[str, str, str]:
    """Map a score to (level, emoji, message)."""
    if score >= HIGH_CONFIDENCE_THRESHOLD:
        return (
            "high",
            "🟢",
            "High confidence - changes look good and well-tested",
        )
    if score >= MEDIUM_CONFIDENCE_THRESHOLD:
        return (
            "medium",
            "🟡",
            "Medium confidence - review recommended before merge",
        )
    return "low", "🔴", "Low confidence - careful review required"


def format_confidence_score(score: int, breakdown: ConfidenceBreakdown) -> str:
    """Render a score and its breakdown as a Markdown table."""
    level, emoji, message = get_confidence_level(score)
    values = breakdown.model_dump()

    rows = "\n".join(
        f"| {label} | {values[name]}% | {WEIGHTS[name] * 100:.0f}% "
        f"| {round_half_up(values[name] * WEIGHTS[name])} |"
        for name, label in SIGNAL_LABELS.items()
    )

    return f"""## Confidence Score

{emoji} **{score}%** - {level.upper()}

{message}

### Breakdown

| Signal | Score | Weight | Contribution |
|--------|-------|--------|--------------|
{rows}
"""
