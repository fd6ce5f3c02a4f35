"""Policy gates deciding whether a run may open a pull request.

Six fixed gates are evaluated in order. A failed required gate becomes a
blocker; a failed optional gate becomes a warning. The policy passes when
there are no blockers.
"""

from typing import List, Union

from pydantic import BaseModel, Field

from havoc.agents.reviewer import Assessment, ReviewResult, Severity
from havoc.agents.tester import LintResults, TestResults
from havoc.config import HavocConfig


class GateResult(BaseModel):
    """Outcome of a single policy gate."""

    name: str
    passed: bool
    required: bool
    actual: Union[int, float, str]
    threshold: Union[int, float, str]
    message: str


class PolicyResult(BaseModel):
    """Aggregated gate outcomes.

    Attributes:
        passed: True when no required gate failed.
        gates: Every gate result, in evaluation order.
        blockers: Messages of failed required gates.
        warnings: Messages of failed optional gates.
    """

    passed: bool
    gates: List[GateResult] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


def _confidence_gate(config: HavocConfig, score: int) -> GateResult:
    passed = score >= config.min_confidence
    verdict = "meets" if passed else "is below"
    return GateResult(
        name="Minimum Confidence",
        passed=passed,
        required=True,
        actual=score,
        threshold=config.min_confidence,
        message=f"Confidence score {score}% {verdict} threshold of {config.min_confidence}%",
    )


def _test_pass_rate_gate(config: HavocConfig, tests: TestResults) -> GateResult:
    if not tests.ran:
        return GateResult(
            name="Test Pass Rate",
            passed=True,
            required=True,
            actual="N/A",
            threshold=config.min_test_pass_rate,
            message="Tests did not run (gate skipped)",
        )

    passed = tests.pass_rate >= config.min_test_pass_rate
    verdict = "meets" if passed else "is below"
    return GateResult(
        name="Test Pass Rate",
        passed=passed,
        required=True,
        actual=tests.pass_rate,
        threshold=config.min_test_pass_rate,
        message=(
            f"Test pass rate {tests.pass_rate:.1f}% {verdict} threshold of "
            f"{config.min_test_pass_rate}%"
        ),
    )


def _tests_executed_gate(tests: TestResults) -> GateResult:
    return GateResult(
        name="Tests Executed",
        passed=tests.ran,
        required=False,
        actual="Yes" if tests.ran else "No",
        threshold="Yes",
        message=(
            f"Tests executed successfully ({tests.total} tests)"
            if tests.ran
            else "Tests did not execute"
        ),
    )


def _lint_gate(lint: LintResults) -> GateResult:
    return GateResult(
        name="Lint Clean",
        passed=lint.passed,
        required=False,
        actual=lint.errors,
        threshold=0,
        message="No lint errors" if lint.passed else f"{lint.errors} lint errors found",
    )


def _critical_issues_gate(review: ReviewResult) -> GateResult:
    critical = [i for i in review.issues if i.severity == Severity.CRITICAL]
    passed = not critical
    return GateResult(
        name="No Critical Issues",
        passed=passed,
        required=True,
        actual=len(critical),
        threshold=0,
        message=(
            "No critical issues identified"
            if passed
            else f"{len(critical)} critical issue(s) found: "
            + "; ".join(i.message for i in critical)
        ),
    )


def _assessment_gate(review: ReviewResult) -> GateResult:
    assessment = review.overall_assessment
    passed = assessment != Assessment.REQUEST_CHANGES
    return GateResult(
        name="Review Assessment",
        passed=passed,
        required=False,
        actual=assessment.value,
        threshold="approve or needs_discussion",
        message=(
            f"Review assessment: {assessment.value}"
            if passed
            else "Self-review requested changes"
        ),
    )


def check_policy_gates(
    config: HavocConfig,
    confidence_score: int,
    tests: TestResults,
    lint: LintResults,
    review: ReviewResult,
) -> PolicyResult:
    """Evaluate all policy gates for a run.

    Args:
        config: Repository config supplying the thresholds.
        confidence_score: The run's confidence score.
        tests: Test run outcome.
        lint: Lint run outcome.
        review: Self-review outcome.

    Returns:
        PolicyResult with gates in evaluation order.
    """
    gates = [
        _confidence_gate(config, confidence_score),
        _test_pass_rate_gate(config, tests),
        _tests_executed_gate(tests),
        _lint_gate(lint),
        _critical_issues_gate(review),
        _assessment_gate(review),
    ]

    blockers: List[str] = []
    warnings: List[str] = []

    for gate in gates:
        if gate.passed:
            continue
        if gate.required:
            blockers.append(gate.message)
        else:
            warnings.append(gate.message)

    return PolicyResult(
        passed=not blockers,
        gates=gates,
        blockers=blockers,
        warnings=warnings,
    )


def format_policy_result(result: PolicyResult) -> str:
    """Render policy gate results as Markdown."""
    icon = "✅" if result.passed else "❌"
    status = "ALL GATES PASSED" if result.passed else "GATES FAILED"

    rows = []
    for gate in result.gates:
        gate_icon = "✅" if gate.passed else ("❌" if gate.required else "⚠️")
        rows.append(f"| {gate.name} | {gate_icon} | {gate.actual} | {gate.threshold} |")
    table = "\n".join(rows)

    output = f"""## Policy Gates

{icon} **{status}**

### Gate Results

| Gate | Status | Actual | Threshold |
|------|--------|--------|-----------|
{table}

"""

    if result.blockers:
        output += "### Blockers\n"
        output += "\n".join(f"- ❌ {b}" for b in result.blockers)
        output += "\n\n"

    if result.warnings:
        output += "### Warnings\n"
        output += "\n".join(f"- ⚠️ {w}" for w in result.warnings)
        output += "\n\n"

    return output


def get_policy_summary(result: PolicyResult) -> str:
    """One-line summary of a policy result."""
    if result.passed:
        if result.warnings:
            return (
                f"All required policy gates passed with {len(result.warnings)} warning(s)"
            )
        return "All policy gates passed"
    return f"Policy gates failed: {'; '.join(result.blockers)}"
