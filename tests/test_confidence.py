"""Tests for confidence scoring.

**Validates: the six weighted signals, half-up rounding, score bounds and
determinism**
"""

from hypothesis import given, settings, strategies as st

from havoc.agents.editor import TaskAction, TaskResult
from havoc.agents.planner import Plan, Task
from havoc.agents.reviewer import ReviewItem, ReviewResult
from havoc.agents.tester import LintResults, TestResults
from havoc.artifacts.confidence import (
    ConfidenceBreakdown,
    calculate_confidence_score,
    format_confidence_score,
    get_confidence_level,
    round_half_up,
)


PASSING_TESTS = TestResults(ran=True, passed=True, total=3, passed_count=3, pass_rate=100.0)
CLEAN_LINT = LintResults(ran=True, passed=True)


def _make_plan(count: int = 3, **task_overrides) -> Plan:
    tasks = [
        Task(
            id=i,
            type=task_overrides.get("kind", "modify"),
            file=task_overrides.get("file", f"src/file{i}.ts"),
            description=f"Task {i}",
            details=task_overrides.get("details", "update the function"),
        )
        for i in range(1, count + 1)
    ]
    return Plan(summary="s", approach="a", tasks=tasks, risks=task_overrides.get("risks", []))


def _make_results(count: int = 3, success: bool = True) -> list:
    return [
        TaskResult(
            task_id=i,
            success=success,
            file=f"src/file{i}.ts",
            action=TaskAction.MODIFIED if success else TaskAction.SKIPPED,
            diff="-a\n+b" if success else None,
        )
        for i in range(1, count + 1)
    ]


def _score(tests=PASSING_TESTS, lint=CLEAN_LINT, review=None, plan=None, results=None):
    return calculate_confidence_score(
        results if results is not None else _make_results(),
        tests,
        lint,
        review or ReviewResult(overall_assessment="approve", confidence=90),
        plan or _make_plan(),
    )


# ---------------------------------------------------------------------------
# Overall score
# ---------------------------------------------------------------------------


def test_clean_run_scores_99():
    score, breakdown = _score()

    assert score == 99
    assert breakdown == ConfidenceBreakdown(
        tests_passing=100,
        lint_clean=100,
        change_complexity=100,
        dependency_risk=100,
        behavior_risk=100,
        self_review=90,
    )


def test_round_half_up():
    assert round_half_up(92.5) == 93
    assert round_half_up(0.5) == 1
    assert round_half_up(92.49) == 92


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


class TestTestsSignal:
    def test_not_run_is_neutral(self):
        _, breakdown = _score(tests=TestResults(ran=False, passed=False))
        assert breakdown.tests_passing == 50

    def test_failed_run_is_penalised(self):
        tests = TestResults(ran=True, passed=False, pass_rate=60.0)
        assert _score(tests=tests)[1].tests_passing == 40

    def test_failed_run_floors_at_zero(self):
        tests = TestResults(ran=True, passed=False, pass_rate=10.0)
        assert _score(tests=tests)[1].tests_passing == 0


class TestLintSignal:
    def test_not_run(self):
        assert _score(lint=LintResults(ran=False, passed=False))[1].lint_clean == 70

    def test_penalties_are_capped(self):
        lint = LintResults(ran=True, passed=False, errors=3, warnings=15)
        assert _score(lint=lint)[1].lint_clean == 50


class TestComplexitySignal:
    def test_empty_plan_is_neutral(self):
        _, breakdown = _score(plan=Plan(), results=[])
        assert breakdown.change_complexity == 50

    def test_large_change_is_penalised(self):
        # 12 tasks: -4; 12 changed files: -21
        _, breakdown = _score(plan=_make_plan(12), results=_make_results(12))
        assert breakdown.change_complexity == 75

    def test_partial_success(self):
        results = _make_results(2) + _make_results(1, success=False)
        assert _score(results=results)[1].change_complexity == 67


class TestRiskSignals:
    def test_dependency_keywords(self):
        plan = _make_plan(1, details="npm install lodash", risks=["new package version"])
        assert _score(plan=plan, results=_make_results(1))[1].dependency_risk == 75

    def test_behavior_keywords_and_review_risks(self):
        plan = _make_plan(1, file="db/migration_001.sql")
        review = ReviewResult(
            overall_assessment="approve",
            confidence=90,
            risks=[ReviewItem(severity="high", message="locks table")],
        )

        _, breakdown = _score(plan=plan, review=review, results=_make_results(1))

        assert breakdown.behavior_risk == 70


class TestSelfReviewSignal:
    def test_approve_floors_at_70(self):
        review = ReviewResult(overall_assessment="approve", confidence=40)
        assert _score(review=review)[1].self_review == 70

    def test_request_changes_caps_at_50(self):
        review = ReviewResult(overall_assessment="request_changes", confidence=90)
        assert _score(review=review)[1].self_review == 50

    def test_needs_discussion_caps_at_60(self):
        review = ReviewResult(overall_assessment="needs_discussion", confidence=95)
        assert _score(review=review)[1].self_review == 60

    def test_issue_penalties(self):
        review = ReviewResult(
            overall_assessment="approve",
            confidence=90,
            issues=[
                ReviewItem(severity="critical", message="a"),
                ReviewItem(severity="low", message="b"),
            ],
        )
        assert _score(review=review)[1].self_review == 57


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@st.composite
def run_signals(draw):
    ran = draw(st.booleans())
    tests = TestResults(
        ran=ran,
        passed=draw(st.booleans()),
        pass_rate=draw(st.floats(min_value=0, max_value=100)),
    )
    lint = LintResults(
        ran=draw(st.booleans()),
        passed=draw(st.booleans()),
        errors=draw(st.integers(min_value=0, max_value=50)),
        warnings=draw(st.integers(min_value=0, max_value=50)),
    )
    severities = st.sampled_from(["low", "medium", "high", "critical"])
    review = ReviewResult(
        overall_assessment=draw(
            st.sampled_from(["approve", "request_changes", "needs_discussion"])
        ),
        confidence=draw(st.integers(min_value=0, max_value=100)),
        issues=[
            ReviewItem(severity=s, message="x")
            for s in draw(st.lists(severities, max_size=6))
        ],
        risks=[
            ReviewItem(severity=s, message="x")
            for s in draw(st.lists(severities, max_size=6))
        ],
    )
    count = draw(st.integers(min_value=0, max_value=20))
    details = draw(st.sampled_from(["", "npm install x", "schema change", "security fix"]))
    plan = _make_plan(count, details=details)
    results = _make_results(count, success=draw(st.booleans()))
    return results, tests, lint, review, plan


@given(run_signals())
@settings(max_examples=100)
def test_score_is_bounded_and_deterministic(signals):
    first = calculate_confidence_score(*signals)
    second = calculate_confidence_score(*signals)

    assert first == second
    score, breakdown = first
    assert 0 <= score <= 100
    assert all(0 <= value <= 100 for value in breakdown.model_dump().values())


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------


def test_confidence_levels():
    assert get_confidence_level(80)[0] == "high"
    assert get_confidence_level(79)[0] == "medium"
    assert get_confidence_level(60)[0] == "medium"
    assert get_confidence_level(59)[0] == "low"


def test_format_confidence_score():
    score, breakdown = _score()

    text = format_confidence_score(score, breakdown)

    assert "🟢 **99%** - HIGH" in text
    assert "| Tests Passing | 100% | 30% | 30 |" in text
    assert "| Self-Review | 90% | 10% | 9 |" in text
