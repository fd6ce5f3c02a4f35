"""Tests for the tester agent.

**Validates: the ordered test-output matcher chain, pass rate computation,
dependency installation failures, and lint counting**
"""

import asyncio

import pytest

from havoc.agents.tester import (
    LintResults,
    TestCounts,
    TestResults,
    format_lint_results,
    format_test_results,
    parse_test_output,
    run_lint,
    run_tests,
)
from havoc.config import HavocConfig
from havoc.sandbox.manager import ExecResult
from havoc.sandbox.runner import ESLINT_COMMAND, NPM_LINT_COMMAND


def run_async(coro):
    return asyncio.run(coro)


JEST_OUTPUT = """
PASS src/a.test.ts
FAIL src/b.test.ts
Test Suites: 1 failed, 1 passed, 2 total
Tests:       1 failed, 2 skipped, 5 passed, 8 total
"""


class TestParseTestOutput:
    def test_jest(self):
        assert parse_test_output(JEST_OUTPUT) == TestCounts(
            total=8, passed=5, failed=1, skipped=2
        )

    def test_vitest(self):
        output = " Test Files  1 passed (1)\n      Tests  1 failed | 3 passed | 1 skipped (5)\n"

        counts = parse_test_output(output)

        assert (counts.total, counts.passed, counts.failed, counts.skipped) == (5, 3, 1, 1)

    def test_mocha(self):
        output = "  3 passing (12ms)\n  1 pending\n  2 failing\n"

        assert parse_test_output(output) == TestCounts(total=5, passed=3, failed=2, skipped=1)

    def test_pytest_uses_last_summary_line(self):
        output = (
            "tests/test_a.py::test_one PASSED\n"
            "==== 3 passed, 1 failed, 2 skipped, 1 error in 0.12s ====\n"
        )

        assert parse_test_output(output) == TestCounts(total=5, passed=3, failed=2, skipped=2)

    def test_go(self):
        output = "ok  \texample.com/a\t0.01s\nok  \texample.com/b\t0.01s\nFAIL\texample.com/c\t0.02s\n"

        assert parse_test_output(output) == TestCounts(total=3, passed=2, failed=1)

    def test_glyphs(self):
        output = "  ✓ adds\n  ✔ subtracts\n  ✗ divides\n"

        assert parse_test_output(output) == TestCounts(total=3, passed=2, failed=1)

    def test_unrecognised_output_is_all_zero(self):
        assert parse_test_output("Build succeeded.") == TestCounts()

    def test_first_matcher_wins(self):
        output = JEST_OUTPUT + "\n  ✓ extra glyph\n"

        assert parse_test_output(output).total == 8


class TestRunTests:
    def test_successful_run(self, workspace):
        runner, sandbox = workspace(
            config=HavocConfig(test_command="npm test"),
            commands={"npm test": ExecResult(0, JEST_OUTPUT, "")},
        )

        results = run_async(run_tests(runner, runner.config))

        assert results.ran
        assert results.passed
        assert results.total == 8
        assert results.passed_count == 5
        assert results.pass_rate == pytest.approx(62.5)
        assert results.error is None
        assert ["sh", "-c", "npm install"] in sandbox.calls

    def test_failing_run_keeps_stderr(self, workspace):
        runner, _ = workspace(
            config=HavocConfig(test_command="pytest"),
            commands={"pytest": ExecResult(1, "==== 1 passed, 1 failed in 1s ====", "assert 1 == 2")},
        )

        results = run_async(run_tests(runner, runner.config))

        assert results.ran
        assert not results.passed
        assert results.pass_rate == pytest.approx(50.0)
        assert results.error == "assert 1 == 2"

    def test_zero_tests_gives_zero_rate(self, workspace):
        runner, _ = workspace(commands={"npm test": ExecResult(0, "nothing to run", "")})

        results = run_async(run_tests(runner, runner.config))

        assert results.total == 0
        assert results.pass_rate == 0.0

    def test_install_failure_means_tests_did_not_run(self, workspace):
        runner, sandbox = workspace(commands={"npm install": ExecResult(1, "", "ERR! 404")})

        results = run_async(run_tests(runner, runner.config))

        assert not results.ran
        assert not results.passed
        assert results.error == "Failed to install dependencies: ERR! 404"
        assert ["sh", "-c", "npm test"] not in sandbox.calls

    def test_yarn_lockfile_selects_yarn(self, workspace):
        runner, sandbox = workspace({"yarn.lock": ""})

        run_async(run_tests(runner, runner.config))

        assert ["sh", "-c", "yarn install"] in sandbox.calls


class TestRunLint:
    def test_counts_errors_and_warnings(self, workspace):
        runner, _ = workspace(
            commands={
                NPM_LINT_COMMAND: ExecResult(1, "", ""),
                ESLINT_COMMAND: ExecResult(0, "src/a.ts: 1 error\n2 warnings\nwarning here", ""),
            }
        )

        lint = run_async(run_lint(runner))

        assert lint.ran
        assert lint.passed
        assert lint.errors == 1
        assert lint.warnings == 2

    def test_fails_only_with_errors_and_nonzero_exit(self, workspace):
        runner, _ = workspace(
            commands={
                NPM_LINT_COMMAND: ExecResult(1, "", ""),
                ESLINT_COMMAND: ExecResult(1, "Error: x\nerror: y", ""),
            }
        )

        lint = run_async(run_lint(runner))

        assert not lint.passed
        assert lint.errors == 2

    def test_nonzero_exit_without_errors_passes(self, workspace):
        runner, _ = workspace(
            commands={
                NPM_LINT_COMMAND: ExecResult(1, "", ""),
                ESLINT_COMMAND: ExecResult(2, "config missing", ""),
            }
        )

        assert run_async(run_lint(runner)).passed


class TestFormatting:
    def test_tests_did_not_run(self):
        text = format_test_results(TestResults(ran=False, passed=False, error="boom"))

        assert "❌ Tests did not run" in text
        assert "**Error:** boom" in text

    def test_test_table(self):
        results = TestResults(
            ran=True, passed=True, total=4, passed_count=4, pass_rate=100.0, duration_ms=1500
        )

        text = format_test_results(results)

        assert "✅ **PASSED**" in text
        assert "| Pass Rate | 100.0% |" in text
        assert "| Duration | 1.50s |" in text

    def test_lint(self):
        text = format_lint_results(LintResults(ran=True, passed=False, errors=3, warnings=1))

        assert "⚠️ **ISSUES FOUND**" in text
        assert "- Errors: 3" in text
