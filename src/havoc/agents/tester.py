"""Test and lint runner agent.

Installs dependencies, runs the repository's test command and a best-effort
lint pass inside the sandbox, and turns their output into TestResults and
LintResults.

Test output from different frameworks is recognised by an ordered chain of
named matchers; the first one that recognises the output wins. Output no
matcher recognises yields all-zero counts, which is a valid result.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from havoc.config import HavocConfig
from havoc.sandbox.runner import SandboxRunner


logger = logging.getLogger(__name__)


@dataclass
class TestCounts:
    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class TestResults:
    """Outcome of running the test command.

    Attributes:
        ran: False when dependencies could not be installed.
        passed: True when the test command exited 0.
        total: Number of tests recognised in the output.
        passed_count: Passing tests.
        failed_count: Failing tests.
        skipped_count: Skipped tests.
        pass_rate: passed_count / total * 100, or 0 when total is 0.
        duration_ms: Wall-clock time including installation.
        output: Standard output of the test (or install) command.
        error: Standard error on failure.
    """

    __test__ = False

    ran: bool
    passed: bool
    total: int = 0
    passed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    pass_rate: float = 0.0
    duration_ms: int = 0
    output: str = ""
    error: Optional[str] = None


@dataclass
class LintResults:
    ran: bool
    passed: bool
    errors: int = 0
    warnings: int = 0
    output: str = ""


# -----------------------------------------------------------------------------
# Output matchers
# -----------------------------------------------------------------------------


def _word_count(word: str, line: str) -> int:
    match = re.search(rf"(\d+)\s+{word}", line, re.IGNORECASE)
    return int(match.group(1)) if match else 0


def _match_jest(output: str) -> Optional[TestCounts]:
    # Tests:       1 failed, 2 skipped, 5 passed, 8 total
    match = re.search(r"^\s*Tests:\s*(.*?\d+\s+total.*)$", output, re.MULTILINE)
    if not match:
        return None
    line = match.group(1)
    return TestCounts(
        total=_word_count("total", line),
        passed=_word_count("passed", line),
        failed=_word_count("failed", line),
        skipped=_word_count("skipped", line),
    )


def _match_vitest(output: str) -> Optional[TestCounts]:
    # Tests  1 failed | 3 passed | 1 skipped (5)
    for line in output.splitlines():
        if "|" in line and re.search(r"\d+\s+passed", line, re.IGNORECASE):
            passed = _word_count("passed", line)
            failed = _word_count("failed", line)
            skipped = _word_count("skipped", line)
            return TestCounts(
                total=passed + failed + skipped,
                passed=passed,
                failed=failed,
                skipped=skipped,
            )
    return None


def _match_mocha(output: str) -> Optional[TestCounts]:
    # 3 passing (12ms) / 1 pending / 2 failing
    if not re.search(r"\d+\s+passing", output, re.IGNORECASE):
        return None
    passed = _word_count("passing", output)
    failed = _word_count("failing", output)
    skipped = _word_count("pending", output)
    return TestCounts(
        total=passed + failed,
        passed=passed,
        failed=failed,
        skipped=skipped,
    )


def _match_pytest(output: str) -> Optional[TestCounts]:
    # ==== 3 passed, 1 failed, 2 skipped in 0.12s ====
    lines = [
        line
        for line in output.splitlines()
        if re.search(r"\d+\s+(passed|failed)\b", line, re.IGNORECASE)
    ]
    if not lines:
        return None
    line = lines[-1]
    passed = _word_count("passed", line)
    failed = _word_count("failed", line) + _word_count("errors?", line)
    skipped = _word_count("skipped", line)
    return TestCounts(
        total=passed + failed,
        passed=passed,
        failed=failed,
        skipped=skipped,
    )


def _match_go(output: str) -> Optional[TestCounts]:
    # ok  	example.com/pkg	0.01s / FAIL	example.com/pkg	0.02s
    passed = len(re.findall(r"^ok\s+\S", output, re.MULTILINE))
    failed = len(re.findall(r"^FAIL\s+\S", output, re.MULTILINE))
    if passed == 0 and failed == 0:
        return None
    return TestCounts(total=passed + failed, passed=passed, failed=failed)


def _match_glyphs(output: str) -> Optional[TestCounts]:
    passed = len(re.findall(r"[✓✔]", output))
    failed = len(re.findall(r"[✗✘×]", output))
    if passed == 0 and failed == 0:
        return None
    return TestCounts(total=passed + failed, passed=passed, failed=failed)


OUTPUT_MATCHERS: List[Tuple[str, Callable[[str], Optional[TestCounts]]]] = [
    ("jest", _match_jest),
    ("vitest", _match_vitest),
    ("mocha", _match_mocha),
    ("pytest", _match_pytest),
    ("go", _match_go),
    ("glyphs", _match_glyphs),
]


def parse_test_output(output: str) -> TestCounts:
    """Extract test counts using the first matcher that recognises the output."""
    for name, matcher in OUTPUT_MATCHERS:
        counts = matcher(output)
        if counts is not None:
            logger.debug("Parsed test output", extra={"matcher": name})
            return counts
    return TestCounts()


# -----------------------------------------------------------------------------
# Runners
# -----------------------------------------------------------------------------


async def run_tests(runner: SandboxRunner, config: HavocConfig) -> TestResults:
    """Install dependencies and run the configured test command."""
    started = time.monotonic()

    install = await runner.install_dependencies()
    if install.exit_code != 0:
        logger.warning(
            "Dependency installation failed",
            extra={"exit_code": install.exit_code},
        )
        return TestResults(
            ran=False,
            passed=False,
            duration_ms=int((time.monotonic() - started) * 1000),
            output=install.stdout,
            error=f"Failed to install dependencies: {install.stderr}",
        )

    logger.info("Running tests", extra={"test_command": config.test_command})
    result = await runner.run_tests(config.test_command)
    duration_ms = int((time.monotonic() - started) * 1000)

    counts = parse_test_output(result.stdout + "\n" + result.stderr)
    pass_rate = counts.passed / counts.total * 100 if counts.total > 0 else 0.0

    return TestResults(
        ran=True,
        passed=result.exit_code == 0,
        total=counts.total,
        passed_count=counts.passed,
        failed_count=counts.failed,
        skipped_count=counts.skipped,
        pass_rate=pass_rate,
        duration_ms=duration_ms,
        output=result.stdout,
        error=result.stderr if result.exit_code != 0 else None,
    )


async def run_lint(runner: SandboxRunner) -> LintResults:
    """Run the linter and count errors and warnings in its output."""
    result = await runner.run_lint()

    errors = len(re.findall("error", result.stdout, re.IGNORECASE))
    warnings = len(re.findall("warning", result.stdout, re.IGNORECASE))

    return LintResults(
        ran=True,
        passed=result.exit_code == 0 or errors == 0,
        errors=errors,
        warnings=warnings,
        output=result.stdout,
    )


def format_test_results(results: TestResults) -> str:
    if not results.ran:
        return (
            "## Test Results\n\n"
            "❌ Tests did not run\n\n"
            f"**Error:** {results.error or 'Unknown error'}\n"
        )

    icon = "✅" if results.passed else "❌"
    status = "PASSED" if results.passed else "FAILED"
    error = f"\n**Error:**\n```\n{results.error}\n```" if results.error else ""

    return f"""## Test Results

{icon} **{status}**

| Metric | Value |
|--------|-------|
| Total | {results.total} |
| Passed | {results.passed_count} |
| Failed | {results.failed_count} |
| Skipped | {results.skipped_count} |
| Pass Rate | {results.pass_rate:.1f}% |
| Duration | {results.duration_ms / 1000:.2f}s |
{error}
"""


def format_lint_results(results: LintResults) -> str:
    icon = "✅" if results.passed else "⚠️"
    status = "PASSED" if results.passed else "ISSUES FOUND"
    return f"""## Lint Results

{icon} **{status}**

- Errors: {results.errors}
- Warnings: {results.warnings}
"""
