from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .models import ExerciseType, TestCaseResult, TestSuiteResult

logger = logging.getLogger(__name__)

SUITE_RESULT_NAME = "Test Suite"
_PASS_MARKERS = ("✔", "✓")
_FAIL_MARKERS = ("✗", "✖")
_EXPECTED_PATTERN = re.compile(r"expected\s+(.+?)\s+to")
_ACTUAL_PATTERN = re.compile(r"got\s+(.+?)$")
_PASSING_PATTERN = re.compile(r"(\d+)\s+passing")
_FAILING_PATTERN = re.compile(r"(\d+)\s+failing")


def _int_field(raw: dict[str, Any], key: str) -> int:
    """Return an integer field of a report object, 0 when missing or mistyped.

    Example:
        ```python
        tests = _int_field({"tests": 3}, "tests")
        ```
    """
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


@dataclass(frozen=True, slots=True)
class ReportError:
    """Error attached to a failed entry of a structured report.

    Example:
        ```python
        err = ReportError(message="expected 5 to equal 4", stack="AssertionError: ...")
        ```
    """

    message: str
    stack: str = ""


@dataclass(frozen=True, slots=True)
class ReportEntry:
    """One test entry of a structured report.

    Example:
        ```python
        entry = ReportEntry.from_dict({"title": "adds", "fullTitle": "math adds", "duration": 2})
        ```
    """

    title: str
    full_title: str = ""
    duration_ms: int = 0
    state: str = ""
    error: ReportError | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ReportEntry":
        """Build an entry from the reporter's JSON object.

        Example:
            ```python
            entry = ReportEntry.from_dict({"title": "subtracts", "err": {"message": "boom"}})
            ```
        """
        err = raw.get("err")
        error = None
        # passing tests carry an empty "err" object
        if isinstance(err, dict) and err:
            error = ReportError(message=str(err.get("message", "")), stack=str(err.get("stack", "")))
        return cls(
            title=str(raw.get("title", "")),
            full_title=str(raw.get("fullTitle", "")),
            duration_ms=_int_field(raw, "duration"),
            state=str(raw.get("state", "")),
            error=error,
        )


@dataclass(frozen=True, slots=True)
class ReportStats:
    """Summary block of a structured report.

    Example:
        ```python
        stats = ReportStats(suites=1, tests=2, passes=1, pending=0, failures=1, duration_ms=14)
        ```
    """

    suites: int = 0
    tests: int = 0
    passes: int = 0
    pending: int = 0
    failures: int = 0
    duration_ms: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> "ReportStats":
        """Build stats from the reporter's JSON object, tolerating missing keys.

        Example:
            ```python
            stats = ReportStats.from_dict({"tests": 3, "passes": 3})
            ```
        """
        if not isinstance(raw, dict):
            return cls()
        return cls(
            suites=_int_field(raw, "suites"),
            tests=_int_field(raw, "tests"),
            passes=_int_field(raw, "passes"),
            pending=_int_field(raw, "pending"),
            failures=_int_field(raw, "failures"),
            duration_ms=_int_field(raw, "duration"),
        )


def _entries(raw: dict[str, Any], key: str) -> tuple[ReportEntry, ...]:
    """Return the report entries stored under one key of a report object.

    Example:
        ```python
        passes = _entries({"passes": [{"title": "adds"}]}, "passes")
        ```
    """
    items = raw.get(key)
    if not isinstance(items, list):
        return ()
    return tuple(ReportEntry.from_dict(item) for item in items if isinstance(item, dict))


@dataclass(frozen=True, slots=True)
class StructuredTestReport:
    """JSON report produced by the test framework inside the execution environment.

    Example:
        ```python
        report = StructuredTestReport.from_dict({"passes": [{"title": "adds"}], "failures": []})
        ```
    """

    stats: ReportStats = field(default_factory=ReportStats)
    tests: tuple[ReportEntry, ...] = ()
    passes: tuple[ReportEntry, ...] = ()
    failures: tuple[ReportEntry, ...] = ()
    pending: tuple[ReportEntry, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> "StructuredTestReport":
        """Validate and convert a decoded report document.

        Example:
            ```python
            report = StructuredTestReport.from_dict(json.loads(output))
            ```
        """
        if not isinstance(raw, dict):
            raise ValueError("Test report must be a JSON object")
        if not isinstance(raw.get("passes"), list) or not isinstance(raw.get("failures"), list):
            raise ValueError("Test report must contain 'passes' and 'failures' lists")
        return cls(
            stats=ReportStats.from_dict(raw.get("stats")),
            tests=_entries(raw, "tests"),
            passes=_entries(raw, "passes"),
            failures=_entries(raw, "failures"),
            pending=_entries(raw, "pending"),
        )


def decode_report(output: str) -> StructuredTestReport | None:
    """Decode a structured report from captured output, or return None.

    The report may be surrounded by other console lines; in that case the span
    from the first line opening a JSON object to the last closing brace is tried.

    Example:
        ```python
        report = decode_report('{"stats": {}, "passes": [], "failures": []}')
        ```
    """
    candidates = [output]
    lines = output.splitlines()
    start = next((i for i, line in enumerate(lines) if line.lstrip().startswith("{")), None)
    if start is not None:
        tail = "\n".join(lines[start:])
        end = tail.rfind("}")
        if end != -1:
            candidates.append(tail[: end + 1])
    for candidate in candidates:
        try:
            return StructuredTestReport.from_dict(json.loads(candidate))
        except ValueError:
            continue
    return None


def _failure_result(entry: ReportEntry) -> TestCaseResult:
    """Convert a failed report entry, pulling expected/actual out of its message.

    Example:
        ```python
        case = _failure_result(ReportEntry("subtracts", error=ReportError("expected 5 to equal got 4")))
        ```
    """
    result = TestCaseResult(name=entry.title, passed=False)
    if entry.error is None:
        return result
    message = entry.error.message
    result.error = message
    expected = _EXPECTED_PATTERN.search(message)
    actual = _ACTUAL_PATTERN.search(message)
    if expected:
        result.expected = expected.group(1)
    if actual:
        result.actual = actual.group(1)
    return result


def flatten_report(report: StructuredTestReport) -> list[TestCaseResult]:
    """Flatten passes then failures into ordered test results.

    Example:
        ```python
        cases = flatten_report(report)
        ```
    """
    results = [TestCaseResult(name=entry.title, passed=True) for entry in report.passes]
    results.extend(_failure_result(entry) for entry in report.failures)
    return results


def _count_markers(output: str) -> tuple[int, int]:
    """Count per-test pass/fail glyph lines in console output.

    Example:
        ```python
        passed, failed = _count_markers("  ✔ adds\\n  ✖ subtracts")
        ```
    """
    passed = failed = 0
    for line in output.splitlines():
        text = line.strip()
        if any(marker in text for marker in _PASS_MARKERS):
            passed += 1
        elif any(marker in text for marker in _FAIL_MARKERS):
            failed += 1
    return passed, failed


def _count_summary(output: str) -> tuple[int, int]:
    """Read counts from an `<n> passing` summary optionally followed by `<m> failing`.

    Example:
        ```python
        passed, failed = _count_summary("  3 passing (12ms)\\n  1 failing")
        ```
    """
    passing = _PASSING_PATTERN.search(output)
    if passing is None:
        return 0, 0
    failing = _FAILING_PATTERN.search(output, passing.end())
    return int(passing.group(1)), int(failing.group(1)) if failing else 0


def parse_test_output(
    module_id: str,
    output: str,
    *,
    execution_time_ms: int,
    exercise_type: ExerciseType,
) -> TestSuiteResult:
    """Normalize captured test-framework output into a suite result.

    A structured report yields one result per test. Otherwise console output is
    scanned heuristically and, if any tests were counted, summarized as a single
    synthetic result carrying the raw output.

    Example:
        ```python
        suite = parse_test_output("module-2", output, execution_time_ms=120, exercise_type=ExerciseType.SERVER)
        ```
    """
    if not output.strip():
        logger.debug("No test output captured for %s", module_id)
        return TestSuiteResult.empty(module_id, execution_time_ms, exercise_type)

    report = decode_report(output)
    if report is not None:
        return TestSuiteResult.from_results(
            module_id, flatten_report(report), execution_time_ms, exercise_type
        )

    logger.warning("Structured test report not found for %s, falling back to console parsing", module_id)
    passed, failed = _count_markers(output)
    if passed + failed == 0:
        passed, failed = _count_summary(output)
    total = passed + failed
    if total == 0:
        logger.debug("No tests detected in output for %s", module_id)
        return TestSuiteResult.empty(module_id, execution_time_ms, exercise_type)

    return TestSuiteResult(
        module_id=module_id,
        total_tests=total,
        passed_tests=passed,
        failed_tests=failed,
        execution_time_ms=execution_time_ms,
        exercise_type=exercise_type,
        results=[TestCaseResult(name=SUITE_RESULT_NAME, passed=failed == 0, error=output)],
    )
