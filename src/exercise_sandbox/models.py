from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def elapsed_ms(started: float) -> int:
    """Return whole milliseconds elapsed since a `time.monotonic()` reading.

    Example:
        ```python
        started = time.monotonic()
        duration = elapsed_ms(started)
        ```
    """
    return int((time.monotonic() - started) * 1000)


class ExerciseType(str, Enum):
    """How an exercise submission is evaluated.

    Example:
        ```python
        kind = ExerciseType("server")
        ```
    """

    FUNCTION = "function"
    SERVER = "server"


@dataclass(slots=True)
class RunResult:
    """Outcome of executing a submission once.

    Successful runs carry `output`, failed runs carry `error`; never both.

    Example:
        ```python
        result = RunResult.succeeded("module-1", "hello", 12, ExerciseType.FUNCTION)
        ```
    """

    module_id: str
    success: bool
    message: str
    execution_time_ms: int
    exercise_type: ExerciseType
    output: str | None = None
    error: str | None = None

    @classmethod
    def succeeded(
        cls,
        module_id: str,
        output: str,
        execution_time_ms: int,
        exercise_type: ExerciseType,
        message: str = "Code executed successfully",
    ) -> "RunResult":
        """Build a successful run result.

        Example:
            ```python
            RunResult.succeeded("module-2", "", 40, ExerciseType.SERVER, "Server started successfully")
            ```
        """
        return cls(
            module_id=module_id,
            success=True,
            message=message,
            execution_time_ms=execution_time_ms,
            exercise_type=exercise_type,
            output=output,
        )

    @classmethod
    def failed(
        cls,
        module_id: str,
        message: str,
        execution_time_ms: int,
        exercise_type: ExerciseType,
        error: str | None = None,
    ) -> "RunResult":
        """Build a failed run result.

        Example:
            ```python
            RunResult.failed("module-2", "Code execution failed", 8, ExerciseType.SERVER, "boom")
            ```
        """
        return cls(
            module_id=module_id,
            success=False,
            message=message,
            execution_time_ms=execution_time_ms,
            exercise_type=exercise_type,
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON document shape consumed by the request layer.

        Example:
            ```python
            payload = result.to_dict()
            ```
        """
        payload: dict[str, Any] = {
            "moduleId": self.module_id,
            "success": self.success,
            "message": self.message,
            "executionTime": self.execution_time_ms,
            "exerciseType": self.exercise_type.value,
        }
        if self.output is not None:
            payload["output"] = self.output
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class TestCaseResult:
    """Pass/fail record for one test.

    Example:
        ```python
        case = TestCaseResult("adds", passed=True)
        ```
    """

    __test__ = False

    name: str
    passed: bool
    error: str | None = None
    expected: Any = None
    actual: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON shape of one test result.

        Example:
            ```python
            TestCaseResult("adds", True).to_dict()
            ```
        """
        payload: dict[str, Any] = {"testName": self.name, "passed": self.passed}
        if self.error is not None:
            payload["error"] = self.error
        if self.expected is not None:
            payload["expected"] = self.expected
        if self.actual is not None:
            payload["actual"] = self.actual
        return payload


@dataclass(slots=True)
class TestSuiteResult:
    """Aggregated results of one test run.

    Example:
        ```python
        suite = TestSuiteResult.from_results("module-2", [TestCaseResult("a", True)], 90, ExerciseType.SERVER)
        ```
    """

    __test__ = False

    module_id: str
    total_tests: int
    passed_tests: int
    failed_tests: int
    execution_time_ms: int
    exercise_type: ExerciseType
    results: list[TestCaseResult] = field(default_factory=list)

    @classmethod
    def from_results(
        cls,
        module_id: str,
        results: list[TestCaseResult],
        execution_time_ms: int,
        exercise_type: ExerciseType,
    ) -> "TestSuiteResult":
        """Build a suite result whose counts are tallied from `results`.

        Example:
            ```python
            suite = TestSuiteResult.from_results("module-1", cases, 10, ExerciseType.FUNCTION)
            ```
        """
        passed = sum(1 for item in results if item.passed)
        return cls(
            module_id=module_id,
            total_tests=len(results),
            passed_tests=passed,
            failed_tests=len(results) - passed,
            execution_time_ms=execution_time_ms,
            exercise_type=exercise_type,
            results=list(results),
        )

    @classmethod
    def empty(
        cls,
        module_id: str,
        execution_time_ms: int,
        exercise_type: ExerciseType,
    ) -> "TestSuiteResult":
        """Build a result with no tests detected.

        Example:
            ```python
            suite = TestSuiteResult.empty("module-3", 5, ExerciseType.SERVER)
            ```
        """
        return cls(module_id, 0, 0, 0, execution_time_ms, exercise_type, [])

    @classmethod
    def setup_failure(
        cls,
        module_id: str,
        stage: str,
        error: str,
        execution_time_ms: int,
        exercise_type: ExerciseType,
    ) -> "TestSuiteResult":
        """Build a zero-count result carrying one synthetic failed entry.

        Used when the run fails before any test could report, so the caller
        still sees why.

        Example:
            ```python
            suite = TestSuiteResult.setup_failure("module-9", "Module Setup", "Module module-9 not found", 1, ExerciseType.SERVER)
            ```
        """
        return cls(
            module_id=module_id,
            total_tests=0,
            passed_tests=0,
            failed_tests=0,
            execution_time_ms=execution_time_ms,
            exercise_type=exercise_type,
            results=[TestCaseResult(name=stage, passed=False, error=error)],
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON document shape consumed by the request layer.

        Example:
            ```python
            payload = suite.to_dict()
            ```
        """
        return {
            "moduleId": self.module_id,
            "totalTests": self.total_tests,
            "passedTests": self.passed_tests,
            "failedTests": self.failed_tests,
            "results": [item.to_dict() for item in self.results],
            "executionTime": self.execution_time_ms,
            "exerciseType": self.exercise_type.value,
        }
