from __future__ import annotations

from typing import Protocol

from ..models import RunResult, TestSuiteResult
from .types import ExecutionRequest


class ExecutionEngine(Protocol):
    def run(self, request: ExecutionRequest) -> RunResult:
        """Execute one submission and return its run result.

        Example:
            ```python
            result = engine.run(ExecutionRequest("module-1", "console.log('hi')", ExerciseType.FUNCTION))
            ```
        """
        ...

    def test(self, request: ExecutionRequest) -> TestSuiteResult:
        """Execute the exercise's tests against one submission.

        Example:
            ```python
            suite = engine.test(ExecutionRequest("module-2", code))
            ```
        """
        ...
