from __future__ import annotations

import logging
import time
from pathlib import Path

from .catalog import ModuleCatalog
from .execution.config import SandboxConfig
from .execution.docker_engine import DockerEngine, docker_is_available
from .execution.engine import ExecutionEngine
from .execution.local_engine import LocalEngine
from .execution.types import ExecutionRequest
from .models import ExerciseType, RunResult, TestSuiteResult, elapsed_ms

logger = logging.getLogger(__name__)


def select_engine(config: SandboxConfig, catalog: ModuleCatalog) -> ExecutionEngine:
    """Pick the container engine when enabled and reachable, direct execution otherwise.

    Example:
        ```python
        engine = select_engine(SandboxConfig.from_env(), ModuleCatalog("src/modules"))
        ```
    """
    if not config.docker_enabled:
        logger.info("Docker disabled by configuration, using direct execution")
        return LocalEngine(config, catalog)
    available, reason = docker_is_available()
    if not available:
        logger.warning("Docker unavailable, falling back to direct execution: %s", reason)
        return LocalEngine(config, catalog)
    logger.info("Using Docker execution engine")
    return DockerEngine(config, catalog)


def run_code(module_id: str, code: str, engine: ExecutionEngine, exercise_type: ExerciseType) -> RunResult:
    """Execute a submission with the provided engine, converting unexpected errors to a failed result.

    Example:
        ```python
        from exercise_sandbox import LocalEngine, ModuleCatalog, SandboxConfig, run_code
        config = SandboxConfig(docker_enabled=False)
        engine = LocalEngine(config, ModuleCatalog(config.modules_path))
        result = run_code("module-1", "console.log(2 + 2)", engine, ExerciseType.FUNCTION)
        ```
    """
    started = time.monotonic()
    try:
        return engine.run(ExecutionRequest(module_id, code, exercise_type))
    except Exception as exc:
        logger.exception("Execution failed for %s", module_id)
        return RunResult.failed(module_id, "Code execution failed", elapsed_ms(started), exercise_type, str(exc))


def run_tests(module_id: str, code: str, engine: ExecutionEngine, exercise_type: ExerciseType) -> TestSuiteResult:
    """Run a module's tests with the provided engine, converting unexpected errors to a setup failure.

    Example:
        ```python
        suite = run_tests("module-2", server_code, engine, ExerciseType.SERVER)
        ```
    """
    started = time.monotonic()
    try:
        return engine.test(ExecutionRequest(module_id, code, exercise_type))
    except Exception as exc:
        logger.exception("Test run failed for %s", module_id)
        return TestSuiteResult.setup_failure(
            module_id, "Execution", f"Test execution failed: {exc}", elapsed_ms(started), exercise_type
        )


class ExerciseRunner:
    """Entry point for running submissions against the module catalog.

    The engine is chosen once, at construction.

    Example:
        ```python
        runner = ExerciseRunner(SandboxConfig.from_env())
        result = runner.run_code("module-1", "console.log('hi')")
        ```
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        catalog: ModuleCatalog | None = None,
        engine: ExecutionEngine | None = None,
    ) -> None:
        """Resolve configuration, catalog and engine.

        Example:
            ```python
            runner = ExerciseRunner(SandboxConfig(docker_enabled=False))
            ```
        """
        self._config = config or SandboxConfig.from_env()
        self._catalog = catalog or ModuleCatalog(
            self._config.modules_path, Path(self._config.build_recipe_path)
        )
        self._engine = engine or select_engine(self._config, self._catalog)

    @property
    def config(self) -> SandboxConfig:
        """Return the active configuration.

        Example:
            ```python
            timeout = runner.config.execution_timeout_seconds
            ```
        """
        return self._config

    @property
    def catalog(self) -> ModuleCatalog:
        """Return the module catalog.

        Example:
            ```python
            modules = runner.catalog.list_modules()
            ```
        """
        return self._catalog

    @property
    def engine(self) -> ExecutionEngine:
        """Return the selected engine.

        Example:
            ```python
            name = type(runner.engine).__name__
            ```
        """
        return self._engine

    def exercise_type(self, module_id: str) -> ExerciseType:
        """Return how a module's submissions are evaluated.

        Example:
            ```python
            kind = runner.exercise_type("module-1")
            ```
        """
        if module_id in self._config.function_modules:
            return ExerciseType.FUNCTION
        return ExerciseType.SERVER

    def run_code(self, module_id: str, code: str) -> RunResult:
        """Execute a submission for a module.

        Example:
            ```python
            result = runner.run_code("module-2", server_code)
            ```
        """
        return run_code(module_id, code, self._engine, self.exercise_type(module_id))

    def run_tests(self, module_id: str, code: str) -> TestSuiteResult:
        """Run a module's tests against a submission.

        Example:
            ```python
            suite = runner.run_tests("module-2", server_code)
            ```
        """
        return run_tests(module_id, code, self._engine, self.exercise_type(module_id))
