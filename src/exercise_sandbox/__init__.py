from .catalog import ModuleCatalog, ModuleSummary
from .errors import SandboxError
from .execution.config import SandboxConfig
from .execution.docker_engine import DockerEngine
from .execution.local_engine import LocalEngine
from .models import ExerciseType, RunResult, TestCaseResult, TestSuiteResult
from .reporting import parse_test_output
from .runner import ExerciseRunner, run_code, run_tests, select_engine

__all__ = [
    "DockerEngine",
    "ExerciseRunner",
    "ExerciseType",
    "LocalEngine",
    "ModuleCatalog",
    "ModuleSummary",
    "RunResult",
    "SandboxConfig",
    "SandboxError",
    "TestCaseResult",
    "TestSuiteResult",
    "parse_test_output",
    "run_code",
    "run_tests",
    "select_engine",
]
