from .config import LocalRunnerSettings, SandboxConfig
from .engine import ExecutionEngine
from .types import ExecutionRequest, SandboxInstance, SandboxState

__all__ = [
    "ExecutionEngine",
    "ExecutionRequest",
    "LocalRunnerSettings",
    "SandboxConfig",
    "SandboxInstance",
    "SandboxState",
]
