from __future__ import annotations

import os
import shlex
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

ENTRY_FILENAME = "tmp-server.js"
CONTAINER_WORKDIR = "/app"
CONTAINER_USER = "1001:1001"
CPU_PERIOD = 100_000
IMAGE_BUILD_TIMEOUT_SECONDS = 300
MAX_CONTEXT_FILE_BYTES = 10 * 1024 * 1024
TRANSIENT_FILENAMES = frozenset({ENTRY_FILENAME, ".DS_Store"})
TRANSIENT_SUFFIXES = frozenset({".log", ".tmp"})
SERVER_WARMUP_SECONDS = 3
SERVER_NOT_READY_EXIT_CODE = 86
IMAGE_REPOSITORY = "exercise-sandbox"
CONTAINER_PREFIX = "exercise-sandbox"
MANAGED_LABEL_VALUE = "true"
MANAGED_LABELS = {
    "exercise_sandbox.managed": MANAGED_LABEL_VALUE,
    "exercise_sandbox.project": "exercise-sandbox",
}

DEFAULT_MEMORY_LIMIT_BYTES = 128 * 1024 * 1024
DEFAULT_CPU_QUOTA = 50_000
DEFAULT_EXECUTION_TIMEOUT_SECONDS = 30
DEFAULT_MODULES_PATH = "src/modules"
DEFAULT_BUILD_RECIPE_PATH = "Dockerfile.module-runner"
DEFAULT_RUNTIME_COMMAND = ("node",)
DEFAULT_TEST_COMMAND = ("npx", "mocha", "test.js", "--reporter", "json")
DEFAULT_FUNCTION_MODULES = frozenset({"module-1"})
DEFAULT_SERVER_PORT = 3000

_TRUE_VALUES = {"1", "t", "true"}
_FALSE_VALUES = {"0", "f", "false"}


def _parse_bool(raw: Any, default: bool) -> bool:
    """Parse a boolean setting, keeping the default for unrecognized values.

    Example:
        ```python
        enabled = _parse_bool("FALSE", True)
        ```
    """
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return default
    text = str(raw).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return default


def _parse_int(raw: Any, default: int) -> int:
    """Parse an integer setting, keeping the default for invalid values.

    Example:
        ```python
        limit = _parse_int("268435456", 134217728)
        ```
    """
    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw).strip())
    except ValueError:
        return default


def _parse_command(raw: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    """Parse a command given as a shell-like string or a list of strings.

    Example:
        ```python
        cmd = _parse_command("npx mocha test.js --reporter json", ("node",))
        ```
    """
    if raw is None:
        return default
    if isinstance(raw, (list, tuple)):
        parts = tuple(str(item) for item in raw)
    else:
        parts = tuple(shlex.split(str(raw)))
    return parts or default


def _parse_modules(raw: Any, default: frozenset[str]) -> frozenset[str]:
    """Parse the set of function-exercise module ids.

    Example:
        ```python
        modules = _parse_modules("module-1, module-5", frozenset())
        ```
    """
    if raw is None:
        return default
    if isinstance(raw, (list, tuple)):
        items = [str(item) for item in raw]
    else:
        items = str(raw).split(",")
    return frozenset(item.strip() for item in items if item.strip())


@dataclass(frozen=True, slots=True)
class LocalRunnerSettings:
    """Timeouts and readiness polling used by the direct process runner.

    Example:
        ```python
        settings = LocalRunnerSettings(health_attempts=2, health_interval_seconds=0.05)
        ```
    """

    run_timeout_seconds: float = 5
    function_test_timeout_seconds: float = 10
    server_test_timeout_seconds: float = 15
    health_attempts: int = 10
    health_interval_seconds: float = 0.5
    health_request_timeout_seconds: float = 5


@dataclass(frozen=True, slots=True)
class SandboxConfig:
    """Execution settings shared by both execution strategies.

    Example:
        ```python
        config = SandboxConfig(memory_limit_bytes=256 * 1024 * 1024, execution_timeout_seconds=10)
        ```
    """

    docker_enabled: bool = True
    memory_limit_bytes: int = DEFAULT_MEMORY_LIMIT_BYTES
    cpu_quota: int = DEFAULT_CPU_QUOTA
    execution_timeout_seconds: int = DEFAULT_EXECUTION_TIMEOUT_SECONDS
    network_disabled: bool = True
    read_only_rootfs: bool = False
    modules_path: str = DEFAULT_MODULES_PATH
    build_recipe_path: str = DEFAULT_BUILD_RECIPE_PATH
    runtime_command: tuple[str, ...] = DEFAULT_RUNTIME_COMMAND
    test_command: tuple[str, ...] = DEFAULT_TEST_COMMAND
    function_modules: frozenset[str] = DEFAULT_FUNCTION_MODULES
    server_port: int = DEFAULT_SERVER_PORT
    local: LocalRunnerSettings = field(default_factory=LocalRunnerSettings)

    def __post_init__(self) -> None:
        """Reject limits the container engine cannot honor.

        Example:
            ```python
            SandboxConfig(execution_timeout_seconds=5)
            ```
        """
        if self.memory_limit_bytes <= 0:
            raise ValueError("memory_limit_bytes must be positive")
        if self.cpu_quota <= 0:
            raise ValueError("cpu_quota must be positive")
        if self.execution_timeout_seconds <= 0:
            raise ValueError("execution_timeout_seconds must be positive")
        if not self.runtime_command:
            raise ValueError("runtime_command must not be empty")
        if not self.test_command:
            raise ValueError("test_command must not be empty")

    @property
    def cpu_period(self) -> int:
        """Return the CPU scheduling period the quota applies to.

        Example:
            ```python
            period = config.cpu_period
            ```
        """
        return CPU_PERIOD

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SandboxConfig":
        """Load configuration from environment variables.

        Example:
            ```python
            config = SandboxConfig.from_env({"DOCKER_ENABLED": "false"})
            ```
        """
        env = os.environ if environ is None else environ
        return cls._from_values(
            {
                "docker_enabled": env.get("DOCKER_ENABLED"),
                "memory_limit_bytes": env.get("DOCKER_MEMORY_LIMIT"),
                "cpu_quota": env.get("DOCKER_CPU_LIMIT"),
                "execution_timeout_seconds": env.get("DOCKER_EXECUTION_TIMEOUT"),
                "network_disabled": env.get("DOCKER_NETWORK_DISABLED"),
                "read_only_rootfs": env.get("DOCKER_READONLY_ROOTFS"),
                "modules_path": env.get("MODULES_PATH"),
                "build_recipe_path": env.get("BUILD_RECIPE_PATH"),
                "runtime_command": env.get("EXERCISE_RUNTIME"),
                "test_command": env.get("EXERCISE_TEST_COMMAND"),
                "function_modules": env.get("FUNCTION_MODULES"),
                "server_port": env.get("EXERCISE_SERVER_PORT"),
            }
        )

    @classmethod
    def from_file(cls, config_path: str) -> "SandboxConfig":
        """Load configuration from the `[sandbox]` table of a TOML file.

        Example:
            ```python
            config = SandboxConfig.from_file("/etc/exercise-sandbox.toml")
            ```
        """
        raw = tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
        table = raw.get("sandbox", raw)
        if not isinstance(table, dict):
            raise ValueError("Sandbox config must be a TOML table")
        return cls._from_values(table)

    @classmethod
    def _from_values(cls, values: Mapping[str, Any]) -> "SandboxConfig":
        """Build a config from loosely typed values, defaulting invalid ones.

        Example:
            ```python
            config = SandboxConfig._from_values({"cpu_quota": "25000"})
            ```
        """
        memory = _parse_int(values.get("memory_limit_bytes"), DEFAULT_MEMORY_LIMIT_BYTES)
        quota = _parse_int(values.get("cpu_quota"), DEFAULT_CPU_QUOTA)
        timeout = _parse_int(
            values.get("execution_timeout_seconds"), DEFAULT_EXECUTION_TIMEOUT_SECONDS
        )
        port = _parse_int(values.get("server_port"), DEFAULT_SERVER_PORT)
        return cls(
            docker_enabled=_parse_bool(values.get("docker_enabled"), True),
            memory_limit_bytes=memory if memory > 0 else DEFAULT_MEMORY_LIMIT_BYTES,
            cpu_quota=quota if quota > 0 else DEFAULT_CPU_QUOTA,
            execution_timeout_seconds=timeout if timeout > 0 else DEFAULT_EXECUTION_TIMEOUT_SECONDS,
            network_disabled=_parse_bool(values.get("network_disabled"), True),
            read_only_rootfs=_parse_bool(values.get("read_only_rootfs"), False),
            modules_path=str(values.get("modules_path") or DEFAULT_MODULES_PATH),
            build_recipe_path=str(values.get("build_recipe_path") or DEFAULT_BUILD_RECIPE_PATH),
            runtime_command=_parse_command(values.get("runtime_command"), DEFAULT_RUNTIME_COMMAND),
            test_command=_parse_command(values.get("test_command"), DEFAULT_TEST_COMMAND),
            function_modules=_parse_modules(
                values.get("function_modules"), DEFAULT_FUNCTION_MODULES
            ),
            server_port=port if 0 < port < 65536 else DEFAULT_SERVER_PORT,
        )
