from pathlib import Path

import pytest

from exercise_sandbox import SandboxConfig
from exercise_sandbox.execution.config import (
    DEFAULT_CPU_QUOTA,
    DEFAULT_EXECUTION_TIMEOUT_SECONDS,
    DEFAULT_MEMORY_LIMIT_BYTES,
    DEFAULT_TEST_COMMAND,
)


def test_defaults_without_environment() -> None:
    config = SandboxConfig.from_env({})
    assert config.docker_enabled is True
    assert config.memory_limit_bytes == 128 * 1024 * 1024
    assert config.cpu_quota == 50_000
    assert config.cpu_period == 100_000
    assert config.execution_timeout_seconds == 30
    assert config.network_disabled is True
    assert config.read_only_rootfs is False
    assert config.runtime_command == ("node",)
    assert config.test_command == DEFAULT_TEST_COMMAND
    assert config.function_modules == frozenset({"module-1"})
    assert config.server_port == 3000


def test_environment_overrides() -> None:
    config = SandboxConfig.from_env(
        {
            "DOCKER_ENABLED": "false",
            "DOCKER_MEMORY_LIMIT": "268435456",
            "DOCKER_CPU_LIMIT": "25000",
            "DOCKER_EXECUTION_TIMEOUT": "10",
            "DOCKER_NETWORK_DISABLED": "0",
            "DOCKER_READONLY_ROOTFS": "TRUE",
            "EXERCISE_RUNTIME": "python3 -u",
            "FUNCTION_MODULES": "module-1, module-5",
            "EXERCISE_SERVER_PORT": "8080",
        }
    )
    assert config.docker_enabled is False
    assert config.memory_limit_bytes == 268435456
    assert config.cpu_quota == 25000
    assert config.execution_timeout_seconds == 10
    assert config.network_disabled is False
    assert config.read_only_rootfs is True
    assert config.runtime_command == ("python3", "-u")
    assert config.function_modules == frozenset({"module-1", "module-5"})
    assert config.server_port == 8080


def test_invalid_environment_values_fall_back_to_defaults() -> None:
    config = SandboxConfig.from_env(
        {
            "DOCKER_ENABLED": "maybe",
            "DOCKER_MEMORY_LIMIT": "lots",
            "DOCKER_CPU_LIMIT": "-5",
            "DOCKER_EXECUTION_TIMEOUT": "0",
            "EXERCISE_SERVER_PORT": "70000",
        }
    )
    assert config.docker_enabled is True
    assert config.memory_limit_bytes == DEFAULT_MEMORY_LIMIT_BYTES
    assert config.cpu_quota == DEFAULT_CPU_QUOTA
    assert config.execution_timeout_seconds == DEFAULT_EXECUTION_TIMEOUT_SECONDS
    assert config.server_port == 3000


def test_constructor_rejects_non_positive_limits() -> None:
    with pytest.raises(ValueError, match="memory_limit_bytes"):
        SandboxConfig(memory_limit_bytes=0)
    with pytest.raises(ValueError, match="execution_timeout_seconds"):
        SandboxConfig(execution_timeout_seconds=-1)
    with pytest.raises(ValueError, match="runtime_command"):
        SandboxConfig(runtime_command=())


def test_config_file_sandbox_table(tmp_path: Path) -> None:
    path = tmp_path / "sandbox.toml"
    path.write_text(
        "[sandbox]\n"
        "docker_enabled = false\n"
        "execution_timeout_seconds = 12\n"
        'test_command = ["npx", "mocha", "--reporter", "json"]\n'
        'function_modules = ["module-1", "module-3"]\n',
        encoding="utf-8",
    )
    config = SandboxConfig.from_file(str(path))
    assert config.docker_enabled is False
    assert config.execution_timeout_seconds == 12
    assert config.test_command == ("npx", "mocha", "--reporter", "json")
    assert config.function_modules == frozenset({"module-1", "module-3"})
