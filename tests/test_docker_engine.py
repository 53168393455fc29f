import json
import logging
import os
import subprocess
import time
from pathlib import Path

import pytest

from exercise_sandbox import DockerEngine, ExerciseType, ModuleCatalog, SandboxConfig
from exercise_sandbox.errors import BuildTimeout
from exercise_sandbox.execution import docker_engine as docker_engine_module
from exercise_sandbox.execution.docker_engine import docker_is_available
from exercise_sandbox.execution.types import ExecutionRequest

_RUNNING = {"Status": "running", "Running": True, "Error": ""}


class _FakeDocker:
    """Answers docker CLI calls from canned results and records them."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.timeouts: dict[str, float | None] = {}
        self.builds: list[list[str]] = []
        self.failing: set[str] = set()
        self.state: dict = dict(_RUNNING)
        self.exit_code = 0
        self.logs = "hello"
        self.wait_times_out = False
        self.copied: bytes | None = None

    def run(self, args, *, input_bytes=None, timeout=None, merge_stderr=False):
        args = list(args)
        verb = args[0]
        self.calls.append(args)
        self.timeouts[verb] = timeout
        if verb in self.failing:
            return subprocess.CompletedProcess(args, 1, "", f"{verb} exploded")
        if verb == "create":
            return subprocess.CompletedProcess(args, 0, "c0ffee\n", "")
        if verb == "cp":
            self.copied = input_bytes
        if verb == "inspect":
            return subprocess.CompletedProcess(args, 0, json.dumps(self.state), "")
        if verb == "wait":
            if self.wait_times_out:
                raise subprocess.TimeoutExpired(args, timeout)
            return subprocess.CompletedProcess(args, 0, f"{self.exit_code}\n", "")
        if verb == "logs":
            return subprocess.CompletedProcess(args, 0, f"{self.logs}\n", "")
        return subprocess.CompletedProcess(args, 0, "", "")

    def build(self, args, context, timeout):
        self.builds.append(list(args))
        if "build" in self.failing:
            return 1, "step 1\nnpm ERR! missing script\n"
        return 0, "done"

    def verbs(self) -> list[str]:
        return [call[0] for call in self.calls]

    def call(self, verb: str) -> list[str]:
        return next(call for call in self.calls if call[0] == verb)


@pytest.fixture
def catalog(tmp_path: Path) -> ModuleCatalog:
    for name in ("module-1", "module-2"):
        exercise = tmp_path / "modules" / name / "exercise"
        exercise.mkdir(parents=True)
        (exercise / "test.js").write_text("describe('x', () => {})", encoding="utf-8")
    recipe = tmp_path / "Dockerfile.module-runner"
    recipe.write_text("FROM node:20-alpine\n", encoding="utf-8")
    return ModuleCatalog(tmp_path / "modules", recipe)


@pytest.fixture
def docker() -> _FakeDocker:
    return _FakeDocker()


def _engine(catalog: ModuleCatalog, docker: _FakeDocker, monkeypatch: pytest.MonkeyPatch, **overrides) -> DockerEngine:
    engine = DockerEngine(SandboxConfig(**overrides), catalog)
    monkeypatch.setattr(engine, "_run_docker", docker.run)
    monkeypatch.setattr(engine, "_stream_build", docker.build)
    return engine


def _function_request(code: str = "console.log('hello')") -> ExecutionRequest:
    return ExecutionRequest("module-1", code, ExerciseType.FUNCTION)


def test_function_run_success(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request())

    assert result.success is True
    assert result.message == "Code executed successfully"
    assert result.output == "hello"
    assert result.error is None
    assert result.exercise_type is ExerciseType.FUNCTION
    assert docker.verbs() == ["create", "cp", "start", "inspect", "wait", "logs", "rm"]
    assert docker.calls[-1] == ["rm", "-f", "-v", "c0ffee"]
    assert docker.copied is not None and b"console.log('hello')" in docker.copied


def test_build_uses_module_tag_and_managed_labels(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch)
    engine.run(_function_request())

    build = docker.builds[0]
    assert build[:3] == ["build", "--tag", "exercise-sandbox:module-1"]
    assert "exercise_sandbox.managed=true" in build
    assert build[-1] == "-"


def test_create_applies_isolation_and_limits(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch, memory_limit_bytes=64 * 1024 * 1024, cpu_quota=25_000)
    engine.run(_function_request())

    create = docker.call("create")
    assert create[create.index("--workdir") + 1] == "/app"
    assert create[create.index("--user") + 1] == "1001:1001"
    assert create[create.index("--network") + 1] == "none"
    assert create[create.index("--memory") + 1] == str(64 * 1024 * 1024)
    assert create[create.index("--memory-swap") + 1] == str(64 * 1024 * 1024)
    assert create[create.index("--cpu-quota") + 1] == "25000"
    assert create[create.index("--cpu-period") + 1] == "100000"
    assert "PORT=3000" in create
    assert "--rm" not in create
    assert "--read-only" not in create
    assert create[create.index("--name") + 1].startswith("exercise-sandbox-module-1-")
    assert create[-3:] == ["exercise-sandbox:module-1", "node", "tmp-server.js"]


def test_network_and_read_only_flags_follow_config(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch, network_disabled=False, read_only_rootfs=True)
    engine.run(_function_request())

    create = docker.call("create")
    assert "--network" not in create
    assert "--read-only" in create
    assert create[create.index("--volume") + 1] == "/app"


def test_container_names_are_unique(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch)
    engine.run(_function_request())
    engine.run(_function_request())

    names = [call[call.index("--name") + 1] for call in docker.calls if call[0] == "create"]
    assert len(set(names)) == 2


def test_unknown_module_never_touches_docker(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(ExecutionRequest("module-9", "x", ExerciseType.SERVER))

    assert result.success is False
    assert "not found" in result.message
    assert docker.calls == []
    assert docker.builds == []


def test_build_failure(catalog, docker, monkeypatch) -> None:
    docker.failing.add("build")
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request())

    assert result.success is False
    assert result.message == "Failed to build module image"
    assert "npm ERR! missing script" in (result.error or "")
    assert docker.calls == []


def test_create_failure_attempts_removal(catalog, docker, monkeypatch) -> None:
    docker.failing.add("create")
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request())

    assert result.success is False
    assert result.message == "Failed to create container"
    assert docker.verbs() == ["create", "rm"]


def test_injection_failure_removes_container(catalog, docker, monkeypatch) -> None:
    docker.failing.add("cp")
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request())

    assert result.success is False
    assert result.message == "Failed to create container"
    assert "failed to copy code" in (result.error or "")
    assert docker.calls[-1] == ["rm", "-f", "-v", "c0ffee"]
    assert "start" not in docker.verbs()


def test_container_that_failed_to_run(catalog, docker, monkeypatch) -> None:
    docker.state = {"Status": "created", "Running": False, "Error": "oci runtime error"}
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request())

    assert result.success is False
    assert result.message == "Container execution failed"
    assert "container is not running, state: created, error: oci runtime error" in (result.error or "")
    assert docker.calls[-1][0] == "rm"


def test_container_that_already_exited_cleanly_is_not_a_start_failure(catalog, docker, monkeypatch) -> None:
    docker.state = {"Status": "exited", "Running": False, "Error": ""}
    engine = _engine(catalog, docker, monkeypatch)
    assert engine.run(_function_request()).success is True


def test_wait_timeout_fails_and_removes(catalog, docker, monkeypatch) -> None:
    docker.wait_times_out = True
    engine = _engine(catalog, docker, monkeypatch, execution_timeout_seconds=7)
    result = engine.run(_function_request("while (true) {}"))

    assert result.success is False
    assert "timed out after 7s" in (result.error or "")
    assert docker.timeouts["wait"] == 7
    assert docker.calls[-1] == ["rm", "-f", "-v", "c0ffee"]


def test_non_zero_exit_is_a_failed_run(catalog, docker, monkeypatch) -> None:
    docker.exit_code = 1
    docker.logs = "ReferenceError: foo is not defined"
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request("foo()"))

    assert result.success is False
    assert result.message == "Code execution failed"
    assert result.error == "ReferenceError: foo is not defined"
    assert result.output is None


def test_removal_failure_does_not_change_result(catalog, docker, monkeypatch, caplog) -> None:
    docker.failing.add("rm")
    engine = _engine(catalog, docker, monkeypatch)
    with caplog.at_level(logging.WARNING, logger=docker_engine_module.__name__):
        result = engine.run(_function_request())

    assert result.success is True
    assert "Failed to remove container" in caplog.text


def test_server_run_polls_the_port_before_reporting_success(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(ExecutionRequest("module-2", "require('http')", ExerciseType.SERVER))

    assert result.success is True
    assert result.message == "Server started successfully"
    create = docker.call("create")
    assert create[-3:-1] == ["sh", "-c"]
    script = create[-1]
    assert "sleep 3" not in script
    assert 'kill -0 "$SERVER_PID"' in script
    assert '"http://localhost:${PORT:-3000}/"' in script
    assert '-lt 10 ]' in script
    assert "sleep 0.5" in script
    assert script.endswith("exit 86")


def test_server_that_never_answers_is_a_startup_timeout(catalog, docker, monkeypatch) -> None:
    docker.exit_code = docker_engine_module.SERVER_NOT_READY_EXIT_CODE
    docker.logs = "booting without a socket"
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(ExecutionRequest("module-2", "setInterval(() => {}, 1000)", ExerciseType.SERVER))

    assert result.success is False
    assert result.message == "Server startup timeout"
    assert result.error == "Server failed to start. Output: booting without a socket"
    assert result.output is None
    assert docker.calls[-1] == ["rm", "-f", "-v", "c0ffee"]


def test_function_exit_code_matching_server_timeout_is_a_plain_failure(catalog, docker, monkeypatch) -> None:
    docker.exit_code = docker_engine_module.SERVER_NOT_READY_EXIT_CODE
    docker.logs = "bye"
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request("process.exit(86)"))

    assert result.success is False
    assert result.message == "Code execution failed"


@pytest.mark.parametrize(
    ("verb", "detail"),
    [
        ("start", "failed to start container"),
        ("wait", "container wait error"),
        ("logs", "failed to get container logs"),
    ],
)
def test_lifecycle_failures_fail_the_run_and_remove(catalog, docker, monkeypatch, verb, detail) -> None:
    docker.failing.add(verb)
    engine = _engine(catalog, docker, monkeypatch)
    result = engine.run(_function_request())

    assert result.success is False
    assert result.message == "Container execution failed"
    assert detail in (result.error or "")
    assert docker.calls[-1] == ["rm", "-f", "-v", "c0ffee"]


@pytest.mark.parametrize("verb", ["start", "wait", "logs"])
def test_lifecycle_failures_are_reported_as_test_entries(catalog, docker, monkeypatch, verb) -> None:
    docker.failing.add(verb)
    engine = _engine(catalog, docker, monkeypatch)
    suite = engine.test(_function_request())

    assert suite.total_tests == 0
    assert suite.results[0].name == "Execution"
    assert suite.results[0].passed is False
    assert docker.calls[-1][0] == "rm"


def _hanging_docker_on_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    stub = bin_dir / "docker"
    # the child sleep keeps the log pipe open after the shell itself is killed
    stub.write_text("#!/bin/sh\nsleep 30\necho never\n", encoding="utf-8")
    stub.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")


def test_stream_build_times_out_without_hanging(catalog, tmp_path, monkeypatch) -> None:
    _hanging_docker_on_path(tmp_path, monkeypatch)
    engine = DockerEngine(SandboxConfig(), catalog)

    started = time.monotonic()
    with pytest.raises(BuildTimeout, match="timed out after 0.5s"):
        engine._stream_build(["build", "-"], b"context", 0.5)

    assert time.monotonic() - started < 4


def test_build_timeout_fails_the_run(catalog, docker, tmp_path, monkeypatch) -> None:
    _hanging_docker_on_path(tmp_path, monkeypatch)
    monkeypatch.setattr(docker_engine_module, "IMAGE_BUILD_TIMEOUT_SECONDS", 0.5)
    engine = DockerEngine(SandboxConfig(), catalog)
    monkeypatch.setattr(engine, "_run_docker", docker.run)

    result = engine.run(_function_request())

    assert result.success is False
    assert result.message == "Failed to build module image"
    assert "build operation timed out" in (result.error or "")
    assert docker.calls == []


def test_test_run_doubles_limits_and_parses_report(catalog, docker, monkeypatch) -> None:
    docker.logs = json.dumps(
        {
            "stats": {"tests": 2},
            "passes": [{"title": "adds"}],
            "failures": [{"title": "subtracts", "err": {"message": "expected 5 to equal got 4"}}],
        }
    )
    engine = _engine(catalog, docker, monkeypatch, memory_limit_bytes=1000, execution_timeout_seconds=10)
    suite = engine.test(ExecutionRequest("module-2", "server code", ExerciseType.SERVER))

    assert (suite.total_tests, suite.passed_tests, suite.failed_tests) == (2, 1, 1)
    assert suite.results[1].expected == "5"
    create = docker.call("create")
    assert create[create.index("--memory") + 1] == "2000"
    assert docker.timeouts["wait"] == 20
    script = create[-1]
    assert "/tmp/server.log" in script
    assert "npx mocha test.js --reporter json" in script
    assert docker.calls[-1][0] == "rm"


def test_function_test_run_executes_test_command_directly(catalog, docker, monkeypatch) -> None:
    docker.logs = ""
    engine = _engine(catalog, docker, monkeypatch)
    suite = engine.test(ExecutionRequest("module-1", "module.exports = {}", ExerciseType.FUNCTION))

    assert suite.total_tests == 0
    assert docker.call("create")[-5:] == ["npx", "mocha", "test.js", "--reporter", "json"]


def test_test_run_setup_failure_is_reported_as_entry(catalog, docker, monkeypatch) -> None:
    docker.failing.add("build")
    engine = _engine(catalog, docker, monkeypatch)
    suite = engine.test(ExecutionRequest("module-2", "x", ExerciseType.SERVER))

    assert (suite.total_tests, suite.passed_tests, suite.failed_tests) == (0, 0, 0)
    assert suite.results[0].name == "Setup"
    assert suite.results[0].passed is False
    assert (suite.results[0].error or "").startswith("Failed to build module image")


def test_test_run_unknown_module(catalog, docker, monkeypatch) -> None:
    engine = _engine(catalog, docker, monkeypatch)
    suite = engine.test(ExecutionRequest("module-9", "x", ExerciseType.SERVER))

    assert suite.results[0].name == "Module Setup"
    assert suite.results[0].error == "Module module-9 not found"


def test_list_containers_and_cleanup_only_touch_stopped(catalog, docker, monkeypatch) -> None:
    listing = "a1|exercise-sandbox-module-1-1|exercise-sandbox:module-1|running|Up 2s\n" \
        "b2|exercise-sandbox-module-2-2|exercise-sandbox:module-2|exited|Exited (0)\n"

    def _run(args, **kwargs):
        docker.calls.append(list(args))
        if args[0] == "ps":
            return subprocess.CompletedProcess(args, 0, listing, "")
        if args[:2] == ["image", "ls"]:
            return subprocess.CompletedProcess(args, 0, "sha1|exercise-sandbox|module-1|1 hour ago|200MB\n", "")
        return subprocess.CompletedProcess(args, 0, "", "")

    engine = DockerEngine(SandboxConfig(), catalog)
    monkeypatch.setattr(engine, "_run_docker", _run)

    containers = engine.list_containers(all_states=True)
    assert [c.name for c in containers] == ["exercise-sandbox-module-1-1", "exercise-sandbox-module-2-2"]
    assert "label=exercise_sandbox.managed=true" in docker.calls[0]

    summary = engine.cleanup_stale()
    assert summary.removed_containers == 1
    assert summary.removed_images == 1
    assert ["rm", "-f", "-v", "b2"] in docker.calls
    assert ["rm", "-f", "-v", "a1"] not in docker.calls
    assert ["image", "rm", "exercise-sandbox:module-1"] in docker.calls


def test_docker_is_available_without_cli(monkeypatch) -> None:
    monkeypatch.setattr(docker_engine_module.shutil, "which", lambda _: None)
    ok, reason = docker_is_available()
    assert ok is False
    assert "Docker CLI was not found" in (reason or "")
