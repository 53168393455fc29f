from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from pathlib import Path

from ..catalog import ModuleCatalog
from ..errors import (
    BuildFailure,
    BuildTimeout,
    CreationFailure,
    ExecutionTimeout,
    ExerciseNotFound,
    InjectionFailure,
    LogRetrievalFailure,
    SandboxError,
    StartFailure,
    WaitError,
)
from ..models import ExerciseType, RunResult, TestSuiteResult, elapsed_ms
from ..reporting import parse_test_output
from .build_context import RECIPE_ARCHIVE_NAME, build_context_archive, single_file_archive
from .config import (
    CONTAINER_PREFIX,
    CONTAINER_USER,
    CONTAINER_WORKDIR,
    ENTRY_FILENAME,
    IMAGE_BUILD_TIMEOUT_SECONDS,
    IMAGE_REPOSITORY,
    MANAGED_LABEL_VALUE,
    MANAGED_LABELS,
    SERVER_NOT_READY_EXIT_CODE,
    SERVER_WARMUP_SECONDS,
    SandboxConfig,
)
from .types import (
    CleanupSummary,
    ContainerInfo,
    ExecutionRequest,
    ImageInfo,
    SandboxInstance,
    SandboxState,
)

logger = logging.getLogger(__name__)

_MANAGED_FILTER = f"label=exercise_sandbox.managed={MANAGED_LABEL_VALUE}"
_BUILD_LOG_TAIL_LINES = 20


def docker_is_available() -> tuple[bool, str | None]:
    """Check Docker CLI and daemon accessibility.

    Example:
        ```python
        ok, reason = docker_is_available()
        ```
    """
    if shutil.which("docker") is None:
        return False, "Docker CLI was not found. Install Docker and ensure it is on PATH."
    probe = subprocess.run(["docker", "info"], capture_output=True, text=True, check=False)
    if probe.returncode != 0:
        return False, "Docker is installed but the daemon is not running or not accessible."
    return True, None


def _communicate(process: subprocess.Popen[bytes], payload: bytes, sink: list[bytes]) -> None:
    """Feed the build context to the build and drain its log until it exits.

    Example:
        ```python
        threading.Thread(target=_communicate, args=(process, context, sink)).start()
        ```
    """
    stdout, _ = process.communicate(input=payload)
    sink.append(stdout or b"")


def _tail(text: str, lines: int = _BUILD_LOG_TAIL_LINES) -> str:
    """Return the last lines of a command log.

    Example:
        ```python
        message = _tail(build_log, 5)
        ```
    """
    return "\n".join(text.strip().splitlines()[-lines:])


class DockerEngine:
    """Execute submissions in a freshly built, resource-limited container per request.

    Every call builds (or reuses from cache) the module image, creates one
    container, copies the submission in, runs it under a deadline, collects its
    output and force-removes the container before returning.

    Example:
        ```python
        engine = DockerEngine(SandboxConfig(), ModuleCatalog("src/modules"))
        ```
    """

    def __init__(self, config: SandboxConfig, catalog: ModuleCatalog) -> None:
        """Bind the engine to its configuration and module catalog.

        Example:
            ```python
            engine = DockerEngine(SandboxConfig.from_env(), catalog)
            ```
        """
        self._config = config
        self._catalog = catalog

    def run(self, request: ExecutionRequest) -> RunResult:
        """Execute one submission inside a container.

        Example:
            ```python
            result = engine.run(ExecutionRequest("module-1", "console.log('hi')", ExerciseType.FUNCTION))
            ```
        """
        started = time.monotonic()
        try:
            exit_code, output = self._execute(request, testing=False)
        except SandboxError as exc:
            logger.info("Run failed for %s: %s", request.module_id, exc)
            return RunResult.failed(
                request.module_id,
                exc.summary,
                elapsed_ms(started),
                request.exercise_type,
                exc.describe(),
            )
        if request.exercise_type is ExerciseType.SERVER and exit_code == SERVER_NOT_READY_EXIT_CODE:
            return RunResult.failed(
                request.module_id,
                "Server startup timeout",
                elapsed_ms(started),
                request.exercise_type,
                f"Server failed to start. Output: {output}",
            )
        if exit_code != 0:
            return RunResult.failed(
                request.module_id,
                "Code execution failed",
                elapsed_ms(started),
                request.exercise_type,
                output or f"Process exited with code {exit_code}",
            )
        message = (
            "Server started successfully"
            if request.exercise_type is ExerciseType.SERVER
            else "Code executed successfully"
        )
        return RunResult.succeeded(
            request.module_id, output, elapsed_ms(started), request.exercise_type, message
        )

    def test(self, request: ExecutionRequest) -> TestSuiteResult:
        """Run the module's tests against one submission inside a container.

        Example:
            ```python
            suite = engine.test(ExecutionRequest("module-2", code))
            ```
        """
        started = time.monotonic()
        try:
            _, output = self._execute(request, testing=True)
        except SandboxError as exc:
            logger.info("Test run failed for %s: %s", request.module_id, exc)
            return TestSuiteResult.setup_failure(
                request.module_id,
                exc.stage,
                exc.describe(),
                elapsed_ms(started),
                request.exercise_type,
            )
        return parse_test_output(
            request.module_id,
            output,
            execution_time_ms=elapsed_ms(started),
            exercise_type=request.exercise_type,
        )

    def list_containers(self, all_states: bool = False) -> list[ContainerInfo]:
        """List managed containers.

        Example:
            ```python
            containers = engine.list_containers(all_states=True)
            ```
        """
        fmt = "{{.ID}}|{{.Names}}|{{.Image}}|{{.State}}|{{.Status}}"
        cmd = ["ps", "--filter", _MANAGED_FILTER, "--format", fmt]
        if all_states:
            cmd.insert(1, "-a")
        out = self._run_docker(cmd)
        if out.returncode != 0:
            raise RuntimeError(f"Failed to list containers: {out.stderr.strip()}")
        items: list[ContainerInfo] = []
        for line in out.stdout.splitlines():
            if not line.strip():
                continue
            c_id, name, image, state, status = line.split("|", 4)
            items.append(ContainerInfo(c_id, name, image, state, status))
        return items

    def list_images(self) -> list[ImageInfo]:
        """List managed exercise images.

        Example:
            ```python
            images = engine.list_images()
            ```
        """
        fmt = "{{.ID}}|{{.Repository}}|{{.Tag}}|{{.CreatedSince}}|{{.Size}}"
        out = self._run_docker(["image", "ls", "--filter", _MANAGED_FILTER, "--format", fmt])
        if out.returncode != 0:
            raise RuntimeError(f"Failed to list images: {out.stderr.strip()}")
        images: list[ImageInfo] = []
        for line in out.stdout.splitlines():
            if not line.strip():
                continue
            i_id, repo, tag, created, size = line.split("|", 4)
            images.append(ImageInfo(i_id, repo, tag, created, size))
        return images

    def cleanup_stale(self) -> CleanupSummary:
        """Delete stopped managed containers and removable managed images.

        Example:
            ```python
            summary = engine.cleanup_stale()
            ```
        """
        removed_containers = 0
        for container in self.list_containers(all_states=True):
            if container.state != "running":
                removed = self._run_docker(["rm", "-f", "-v", container.id])
                if removed.returncode == 0:
                    removed_containers += 1

        removed_images = 0
        for image in self.list_images():
            removed = self._run_docker(["image", "rm", f"{image.repository}:{image.tag}"])
            if removed.returncode == 0:
                removed_images += 1
        return CleanupSummary(removed_containers=removed_containers, removed_images=removed_images)

    def _execute(self, request: ExecutionRequest, *, testing: bool) -> tuple[int, str]:
        """Drive one container through its full lifecycle and return (exit code, output).

        Example:
            ```python
            exit_code, output = engine._execute(request, testing=False)
            ```
        """
        exercise_dir = self._catalog.resolve_exercise_path(request.module_id)
        if exercise_dir is None:
            raise ExerciseNotFound(request.module_id)

        multiplier = 2 if testing else 1
        unit = SandboxInstance(
            id="",
            name=f"{CONTAINER_PREFIX}-{request.module_id}-{time.time_ns()}",
            image=f"{IMAGE_REPOSITORY}:{request.module_id}",
            # the test framework runs beside the submission
            memory_bytes=self._config.memory_limit_bytes * multiplier,
            cpu_quota=self._config.cpu_quota,
            cpu_period=self._config.cpu_period,
        )
        self._transition(unit, SandboxState.IMAGE_BUILDING)
        try:
            self._build_image(exercise_dir, unit.image)
        except SandboxError:
            self._transition(unit, SandboxState.FAILED)
            raise

        try:
            self._create_container(unit, self._entry_command(request, testing=testing))
            self._inject_code(unit, request.code)
            self._start(unit)
            exit_code = self._wait(unit, self._config.execution_timeout_seconds * multiplier)
            output = self._collect_logs(unit)
            self._transition(unit, SandboxState.COMPLETED)
            return exit_code, output
        except SandboxError:
            self._transition(unit, SandboxState.FAILED)
            raise
        finally:
            self._remove(unit)

    def _entry_command(self, request: ExecutionRequest, *, testing: bool) -> list[str]:
        """Return the container command for a plain run or a test run.

        Function exercises run the submission as a script. Server exercises are
        started in the background; a plain run polls the port until any HTTP
        response arrives and exits with `SERVER_NOT_READY_EXIT_CODE` when none
        does or the server dies first. A test run points the test framework at it.

        Example:
            ```python
            cmd = engine._entry_command(request, testing=True)
            ```
        """
        runtime = [*self._config.runtime_command, ENTRY_FILENAME]
        if request.exercise_type is ExerciseType.FUNCTION:
            return list(self._config.test_command) if testing else runtime
        server = shlex.join(runtime)
        if testing:
            script = (
                f"{server} >/tmp/server.log 2>&1 & SERVER_PID=$!; "
                f"sleep {SERVER_WARMUP_SECONDS}; "
                f"{shlex.join(self._config.test_command)}; "
                'kill "$SERVER_PID" 2>/dev/null || true'
            )
        else:
            settings = self._config.local
            script = (
                f"{server} & SERVER_PID=$!; "
                "attempt=0; "
                f'while [ "$attempt" -lt {settings.health_attempts} ]; do '
                f"sleep {settings.health_interval_seconds}; "
                'kill -0 "$SERVER_PID" 2>/dev/null || break; '
                f"if wget -T {max(1, int(settings.health_request_timeout_seconds))} -S -O /dev/null "
                f'"http://localhost:${{PORT:-{self._config.server_port}}}/" 2>&1 | grep -q "HTTP/"; '
                'then kill "$SERVER_PID"; exit 0; fi; '
                "attempt=$((attempt + 1)); "
                "done; "
                'kill "$SERVER_PID" 2>/dev/null; '
                f"exit {SERVER_NOT_READY_EXIT_CODE}"
            )
        return ["sh", "-c", script]

    def _build_image(self, exercise_dir: Path, tag: str) -> None:
        """Build the module image from the exercise directory and shared recipe.

        Example:
            ```python
            engine._build_image(Path("src/modules/module-2/exercise"), "exercise-sandbox:module-2")
            ```
        """
        context = build_context_archive(exercise_dir, self._catalog.build_recipe_path)
        args = ["build", "--tag", tag, "--file", RECIPE_ARCHIVE_NAME]
        for key, value in MANAGED_LABELS.items():
            args.extend(["--label", f"{key}={value}"])
        args.append("-")
        returncode, log = self._stream_build(args, context, IMAGE_BUILD_TIMEOUT_SECONDS)
        if returncode != 0:
            raise BuildFailure(f"failed to build image: {_tail(log)}")
        logger.debug("Built image %s", tag)

    def _stream_build(self, args: list[str], context: bytes, timeout: float) -> tuple[int, str]:
        """Run a build, draining its log on a background thread raced against a deadline.

        Example:
            ```python
            returncode, log = engine._stream_build(["build", "--tag", "img", "-"], context, 300)
            ```
        """
        cmd = self._docker_cmd(args)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise BuildFailure(f"failed to build image: {exc}") from exc

        sink: list[bytes] = []
        drainer = threading.Thread(target=_communicate, args=(process, context, sink), daemon=True)
        drainer.start()
        drainer.join(timeout)
        if drainer.is_alive():
            # Helpers spawned by the build client hold the log pipe open too.
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            process.wait()
            drainer.join(5)
            raise BuildTimeout(f"build operation timed out after {timeout}s")
        return process.returncode, b"".join(sink).decode("utf-8", errors="replace")

    def _create_container(self, unit: SandboxInstance, command: list[str]) -> None:
        """Create the hardened, resource-limited container for one request.

        Example:
            ```python
            engine._create_container(unit, ["node", "tmp-server.js"])
            ```
        """
        args = [
            "create",
            "--name",
            unit.name,
            "--workdir",
            CONTAINER_WORKDIR,
            "--user",
            CONTAINER_USER,
            "--env",
            f"PORT={self._config.server_port}",
            "--memory",
            str(unit.memory_bytes),
            "--memory-swap",
            str(unit.memory_bytes),
            "--cpu-quota",
            str(unit.cpu_quota),
            "--cpu-period",
            str(unit.cpu_period),
        ]
        if self._config.network_disabled:
            args.extend(["--network", "none"])
        if self._config.read_only_rootfs:
            # the workdir stays writable on an anonymous volume so code can be injected
            args.extend(["--read-only", "--tmpfs", "/tmp", "--volume", CONTAINER_WORKDIR])
        for key, value in MANAGED_LABELS.items():
            args.extend(["--label", f"{key}={value}"])
        args.append(unit.image)
        args.extend(command)

        created = self._run_docker(args)
        if created.returncode != 0:
            raise CreationFailure(f"failed to create container: {created.stderr.strip()}")
        unit.id = created.stdout.strip()
        self._transition(unit, SandboxState.CONTAINER_CREATED)

    def _inject_code(self, unit: SandboxInstance, code: str) -> None:
        """Copy the submission into the container as the entry-point file.

        Example:
            ```python
            engine._inject_code(unit, "console.log('hi')")
            ```
        """
        payload = single_file_archive(ENTRY_FILENAME, code)
        copied = self._run_docker(["cp", "-", f"{unit.id}:{CONTAINER_WORKDIR}"], input_bytes=payload)
        if copied.returncode != 0:
            raise InjectionFailure(f"failed to copy code to container: {copied.stderr.strip()}")
        self._transition(unit, SandboxState.CODE_INJECTED)

    def _start(self, unit: SandboxInstance) -> None:
        """Start the container and verify it did not fail on launch.

        A container that already exited cleanly is fine: short scripts can finish
        before the inspection runs.

        Example:
            ```python
            engine._start(unit)
            ```
        """
        started = self._run_docker(["start", unit.id])
        if started.returncode != 0:
            raise StartFailure(f"failed to start container: {started.stderr.strip()}")
        self._transition(unit, SandboxState.RUNNING)

        inspected = self._run_docker(["inspect", "--format", "{{json .State}}", unit.id])
        if inspected.returncode != 0:
            logger.warning("Failed to inspect container %s: %s", unit.name, inspected.stderr.strip())
            return
        try:
            state = json.loads(inspected.stdout)
        except json.JSONDecodeError:
            logger.warning("Unreadable state for container %s: %r", unit.name, inspected.stdout)
            return
        status = str(state.get("Status", ""))
        error = str(state.get("Error", ""))
        if not state.get("Running") and (status != "exited" or error):
            raise StartFailure(f"container is not running, state: {status}, error: {error}")

    def _wait(self, unit: SandboxInstance, timeout: int) -> int:
        """Wait for the container to stop within the deadline and return its exit code.

        Example:
            ```python
            exit_code = engine._wait(unit, 30)
            ```
        """
        try:
            waited = self._run_docker(["wait", unit.id], timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise ExecutionTimeout(f"container wait timed out after {timeout}s") from exc
        if waited.returncode != 0:
            raise WaitError(f"container wait error: {waited.stderr.strip()}")
        try:
            return int(waited.stdout.strip().splitlines()[-1])
        except (IndexError, ValueError) as exc:
            raise WaitError(f"unexpected wait status: {waited.stdout.strip()!r}") from exc

    def _collect_logs(self, unit: SandboxInstance) -> str:
        """Return the container's combined stdout and stderr, trimmed.

        Example:
            ```python
            output = engine._collect_logs(unit)
            ```
        """
        logs = self._run_docker(["logs", unit.id], merge_stderr=True)
        if logs.returncode != 0:
            raise LogRetrievalFailure(f"failed to get container logs: {logs.stdout.strip()}")
        return logs.stdout.strip()

    def _remove(self, unit: SandboxInstance) -> None:
        """Force-remove the container, logging failures without raising.

        Example:
            ```python
            engine._remove(unit)
            ```
        """
        target = unit.id or unit.name
        removed = self._run_docker(["rm", "-f", "-v", target])
        if removed.returncode != 0:
            if unit.id:
                logger.warning("Failed to remove container %s: %s", target, removed.stderr.strip())
            else:
                logger.debug("No container to remove for %s", unit.name)
            return
        self._transition(unit, SandboxState.REMOVED)

    def _transition(self, unit: SandboxInstance, state: SandboxState) -> None:
        """Record a lifecycle transition of an execution unit.

        Example:
            ```python
            engine._transition(unit, SandboxState.RUNNING)
            ```
        """
        logger.debug("Container %s: %s -> %s", unit.name, unit.state.value, state.value)
        unit.state = state

    def _run_docker(
        self,
        args: list[str],
        *,
        input_bytes: bytes | None = None,
        timeout: float | None = None,
        merge_stderr: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run a Docker CLI command and return its decoded result.

        A missing CLI is reported as a failed command rather than an exception.
        `subprocess.TimeoutExpired` propagates when `timeout` elapses.

        Example:
            ```python
            completed = engine._run_docker(["ps"])
            ```
        """
        cmd = self._docker_cmd(args)
        logger.debug("docker %s", " ".join(args[:2]))
        try:
            completed = subprocess.run(
                cmd,
                input=input_bytes,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                timeout=timeout,
                check=False,
            )
        except OSError as exc:
            return subprocess.CompletedProcess(cmd, 127, "", str(exc))
        return subprocess.CompletedProcess(
            cmd,
            completed.returncode,
            (completed.stdout or b"").decode("utf-8", errors="replace"),
            (completed.stderr or b"").decode("utf-8", errors="replace"),
        )

    def _docker_cmd(self, args: list[str]) -> list[str]:
        """Build a Docker CLI command.

        Example:
            ```python
            cmd = engine._docker_cmd(["ps"])
            ```
        """
        return ["docker", *args]
