from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator

import requests

from ..catalog import ModuleCatalog
from ..errors import ExerciseNotFound
from ..models import ExerciseType, RunResult, TestSuiteResult, elapsed_ms
from ..reporting import parse_test_output
from .config import ENTRY_FILENAME, SandboxConfig
from .types import ExecutionRequest

logger = logging.getLogger(__name__)

# one direct-mode server at a time: they all bind the same port
_SERVER_LOCK = threading.Lock()


def _decode(raw: bytes | str | None) -> str:
    """Decode captured process output.

    Example:
        ```python
        text = _decode(b"hello\\n")
        ```
    """
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    return raw.decode("utf-8", errors="replace")


def free_port(port: int) -> None:
    """Kill processes listening on a local TCP port, logging anything that fails.

    Example:
        ```python
        free_port(3000)
        ```
    """
    try:
        found = subprocess.run(
            ["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        logger.warning("Failed to kill process on port %d: %s", port, exc)
        return
    for raw_pid in found.stdout.split():
        try:
            os.kill(int(raw_pid), signal.SIGKILL)
        except (ValueError, OSError) as exc:
            logger.warning("Failed to kill process %s on port %d: %s", raw_pid, port, exc)
        else:
            logger.info("Killed process %s holding port %d", raw_pid, port)


def _kill_group(process: subprocess.Popen[bytes]) -> None:
    """Kill every process in the session a child was started in.

    Example:
        ```python
        _kill_group(process)
        ```
    """
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _terminate(process: subprocess.Popen[bytes]) -> None:
    """Kill a background process group and reap it.

    Example:
        ```python
        _terminate(process)
        ```
    """
    _kill_group(process)
    process.wait()


def run_in_group(
    cmd: list[str],
    cwd: Path,
    timeout: float,
    *,
    merge_stderr: bool = False,
) -> subprocess.CompletedProcess[bytes]:
    """Run a command in its own session and kill the whole session when it is done.

    Processes the command spawns die with it, on timeout as well as on normal
    exit. On timeout `subprocess.TimeoutExpired` is raised carrying whatever
    output was captured before the kill.

    Example:
        ```python
        completed = run_in_group(["node", "tmp-server.js"], Path("exercise"), 5, merge_stderr=True)
        ```
    """
    process = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
        start_new_session=True,
    )
    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        _kill_group(process)
        stdout, stderr = process.communicate()
        raise subprocess.TimeoutExpired(cmd, timeout, output=stdout, stderr=stderr) from exc
    finally:
        _kill_group(process)
    return subprocess.CompletedProcess(cmd, process.returncode, stdout, stderr)


class _OutputBuffer:
    """Thread-safe accumulator for a background process's output.

    Example:
        ```python
        buffer = _OutputBuffer()
        ```
    """

    def __init__(self) -> None:
        """Create an empty buffer.

        Example:
            ```python
            buffer = _OutputBuffer()
            ```
        """
        self._chunks: list[bytes] = []
        self._lock = threading.Lock()

    def drain(self, stream: IO[bytes]) -> None:
        """Read a stream line by line until it closes.

        Example:
            ```python
            threading.Thread(target=buffer.drain, args=(process.stdout,), daemon=True).start()
            ```
        """
        for line in iter(stream.readline, b""):
            with self._lock:
                self._chunks.append(line)

    def text(self) -> str:
        """Return everything read so far.

        Example:
            ```python
            output = buffer.text()
            ```
        """
        with self._lock:
            return _decode(b"".join(self._chunks))


@dataclass(slots=True)
class _ServerHandle:
    """Running server process plus its readiness verdict.

    Example:
        ```python
        handle = _ServerHandle(process, buffer, ready=True)
        ```
    """

    process: subprocess.Popen[bytes]
    output: _OutputBuffer
    ready: bool


class LocalEngine:
    """Execute submissions as host processes inside the exercise directory.

    Used when containers are disabled or unavailable. There is no isolation
    beyond a separate process and its timeouts.

    Example:
        ```python
        engine = LocalEngine(SandboxConfig(docker_enabled=False), ModuleCatalog("src/modules"))
        ```
    """

    def __init__(self, config: SandboxConfig, catalog: ModuleCatalog) -> None:
        """Bind the engine to its configuration and module catalog.

        Example:
            ```python
            engine = LocalEngine(SandboxConfig.from_env(), catalog)
            ```
        """
        self._config = config
        self._catalog = catalog
        self._settings = config.local

    def run(self, request: ExecutionRequest) -> RunResult:
        """Execute one submission as a host process.

        Example:
            ```python
            result = engine.run(ExecutionRequest("module-1", "console.log('hi')", ExerciseType.FUNCTION))
            ```
        """
        started = time.monotonic()
        exercise_dir = self._catalog.resolve_exercise_path(request.module_id)
        if exercise_dir is None:
            missing = ExerciseNotFound(request.module_id)
            return RunResult.failed(
                request.module_id, missing.summary, elapsed_ms(started), request.exercise_type, str(missing)
            )
        if request.exercise_type is ExerciseType.FUNCTION:
            return self._run_function(request, exercise_dir, started)
        with _SERVER_LOCK:
            return self._run_server(request, exercise_dir, started)

    def test(self, request: ExecutionRequest) -> TestSuiteResult:
        """Run the module's tests against one submission on the host.

        Example:
            ```python
            suite = engine.test(ExecutionRequest("module-2", code))
            ```
        """
        started = time.monotonic()
        exercise_dir = self._catalog.resolve_exercise_path(request.module_id)
        if exercise_dir is None:
            missing = ExerciseNotFound(request.module_id)
            return TestSuiteResult.setup_failure(
                request.module_id, missing.stage, str(missing), elapsed_ms(started), request.exercise_type
            )
        if request.exercise_type is ExerciseType.FUNCTION:
            return self._test_function(request, exercise_dir, started)
        with _SERVER_LOCK:
            return self._test_server(request, exercise_dir, started)

    def _write_entry(self, exercise_dir: Path, code: str) -> None:
        """Write the submission as the exercise entry-point file.

        Example:
            ```python
            engine._write_entry(Path("src/modules/module-1/exercise"), "console.log('hi')")
            ```
        """
        (exercise_dir / ENTRY_FILENAME).write_text(code, encoding="utf-8")

    def _run_function(self, request: ExecutionRequest, exercise_dir: Path, started: float) -> RunResult:
        """Run a function exercise to completion under the run timeout.

        Example:
            ```python
            result = engine._run_function(request, exercise_dir, time.monotonic())
            ```
        """
        try:
            self._write_entry(exercise_dir, request.code)
        except OSError as exc:
            return RunResult.failed(
                request.module_id, "Failed to write code to file", elapsed_ms(started), request.exercise_type, str(exc)
            )
        timeout = self._settings.run_timeout_seconds
        try:
            completed = run_in_group(
                [*self._config.runtime_command, ENTRY_FILENAME],
                exercise_dir,
                timeout,
                merge_stderr=True,
            )
        except subprocess.TimeoutExpired as exc:
            partial = _decode(exc.output).strip()
            error = f"Execution timed out after {timeout}s"
            return RunResult.failed(
                request.module_id,
                "Code execution failed",
                elapsed_ms(started),
                request.exercise_type,
                f"{error}\n{partial}" if partial else error,
            )
        except OSError as exc:
            return RunResult.failed(
                request.module_id, "Code execution failed", elapsed_ms(started), request.exercise_type, str(exc)
            )

        output = _decode(completed.stdout).strip()
        if completed.returncode != 0:
            return RunResult.failed(
                request.module_id,
                "Code execution failed",
                elapsed_ms(started),
                request.exercise_type,
                output or f"Process exited with code {completed.returncode}",
            )
        return RunResult.succeeded(request.module_id, output, elapsed_ms(started), request.exercise_type)

    def _run_server(self, request: ExecutionRequest, exercise_dir: Path, started: float) -> RunResult:
        """Start a server exercise, confirm it answers, then stop it.

        Example:
            ```python
            result = engine._run_server(request, exercise_dir, time.monotonic())
            ```
        """
        free_port(self._config.server_port)
        try:
            self._write_entry(exercise_dir, request.code)
        except OSError as exc:
            return RunResult.failed(
                request.module_id, "Failed to write code to file", elapsed_ms(started), request.exercise_type, str(exc)
            )
        try:
            with self._serve(exercise_dir) as server:
                ready = server.ready
        except OSError as exc:
            return RunResult.failed(
                request.module_id, "Failed to start server", elapsed_ms(started), request.exercise_type, str(exc)
            )

        output = server.output.text()
        if not ready:
            return RunResult.failed(
                request.module_id,
                "Server startup timeout",
                elapsed_ms(started),
                request.exercise_type,
                f"Server failed to start. Output: {output}",
            )
        return RunResult.succeeded(
            request.module_id,
            output.strip(),
            elapsed_ms(started),
            request.exercise_type,
            "Server started successfully",
        )

    def _test_function(
        self, request: ExecutionRequest, exercise_dir: Path, started: float
    ) -> TestSuiteResult:
        """Run the test command for a function exercise.

        Example:
            ```python
            suite = engine._test_function(request, exercise_dir, time.monotonic())
            ```
        """
        try:
            self._write_entry(exercise_dir, request.code)
        except OSError as exc:
            return TestSuiteResult.setup_failure(
                request.module_id, "Setup", f"Failed to write code: {exc}", elapsed_ms(started), request.exercise_type
            )
        return self._run_test_command(
            request, exercise_dir, started, self._settings.function_test_timeout_seconds
        )

    def _test_server(
        self, request: ExecutionRequest, exercise_dir: Path, started: float
    ) -> TestSuiteResult:
        """Start a server exercise, run the test command against it, then stop it.

        Example:
            ```python
            suite = engine._test_server(request, exercise_dir, time.monotonic())
            ```
        """
        free_port(self._config.server_port)
        try:
            self._write_entry(exercise_dir, request.code)
        except OSError as exc:
            return TestSuiteResult.setup_failure(
                request.module_id,
                "Server Setup",
                f"Failed to write code: {exc}",
                elapsed_ms(started),
                request.exercise_type,
            )
        try:
            with self._serve(exercise_dir) as server:
                if not server.ready:
                    return TestSuiteResult.setup_failure(
                        request.module_id,
                        "Server Startup",
                        f"Server failed to start. Output: {server.output.text()}",
                        elapsed_ms(started),
                        request.exercise_type,
                    )
                return self._run_test_command(
                    request, exercise_dir, started, self._settings.server_test_timeout_seconds
                )
        except OSError as exc:
            return TestSuiteResult.setup_failure(
                request.module_id,
                "Server Setup",
                f"Failed to start server: {exc}",
                elapsed_ms(started),
                request.exercise_type,
            )

    def _run_test_command(
        self,
        request: ExecutionRequest,
        exercise_dir: Path,
        started: float,
        timeout: float,
    ) -> TestSuiteResult:
        """Run the configured test command and normalize what it printed.

        The report is read from stdout; stderr is only used when stdout is empty.

        Example:
            ```python
            suite = engine._run_test_command(request, exercise_dir, time.monotonic(), 10)
            ```
        """
        try:
            completed = run_in_group(list(self._config.test_command), exercise_dir, timeout)
        except subprocess.TimeoutExpired:
            return TestSuiteResult.setup_failure(
                request.module_id,
                "Test Execution",
                f"Test execution timed out after {timeout}s",
                elapsed_ms(started),
                request.exercise_type,
            )
        except OSError as exc:
            return TestSuiteResult.setup_failure(
                request.module_id,
                "Test Execution",
                f"Test execution failed: {exc}",
                elapsed_ms(started),
                request.exercise_type,
            )
        stdout = _decode(completed.stdout)
        output = stdout if stdout.strip() else _decode(completed.stderr)
        return parse_test_output(
            request.module_id,
            output,
            execution_time_ms=elapsed_ms(started),
            exercise_type=request.exercise_type,
        )

    @contextlib.contextmanager
    def _serve(self, exercise_dir: Path) -> Iterator[_ServerHandle]:
        """Run the submission as a background server for the duration of the block.

        The process group is killed and reaped on exit, whatever happened inside.

        Example:
            ```python
            with engine._serve(exercise_dir) as server:
                ready = server.ready
            ```
        """
        process = subprocess.Popen(
            [*self._config.runtime_command, ENTRY_FILENAME],
            cwd=exercise_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env={**os.environ, "PORT": str(self._config.server_port)},
            start_new_session=True,
        )
        output = _OutputBuffer()
        reader = threading.Thread(target=output.drain, args=(process.stdout,), daemon=True)
        reader.start()
        try:
            yield _ServerHandle(process, output, self._wait_until_ready(process))
        finally:
            _terminate(process)
            reader.join(timeout=1)

    def _wait_until_ready(self, process: subprocess.Popen[bytes]) -> bool:
        """Poll the server's root URL until it answers, exits or attempts run out.

        Any HTTP response counts as ready, whatever its status.

        Example:
            ```python
            ready = engine._wait_until_ready(process)
            ```
        """
        url = f"http://localhost:{self._config.server_port}/"
        for attempt in range(1, self._settings.health_attempts + 1):
            time.sleep(self._settings.health_interval_seconds)
            if process.poll() is not None:
                logger.info("Server exited with code %s before becoming ready", process.returncode)
                return False
            try:
                requests.get(url, timeout=self._settings.health_request_timeout_seconds)
            except requests.RequestException:
                logger.debug("Server not ready after attempt %d", attempt)
                continue
            return True
        return False
