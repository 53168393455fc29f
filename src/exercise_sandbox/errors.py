from __future__ import annotations


class SandboxError(RuntimeError):
    """Base class for failures detected while executing a submission.

    `summary` becomes the result message, `stage` names the synthetic test
    entry reported when a test run fails before producing output.

    Example:
        ```python
        raise SandboxError("docker daemon went away")
        ```
    """

    summary = "Container execution failed"
    stage = "Execution"

    def describe(self) -> str:
        """Return the summary joined with the detail, without repeating it.

        Example:
            ```python
            text = BuildFailure("exit status 1").describe()
            ```
        """
        detail = str(self)
        if not detail or detail == self.summary:
            return self.summary
        return f"{self.summary}: {detail}"


class ExerciseNotFound(SandboxError):
    """Raised when the catalog has no exercise directory for a module.

    Example:
        ```python
        raise ExerciseNotFound("module-42")
        ```
    """

    stage = "Module Setup"

    def __init__(self, module_id: str) -> None:
        """Store the missing module id.

        Example:
            ```python
            err = ExerciseNotFound("module-42")
            ```
        """
        super().__init__(f"Module {module_id} not found")
        self.module_id = module_id
        self.summary = f"Module {module_id} not found"


class BuildContextError(SandboxError):
    """Raised when the build context cannot be assembled.

    Example:
        ```python
        raise BuildContextError("failed to read build recipe")
        ```
    """

    summary = "Failed to build module image"
    stage = "Setup"


class BuildFailure(SandboxError):
    """Raised when the image build exits unsuccessfully.

    Example:
        ```python
        raise BuildFailure("npm install failed")
        ```
    """

    summary = "Failed to build module image"
    stage = "Setup"


class BuildTimeout(BuildFailure):
    """Raised when the image build exceeds its ceiling.

    Example:
        ```python
        raise BuildTimeout("build operation timed out after 300s")
        ```
    """


class CreationFailure(SandboxError):
    """Raised when the execution unit cannot be created.

    Example:
        ```python
        raise CreationFailure("failed to create container: no such image")
        ```
    """

    summary = "Failed to create container"
    stage = "Setup"


class InjectionFailure(CreationFailure):
    """Raised when the submission cannot be copied into the unit.

    Example:
        ```python
        raise InjectionFailure("failed to copy code to container")
        ```
    """


class StartFailure(SandboxError):
    """Raised when the unit does not reach a running state.

    Example:
        ```python
        raise StartFailure("container is not running, state: dead, error: oom")
        ```
    """


class ExecutionTimeout(SandboxError):
    """Raised when the unit outlives its deadline.

    Example:
        ```python
        raise ExecutionTimeout("container wait timed out after 30s")
        ```
    """


class WaitError(SandboxError):
    """Raised when waiting on the unit fails.

    Example:
        ```python
        raise WaitError("container wait error: no such container")
        ```
    """


class LogRetrievalFailure(SandboxError):
    """Raised when the unit's output cannot be collected.

    Example:
        ```python
        raise LogRetrievalFailure("failed to get container logs")
        ```
    """
