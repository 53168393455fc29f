from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..models import ExerciseType


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Normalized request sent to an execution engine.

    Example:
        ```python
        req = ExecutionRequest(module_id="module-1", code="console.log('hi')", exercise_type=ExerciseType.FUNCTION)
        ```
    """

    module_id: str
    code: str
    exercise_type: ExerciseType = ExerciseType.SERVER


class SandboxState(str, Enum):
    """Lifecycle states of one execution unit.

    Example:
        ```python
        state = SandboxState.RUNNING
        ```
    """

    UNINITIALIZED = "uninitialized"
    IMAGE_BUILDING = "image_building"
    CONTAINER_CREATED = "container_created"
    CODE_INJECTED = "code_injected"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass(slots=True)
class SandboxInstance:
    """Execution unit owned by a single engine call.

    Example:
        ```python
        unit = SandboxInstance("", "exercise-sandbox-module-2-1", "exercise-sandbox:module-2", 134217728, 50000, 100000)
        ```
    """

    id: str
    name: str
    image: str
    memory_bytes: int
    cpu_quota: int
    cpu_period: int
    state: SandboxState = SandboxState.UNINITIALIZED


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Snapshot of a managed container returned by DockerEngine.

    Example:
        ```python
        info = ContainerInfo("abc", "exercise-sandbox-module-2-17", "exercise-sandbox:module-2", "exited", "Exited (0)")
        ```
    """

    id: str
    name: str
    image: str
    state: str
    status: str


@dataclass(frozen=True, slots=True)
class ImageInfo:
    """Snapshot of a managed image returned by DockerEngine.

    Example:
        ```python
        image = ImageInfo("sha256:1", "exercise-sandbox", "module-2", "1 hour ago", "215MB")
        ```
    """

    id: str
    repository: str
    tag: str
    created_since: str
    size: str


@dataclass(frozen=True, slots=True)
class CleanupSummary:
    """Result summary from Docker cleanup operations.

    Example:
        ```python
        summary = CleanupSummary(removed_containers=2, removed_images=1)
        ```
    """

    removed_containers: int
    removed_images: int
