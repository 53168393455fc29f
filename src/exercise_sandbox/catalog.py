from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_MODULE_ID_PATTERN = re.compile(r"^module-\d+$")


def is_valid_module_id(module_id: str) -> bool:
    """Return whether a module id is safe to map onto the filesystem.

    Example:
        ```python
        assert is_valid_module_id("module-12")
        ```
    """
    return bool(_MODULE_ID_PATTERN.match(module_id))


def _module_sort_key(name: str) -> tuple[int, int, str]:
    """Order module directories by numeric suffix, non-numeric last.

    Example:
        ```python
        sorted(["module-10", "module-2"], key=_module_sort_key)
        ```
    """
    _, _, suffix = name.partition("-")
    if suffix.isdigit():
        return (0, int(suffix), name)
    return (1, 0, name)


@dataclass(frozen=True, slots=True)
class ModuleSummary:
    """Short catalog entry for one module.

    Example:
        ```python
        summary = ModuleSummary("module-1", "Hello Node", "beginner")
        ```
    """

    id: str
    title: str
    difficulty: str


class ModuleCatalog:
    """Read-only view of the exercise modules on disk.

    Each module lives in `<modules_path>/<module-id>/` with its runnable files
    under `exercise/`.

    Example:
        ```python
        catalog = ModuleCatalog("src/modules", "Dockerfile.module-runner")
        ```
    """

    def __init__(self, modules_path: str | Path, build_recipe_path: str | Path | None = None) -> None:
        """Point the catalog at a modules directory and build recipe.

        Example:
            ```python
            catalog = ModuleCatalog(Path("/srv/modules"))
            ```
        """
        self._root = Path(modules_path)
        self._build_recipe_path = Path(build_recipe_path) if build_recipe_path else None

    @property
    def root(self) -> Path:
        """Return the modules directory.

        Example:
            ```python
            root = catalog.root
            ```
        """
        return self._root

    @property
    def build_recipe_path(self) -> Path:
        """Return the shared build recipe used for every exercise image.

        Example:
            ```python
            recipe = catalog.build_recipe_path
            ```
        """
        if self._build_recipe_path is not None:
            return self._build_recipe_path
        return self._root.parent.parent / "Dockerfile.module-runner"

    def resolve_exercise_path(self, module_id: str) -> Path | None:
        """Return the exercise directory for a module, or None when absent.

        Example:
            ```python
            path = catalog.resolve_exercise_path("module-3")
            ```
        """
        if not is_valid_module_id(module_id):
            return None
        path = self._root / module_id / "exercise"
        if not path.is_dir():
            return None
        return path

    def list_modules(self) -> list[ModuleSummary]:
        """List modules sorted by module number using their module.json metadata.

        Example:
            ```python
            for module in catalog.list_modules():
                print(module.id, module.title)
            ```
        """
        if not self._root.is_dir():
            raise ValueError(f"Modules directory not found: {self._root}")
        names = sorted(
            (entry.name for entry in self._root.iterdir() if entry.is_dir() and entry.name.startswith("module-")),
            key=_module_sort_key,
        )
        modules: list[ModuleSummary] = []
        for name in names:
            meta_path = self._root / name / "module.json"
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.error("Error loading module %s: %s", name, exc)
                continue
            if not isinstance(meta, dict):
                logger.error("Error parsing module %s: metadata is not an object", name)
                continue
            modules.append(
                ModuleSummary(
                    id=str(meta.get("id", name)),
                    title=str(meta.get("title", "")),
                    difficulty=str(meta.get("difficulty", "")),
                )
            )
        return modules
