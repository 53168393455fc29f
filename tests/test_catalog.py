import json
from pathlib import Path

import pytest

from exercise_sandbox import ModuleCatalog
from exercise_sandbox.catalog import is_valid_module_id


def _make_module(root: Path, name: str, meta: dict | str | None = None, exercise: bool = True) -> None:
    module_dir = root / name
    module_dir.mkdir(parents=True)
    if exercise:
        (module_dir / "exercise").mkdir()
    if isinstance(meta, dict):
        (module_dir / "module.json").write_text(json.dumps(meta), encoding="utf-8")
    elif isinstance(meta, str):
        (module_dir / "module.json").write_text(meta, encoding="utf-8")


@pytest.mark.parametrize("module_id", ["module-1", "module-42"])
def test_valid_module_ids(module_id: str) -> None:
    assert is_valid_module_id(module_id)


@pytest.mark.parametrize("module_id", ["module-", "module-1a", "../module-1", "module-1/../../etc", "Module-1", ""])
def test_invalid_module_ids(module_id: str) -> None:
    assert not is_valid_module_id(module_id)


def test_resolve_exercise_path(tmp_path: Path) -> None:
    _make_module(tmp_path, "module-2")
    _make_module(tmp_path, "module-3", exercise=False)
    catalog = ModuleCatalog(tmp_path)
    assert catalog.resolve_exercise_path("module-2") == tmp_path / "module-2" / "exercise"
    assert catalog.resolve_exercise_path("module-3") is None
    assert catalog.resolve_exercise_path("module-99") is None
    assert catalog.resolve_exercise_path("../module-2") is None


def test_list_modules_sorted_numerically_and_skips_bad_metadata(tmp_path: Path) -> None:
    _make_module(tmp_path, "module-10", {"id": "module-10", "title": "Ten", "difficulty": "hard"})
    _make_module(tmp_path, "module-2", {"id": "module-2", "title": "Two", "difficulty": "easy"})
    _make_module(tmp_path, "module-1", {"id": "module-1", "title": "One", "difficulty": "easy"})
    _make_module(tmp_path, "module-5", "{not json")
    (tmp_path / "notes").mkdir()

    modules = ModuleCatalog(tmp_path).list_modules()
    assert [module.id for module in modules] == ["module-1", "module-2", "module-10"]
    assert modules[2].title == "Ten"


def test_list_modules_requires_directory(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Modules directory not found"):
        ModuleCatalog(tmp_path / "missing").list_modules()


def test_build_recipe_path_default_and_override(tmp_path: Path) -> None:
    modules = tmp_path / "src" / "modules"
    assert ModuleCatalog(modules).build_recipe_path == tmp_path / "Dockerfile.module-runner"
    assert ModuleCatalog(modules, tmp_path / "custom").build_recipe_path == tmp_path / "custom"
