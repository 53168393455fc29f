from __future__ import annotations

import io
import logging
import tarfile
from pathlib import Path

from ..errors import BuildContextError
from .config import MAX_CONTEXT_FILE_BYTES, TRANSIENT_FILENAMES, TRANSIENT_SUFFIXES

logger = logging.getLogger(__name__)

RECIPE_ARCHIVE_NAME = "Dockerfile"
_FILE_MODE = 0o644


def _is_transient(path: Path) -> bool:
    """Return whether a file is a staging, OS metadata, log or temp artifact.

    Example:
        ```python
        _is_transient(Path("debug.log"))
        ```
    """
    return path.name in TRANSIENT_FILENAMES or path.suffix in TRANSIENT_SUFFIXES


def _add_bytes(archive: tarfile.TarFile, name: str, data: bytes) -> None:
    """Append one regular file with fixed metadata so archives are reproducible.

    Example:
        ```python
        _add_bytes(archive, "Dockerfile", b"FROM node:20-alpine\\n")
        ```
    """
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = _FILE_MODE
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    archive.addfile(info, io.BytesIO(data))


def _iter_context_files(root: Path, max_file_bytes: int) -> list[Path]:
    """Return the regular files under root that belong in the build context.

    Symlinks are never followed, so nothing outside root can leak into an image.

    Example:
        ```python
        files = _iter_context_files(Path("src/modules/module-2/exercise"), 10 * 1024 * 1024)
        ```
    """
    selected: list[Path] = []
    resolved_root = root.resolve()
    for path in sorted(root.rglob("*")):
        if path.is_symlink() or not path.resolve().is_relative_to(resolved_root):
            logger.warning("Skipping symlink: %s", path)
            continue
        if not path.is_file():
            continue
        if path.stat().st_size > max_file_bytes:
            logger.warning("Skipping large file: %s (size: %d bytes)", path, path.stat().st_size)
            continue
        if _is_transient(path):
            logger.warning("Skipping temporary file: %s", path)
            continue
        selected.append(path)
    return selected


def build_context_archive(
    exercise_dir: Path,
    recipe_path: Path,
    *,
    max_file_bytes: int = MAX_CONTEXT_FILE_BYTES,
) -> bytes:
    """Package an exercise directory plus the shared build recipe as a tar archive.

    The same directory contents always produce the same bytes, which keeps the
    engine's layer cache effective across requests.

    Example:
        ```python
        context = build_context_archive(Path("src/modules/module-2/exercise"), Path("Dockerfile.module-runner"))
        ```
    """
    try:
        recipe = recipe_path.read_bytes()
    except OSError as exc:
        raise BuildContextError(f"failed to read build recipe {recipe_path}: {exc}") from exc

    buffer = io.BytesIO()
    try:
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.USTAR_FORMAT) as archive:
            for path in _iter_context_files(exercise_dir, max_file_bytes):
                relative = path.relative_to(exercise_dir).as_posix()
                if relative == RECIPE_ARCHIVE_NAME:
                    continue
                _add_bytes(archive, relative, path.read_bytes())
            _add_bytes(archive, RECIPE_ARCHIVE_NAME, recipe)
    except (OSError, ValueError) as exc:
        raise BuildContextError(f"failed to create build context: {exc}") from exc
    return buffer.getvalue()


def single_file_archive(name: str, content: str) -> bytes:
    """Build a one-entry tar archive used to copy a submission into a unit.

    Example:
        ```python
        payload = single_file_archive("tmp-server.js", "console.log('hi')")
        ```
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.USTAR_FORMAT) as archive:
        _add_bytes(archive, name, content.encode("utf-8"))
    return buffer.getvalue()
