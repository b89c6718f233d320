"""
strata — filesystem utilities

File: src/strata/utils/fs.py

Purpose
- Atomic writes for document files and config resources.
- Guarded deletion and copying for the backup directory tree.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Deletion refuses paths outside the given root (the backups directory).
- Copies overwrite existing destination files.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "copy_file",
    "copy_tree",
    "ensure_directory",
    "is_writable_directory",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``data`` so readers see the old or the new file, never a mix.

    The parent directory must already exist (``FileNotFoundError`` otherwise).
    """

    target = Path(path)
    directory = target.parent.resolve(strict=True)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    fd, scratch = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=directory)
    try:
        with open(fd, "wb") as stream:
            stream.write(payload)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(scratch, target)
    except BaseException:
        Path(scratch).unlink(missing_ok=True)
        raise
    _sync_directory_entry(directory)


def ensure_directory(path: PathLike) -> Path:
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def is_writable_directory(path: PathLike) -> bool:
    directory = Path(path)
    return directory.is_dir() and os.access(directory, os.W_OK)


def safe_delete(path: PathLike, root: PathLike) -> None:
    """Remove a file, symlink or directory tree strictly below ``root``.

    A symlink is removed itself; its target is left alone.
    """

    boundary = Path(root).resolve(strict=True)
    target = Path(path)
    # Resolve the parent only, so a symlink named by ``path`` is not followed.
    located = target.parent.resolve(strict=True) / target.name
    if boundary not in located.parents:
        raise ValueError(f"refusing to delete {target!s}: not inside {boundary!s}")

    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()


def copy_file(source: PathLike, destination: PathLike) -> Path:
    """Copy one file, creating the destination directory and overwriting the target."""

    target = Path(destination)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)
    return target


def copy_tree(
    source: PathLike,
    destination: PathLike,
    *,
    suffixes: Iterable[str] | None = None,
) -> list[Path]:
    """Copy the regular files of ``source`` into ``destination`` recursively.

    Existing files are overwritten. When ``suffixes`` is given only files whose
    suffix (case-insensitive) is listed are copied. Returns copied destination
    paths in deterministic order.
    """

    source_dir = Path(source)
    target_dir = Path(destination)
    wanted = None if suffixes is None else {suffix.lower() for suffix in suffixes}
    return [
        copy_file(item, target_dir / item.relative_to(source_dir))
        for item in sorted(source_dir.rglob("*"))
        if item.is_file() and (wanted is None or item.suffix.lower() in wanted)
    ]


def _sync_directory_entry(directory: Path) -> None:
    if os.name == "nt":
        return
    with contextlib.suppress(OSError):
        dir_fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
