"""Filesystem helpers: atomic writes, guarded deletes and tree copies."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from strata.utils.fs import (
    atomic_write,
    copy_file,
    copy_tree,
    ensure_directory,
    is_writable_directory,
    safe_delete,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_replaces_content_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "motd.json"
    atomic_write(target, '{"value": 1}')
    atomic_write(target, b'{"value": 2}')

    assert target.read_text(encoding="utf-8") == '{"value": 2}'
    assert [path.name for path in tmp_path.iterdir()] == ["motd.json"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "file.json", "{}")


def test_ensure_directory_and_writability(tmp_path: Path) -> None:
    created = ensure_directory(tmp_path / "backups" / "nested")

    assert created.is_dir()
    assert is_writable_directory(created)
    assert not is_writable_directory(tmp_path / "absent")


def test_safe_delete_removes_files_and_directories_inside_root(tmp_path: Path) -> None:
    root = ensure_directory(tmp_path / "backups")
    backup = ensure_directory(root / "2024-01-01_00-00-00-000000")
    (backup / "config.yml").write_text("a: 1\n", encoding="utf-8")
    stray = root / "stray.txt"
    stray.write_text("x", encoding="utf-8")

    safe_delete(backup, root)
    safe_delete(stray, root)

    assert list(root.iterdir()) == []


def test_safe_delete_refuses_paths_outside_root_and_the_root_itself(tmp_path: Path) -> None:
    root = ensure_directory(tmp_path / "backups")
    outside = tmp_path / "config.yml"
    outside.write_text("a: 1\n", encoding="utf-8")

    with pytest.raises(ValueError, match="refusing to delete"):
        safe_delete(outside, root)
    with pytest.raises(ValueError, match="refusing to delete"):
        safe_delete(root / ".." / "config.yml", root)
    with pytest.raises(ValueError, match="refusing to delete"):
        safe_delete(root, root)
    assert outside.exists()


def test_safe_delete_unlinks_symlink_without_touching_target(tmp_path: Path) -> None:
    root = ensure_directory(tmp_path / "backups")
    target_dir = ensure_directory(tmp_path / "data")
    (target_dir / "keep.json").write_text("{}", encoding="utf-8")
    link = root / "link"
    link.symlink_to(target_dir, target_is_directory=True)

    safe_delete(link, root)

    assert not link.exists()
    assert (target_dir / "keep.json").exists()


def test_copy_file_creates_parents_and_overwrites(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_text("new", encoding="utf-8")
    destination = tmp_path / "a" / "b" / "dest.txt"
    destination.parent.mkdir(parents=True)
    destination.write_text("old", encoding="utf-8")

    copy_file(source, destination)

    assert destination.read_text(encoding="utf-8") == "new"


def test_copy_tree_filters_suffixes_case_insensitively(tmp_path: Path) -> None:
    source = ensure_directory(tmp_path / "plugin")
    (source / "config.yml").write_text("a: 1\n", encoding="utf-8")
    (source / "lang.YAML").write_text("b: 2\n", encoding="utf-8")
    (source / "database.db").write_bytes(b"sqlite")
    ensure_directory(source / "nested")
    (source / "nested" / "extra.yml").write_text("c: 3\n", encoding="utf-8")

    copied = copy_tree(source, tmp_path / "out", suffixes=(".yml", ".yaml"))

    assert [path.relative_to(tmp_path / "out").as_posix() for path in copied] == [
        "config.yml",
        "lang.YAML",
        "nested/extra.yml",
    ]
    assert not (tmp_path / "out" / "database.db").exists()


def test_copy_tree_without_filter_copies_everything(tmp_path: Path) -> None:
    source = ensure_directory(tmp_path / "json-data")
    (source / "a.json").write_text("1", encoding="utf-8")
    (source / "b.json").write_text("2", encoding="utf-8")

    copied = copy_tree(source, tmp_path / "restore")

    assert [path.name for path in copied] == ["a.json", "b.json"]
