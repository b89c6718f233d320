"""
strata — backup manager

File: src/strata/migration/backup.py

Purpose
- Timestamped snapshots of the data directory: config files and provider data.

Functional requirements
- ``<data_dir>/backups/strata_backup_<YYYYmmdd_HHMMSS_ffffff>/{configs,data}``.
- Create/restore report failure as ``None``/``False`` and log; they never raise.
- Listing and pruning work in reverse name order (newest first).

Non-functional requirements
- Partial backups are removed on failure; deletions never leave the backups directory.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from strata.constants import (
    BACKUP_CONFIGS_DIR_NAME,
    BACKUP_DATA_DIR_NAME,
    BACKUP_NAME_PREFIX,
    BACKUPS_DIR_NAME,
    CONFIG_FILE_SUFFIXES,
)
from strata.storage.document import DocumentProvider
from strata.storage.errors import StorageError
from strata.utils.fs import copy_file, copy_tree, ensure_directory, safe_delete

if TYPE_CHECKING:
    from strata.storage.provider import StorageProvider

_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


class BackupManager:
    """Creates, lists, restores and prunes backups under ``<data_dir>/backups``.

    ``providers`` are asked to snapshot their data into the backup's ``data/``
    directory; each provider owns distinct file names inside it.
    """

    def __init__(
        self,
        data_dir: str | Path,
        providers: Sequence[StorageProvider] = (),
        *,
        backups_dir: str | Path | None = None,
        logger: Any | None = None,
    ) -> None:
        self._data_dir = Path(data_dir)
        self._backups_dir = (
            Path(backups_dir) if backups_dir is not None else self._data_dir / BACKUPS_DIR_NAME
        )
        self._providers = _unique(providers)
        self._restore_hooks: list[Callable[[], object]] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def backups_dir(self) -> Path:
        return self._backups_dir

    def backup_path(self, name: str) -> Path:
        return self._backups_dir / name

    def add_restore_hook(self, hook: Callable[[], object]) -> None:
        """Call ``hook`` after each successful restore; in-memory views reload here."""

        self._restore_hooks.append(hook)

    def create_backup(self) -> str | None:
        """Snapshot configs and provider data; returns the backup name or ``None``."""

        try:
            ensure_directory(self._backups_dir)
            name = self._next_name()
            backup_dir = self._backups_dir / name
            backup_dir.mkdir()
        except OSError as exc:
            self._logger.error("backup_failed", error=str(exc))
            return None

        try:
            configs = self._copy_configs(backup_dir / BACKUP_CONFIGS_DIR_NAME)
            data_dir = ensure_directory(backup_dir / BACKUP_DATA_DIR_NAME)
            data_files: list[Path] = []
            for provider in self._providers:
                data_files.extend(provider.backup_data(data_dir))
        except (OSError, StorageError) as exc:
            self._logger.error("backup_failed", backup_name=name, error=str(exc))
            self._discard(backup_dir)
            return None

        self._logger.info(
            "backup_created",
            backup_name=name,
            config_files=len(configs),
            data_files=len(data_files),
        )
        return name

    def restore_from_backup(self, name: str) -> bool:
        """Copy configs back over the data directory and restore provider data."""

        backup_dir = self._backups_dir / name
        if name not in self.get_available_backups():
            self._logger.warning("backup_missing", backup_name=name)
            return False

        try:
            configs_dir = backup_dir / BACKUP_CONFIGS_DIR_NAME
            restored = copy_tree(configs_dir, self._data_dir) if configs_dir.is_dir() else []
            data_dir = backup_dir / BACKUP_DATA_DIR_NAME
            if data_dir.is_dir():
                for provider in self._providers:
                    restored.extend(provider.restore_data(data_dir))
            for hook in self._restore_hooks:
                hook()
        except (OSError, ValueError, StorageError) as exc:
            self._logger.error("backup_restore_failed", backup_name=name, error=str(exc))
            return False

        self._logger.info("backup_restored", backup_name=name, files=len(restored))
        return True

    def get_available_backups(self) -> list[str]:
        if not self._backups_dir.is_dir():
            return []
        names = [
            entry.name
            for entry in self._backups_dir.iterdir()
            if entry.is_dir() and entry.name.startswith(f"{BACKUP_NAME_PREFIX}_backup_")
        ]
        return sorted(names, reverse=True)

    def cleanup_old_backups(self, keep_count: int) -> list[str]:
        """Delete every backup beyond the ``keep_count`` newest; returns deleted names."""

        if keep_count < 0:
            raise ValueError("keep_count must be >= 0")
        deleted: list[str] = []
        for name in self.get_available_backups()[keep_count:]:
            try:
                safe_delete(self._backups_dir / name, self._backups_dir)
            except (OSError, ValueError) as exc:
                self._logger.warning("backup_prune_failed", backup_name=name, error=str(exc))
                continue
            deleted.append(name)
        if deleted:
            self._logger.info("backups_pruned", deleted=deleted, kept=keep_count)
        return deleted

    async def create_backup_async(self) -> str | None:
        return await asyncio.to_thread(self.create_backup)

    async def restore_from_backup_async(self, name: str) -> bool:
        return await asyncio.to_thread(self.restore_from_backup, name)

    async def cleanup_old_backups_async(self, keep_count: int) -> list[str]:
        return await asyncio.to_thread(self.cleanup_old_backups, keep_count)

    def _next_name(self) -> str:
        base = f"{BACKUP_NAME_PREFIX}_backup_{datetime.now().strftime(_TIMESTAMP_FORMAT)}"
        name = base
        suffix = 1
        while (self._backups_dir / name).exists():
            name = f"{base}_{suffix}"
            suffix += 1
        return name

    def _copy_configs(self, destination: Path) -> list[Path]:
        ensure_directory(destination)
        owned = self._provider_owned_files()
        copied: list[Path] = []
        if not self._data_dir.is_dir():
            return copied
        for entry in sorted(self._data_dir.iterdir()):
            if not entry.is_file() or entry.suffix.lower() not in CONFIG_FILE_SUFFIXES:
                continue
            if entry.resolve() in owned:
                continue
            copied.append(copy_file(entry, destination / entry.name))
        return copied

    def _provider_owned_files(self) -> set[Path]:
        # A single-file document store lives beside the configs; it is provider data.
        return {
            provider.storage_path.resolve()
            for provider in self._providers
            if isinstance(provider, DocumentProvider) and provider.layout == "single_file"
        }

    def _discard(self, backup_dir: Path) -> None:
        try:
            safe_delete(backup_dir, self._backups_dir)
        except (OSError, ValueError) as exc:
            self._logger.warning(
                "backup_cleanup_failed", backup_name=backup_dir.name, error=str(exc)
            )


def _unique(providers: Sequence[StorageProvider]) -> tuple[StorageProvider, ...]:
    seen: list[StorageProvider] = []
    for provider in providers:
        if all(provider is not existing for existing in seen):
            seen.append(provider)
    return tuple(seen)


__all__ = ["BackupManager"]
