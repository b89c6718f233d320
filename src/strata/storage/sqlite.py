"""
strata — SQLite storage provider

File: src/strata/storage/sqlite.py

Purpose
- Single-connection pooled provider over a SQLite database file.

Functional requirements
- Connections enable foreign keys, a busy timeout and WAL journaling.
- Lock contention is retried with bounded exponential backoff (``BusyRetry``).
- Backups use the SQLite online backup API so snapshots are consistent while open.

Non-functional requirements
- Pool size is fixed at one connection (SQLite serializes writers anyway).
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar, Final

from strata.constants import (
    BACKEND_SQLITE,
    DEFAULT_CONNECTION_TIMEOUT_SECONDS,
    SQLITE_POOL_SIZE,
)
from strata.storage.errors import BackupError, StatementError, StorageBusyError
from strata.storage.pool import ConnectionPool, PooledConnection
from strata.storage.provider import Dialect, SQLParams
from strata.storage.relational import RelationalProvider

IN_MEMORY_PATH: Final[str] = ":memory:"


@dataclass(frozen=True, slots=True)
class BusyRetry:
    """How a statement reacts to ``SQLITE_BUSY``/``SQLITE_LOCKED``.

    ``timeout_ms`` is handed to SQLite itself; once it expires the statement
    is retried ``retries`` more times, sleeping ``backoff_ms`` and doubling.
    """

    timeout_ms: int = 5_000
    retries: int = 4
    backoff_ms: int = 25

    def __post_init__(self) -> None:
        for name in ("timeout_ms", "retries", "backoff_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"busy {name} must be >= 0")

    def pause(self, attempt: int) -> None:
        time.sleep(self.backoff_ms * (2**attempt) / 1000.0)


def is_busy_error(exc: sqlite3.Error) -> bool:
    """True for lock contention; constraint and syntax failures are not retried."""

    if isinstance(exc, sqlite3.IntegrityError):
        return False
    name = getattr(exc, "sqlite_errorname", None) or ""
    return name.startswith(("SQLITE_BUSY", "SQLITE_LOCKED")) or "is locked" in str(exc)


class SQLiteProvider(RelationalProvider):
    """Relational provider for a SQLite file (or ``:memory:``)."""

    backend: ClassVar[str] = BACKEND_SQLITE
    dialect: ClassVar[Dialect | None] = "sqlite"

    def __init__(
        self,
        path: str | Path,
        *,
        busy: BusyRetry | None = None,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        self._path = path if path == IN_MEMORY_PATH else Path(path).expanduser()
        self._busy = busy if busy is not None else BusyRetry()
        pool = ConnectionPool(
            self._connect,
            name="sqlite",
            min_size=0,
            max_size=SQLITE_POOL_SIZE,
            connection_timeout=connection_timeout,
            idle_timeout=None,
            max_lifetime=None,
            max_size_cap=SQLITE_POOL_SIZE,
            probe=_probe,
            logger=logger,
        )
        super().__init__(pool, logger=logger)

    @property
    def path(self) -> str | Path:
        return self._path

    def begin_on(self, conn: PooledConnection) -> None:
        self._execute_cursor(conn, "BEGIN IMMEDIATE", (), operation="begin transaction").close()

    def commit_on(self, conn: PooledConnection) -> None:
        self._execute_cursor(conn, "COMMIT", (), operation="commit transaction").close()

    def rollback_on(self, conn: PooledConnection) -> None:
        if not conn.raw.in_transaction:
            return
        self._execute_cursor(conn, "ROLLBACK", (), operation="rollback transaction").close()

    def backup_data(self, destination: Path) -> list[Path]:
        """Write a consistent snapshot of the database file into ``destination``."""

        if self._path == IN_MEMORY_PATH:
            self._logger.info("sqlite_backup_skipped_in_memory")
            return []
        target_path = destination / Path(self._path).name
        destination.mkdir(parents=True, exist_ok=True)
        try:
            with self._pool.connection() as conn:
                target = sqlite3.connect(target_path)
                try:
                    conn.raw.backup(target)
                finally:
                    target.close()
        except sqlite3.Error as exc:
            raise BackupError(f"sqlite snapshot to {target_path} failed: {exc}") from exc
        return [target_path]

    def restore_data(self, source: Path) -> list[Path]:
        """Copy a snapshot back into the live database through the backup API."""

        if self._path == IN_MEMORY_PATH:
            return []
        snapshot_path = source / Path(self._path).name
        if not snapshot_path.is_file():
            self._logger.warning("sqlite_restore_snapshot_missing", path=str(snapshot_path))
            return []
        try:
            with self._pool.connection() as conn:
                snapshot = sqlite3.connect(snapshot_path)
                try:
                    snapshot.backup(conn.raw)
                finally:
                    snapshot.close()
        except sqlite3.Error as exc:
            raise BackupError(f"sqlite restore from {snapshot_path} failed: {exc}") from exc
        return [Path(self._path)]

    def _connect(self) -> sqlite3.Connection:
        if isinstance(self._path, Path):
            self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy.timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        for pragma in ("foreign_keys=ON", f"busy_timeout={self._busy.timeout_ms}"):
            conn.execute(f"PRAGMA {pragma}")
        (mode,) = conn.execute("PRAGMA journal_mode=WAL").fetchone() or ("",)
        if str(mode).lower() not in {"wal", "memory"}:
            self._logger.warning("sqlite_journal_mode_not_wal", journal_mode=str(mode))
        return conn

    def _execute_cursor(
        self, conn: PooledConnection, sql: str, params: SQLParams, *, operation: str
    ) -> sqlite3.Cursor:
        raw: sqlite3.Connection = conn.raw
        return self._retrying(lambda: raw.execute(sql, tuple(params)), sql, operation)

    def _executemany_cursor(
        self, conn: PooledConnection, sql: str, param_sets: Sequence[SQLParams]
    ) -> sqlite3.Cursor:
        raw: sqlite3.Connection = conn.raw
        rows = [tuple(params) for params in param_sets]
        return self._retrying(lambda: raw.executemany(sql, rows), sql, "batch")

    def _retrying(
        self, call: Callable[[], sqlite3.Cursor], sql: str, operation: str
    ) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return call()
            except sqlite3.Error as exc:
                if not is_busy_error(exc):
                    raise StatementError(sql, str(exc), operation=operation) from exc
                if attempt >= self._busy.retries:
                    raise StorageBusyError(
                        sql, f"{exc} (after {attempt + 1} attempt(s))", operation=operation
                    ) from exc
                self._busy.pause(attempt)
                attempt += 1


def _probe(raw: sqlite3.Connection) -> bool:
    return raw.execute("SELECT 1").fetchone() == (1,)


__all__ = ["BusyRetry", "IN_MEMORY_PATH", "SQLiteProvider", "is_busy_error"]
