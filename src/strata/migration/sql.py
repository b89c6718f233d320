"""Authoring helpers: statement-list migrations, config migration builder, DDL snippets.

Identifiers passed to the DDL helpers are interpolated verbatim; callers must only
pass trusted table, index and column names.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from strata.migration.model import ConfigMigration, ConfigStep, Migration, StepResult
from strata.storage.errors import UnsupportedOperationError

if TYPE_CHECKING:
    from strata.migration.model import MigrationContext
    from strata.storage.provider import Dialect, StorageProvider


class _StatementRunner:
    """Callable that executes DDL/DML statements in order through the active provider."""

    def __init__(self, statements: Sequence[str], qualname: str) -> None:
        self._statements = tuple(statements)
        self.__qualname__ = qualname

    @property
    def statements(self) -> tuple[str, ...]:
        return self._statements

    async def __call__(self, context: MigrationContext) -> StepResult:
        for statement in self._statements:
            await context.storage.execute(statement)
        return StepResult.ok()


def sql_migration(
    id: str,
    version: str,
    description: str,
    *,
    up: Sequence[str],
    down: Sequence[str] = (),
) -> Migration:
    """Build a migration whose forward/reverse run statement lists through the provider.

    >>> m = sql_migration("001_users", "1.0", "users table",
    ...                   up=["CREATE TABLE users (id INTEGER PRIMARY KEY)"],
    ...                   down=["DROP TABLE IF EXISTS users"])
    """

    if isinstance(up, str) or isinstance(down, str):
        raise TypeError("up and down must be sequences of statements, not a single string")
    forward = _StatementRunner(up, f"sql_migration[{id}].up")
    reverse = _StatementRunner(down, f"sql_migration[{id}].down")
    return Migration(
        id=id, version=version, description=description, forward=forward, reverse=reverse
    )


def config_migration(
    id: str,
    from_version: str,
    to_version: str,
    description: str = "",
) -> Callable[[ConfigStep], ConfigMigration]:
    """Decorator turning ``fn(config_store)`` into a ``ConfigMigration``."""

    def decorate(step: ConfigStep) -> ConfigMigration:
        return ConfigMigration(
            id=id,
            from_version=from_version,
            to_version=to_version,
            description=description or (step.__doc__ or "").strip(),
            migrate=step,
        )

    return decorate


def add_column(table: str, column: str, column_type: str) -> str:
    return f"ALTER TABLE {table} ADD COLUMN {column} {column_type}"


def create_index_if_not_exists(index: str, table: str, *columns: str) -> str:
    if not columns:
        raise ValueError("an index needs at least one column")
    return f"CREATE INDEX IF NOT EXISTS {index} ON {table} ({', '.join(columns)})"


def drop_index_if_exists(index: str, table: str | None = None) -> str:
    """SQLite form by default; pass ``table`` for MySQL's ``DROP INDEX ... ON`` form."""
    if table is None:
        return f"DROP INDEX IF EXISTS {index}"
    return f"DROP INDEX {index} ON {table}"


def rename_table(old: str, new: str) -> str:
    return f"ALTER TABLE {old} RENAME TO {new}"


def create_backup_table(table: str, backup_table: str) -> str:
    return f"CREATE TABLE {backup_table} AS SELECT * FROM {table}"


def drop_column(table: str, column: str) -> str:
    return f"ALTER TABLE {table} DROP COLUMN {column}"


# Schema inspection. Both dialects answer with one ``name`` column so the async
# helpers below read rows the same way.

_TABLE_EXISTS: dict[Dialect, str] = {
    "sqlite": "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
    "mysql": (
        "SELECT TABLE_NAME AS name FROM information_schema.TABLES "
        "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ?"
    ),
}

_TABLE_COLUMNS: dict[Dialect, str] = {
    "sqlite": "SELECT name FROM pragma_table_info(?) ORDER BY cid",
    "mysql": (
        "SELECT COLUMN_NAME AS name FROM information_schema.COLUMNS "
        "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ? ORDER BY ORDINAL_POSITION"
    ),
}


def table_exists_query(dialect: Dialect, table: str) -> tuple[str, tuple[str]]:
    """Parameterized lookup returning one row when ``table`` exists."""

    return _TABLE_EXISTS[dialect], (table,)


def table_columns_query(dialect: Dialect, table: str) -> tuple[str, tuple[str]]:
    """Parameterized lookup returning ``table``'s column names in declaration order."""

    return _TABLE_COLUMNS[dialect], (table,)


async def table_exists(storage: StorageProvider, table: str) -> bool:
    sql, params = table_exists_query(_dialect_of(storage), table)
    return bool(await storage.query(sql, params))


async def column_names(storage: StorageProvider, table: str) -> list[str]:
    sql, params = table_columns_query(_dialect_of(storage), table)
    return [str(row["name"]) for row in await storage.query(sql, params)]


async def add_column_if_not_exists(
    storage: StorageProvider, table: str, column: str, column_type: str
) -> bool:
    """Add ``column`` unless ``table`` already has it; returns whether DDL ran."""

    if column in await column_names(storage, table):
        return False
    await storage.execute(add_column(table, column, column_type))
    return True


async def drop_column_if_exists(storage: StorageProvider, table: str, column: str) -> bool:
    """Drop ``column`` when present; returns whether DDL ran. SQLite needs 3.35+."""

    if column not in await column_names(storage, table):
        return False
    await storage.execute(drop_column(table, column))
    return True


def _dialect_of(storage: StorageProvider) -> Dialect:
    if storage.dialect is None:
        raise UnsupportedOperationError(
            f"{storage.backend} backend has no SQL schema to inspect"
        )
    return storage.dialect


__all__ = [
    "add_column",
    "add_column_if_not_exists",
    "column_names",
    "config_migration",
    "create_backup_table",
    "create_index_if_not_exists",
    "drop_column",
    "drop_column_if_exists",
    "drop_index_if_exists",
    "rename_table",
    "sql_migration",
    "table_columns_query",
    "table_exists",
    "table_exists_query",
]
