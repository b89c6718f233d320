"""Storage provider contract shared by the relational and document backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, ClassVar, Literal, TypeAlias

if TYPE_CHECKING:
    from pathlib import Path

    from strata.storage.query_builder import QueryBuilder
    from strata.storage.transaction import Transaction

SQLValue = str | int | float | bytes | bool | None
SQLParams = Sequence[object]
Row: TypeAlias = dict[str, object]
Dialect = Literal["mysql", "sqlite"]


class StorageProvider(ABC):
    """Uniform async contract over one storage backend.

    Every I/O method is a coroutine; blocking driver work is offloaded to the
    default executor. ``shutdown`` is idempotent and never raises.
    """

    backend: ClassVar[str]
    dialect: ClassVar[Dialect | None] = None

    @abstractmethod
    async def query(self, sql: str, params: SQLParams = ()) -> list[Row]:
        """Run a row-returning statement; rows keep the driver's column order."""

    @abstractmethod
    async def update(self, sql: str, params: SQLParams = ()) -> int:
        """Run a data-modifying statement and return the affected row count."""

    @abstractmethod
    async def execute(self, sql: str, params: SQLParams = ()) -> None:
        """Run a statement and discard its result."""

    @abstractmethod
    async def execute_batch(self, sql: str, param_sets: Sequence[SQLParams]) -> int:
        """Run one statement for many parameter sets atomically."""

    @abstractmethod
    async def begin_transaction(self) -> Transaction: ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def shutdown(self) -> None: ...

    def start(self) -> None:
        """Prepare backend resources (directories, warm connections)."""

    def backup_data(self, destination: Path) -> list[Path]:
        """Snapshot provider data files into ``destination``; returns written paths."""

        del destination
        return []

    def restore_data(self, source: Path) -> list[Path]:
        """Restore provider data from a snapshot directory; returns restored paths."""

        del source
        return []

    def table(self, name: str) -> QueryBuilder:
        from strata.storage.query_builder import QueryBuilder

        return QueryBuilder(self, name)


__all__ = [
    "Dialect",
    "Row",
    "SQLParams",
    "SQLValue",
    "StorageProvider",
]
