"""Shared fakes for storage tests: a statement-recording provider and a fake DB-API driver."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, ClassVar

from strata.storage.provider import Dialect, Row, SQLParams, StorageProvider

if TYPE_CHECKING:
    from strata.storage.transaction import Transaction


class RecordingProvider(StorageProvider):
    """Provider that records statements and replays canned query rows."""

    backend: ClassVar[str] = "recording"
    dialect: ClassVar[Dialect | None] = "sqlite"

    def __init__(self, rows: list[Row] | None = None, rowcount: int = 1) -> None:
        self.statements: list[tuple[str, tuple[object, ...]]] = []
        self.batches: list[tuple[str, list[tuple[object, ...]]]] = []
        self.rows = rows if rows is not None else []
        self.rowcount = rowcount
        self.closed = False

    async def query(self, sql: str, params: SQLParams = ()) -> list[Row]:
        self.statements.append((sql, tuple(params)))
        return list(self.rows)

    async def update(self, sql: str, params: SQLParams = ()) -> int:
        self.statements.append((sql, tuple(params)))
        return self.rowcount

    async def execute(self, sql: str, params: SQLParams = ()) -> None:
        self.statements.append((sql, tuple(params)))

    async def execute_batch(self, sql: str, param_sets: Sequence[SQLParams]) -> int:
        self.batches.append((sql, [tuple(params) for params in param_sets]))
        return len(param_sets)

    async def begin_transaction(self) -> Transaction:
        raise NotImplementedError

    def is_connected(self) -> bool:
        return not self.closed

    def shutdown(self) -> None:
        self.closed = True


class MySQLRecordingProvider(RecordingProvider):
    dialect: ClassVar[Dialect | None] = "mysql"


class NoDialectProvider(RecordingProvider):
    dialect: ClassVar[Dialect | None] = None


class FakeCursor:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection
        self.description: list[tuple[str, ...]] | None = None
        self.rowcount = -1
        self._rows: list[tuple[object, ...]] = []
        self.closed = False

    def execute(self, sql: str, params: tuple[object, ...] = ()) -> None:
        self._connection.executed.append((sql, params))
        error = self._connection.next_error()
        if error is not None:
            raise error
        self.description = self._connection.description
        self._rows = list(self._connection.rows)
        self.rowcount = self._connection.rowcount

    def executemany(self, sql: str, param_sets: list[tuple[object, ...]]) -> None:
        self._connection.executed_many.append((sql, param_sets))
        error = self._connection.next_error()
        if error is not None:
            raise error
        self.rowcount = len(param_sets)

    def fetchall(self) -> list[tuple[object, ...]]:
        return list(self._rows)

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    """DB-API connection double with the PyMySQL transaction surface."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.executed: list[tuple[str, tuple[object, ...]]] = []
        self.executed_many: list[tuple[str, list[tuple[object, ...]]]] = []
        self.calls: list[str] = []
        self.errors: list[BaseException] = []
        self.description: list[tuple[str, ...]] | None = None
        self.rows: list[tuple[object, ...]] = []
        self.rowcount = 1
        self.closed = False
        self.ping_error: BaseException | None = None

    def next_error(self) -> BaseException | None:
        return self.errors.pop(0) if self.errors else None

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def begin(self) -> None:
        self.calls.append("begin")

    def commit(self) -> None:
        self.calls.append("commit")

    def rollback(self) -> None:
        self.calls.append("rollback")

    def ping(self, reconnect: bool = False) -> None:
        del reconnect
        self.calls.append("ping")
        if self.ping_error is not None:
            raise self.ping_error

    def close(self) -> None:
        self.closed = True


class FakeConnect:
    """Stand-in for ``pymysql.connect`` that hands out ``FakeConnection`` objects."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.failure: BaseException | None = None

    def __call__(self, **kwargs: Any) -> FakeConnection:
        if self.failure is not None:
            raise self.failure
        connection = FakeConnection(**kwargs)
        self.connections.append(connection)
        return connection


class CountingFactory:
    """Connection factory for pool tests; connections are plain objects with ``close``."""

    def __init__(self) -> None:
        self.opened: list[FakeConnection] = []

    def __call__(self) -> FakeConnection:
        connection = FakeConnection()
        self.opened.append(connection)
        return connection

    @property
    def closed(self) -> list[FakeConnection]:
        return [connection for connection in self.opened if connection.closed]
