"""
strata — pooled relational provider base

File: src/strata/storage/relational.py

Purpose
- Shared implementation of the provider contract for DB-API 2.0 drivers.

Functional requirements
- Every statement runs on a connection checked out from the provider's pool and
  released afterwards, also on failure.
- Rows are mapped to dicts keyed by column label in ``cursor.description`` order.
- Driver failures surface as ``StatementError`` carrying statement and driver message;
  connection failures surface as ``ConnectivityError`` and discard the connection.
"""

from __future__ import annotations

import asyncio
from abc import abstractmethod
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from strata.storage.errors import ConnectivityError, StatementError
from strata.storage.provider import Row, SQLParams, StorageProvider

if TYPE_CHECKING:
    from strata.storage.pool import ConnectionPool, PooledConnection
    from strata.storage.transaction import Transaction

T = TypeVar("T")


class RelationalProvider(StorageProvider):
    """Provider over a ``ConnectionPool`` of DB-API connections."""

    def __init__(self, pool: ConnectionPool, *, logger: Any | None = None) -> None:
        self._pool = pool
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._shutdown = False

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def start(self) -> None:
        self._pool.prefill()

    async def query(self, sql: str, params: SQLParams = ()) -> list[Row]:
        return await asyncio.to_thread(self._with_connection, self.run_query, sql, params)

    async def update(self, sql: str, params: SQLParams = ()) -> int:
        return await asyncio.to_thread(self._with_connection, self.run_update, sql, params)

    async def execute(self, sql: str, params: SQLParams = ()) -> None:
        await asyncio.to_thread(self._with_connection, self.run_execute, sql, params)

    async def execute_batch(self, sql: str, param_sets: Sequence[SQLParams]) -> int:
        if not param_sets:
            return 0
        return await asyncio.to_thread(
            self._with_connection, self._run_batch_atomically, sql, param_sets
        )

    async def begin_transaction(self) -> Transaction:
        from strata.storage.transaction import Transaction

        conn = await self._pool.acquire_async()
        try:
            await asyncio.to_thread(self.begin_on, conn)
        except BaseException:
            self._pool.release(conn, broken=True)
            raise
        return Transaction(self, conn, logger=self._logger)

    def is_connected(self) -> bool:
        if self._shutdown:
            return False
        return self._pool.is_connected()

    def shutdown(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        try:
            self._pool.shutdown()
        except Exception as exc:
            self._logger.error("provider_shutdown_failed", backend=self.backend, error=str(exc))

    # Connection-level operations, also used by ``Transaction`` on its owned connection.

    def run_query(self, conn: PooledConnection, sql: str, params: SQLParams = ()) -> list[Row]:
        cursor = self._execute_cursor(conn, sql, params, operation="query")
        try:
            columns = _column_labels(cursor.description)
            return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def run_update(self, conn: PooledConnection, sql: str, params: SQLParams = ()) -> int:
        cursor = self._execute_cursor(conn, sql, params, operation="update")
        try:
            return max(int(cursor.rowcount), 0)
        finally:
            cursor.close()

    def run_execute(self, conn: PooledConnection, sql: str, params: SQLParams = ()) -> None:
        self._execute_cursor(conn, sql, params, operation="execute").close()

    def run_batch(self, conn: PooledConnection, sql: str, param_sets: Sequence[SQLParams]) -> int:
        cursor = self._executemany_cursor(conn, sql, param_sets)
        try:
            return max(int(cursor.rowcount), 0)
        finally:
            cursor.close()

    @abstractmethod
    def begin_on(self, conn: PooledConnection) -> None: ...

    @abstractmethod
    def commit_on(self, conn: PooledConnection) -> None: ...

    @abstractmethod
    def rollback_on(self, conn: PooledConnection) -> None: ...

    def end_on(self, conn: PooledConnection) -> None:
        """Restore the connection's autocommit behavior after a transaction."""

        del conn

    @abstractmethod
    def _execute_cursor(
        self, conn: PooledConnection, sql: str, params: SQLParams, *, operation: str
    ) -> Any: ...

    @abstractmethod
    def _executemany_cursor(
        self, conn: PooledConnection, sql: str, param_sets: Sequence[SQLParams]
    ) -> Any: ...

    def _run_batch_atomically(
        self, conn: PooledConnection, sql: str, param_sets: Sequence[SQLParams]
    ) -> int:
        self.begin_on(conn)
        try:
            count = self.run_batch(conn, sql, param_sets)
        except BaseException:
            self._safe_rollback(conn)
            raise
        else:
            self.commit_on(conn)
            return count
        finally:
            self.end_on(conn)

    def _safe_rollback(self, conn: PooledConnection) -> None:
        try:
            self.rollback_on(conn)
        except StatementError as exc:
            self._logger.warning(
                "rollback_failed", backend=self.backend, error=exc.driver_message
            )

    def _with_connection(
        self,
        func: Callable[[PooledConnection, str, Any], T],
        sql: str,
        params: Any,
    ) -> T:
        conn = self._pool.acquire()
        broken = False
        try:
            return func(conn, sql, params)
        except ConnectivityError:
            broken = True
            raise
        except StatementError as exc:
            self._logger.warning(
                "statement_failed",
                backend=self.backend,
                operation=exc.operation,
                statement=exc.statement,
                error=exc.driver_message,
            )
            raise
        finally:
            self._pool.release(conn, broken=broken)


def _column_labels(description: Sequence[Sequence[object]] | None) -> list[str]:
    if not description:
        return []
    return [str(column[0]) for column in description]


__all__ = ["RelationalProvider"]
