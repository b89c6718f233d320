"""
strata — connection-bound transactions

File: src/strata/storage/transaction.py

Purpose
- Stage statements and callables, then apply them atomically on one pooled connection.

Functional requirements
- Staging is only allowed while the transaction is active.
- ``commit`` runs staged operations strictly in order; any failure rolls back and
  surfaces as ``TransactionError`` chained to the original exception.
- The connection goes back to the pool exactly once, on every path.
- A second ``commit`` raises ``TransactionStateError``; a second ``rollback`` is a no-op.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

from strata.storage.errors import ConnectivityError, TransactionError, TransactionStateError

if TYPE_CHECKING:
    from types import TracebackType

    from strata.storage.pool import PooledConnection
    from strata.storage.provider import Row, SQLParams
    from strata.storage.relational import RelationalProvider


class TransactionState(StrEnum):
    STAGING = "staging"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class _StatementStep:
    kind: Literal["query", "update"]
    sql: str
    params: tuple[object, ...]


StagedCallable = Callable[["TransactionConnection"], object]


@dataclass(frozen=True, slots=True)
class TransactionResult:
    """Per-operation outcomes of a committed transaction, in staging order.

    Query steps contribute their rows, update steps their affected row counts and
    callables whatever they returned.
    """

    transaction_id: str
    outcomes: tuple[object, ...]


class TransactionConnection:
    """The transaction's connection as seen by staged callables.

    Sync callables run on a worker thread and use the blocking methods; async
    callables use the ``*_async`` variants.
    """

    __slots__ = ("_conn", "_provider")

    def __init__(self, provider: RelationalProvider, conn: PooledConnection) -> None:
        self._provider = provider
        self._conn = conn

    def query(self, sql: str, params: SQLParams = ()) -> list[Row]:
        return self._provider.run_query(self._conn, sql, params)

    def update(self, sql: str, params: SQLParams = ()) -> int:
        return self._provider.run_update(self._conn, sql, params)

    def execute(self, sql: str, params: SQLParams = ()) -> None:
        self._provider.run_execute(self._conn, sql, params)

    async def query_async(self, sql: str, params: SQLParams = ()) -> list[Row]:
        return await asyncio.to_thread(self.query, sql, params)

    async def update_async(self, sql: str, params: SQLParams = ()) -> int:
        return await asyncio.to_thread(self.update, sql, params)

    async def execute_async(self, sql: str, params: SQLParams = ()) -> None:
        await asyncio.to_thread(self.execute, sql, params)


class Transaction:
    """Unit of work bound to one checked-out connection. Not reentrant."""

    def __init__(
        self,
        provider: RelationalProvider,
        conn: PooledConnection,
        *,
        logger: Any,
    ) -> None:
        self._provider = provider
        self._conn = conn
        self._logger = logger
        self._handle = TransactionConnection(provider, conn)
        self._operations: list[_StatementStep | StagedCallable] = []
        self._state = TransactionState.STAGING
        self._released = False
        self._broken = False
        self.transaction_id = uuid.uuid4().hex[:12]

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def staged_count(self) -> int:
        return len(self._operations)

    def is_active(self) -> bool:
        return self._state is TransactionState.STAGING

    def then(self, operation: StagedCallable) -> Transaction:
        """Stage a callable receiving the ``TransactionConnection``; sync or async."""

        self._assert_staging("then")
        if not callable(operation):
            raise TypeError("staged operation must be callable")
        self._operations.append(operation)
        return self

    def then_query(self, sql: str, params: SQLParams = ()) -> Transaction:
        self._assert_staging("then_query")
        self._operations.append(_StatementStep("query", sql, tuple(params)))
        return self

    def then_update(self, sql: str, params: SQLParams = ()) -> Transaction:
        self._assert_staging("then_update")
        self._operations.append(_StatementStep("update", sql, tuple(params)))
        return self

    async def commit(self) -> TransactionResult:
        if self._state is not TransactionState.STAGING:
            raise TransactionStateError(
                f"transaction {self.transaction_id} is {self._state.value}; cannot commit"
            )
        self._state = TransactionState.COMMITTING
        outcomes: list[object] = []
        try:
            for operation in self._operations:
                outcomes.append(await self._run_operation(operation))
            await asyncio.to_thread(self._provider.commit_on, self._conn)
        except Exception as exc:
            self._broken = isinstance(exc, ConnectivityError)
            self._state = TransactionState.ROLLING_BACK
            await asyncio.to_thread(self._abort)
            self._logger.warning(
                "transaction_rolled_back",
                transaction_id=self.transaction_id,
                completed_steps=len(outcomes),
                staged_steps=len(self._operations),
                error=str(exc),
            )
            raise TransactionError(
                f"transaction {self.transaction_id} rolled back after "
                f"{len(outcomes)} of {len(self._operations)} step(s): {exc}"
            ) from exc
        except BaseException:
            # Cancelled mid-commit: undo synchronously so the connection is not leaked.
            self._state = TransactionState.ROLLING_BACK
            self._abort()
            raise

        self._finish()
        self._logger.debug(
            "transaction_committed",
            transaction_id=self.transaction_id,
            steps=len(outcomes),
        )
        return TransactionResult(transaction_id=self.transaction_id, outcomes=tuple(outcomes))

    async def rollback(self) -> None:
        """Discard staged work and release the connection; no-op once closed."""

        if self._state is not TransactionState.STAGING:
            return
        self._state = TransactionState.ROLLING_BACK
        await asyncio.to_thread(self._abort)
        self._logger.debug("transaction_rolled_back", transaction_id=self.transaction_id)

    def close(self) -> None:
        """Roll back if still staging and release the connection."""

        if self._state is TransactionState.STAGING:
            self._state = TransactionState.ROLLING_BACK
            self._abort()
        else:
            self._finish()

    async def __aenter__(self) -> Transaction:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        del exc_type, exc, tb
        await self.rollback()

    async def _run_operation(self, operation: _StatementStep | StagedCallable) -> object:
        if isinstance(operation, _StatementStep):
            if operation.kind == "query":
                return await self._handle.query_async(operation.sql, operation.params)
            return await self._handle.update_async(operation.sql, operation.params)
        if inspect.iscoroutinefunction(operation):
            return await operation(self._handle)
        result = await asyncio.to_thread(operation, self._handle)
        if inspect.isawaitable(result):
            return await result
        return result

    def _abort(self) -> None:
        try:
            if not self._broken:
                self._provider.rollback_on(self._conn)
        except Exception as exc:
            self._broken = True
            self._logger.error(
                "transaction_rollback_failed",
                transaction_id=self.transaction_id,
                error=str(exc),
            )
        finally:
            self._finish()

    def _finish(self) -> None:
        if self._released:
            return
        self._released = True
        self._state = TransactionState.CLOSED
        try:
            if not self._broken:
                self._provider.end_on(self._conn)
        except Exception as exc:
            self._broken = True
            self._logger.warning(
                "transaction_end_failed", transaction_id=self.transaction_id, error=str(exc)
            )
        finally:
            self._provider.pool.release(self._conn, broken=self._broken)

    def _assert_staging(self, operation: str) -> None:
        if self._state is not TransactionState.STAGING:
            raise TransactionStateError(
                f"{operation}() requires an active transaction; "
                f"transaction {self.transaction_id} is {self._state.value}"
            )


__all__ = [
    "StagedCallable",
    "Transaction",
    "TransactionConnection",
    "TransactionResult",
    "TransactionState",
]
