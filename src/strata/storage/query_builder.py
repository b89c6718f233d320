"""
strata — fluent parameterized query builder

File: src/strata/storage/query_builder.py

Purpose
- Compose SELECT / INSERT / upsert / UPDATE / DELETE statements for one table and
  run them through a storage provider.

Functional requirements
- Values are always bound as parameters; parameter order equals placeholder order.
- Statements use ``?`` placeholders; dialect differences are limited to upserts
  and OFFSET-without-LIMIT.
- Blocking ``sync*`` helpers propagate errors and refuse to run inside an event loop.

Non-functional requirements
- Table and column names are trusted caller input and are rendered verbatim.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

from strata.constants import DEFAULT_SYNC_TIMEOUT_SECONDS
from strata.storage.errors import UnsupportedOperationError
from strata.utils.concurrency import run_sync

if TYPE_CHECKING:
    from strata.storage.provider import Row, StorageProvider

QueryMode = Literal["select", "insert", "insert_or_update", "update", "delete"]
AssignmentKind = Literal["value", "increment", "decrement"]

ORDER_DIRECTIONS: Final[tuple[str, ...]] = ("ASC", "DESC")
COMPARISON_OPERATORS: Final[frozenset[str]] = frozenset(
    {"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "NOT LIKE"}
)

_WRITE_MODES: Final[frozenset[str]] = frozenset({"insert", "insert_or_update", "update"})
_UNBOUNDED_LIMIT: Final[dict[str, str]] = {
    "mysql": "18446744073709551615",
    "sqlite": "-1",
}
_UNSET: Final[object] = object()


@dataclass(frozen=True, slots=True)
class _Assignment:
    column: str
    value: object
    kind: AssignmentKind


@dataclass(frozen=True, slots=True)
class _Predicate:
    fragment: str
    params: tuple[object, ...]


class QueryBuilder:
    """Chainable statement builder bound to one provider and table.

    Terminal operations do not reset the builder; the same builder can be
    rendered or executed again.
    """

    def __init__(
        self,
        provider: StorageProvider,
        table: str,
        *,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT_SECONDS,
    ) -> None:
        if not table:
            raise ValueError("table name must not be empty")
        self._provider = provider
        self._table = table
        self._sync_timeout = sync_timeout
        self._mode: QueryMode = "select"
        self._columns: list[str] = []
        self._predicates: list[_Predicate] = []
        self._assignments: dict[str, _Assignment] = {}
        self._conflict_columns: tuple[str, ...] = ()
        self._order: tuple[str, str] | None = None
        self._limit: int | None = None
        self._offset: int | None = None
        self._batching = False
        self._batch_layout: tuple[_Assignment, ...] | None = None
        self._batch_rows: list[tuple[object, ...]] = []

    @property
    def table(self) -> str:
        return self._table

    @property
    def mode(self) -> QueryMode:
        return self._mode

    # Statement shape.

    def select(self, *columns: str) -> QueryBuilder:
        self._mode = "select"
        self._columns = list(columns)
        return self

    def insert(self) -> QueryBuilder:
        self._mode = "insert"
        return self

    def insert_or_update(self, *conflict_columns: str) -> QueryBuilder:
        """Upsert; ``conflict_columns`` name the unique key (SQLite ``ON CONFLICT`` target)."""

        self._mode = "insert_or_update"
        self._conflict_columns = tuple(conflict_columns)
        return self

    def update(self) -> QueryBuilder:
        self._mode = "update"
        return self

    def delete(self) -> QueryBuilder:
        self._mode = "delete"
        return self

    # Predicates.

    def where(self, column: str, operator_or_value: object, value: object = _UNSET) -> QueryBuilder:
        """``where(col, value)`` compares with ``=``; ``where(col, op, value)`` uses ``op``."""

        if value is _UNSET:
            operator, operand = "=", operator_or_value
        else:
            if not isinstance(operator_or_value, str):
                raise TypeError("comparison operator must be a string")
            operator, operand = operator_or_value.strip().upper(), value
            if operator not in COMPARISON_OPERATORS:
                allowed = ", ".join(sorted(COMPARISON_OPERATORS))
                raise ValueError(f"unsupported operator {operator_or_value!r}; expected: {allowed}")
        self._predicates.append(_Predicate(f"{column} {operator} ?", (operand,)))
        return self

    def where_in(self, column: str, values: Iterable[object]) -> QueryBuilder:
        materialized = tuple(values)
        if not materialized:
            self._predicates.append(_Predicate("1 = 0", ()))
            return self
        placeholders = ", ".join("?" for _ in materialized)
        self._predicates.append(_Predicate(f"{column} IN ({placeholders})", materialized))
        return self

    def where_not_null(self, column: str) -> QueryBuilder:
        self._predicates.append(_Predicate(f"{column} IS NOT NULL", ()))
        return self

    def where_null(self, column: str) -> QueryBuilder:
        self._predicates.append(_Predicate(f"{column} IS NULL", ()))
        return self

    def order_by(self, column: str, direction: str = "ASC") -> QueryBuilder:
        normalized = direction.strip().upper()
        if normalized not in ORDER_DIRECTIONS:
            raise ValueError(f"order direction must be ASC or DESC; got {direction!r}")
        self._order = (column, normalized)
        return self

    def limit(self, count: int) -> QueryBuilder:
        self._limit = _non_negative_int(count, "limit")
        return self

    def offset(self, count: int) -> QueryBuilder:
        self._offset = _non_negative_int(count, "offset")
        return self

    # Assignments.

    def value(self, column: str, value: object) -> QueryBuilder:
        self._assign(column, value, "value")
        return self

    def values(self, mapping: Mapping[str, object]) -> QueryBuilder:
        for column, item in mapping.items():
            self._assign(column, item, "value")
        return self

    def set(self, column: str, value: object) -> QueryBuilder:
        return self.value(column, value)

    def increment(self, column: str, amount: int | float = 1) -> QueryBuilder:
        self._assign(column, amount, "increment")
        return self

    def decrement(self, column: str, amount: int | float = 1) -> QueryBuilder:
        self._assign(column, amount, "decrement")
        return self

    # Batches.

    def batch(self) -> QueryBuilder:
        """Collect parameter sets with ``add_batch`` for ``execute_batch``."""

        self._batching = True
        self._batch_layout = None
        self._batch_rows = []
        return self

    def add_batch(self) -> QueryBuilder:
        if not self._batching:
            raise ValueError("call batch() before add_batch()")
        if not self._assignments:
            raise ValueError("add_batch() requires at least one assigned value")
        current = tuple(self._assignments.values())
        layout = tuple((item.column, item.kind) for item in current)
        if self._batch_layout is None:
            self._batch_layout = current
        else:
            expected = tuple((item.column, item.kind) for item in self._batch_layout)
            if layout != expected:
                raise ValueError(
                    "batch parameter sets must assign the same columns in the same order; "
                    f"expected {[column for column, _ in expected]}, "
                    f"got {[column for column, _ in layout]}"
                )
        self._batch_rows.append(tuple(_bound_value(item, self._mode) for item in current))
        self._assignments = {}
        return self

    @property
    def batch_size(self) -> int:
        return len(self._batch_rows)

    # Rendering.

    def to_sql(self) -> tuple[str, list[object]]:
        """Rendered statement and its parameters in placeholder order."""

        if self._mode == "select":
            return self._render_select(self._columns, self._limit)
        if self._mode == "delete":
            where_sql, where_params = self._render_where()
            return f"DELETE FROM {self._table}{where_sql}", where_params
        assignments = tuple(self._assignments.values())
        if not assignments:
            raise ValueError(f"{self._mode} requires at least one assigned column")
        sql = self._render_write(assignments)
        params = [_bound_value(item, self._mode) for item in assignments]
        if self._mode == "update":
            params.extend(self._render_where()[1])
        return sql, params

    def count_sql(self) -> tuple[str, list[object]]:
        where_sql, where_params = self._render_where()
        return f"SELECT COUNT(*) AS count FROM {self._table}{where_sql}", where_params

    # Terminals.

    async def get(self) -> list[Row]:
        self._require_mode("get", {"select"})
        sql, params = self.to_sql()
        return await self._provider.query(sql, params)

    async def first(self) -> Row | None:
        self._require_mode("first", {"select"})
        sql, params = self._render_select(self._columns, 1)
        rows = await self._provider.query(sql, params)
        return rows[0] if rows else None

    async def count(self) -> int:
        sql, params = self.count_sql()
        rows = await self._provider.query(sql, params)
        if not rows:
            return 0
        raw = rows[0].get("count")
        if raw is None:
            raw = next(iter(rows[0].values()), 0)
        return int(raw)  # type: ignore[call-overload]

    async def execute(self) -> int:
        """Run a write statement and return the affected row count."""

        self._require_mode("execute", _WRITE_MODES | {"delete"})
        sql, params = self.to_sql()
        return await self._provider.update(sql, params)

    async def execute_void(self) -> None:
        sql, params = self.to_sql()
        await self._provider.execute(sql, params)

    async def execute_batch(self) -> int:
        self._require_mode("execute_batch", _WRITE_MODES)
        if not self._batching:
            raise ValueError("call batch() and add_batch() before execute_batch()")
        if self._batch_layout is None or not self._batch_rows:
            return 0
        sql = self._render_write(self._batch_layout)
        where_params = tuple(self._render_where()[1]) if self._mode == "update" else ()
        param_sets = [(*row, *where_params) for row in self._batch_rows]
        return await self._provider.execute_batch(sql, param_sets)

    def sync(self) -> list[Row]:
        return run_sync(self.get(), timeout_seconds=self._sync_timeout, operation="sync()")

    def sync_first(self) -> Row | None:
        return run_sync(self.first(), timeout_seconds=self._sync_timeout, operation="sync_first()")

    def sync_count(self) -> int:
        return run_sync(self.count(), timeout_seconds=self._sync_timeout, operation="sync_count()")

    def sync_execute(self) -> int:
        return run_sync(
            self.execute(), timeout_seconds=self._sync_timeout, operation="sync_execute()"
        )

    # Internals.

    def _assign(self, column: str, value: object, kind: AssignmentKind) -> None:
        if self._mode not in _WRITE_MODES:
            raise ValueError(
                f"cannot assign {column!r} in {self._mode} mode; "
                "call insert(), insert_or_update() or update() first"
            )
        if kind != "value" and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise TypeError(f"{kind} amount for {column!r} must be a number")
        # Re-assigning a column keeps its original position.
        self._assignments[column] = _Assignment(column, value, kind)

    def _render_select(
        self, columns: list[str], limit: int | None
    ) -> tuple[str, list[object]]:
        column_sql = ", ".join(columns) if columns else "*"
        where_sql, params = self._render_where()
        parts = [f"SELECT {column_sql} FROM {self._table}{where_sql}"]
        if self._order is not None:
            parts.append(f"ORDER BY {self._order[0]} {self._order[1]}")
        if limit is not None:
            parts.append(f"LIMIT {limit}")
        elif self._offset is not None:
            parts.append(f"LIMIT {_UNBOUNDED_LIMIT.get(self._provider.dialect or '', '-1')}")
        if self._offset is not None:
            parts.append(f"OFFSET {self._offset}")
        return " ".join(parts), params

    def _render_where(self) -> tuple[str, list[object]]:
        if not self._predicates:
            return "", []
        params: list[object] = []
        for predicate in self._predicates:
            params.extend(predicate.params)
        fragments = " AND ".join(predicate.fragment for predicate in self._predicates)
        return f" WHERE {fragments}", params

    def _render_write(self, assignments: tuple[_Assignment, ...]) -> str:
        if self._mode == "update":
            set_sql = ", ".join(_update_fragment(item) for item in assignments)
            where_sql, _ = self._render_where()
            return f"UPDATE {self._table} SET {set_sql}{where_sql}"

        columns = [item.column for item in assignments]
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {self._table} ({', '.join(columns)}) VALUES ({placeholders})"
        if self._mode == "insert":
            return sql
        return f"{sql} {self._render_conflict_clause(assignments)}"

    def _render_conflict_clause(self, assignments: tuple[_Assignment, ...]) -> str:
        dialect = self._provider.dialect
        conflict = self._conflict_columns or (assignments[0].column,)
        updatable = [item for item in assignments if item.column not in conflict]
        if dialect == "mysql":
            if not updatable:
                first = assignments[0].column
                return f"ON DUPLICATE KEY UPDATE {first} = {first}"
            rendered = ", ".join(
                _upsert_fragment(item, f"VALUES({item.column})") for item in updatable
            )
            return f"ON DUPLICATE KEY UPDATE {rendered}"
        if dialect == "sqlite":
            target = ", ".join(conflict)
            if not updatable:
                return f"ON CONFLICT({target}) DO NOTHING"
            rendered = ", ".join(
                _upsert_fragment(item, f"excluded.{item.column}") for item in updatable
            )
            return f"ON CONFLICT({target}) DO UPDATE SET {rendered}"
        raise UnsupportedOperationError(
            f"insert_or_update is not supported by the {self._provider.backend} backend"
        )

    def _require_mode(self, operation: str, allowed: set[str] | frozenset[str]) -> None:
        if self._mode not in allowed:
            raise ValueError(f"{operation}() is not valid for a {self._mode} statement")


def _update_fragment(item: _Assignment) -> str:
    if item.kind == "increment":
        return f"{item.column} = {item.column} + ?"
    if item.kind == "decrement":
        return f"{item.column} = {item.column} - ?"
    return f"{item.column} = ?"


def _upsert_fragment(item: _Assignment, incoming: str) -> str:
    # Counters insert a signed amount, so the conflict branch always adds it.
    if item.kind == "value":
        return f"{item.column} = {incoming}"
    return f"{item.column} = {item.column} + {incoming}"


def _bound_value(item: _Assignment, mode: str) -> object:
    if item.kind == "decrement" and mode != "update":
        return -item.value  # type: ignore[operator]
    return item.value


def _non_negative_int(value: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer")
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


__all__ = [
    "COMPARISON_OPERATORS",
    "ORDER_DIRECTIONS",
    "QueryBuilder",
    "QueryMode",
]
