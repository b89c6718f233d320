"""
strata — MySQL storage provider

File: src/strata/storage/mysql.py

Purpose
- Pooled provider over PyMySQL connections.

Functional requirements
- Statements are written with ``?`` placeholders and translated to the driver's
  ``%s`` paramstyle; every literal ``%`` is escaped.
- Lost-connection errors discard the pooled connection.
- Credentials come from the environment (resolved by the caller), never from files.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, ClassVar, Final

import pymysql

from strata.constants import (
    BACKEND_MYSQL,
    DEFAULT_CONNECTION_TIMEOUT_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_LIFETIME_SECONDS,
    MYSQL_DEFAULT_MAX_POOL_SIZE,
    MYSQL_DEFAULT_MIN_POOL_SIZE,
)
from strata.storage.errors import ConnectivityError, StatementError, StorageBusyError
from strata.storage.pool import ConnectionPool, PooledConnection
from strata.storage.provider import Dialect, SQLParams
from strata.storage.relational import RelationalProvider

# Client error codes meaning the server connection is gone.
_CONNECTION_LOST_CODES: Final[frozenset[int]] = frozenset({2003, 2006, 2013, 2055})
_LOCK_CODES: Final[frozenset[int]] = frozenset({1205, 1213})

MySQLConnectFunc = Callable[..., Any]


class MySQLProvider(RelationalProvider):
    """Relational provider for a MySQL/MariaDB server."""

    backend: ClassVar[str] = BACKEND_MYSQL
    dialect: ClassVar[Dialect | None] = "mysql"

    def __init__(
        self,
        *,
        host: str,
        port: int,
        database: str,
        username: str,
        password: str | None,
        min_pool_size: int = MYSQL_DEFAULT_MIN_POOL_SIZE,
        max_pool_size: int = MYSQL_DEFAULT_MAX_POOL_SIZE,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_SECONDS,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        max_lifetime: float = DEFAULT_MAX_LIFETIME_SECONDS,
        charset: str = "utf8mb4",
        connect: MySQLConnectFunc | None = None,
        logger: Any | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._database = database
        self._username = username
        self._password = password
        self._charset = charset
        self._connect_timeout = max(1, int(connection_timeout))
        self._connect_func = connect if connect is not None else pymysql.connect
        pool = ConnectionPool(
            self._connect,
            name="mysql",
            min_size=min_pool_size,
            max_size=max_pool_size,
            connection_timeout=connection_timeout,
            idle_timeout=idle_timeout,
            max_lifetime=max_lifetime,
            probe=_probe,
            logger=logger,
        )
        super().__init__(pool, logger=logger)

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}/{self._database}"

    def begin_on(self, conn: PooledConnection) -> None:
        self._driver_call(conn, conn.raw.begin, "BEGIN", operation="begin transaction")

    def commit_on(self, conn: PooledConnection) -> None:
        self._driver_call(conn, conn.raw.commit, "COMMIT", operation="commit transaction")

    def rollback_on(self, conn: PooledConnection) -> None:
        self._driver_call(conn, conn.raw.rollback, "ROLLBACK", operation="rollback transaction")

    def backup_data(self, destination: Path) -> list[Path]:
        # Server-side dumps need mysqldump or a replica; outside this layer.
        self._logger.info(
            "mysql_backup_data_skipped", address=self.address, destination=str(destination)
        )
        return []

    def _connect(self) -> Any:
        return self._connect_func(
            host=self._host,
            port=self._port,
            user=self._username,
            password=self._password or "",
            database=self._database,
            charset=self._charset,
            autocommit=True,
            connect_timeout=self._connect_timeout,
        )

    def _execute_cursor(
        self, conn: PooledConnection, sql: str, params: SQLParams, *, operation: str
    ) -> Any:
        translated = translate_placeholders(sql)
        cursor = conn.raw.cursor()
        try:
            cursor.execute(translated, tuple(params))
        except pymysql.MySQLError as exc:
            cursor.close()
            self._raise_statement_error(exc, sql, operation=operation)
        return cursor

    def _executemany_cursor(
        self, conn: PooledConnection, sql: str, param_sets: Sequence[SQLParams]
    ) -> Any:
        translated = translate_placeholders(sql)
        cursor = conn.raw.cursor()
        try:
            cursor.executemany(translated, [tuple(params) for params in param_sets])
        except pymysql.MySQLError as exc:
            cursor.close()
            self._raise_statement_error(exc, sql, operation="batch")
        return cursor

    def _driver_call(
        self, conn: PooledConnection, func: Callable[[], object], label: str, *, operation: str
    ) -> None:
        del conn
        try:
            func()
        except pymysql.MySQLError as exc:
            self._raise_statement_error(exc, label, operation=operation)

    def _raise_statement_error(
        self, exc: pymysql.MySQLError, sql: str, *, operation: str
    ) -> None:
        code = _error_code(exc)
        if code in _CONNECTION_LOST_CODES or isinstance(exc, pymysql.err.InterfaceError):
            raise ConnectivityError(f"mysql connection lost during {operation}: {exc}") from exc
        if code in _LOCK_CODES:
            raise StorageBusyError(sql, str(exc), operation=operation) from exc
        raise StatementError(sql, str(exc), operation=operation) from exc


def translate_placeholders(sql: str) -> str:
    """Rewrite ``?`` placeholders to ``%s`` outside quoted literals, escaping ``%``.

    Inside string literals a backslash escapes the next character, as MySQL reads it.
    """

    out: list[str] = []
    quote: str | None = None
    escaped = False
    for char in sql:
        if quote is not None:
            if escaped:
                escaped = False
            elif char == "\\" and quote != "`":
                escaped = True
            elif char == quote:
                quote = None
            out.append("%%" if char == "%" else char)
            continue
        if char in {"'", '"', "`"}:
            quote = char
            out.append(char)
        elif char == "?":
            out.append("%s")
        elif char == "%":
            out.append("%%")
        else:
            out.append(char)
    return "".join(out)


def _error_code(exc: BaseException) -> int | None:
    if exc.args and isinstance(exc.args[0], int):
        return exc.args[0]
    return None


def _probe(raw: Any) -> bool:
    raw.ping(reconnect=False)
    return True


__all__ = ["MySQLProvider", "translate_placeholders"]
