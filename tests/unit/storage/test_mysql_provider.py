"""MySQL provider against a fake PyMySQL driver: placeholders, errors and transactions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pymysql
import pytest

from strata.storage.errors import ConnectivityError, StatementError, StorageBusyError
from strata.storage.mysql import MySQLProvider, translate_placeholders

from . import FakeConnect

if TYPE_CHECKING:
    from pathlib import Path


def _provider(connect: FakeConnect, **kwargs: object) -> MySQLProvider:
    options: dict[str, object] = {
        "host": "db.internal",
        "port": 3306,
        "database": "game",
        "username": "strata",
        "password": "hunter2",
        "min_pool_size": 0,
        "max_pool_size": 2,
        "connection_timeout": 0.2,
    }
    options.update(kwargs)
    return MySQLProvider(connect=connect, **options)  # type: ignore[arg-type]


def test_translate_placeholders_skips_quoted_literals_and_escapes_percent() -> None:
    sql = "SELECT * FROM t WHERE a = ? AND b LIKE 'x?%' AND c = ? AND d LIKE \"5%\""

    assert translate_placeholders(sql) == (
        "SELECT * FROM t WHERE a = %s AND b LIKE 'x?%%' AND c = %s AND d LIKE \"5%%\""
    )


def test_translate_placeholders_honours_backslash_escapes_in_literals() -> None:
    sql = r"SELECT * FROM t WHERE note = 'it\'s ?' AND a = ? AND b = 'c:\\' AND d = ?"

    assert translate_placeholders(sql) == (
        r"SELECT * FROM t WHERE note = 'it\'s ?' AND a = %s AND b = 'c:\\' AND d = %s"
    )
    assert translate_placeholders("SELECT `odd\\` , ?") == "SELECT `odd\\` , %s"


def test_connect_passes_credentials_and_autocommit() -> None:
    connect = FakeConnect()
    provider = _provider(connect)

    assert provider.is_connected()
    kwargs = connect.connections[0].kwargs
    assert kwargs["host"] == "db.internal"
    assert kwargs["user"] == "strata"
    assert kwargs["password"] == "hunter2"
    assert kwargs["database"] == "game"
    assert kwargs["charset"] == "utf8mb4"
    assert kwargs["autocommit"] is True
    assert provider.address == "db.internal:3306/game"
    provider.shutdown()


async def test_query_maps_rows_by_column_label() -> None:
    connect = FakeConnect()
    provider = _provider(connect)
    conn = provider.pool.acquire()
    conn.raw.description = [("uuid",), ("coins",)]
    conn.raw.rows = [("u-1", 3), ("u-2", 0)]
    provider.pool.release(conn)

    rows = await provider.query("SELECT uuid, coins FROM players WHERE coins >= ?", (0,))

    assert rows == [{"uuid": "u-1", "coins": 3}, {"uuid": "u-2", "coins": 0}]
    assert conn.raw.executed[-1] == ("SELECT uuid, coins FROM players WHERE coins >= %s", (0,))
    provider.shutdown()


async def test_driver_error_becomes_statement_error() -> None:
    connect = FakeConnect()
    provider = _provider(connect)
    conn = provider.pool.acquire()
    conn.raw.errors.append(pymysql.err.ProgrammingError(1146, "Table 'game.nope' doesn't exist"))
    provider.pool.release(conn)

    with pytest.raises(StatementError) as excinfo:
        await provider.query("SELECT * FROM nope")

    assert excinfo.value.statement == "SELECT * FROM nope"
    assert "doesn't exist" in excinfo.value.driver_message
    assert provider.pool.idle_count() == 1
    provider.shutdown()


async def test_lock_wait_timeout_becomes_busy_error() -> None:
    connect = FakeConnect()
    provider = _provider(connect)
    conn = provider.pool.acquire()
    conn.raw.errors.append(pymysql.err.OperationalError(1205, "Lock wait timeout exceeded"))
    provider.pool.release(conn)

    with pytest.raises(StorageBusyError):
        await provider.update("UPDATE players SET coins = 0")
    provider.shutdown()


async def test_lost_connection_discards_pooled_connection() -> None:
    connect = FakeConnect()
    provider = _provider(connect)
    conn = provider.pool.acquire()
    conn.raw.errors.append(pymysql.err.OperationalError(2006, "MySQL server has gone away"))
    provider.pool.release(conn)

    with pytest.raises(ConnectivityError, match="connection lost"):
        await provider.execute("DELETE FROM players")

    assert conn.raw.closed
    assert provider.pool.total_count() == 0
    provider.shutdown()


async def test_batch_runs_inside_driver_transaction() -> None:
    connect = FakeConnect()
    provider = _provider(connect)

    count = await provider.execute_batch(
        "INSERT INTO players (uuid) VALUES (?)", [("u-1",), ("u-2",)]
    )

    raw = connect.connections[0]
    assert count == 2
    assert raw.executed_many == [("INSERT INTO players (uuid) VALUES (%s)", [("u-1",), ("u-2",)])]
    assert raw.calls == ["begin", "commit"]
    provider.shutdown()


async def test_transaction_commits_on_the_driver() -> None:
    connect = FakeConnect()
    provider = _provider(connect)

    transaction = await provider.begin_transaction()
    await transaction.then_update("UPDATE players SET coins = ?", (1,)).commit()

    assert connect.connections[0].calls == ["begin", "commit"]
    assert provider.pool.active_count() == 0
    provider.shutdown()


def test_unreachable_server_reports_disconnected() -> None:
    connect = FakeConnect()
    connect.failure = pymysql.err.OperationalError(2003, "Can't connect")
    provider = _provider(connect)

    assert provider.is_connected() is False
    provider.shutdown()


def test_backup_data_is_a_logged_noop(tmp_path: Path) -> None:
    provider = _provider(FakeConnect())

    assert provider.backup_data(tmp_path) == []
    provider.shutdown()
