"""Connection pool limits, exhaustion, resizing and shutdown."""

from __future__ import annotations

import threading
import time

import pytest
from structlog.testing import capture_logs

from strata.storage.errors import ConnectivityError, PoolExhaustedError
from strata.storage.pool import ConnectionPool

from . import CountingFactory, FakeConnection


def _pool(factory: CountingFactory, **kwargs: object) -> ConnectionPool:
    options: dict[str, object] = {"max_size": 2, "connection_timeout": 0.2}
    options.update(kwargs)
    return ConnectionPool(factory, name="test", **options)  # type: ignore[arg-type]


def test_acquire_opens_lazily_and_reuses_released_connections() -> None:
    factory = CountingFactory()
    pool = _pool(factory)

    first = pool.acquire()
    pool.release(first)
    second = pool.acquire()

    assert second is first
    assert len(factory.opened) == 1
    assert pool.stats().active == 1
    pool.release(second)
    pool.shutdown(grace_period=0)


def test_active_plus_idle_never_exceeds_max_and_exhaustion_raises() -> None:
    factory = CountingFactory()
    pool = _pool(factory, max_size=2)

    held = [pool.acquire(), pool.acquire()]
    assert pool.total_count() == 2

    with pytest.raises(PoolExhaustedError, match="max_size=2"):
        pool.acquire(timeout=0.05)

    for conn in held:
        pool.release(conn)
    stats = pool.stats()
    assert stats.active == 0
    assert stats.idle == 2
    assert stats.total <= stats.max_size
    pool.shutdown(grace_period=0)


def test_waiter_receives_connection_released_by_another_thread() -> None:
    pool = _pool(CountingFactory(), max_size=1, connection_timeout=2.0)
    held = pool.acquire()
    acquired: list[object] = []

    def waiter() -> None:
        conn = pool.acquire()
        acquired.append(conn)
        pool.release(conn)

    thread = threading.Thread(target=waiter)
    thread.start()
    time.sleep(0.05)
    pool.release(held)
    thread.join(timeout=2.0)

    assert acquired == [held]
    pool.shutdown(grace_period=0)


def test_broken_connection_is_closed_not_recycled() -> None:
    factory = CountingFactory()
    pool = _pool(factory)

    conn = pool.acquire()
    pool.release(conn, broken=True)

    assert factory.closed == [conn.raw]
    assert pool.total_count() == 0
    pool.shutdown(grace_period=0)


def test_connection_context_marks_connectivity_failures_broken() -> None:
    factory = CountingFactory()
    pool = _pool(factory)

    with pytest.raises(ConnectivityError), pool.connection():
        raise ConnectivityError("server went away")

    assert len(factory.closed) == 1
    assert pool.idle_count() == 0


def test_factory_failure_frees_the_reserved_slot() -> None:
    def failing() -> FakeConnection:
        raise OSError("refused")

    pool = ConnectionPool(failing, name="test", max_size=1, connection_timeout=0.1)

    with pytest.raises(ConnectivityError, match="unable to open connection"):
        pool.acquire()
    assert pool.total_count() == 0


def test_prefill_opens_min_size_idle_connections() -> None:
    factory = CountingFactory()
    pool = _pool(factory, min_size=2, max_size=3)

    assert pool.prefill() == 2
    assert pool.idle_count() == 2
    assert pool.active_count() == 0
    pool.shutdown(grace_period=0)


def test_idle_timeout_closes_surplus_idle_connections() -> None:
    factory = CountingFactory()
    pool = _pool(factory, min_size=0, max_size=2, idle_timeout=0.01)

    conn = pool.acquire()
    pool.release(conn)
    time.sleep(0.03)
    fresh = pool.acquire()

    assert fresh is not conn
    assert factory.closed == [conn.raw]
    pool.release(fresh)
    pool.shutdown(grace_period=0)


def test_set_pool_size_validates_and_closes_surplus_idle() -> None:
    factory = CountingFactory()
    pool = _pool(factory, max_size=3)
    held = [pool.acquire() for _ in range(3)]
    for conn in held:
        pool.release(conn)

    with capture_logs() as logs:
        pool.set_pool_size(0, 1)

    assert pool.total_count() == 1
    assert len(factory.closed) == 2
    assert any(entry["event"] == "pool_resized" for entry in logs)
    with pytest.raises(ValueError, match="min_size"):
        pool.set_pool_size(2, 1)
    pool.shutdown(grace_period=0)


def test_max_size_cap_is_enforced() -> None:
    with pytest.raises(ValueError, match="capped at 1"):
        ConnectionPool(CountingFactory(), name="sqlite", max_size=2, max_size_cap=1)


def test_shutdown_waits_for_active_connections_then_logs_stats() -> None:
    factory = CountingFactory()
    pool = _pool(factory)
    conn = pool.acquire()

    def release_later() -> None:
        time.sleep(0.05)
        pool.release(conn)

    thread = threading.Thread(target=release_later)
    thread.start()
    with capture_logs() as logs:
        pool.shutdown(grace_period=2.0)
    thread.join()

    events = [entry["event"] for entry in logs]
    assert "pool_shutdown_stats" in events
    assert "pool_shutdown_grace_exceeded" not in events
    assert factory.closed == [conn.raw]
    assert pool.is_closed


def test_shutdown_force_closes_after_grace_period_and_is_idempotent() -> None:
    factory = CountingFactory()
    pool = _pool(factory)
    pool.acquire()

    with capture_logs() as logs:
        pool.shutdown(grace_period=0.05)
        pool.shutdown(grace_period=0.05)

    events = [entry["event"] for entry in logs]
    assert events.count("pool_shutdown_grace_exceeded") == 1
    assert events.count("pool_shutdown_stats") == 1
    assert len(factory.closed) == 1
    with pytest.raises(ConnectivityError, match="shut down"):
        pool.acquire()


def test_is_connected_uses_probe_and_discards_unhealthy_connections() -> None:
    factory = CountingFactory()
    pool = ConnectionPool(
        factory, name="test", max_size=1, connection_timeout=0.1, probe=lambda raw: False
    )

    assert pool.is_connected() is False
    assert len(factory.closed) == 1
    pool.shutdown(grace_period=0)
    assert pool.is_connected() is False


def test_acquire_replaces_idle_connection_that_fails_probe() -> None:
    factory = CountingFactory()
    pool = _pool(factory, probe=lambda raw: raw.ping_error is None)
    stale = pool.acquire()
    pool.release(stale)
    stale.raw.ping_error = ConnectionResetError("server has gone away")

    with capture_logs() as logs:
        fresh = pool.acquire()

    assert fresh is not stale
    assert factory.closed == [stale.raw]
    assert len(factory.opened) == 2
    assert pool.stats().total == 1
    assert [entry["event"] for entry in logs if entry["log_level"] == "warning"] == [
        "pool_probe_failed"
    ]
    pool.release(fresh)
    pool.shutdown(grace_period=0)


async def test_acquire_async_returns_connection_without_blocking_loop() -> None:
    pool = _pool(CountingFactory())

    conn = await pool.acquire_async()

    assert pool.active_count() == 1
    pool.release(conn)
    assert pool.active_count() == 0
    pool.shutdown(grace_period=0)
