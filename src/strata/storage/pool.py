"""
strata — bounded connection pool

File: src/strata/storage/pool.py

Purpose
- Own every live relational connection and hand them out one checkout at a time.

Functional requirements
- ``active + idle <= max_size`` at all times (connections being opened count as active).
- Acquisition waits up to the connection timeout, then raises ``PoolExhaustedError``.
- Idle connections past ``idle_timeout`` (above ``min_size``) or past ``max_lifetime``
  are closed and replaced on demand.
- Shutdown waits a bounded grace period for checkouts to drain, force-closes
  everything, logs final statistics and never raises.

Non-functional requirements
- Thread-safe: blocking acquisition runs on executor threads via ``acquire_async``.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Final

import structlog

from strata.constants import (
    DEFAULT_CONNECTION_TIMEOUT_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_LIFETIME_SECONDS,
    DEFAULT_SHUTDOWN_GRACE_SECONDS,
)
from strata.storage.errors import ConnectivityError, PoolExhaustedError

ConnectionFactory = Callable[[], Any]
ConnectionCallback = Callable[[Any], None]
ConnectionProbe = Callable[[Any], bool]

_PROBE_TIMEOUT_CAP_SECONDS: Final[float] = 5.0
_SHUTDOWN_POLL_SECONDS: Final[float] = 0.1
_CONNECTION_IDS = itertools.count(1)


@dataclass(frozen=True, slots=True)
class PoolStats:
    active: int
    idle: int
    total: int
    min_size: int
    max_size: int


class PooledConnection:
    """A raw DB-API connection checked out from a ``ConnectionPool``."""

    __slots__ = ("connection_id", "created_at", "last_used_at", "raw")

    def __init__(self, raw: Any) -> None:
        now = time.monotonic()
        self.raw = raw
        self.connection_id = next(_CONNECTION_IDS)
        self.created_at = now
        self.last_used_at = now

    def __repr__(self) -> str:
        return f"PooledConnection(id={self.connection_id})"


class ConnectionPool:
    """Thread-safe bounded pool over a connection factory."""

    def __init__(
        self,
        factory: ConnectionFactory,
        *,
        name: str = "pool",
        min_size: int = 0,
        max_size: int = 1,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_SECONDS,
        idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT_SECONDS,
        max_lifetime: float | None = DEFAULT_MAX_LIFETIME_SECONDS,
        max_size_cap: int | None = None,
        probe: ConnectionProbe | None = None,
        on_close: ConnectionCallback | None = None,
        logger: Any | None = None,
    ) -> None:
        if connection_timeout <= 0:
            raise ValueError("connection_timeout must be > 0")
        if idle_timeout is not None and idle_timeout <= 0:
            raise ValueError("idle_timeout must be > 0 when set")
        if max_lifetime is not None and max_lifetime <= 0:
            raise ValueError("max_lifetime must be > 0 when set")
        if max_size_cap is not None and max_size_cap <= 0:
            raise ValueError("max_size_cap must be > 0 when set")

        self._factory = factory
        self._name = name
        self._max_size_cap = max_size_cap
        self._min_size, self._max_size = self._validate_sizes(min_size, max_size)
        self._connection_timeout = connection_timeout
        self._idle_timeout = idle_timeout
        self._max_lifetime = max_lifetime
        self._probe = probe
        self._on_close = on_close if on_close is not None else _close_raw
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._cond = threading.Condition()
        self._idle: deque[PooledConnection] = deque()
        self._active: set[PooledConnection] = set()
        self._opening = 0
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def min_size(self) -> int:
        return self._min_size

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def connection_timeout(self) -> float:
        return self._connection_timeout

    @property
    def is_closed(self) -> bool:
        return self._closed

    def active_count(self) -> int:
        with self._cond:
            return len(self._active) + self._opening

    def idle_count(self) -> int:
        with self._cond:
            return len(self._idle)

    def total_count(self) -> int:
        with self._cond:
            return self._total_locked()

    def stats(self) -> PoolStats:
        with self._cond:
            return PoolStats(
                active=len(self._active) + self._opening,
                idle=len(self._idle),
                total=self._total_locked(),
                min_size=self._min_size,
                max_size=self._max_size,
            )

    def acquire(self, timeout: float | None = None) -> PooledConnection:
        """Check out a connection, opening one when below ``max_size``.

        Idle connections are run through the probe first; one that fails is
        closed and checkout continues with the next candidate.
        """

        wait_seconds = self._connection_timeout if timeout is None else timeout
        deadline = time.monotonic() + max(wait_seconds, 0.0)
        while True:
            conn = self._checkout(deadline, wait_seconds)
            if conn is None:
                return self._open_new()
            if self._passes_probe(conn):
                return conn
            self.release(conn, broken=True)

    async def acquire_async(self, timeout: float | None = None) -> PooledConnection:
        """Async acquisition; the blocking wait runs on the default executor."""

        future = asyncio.ensure_future(asyncio.to_thread(self.acquire, timeout))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(self._release_abandoned)
            raise

    def release(self, conn: PooledConnection, *, broken: bool = False) -> None:
        """Return ``conn`` to the pool; broken or surplus connections are closed."""

        discard = False
        with self._cond:
            if conn not in self._active:
                return
            self._active.discard(conn)
            now = time.monotonic()
            if (
                broken
                or self._closed
                or self._is_past_lifetime(conn, now)
                or self._total_locked() >= self._max_size
            ):
                discard = True
            else:
                conn.last_used_at = now
                self._idle.append(conn)
            self._cond.notify()

        if discard:
            self._close_one(conn)

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[PooledConnection]:
        conn = self.acquire(timeout)
        broken = False
        try:
            yield conn
        except ConnectivityError:
            broken = True
            raise
        finally:
            self.release(conn, broken=broken)

    def prefill(self) -> int:
        """Open idle connections up to ``min_size``; returns how many were opened."""

        opened = 0
        while True:
            with self._cond:
                if self._closed or self._total_locked() >= self._min_size:
                    return opened
                self._opening += 1
            conn = self._open_new()
            self.release(conn)
            opened += 1

    def set_pool_size(self, min_size: int, max_size: int) -> None:
        """Resize the pool; surplus idle connections are closed immediately."""

        validated_min, validated_max = self._validate_sizes(min_size, max_size)
        surplus: list[PooledConnection] = []
        with self._cond:
            self._min_size = validated_min
            self._max_size = validated_max
            while self._idle and self._total_locked() > self._max_size:
                surplus.append(self._idle.popleft())
            self._cond.notify_all()
        self._close_many(surplus)
        self._logger.info(
            "pool_resized",
            pool=self._name,
            min_size=validated_min,
            max_size=validated_max,
            closed_idle=len(surplus),
        )

    def is_connected(self) -> bool:
        """Probe connectivity by acquiring and releasing one connection."""

        if self._closed:
            return False
        try:
            conn = self.acquire(min(self._connection_timeout, _PROBE_TIMEOUT_CAP_SECONDS))
        except ConnectivityError:
            return False
        healthy = self._passes_probe(conn)
        self.release(conn, broken=not healthy)
        return healthy

    def shutdown(self, grace_period: float = DEFAULT_SHUTDOWN_GRACE_SECONDS) -> None:
        """Drain and close the pool. Idempotent; never raises."""

        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
            deadline = time.monotonic() + max(grace_period, 0.0)
            while self._active or self._opening:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(min(remaining, _SHUTDOWN_POLL_SECONDS))
            stragglers = len(self._active) + self._opening
            final = PoolStats(
                active=stragglers,
                idle=len(self._idle),
                total=self._total_locked(),
                min_size=self._min_size,
                max_size=self._max_size,
            )
            to_close = list(self._idle) + list(self._active)
            self._idle.clear()
            self._active.clear()

        if stragglers:
            self._logger.warning(
                "pool_shutdown_grace_exceeded",
                pool=self._name,
                grace_period_s=grace_period,
                active=stragglers,
            )
        self._logger.info(
            "pool_shutdown_stats",
            pool=self._name,
            active=final.active,
            idle=final.idle,
            total=final.total,
        )
        self._close_many(to_close)

    def _checkout(self, deadline: float, wait_seconds: float) -> PooledConnection | None:
        # Returns an idle connection now marked active, or None with a slot reserved.
        expired: list[PooledConnection] = []
        try:
            with self._cond:
                while True:
                    if self._closed:
                        raise ConnectivityError(f"{self._name}: pool is shut down")
                    conn = self._take_idle_locked(expired)
                    if conn is not None:
                        self._active.add(conn)
                        return conn
                    if self._total_locked() < self._max_size:
                        self._opening += 1
                        return None
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise PoolExhaustedError(
                            f"{self._name}: pool exhausted; no connection available within "
                            f"{wait_seconds:.3f}s (max_size={self._max_size})"
                        )
                    self._cond.wait(remaining)
        finally:
            self._close_many(expired)

    def _passes_probe(self, conn: PooledConnection) -> bool:
        if self._probe is None:
            return True
        try:
            if self._probe(conn.raw):
                return True
            error = "probe reported the connection unusable"
        except Exception as exc:
            error = str(exc)
        self._logger.warning(
            "pool_probe_failed", pool=self._name, id=conn.connection_id, error=error
        )
        return False

    def _open_new(self) -> PooledConnection:
        # Caller has already reserved a slot via ``_opening``.
        try:
            raw = self._factory()
        except Exception as exc:
            with self._cond:
                self._opening -= 1
                self._cond.notify()
            raise ConnectivityError(f"{self._name}: unable to open connection: {exc}") from exc

        conn = PooledConnection(raw)
        with self._cond:
            self._opening -= 1
            if self._closed:
                closed = True
            else:
                closed = False
                self._active.add(conn)
        if closed:
            self._close_one(conn)
            raise ConnectivityError(f"{self._name}: pool is shut down")
        self._logger.debug("pool_connection_opened", pool=self._name, id=conn.connection_id)
        return conn

    def _take_idle_locked(self, expired: list[PooledConnection]) -> PooledConnection | None:
        now = time.monotonic()
        while self._idle:
            conn = self._idle.pop()
            if self._is_past_lifetime(conn, now) or self._is_idle_expired(conn, now):
                expired.append(conn)
                continue
            return conn
        return None

    def _is_past_lifetime(self, conn: PooledConnection, now: float) -> bool:
        return self._max_lifetime is not None and now - conn.created_at >= self._max_lifetime

    def _is_idle_expired(self, conn: PooledConnection, now: float) -> bool:
        if self._idle_timeout is None:
            return False
        if now - conn.last_used_at < self._idle_timeout:
            return False
        # ``conn`` is already out of the idle deque; keep the configured floor warm.
        return self._total_locked() >= self._min_size

    def _total_locked(self) -> int:
        return len(self._active) + len(self._idle) + self._opening

    def _release_abandoned(self, future: asyncio.Future[PooledConnection]) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self.release(future.result())

    def _close_many(self, conns: list[PooledConnection]) -> None:
        for conn in conns:
            self._close_one(conn)
        conns.clear()

    def _close_one(self, conn: PooledConnection) -> None:
        try:
            self._on_close(conn.raw)
        except Exception as exc:
            self._logger.warning(
                "pool_connection_close_failed",
                pool=self._name,
                id=conn.connection_id,
                error=str(exc),
            )

    def _validate_sizes(self, min_size: int, max_size: int) -> tuple[int, int]:
        if min_size < 0:
            raise ValueError("min_size must be >= 0")
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        if min_size > max_size:
            raise ValueError(f"min_size ({min_size}) must be <= max_size ({max_size})")
        if self._max_size_cap is not None and max_size > self._max_size_cap:
            raise ValueError(f"{self._name}: max_size is capped at {self._max_size_cap}")
        return min_size, max_size


def _close_raw(raw: Any) -> None:
    close = getattr(raw, "close", None)
    if callable(close):
        close()


__all__ = [
    "ConnectionFactory",
    "ConnectionPool",
    "PoolStats",
    "PooledConnection",
]
