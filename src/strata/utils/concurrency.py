"""Async helpers shared by the storage and migration layers."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

T = TypeVar("T")


class BlockingCallError(RuntimeError):
    """Raised when a blocking helper is called from an active event loop thread."""


def in_event_loop_thread() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


async def run_with_timeout(coroutine: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``coroutine`` and raise ``TimeoutError`` once ``timeout_seconds`` elapse."""
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    task: asyncio.Task[T] = asyncio.ensure_future(coroutine)
    done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    if task in done:
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")


def run_sync(
    coroutine: Coroutine[Any, Any, T],
    *,
    timeout_seconds: float,
    operation: str = "operation",
) -> T:
    """Drive ``coroutine`` to completion from synchronous code.

    Errors raised by the coroutine propagate unchanged. Calling this from a thread
    that is already running an event loop would deadlock that loop, so it raises
    ``BlockingCallError`` instead.
    """
    if in_event_loop_thread():
        _close_unscheduled_coroutine(coroutine)
        raise BlockingCallError(
            f"{operation} is a blocking call and cannot run inside an active event loop; "
            "await the async variant instead"
        )
    return asyncio.run(run_with_timeout(coroutine, timeout_seconds))


async def call_maybe_async(func: Callable[..., object], *args: object) -> object:
    """Call ``func`` and await the result when it is awaitable."""
    result = func(*args)
    if inspect.isawaitable(result):
        return await result
    return result


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects that never got scheduled so CPython does not
    # emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BlockingCallError",
    "call_maybe_async",
    "in_event_loop_thread",
    "run_sync",
    "run_with_timeout",
]
