"""Utility exports for filesystem, hashing, and async helpers."""

from strata.utils.concurrency import (
    BlockingCallError,
    call_maybe_async,
    in_event_loop_thread,
    run_sync,
    run_with_timeout,
)
from strata.utils.fs import (
    atomic_write,
    copy_file,
    copy_tree,
    ensure_directory,
    is_writable_directory,
    safe_delete,
)
from strata.utils.hashing import sha256_parts

__all__ = [
    "BlockingCallError",
    "atomic_write",
    "call_maybe_async",
    "copy_file",
    "copy_tree",
    "ensure_directory",
    "in_event_loop_thread",
    "is_writable_directory",
    "run_sync",
    "run_with_timeout",
    "safe_delete",
    "sha256_parts",
]
