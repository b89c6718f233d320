"""
strata — JSON document provider

File: src/strata/storage/document.py

Purpose
- Key/value document store persisted as JSON files under the data directory.

Functional requirements
- Two layouts: ``per_key`` (one ``<percent-encoded-key>.json`` per key) and
  ``single_file`` (one JSON object holding every key).
- Writes are write-through: the file is replaced atomically before the cache changes.
- Reads hit the cache and fall back to disk, populating the cache on a hit.
- Writers to the same key are serialized; SQL operations are inert and transactions
  are unsupported.

Non-functional requirements
- File I/O runs on the default executor; the event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Final, Literal, TypeVar, overload
from urllib.parse import quote, unquote

import structlog

from strata.constants import BACKEND_JSON, DOCUMENT_DIR_NAME, DOCUMENT_SINGLE_FILE_NAME
from strata.storage.errors import BackupError, StorageError, UnsupportedOperationError
from strata.storage.provider import Dialect, Row, SQLParams, StorageProvider
from strata.utils.fs import atomic_write, copy_file, copy_tree, is_writable_directory

if TYPE_CHECKING:
    from strata.storage.transaction import Transaction

DocumentLayout = Literal["per_key", "single_file"]
DOCUMENT_LAYOUTS: Final[tuple[DocumentLayout, ...]] = ("per_key", "single_file")

T = TypeVar("T")

_DOCUMENT_SUFFIX: Final[str] = ".json"
_SINGLE_FILE_LOCK_KEY: Final[str] = "\x00single-file"


def encode_key(key: str) -> str:
    """File-name form of ``key``; UTF-8 bytes outside ``[A-Za-z0-9._~-]`` become ``%XX``.

    The mapping is injective, so distinct keys never share a file.
    """

    return quote(key, safe="")


def decode_key(name: str) -> str:
    return unquote(name)


class DocumentProvider(StorageProvider):
    """JSON document store with a shared in-memory cache."""

    backend: ClassVar[str] = BACKEND_JSON
    dialect: ClassVar[Dialect | None] = None

    def __init__(
        self,
        data_dir: str | Path,
        *,
        layout: DocumentLayout = "per_key",
        directory_name: str = DOCUMENT_DIR_NAME,
        file_name: str = DOCUMENT_SINGLE_FILE_NAME,
        logger: Any | None = None,
    ) -> None:
        if layout not in DOCUMENT_LAYOUTS:
            allowed = ", ".join(DOCUMENT_LAYOUTS)
            raise ValueError(f"layout must be one of: {allowed}; got {layout!r}")
        self._data_dir = Path(data_dir).expanduser()
        self._layout: DocumentLayout = layout
        self._document_dir = self._data_dir / directory_name
        self._single_file = self._data_dir / file_name
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._cache: dict[str, object] = {}
        self._cache_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._single_file_loaded = False

    @property
    def layout(self) -> DocumentLayout:
        return self._layout

    @property
    def storage_path(self) -> Path:
        """Directory (per-key layout) or file (single-file layout) holding documents."""

        return self._document_dir if self._layout == "per_key" else self._single_file

    def start(self) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        if self._layout == "per_key":
            self._document_dir.mkdir(parents=True, exist_ok=True)

    # SQL capabilities are inert for documents.

    async def query(self, sql: str, params: SQLParams = ()) -> list[Row]:
        del sql, params
        return []

    async def update(self, sql: str, params: SQLParams = ()) -> int:
        del sql, params
        return 0

    async def execute(self, sql: str, params: SQLParams = ()) -> None:
        del sql, params

    async def execute_batch(self, sql: str, param_sets: Sequence[SQLParams]) -> int:
        del sql, param_sets
        return 0

    async def begin_transaction(self) -> Transaction:
        raise UnsupportedOperationError("transactions are not supported by the JSON backend")

    def is_connected(self) -> bool:
        directory = self._document_dir if self._layout == "per_key" else self._data_dir
        return is_writable_directory(directory)

    def shutdown(self) -> None:
        """Flush every cached document to disk and empty the cache. Never raises."""

        with self._cache_lock:
            snapshot = dict(self._cache)
        try:
            if self._layout == "single_file":
                if self._single_file_loaded:
                    self._write_single_file(snapshot)
            else:
                for key in sorted(snapshot):
                    self._write_key_file(key, _dump(key, snapshot[key]))
        except (OSError, StorageError) as exc:
            self._logger.error("document_flush_failed", error=str(exc))
        with self._cache_lock:
            self._cache.clear()
            self._single_file_loaded = False
        self._logger.info("document_store_shutdown", flushed=len(snapshot))

    # Document primitives.

    async def set_document(self, key: str, value: object) -> None:
        await asyncio.to_thread(self.set_document_sync, key, value)

    @overload
    async def get_document(self, key: str) -> object | None: ...

    @overload
    async def get_document(
        self, key: str, type_: type[T], default: T | None = None
    ) -> T | None: ...

    async def get_document(
        self, key: str, type_: type[Any] | None = None, default: object | None = None
    ) -> object | None:
        return await asyncio.to_thread(self.get_document_sync, key, type_, default)

    async def remove_document(self, key: str) -> bool:
        return await asyncio.to_thread(self.remove_document_sync, key)

    async def list_keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self.list_keys_sync, prefix)

    async def clear(self) -> None:
        await asyncio.to_thread(self.clear_sync)

    def set_document_sync(self, key: str, value: object) -> None:
        _validate_key(key)
        payload = _dump(key, value)
        stored = json.loads(payload)
        if self._layout == "single_file":
            with self._lock_for(_SINGLE_FILE_LOCK_KEY):
                documents = self._load_single_file()
                documents[key] = stored
                self._write_single_file(documents)
                with self._cache_lock:
                    self._cache[key] = stored
            return
        with self._lock_for(key):
            self._write_key_file(key, payload)
            with self._cache_lock:
                self._cache[key] = stored
        self._logger.debug("document_written", key=key)

    def get_document_sync(
        self, key: str, type_: type[Any] | None = None, default: object | None = None
    ) -> object | None:
        _validate_key(key)
        found, value = self._read(key)
        if not found:
            return default
        if type_ is None:
            return value
        return coerce_document(value, type_, default)

    def has_document(self, key: str) -> bool:
        found, _ = self._read(key)
        return found

    def remove_document_sync(self, key: str) -> bool:
        _validate_key(key)
        if self._layout == "single_file":
            with self._lock_for(_SINGLE_FILE_LOCK_KEY):
                documents = self._load_single_file()
                existed = documents.pop(key, _MISSING) is not _MISSING
                if existed:
                    self._write_single_file(documents)
                with self._cache_lock:
                    self._cache.pop(key, None)
                return existed
        with self._lock_for(key):
            path = self._key_path(key)
            existed = path.exists()
            if existed:
                path.unlink()
            with self._cache_lock:
                existed = self._cache.pop(key, _MISSING) is not _MISSING or existed
        return existed

    def list_keys_sync(self, prefix: str = "") -> list[str]:
        """Sorted, distinct keys starting with ``prefix``, cached or on disk."""

        if self._layout == "single_file":
            with self._lock_for(_SINGLE_FILE_LOCK_KEY):
                keys = set(self._load_single_file())
        else:
            with self._cache_lock:
                keys = set(self._cache)
            keys.update(self._stored_keys())
        return sorted(key for key in keys if key.startswith(prefix))

    def clear_sync(self) -> None:
        for key in self.list_keys_sync():
            self.remove_document_sync(key)

    def reload(self) -> None:
        """Drop the cache so the next reads come from disk."""

        with self._cache_lock:
            self._cache.clear()
            self._single_file_loaded = False

    def backup_data(self, destination: Path) -> list[Path]:
        try:
            if self._layout == "single_file":
                if not self._single_file.is_file():
                    return []
                return [copy_file(self._single_file, destination / self._single_file.name)]
            if not self._document_dir.is_dir():
                return []
            return copy_tree(self._document_dir, destination / self._document_dir.name)
        except OSError as exc:
            raise BackupError(f"document snapshot to {destination} failed: {exc}") from exc

    def restore_data(self, source: Path) -> list[Path]:
        try:
            if self._layout == "single_file":
                snapshot = source / self._single_file.name
                if not snapshot.is_file():
                    return []
                restored = [copy_file(snapshot, self._single_file)]
            else:
                snapshot_dir = source / self._document_dir.name
                if not snapshot_dir.is_dir():
                    return []
                restored = copy_tree(snapshot_dir, self._document_dir)
        except OSError as exc:
            raise BackupError(f"document restore from {source} failed: {exc}") from exc
        self.reload()
        return restored

    def _read(self, key: str) -> tuple[bool, object]:
        with self._cache_lock:
            if key in self._cache:
                return True, self._cache[key]
        if self._layout == "single_file":
            with self._lock_for(_SINGLE_FILE_LOCK_KEY):
                documents = self._load_single_file()
            if key not in documents:
                return False, None
            return True, documents[key]
        with self._lock_for(key):
            path = self._key_path(key)
            if not path.is_file():
                return False, None
            value = self._read_json(path)
            with self._cache_lock:
                self._cache[key] = value
        return True, value

    def _load_single_file(self) -> dict[str, object]:
        # Caller holds the single-file lock.
        with self._cache_lock:
            if self._single_file_loaded:
                return dict(self._cache)
        documents: dict[str, object] = {}
        if self._single_file.is_file():
            loaded = self._read_json(self._single_file)
            if not isinstance(loaded, dict):
                raise StorageError(f"{self._single_file} must hold a JSON object")
            documents = {str(key): value for key, value in loaded.items()}
        with self._cache_lock:
            self._cache = dict(documents)
            self._single_file_loaded = True
        return documents

    def _write_single_file(self, documents: dict[str, object]) -> None:
        self._single_file.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(documents, sort_keys=True, indent=2, ensure_ascii=False)
        atomic_write(self._single_file, text + "\n")

    def _write_key_file(self, key: str, payload: str) -> None:
        self._document_dir.mkdir(parents=True, exist_ok=True)
        atomic_write(self._key_path(key), payload + "\n")

    def _read_json(self, path: Path) -> object:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StorageError(f"invalid JSON document {path}: {exc}") from exc

    def _key_path(self, key: str) -> Path:
        return self._document_dir / f"{encode_key(key)}{_DOCUMENT_SUFFIX}"

    def _stored_keys(self) -> Iterator[str]:
        if not self._document_dir.is_dir():
            return
        for path in self._document_dir.iterdir():
            stem = path.name.removesuffix(_DOCUMENT_SUFFIX)
            if not stem or stem == path.name or not path.is_file():
                continue
            key = decode_key(stem)
            # Files not written through encode_key cannot be addressed by any key.
            if encode_key(key) == stem:
                yield key

    def _lock_for(self, key: str) -> threading.Lock:
        lock_key = key if key == _SINGLE_FILE_LOCK_KEY else encode_key(key)
        with self._key_locks_guard:
            lock = self._key_locks.get(lock_key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[lock_key] = lock
            return lock


def coerce_document(value: object, type_: type[T], default: T | None = None) -> T | None:
    """Return ``value`` as ``type_`` when it already is one or converts cleanly."""

    if isinstance(value, type_):
        return value
    if dataclasses.is_dataclass(type_) and isinstance(value, dict):
        try:
            return type_(**value)
        except TypeError:
            return default
    converter: Callable[[object], T] = type_
    try:
        return converter(value)
    except (TypeError, ValueError):
        return default


_MISSING: Final[object] = object()


def _validate_key(key: str) -> None:
    if not isinstance(key, str) or not key:
        raise ValueError("document key must be a non-empty string")


def _dump(key: str, value: object) -> str:
    try:
        return json.dumps(
            value, sort_keys=True, indent=2, ensure_ascii=False, default=_json_default
        )
    except (TypeError, ValueError) as exc:
        raise StorageError(f"value for document {key!r} is not JSON-serializable: {exc}") from exc


def _json_default(value: object) -> object:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    raise TypeError(f"unsupported type {type(value).__name__}")


__all__ = [
    "DOCUMENT_LAYOUTS",
    "DocumentLayout",
    "DocumentProvider",
    "coerce_document",
    "decode_key",
    "encode_key",
]
