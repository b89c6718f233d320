"""
strata — YAML configuration resource

File: src/strata/config/store.py

Purpose
- The framework's editable configuration file (``config.yml``) with dotted-path access.
  Config migrations read and rewrite it; the engine stores ``config-version`` in it.

Functional requirements
- ``get("a.b.c")`` walks nested mappings; missing paths return the default.
- ``set`` creates intermediate mappings; ``set(path, None)`` removes the key.
- ``save`` writes atomically; ``reload`` discards unsaved changes.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, TypeVar

import structlog
import yaml

from strata.utils.fs import atomic_write

T = TypeVar("T")

_MISSING = object()


class ConfigStoreError(ValueError):
    """Raised when the YAML resource cannot be parsed or saved."""


class ConfigStore:
    """Dotted-path view over one YAML document."""

    def __init__(self, path: str | Path, *, logger: Any | None = None) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.RLock()
        self._data: dict[str, Any] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.reload()

    @property
    def path(self) -> Path:
        return self._path

    def reload(self) -> None:
        with self._lock:
            self._data = self._read()

    def save(self) -> None:
        with self._lock:
            text = yaml.safe_dump(self._data, sort_keys=True, allow_unicode=True)
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                atomic_write(self._path, text)
            except OSError as exc:
                raise ConfigStoreError(f"unable to save {self._path}: {exc}") from exc
        self._logger.debug("config_saved", path=str(self._path))

    def get(self, key: str, default: object | None = None) -> Any:
        with self._lock:
            value = self._lookup(key)
            if value is _MISSING:
                return default
            return copy.deepcopy(value)

    def get_str(self, key: str, default: str | None = None) -> str | None:
        value = self.get(key)
        if value is None:
            return default
        return value if isinstance(value, str) else str(value)

    def get_int(self, key: str, default: int | None = None) -> int | None:
        value = self.get(key)
        if isinstance(value, bool) or value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool | None = None) -> bool | None:
        value = self.get(key)
        return value if isinstance(value, bool) else default

    def contains(self, key: str) -> bool:
        with self._lock:
            return self._lookup(key) is not _MISSING

    def set(self, key: str, value: object) -> None:
        parts = _split(key)
        with self._lock:
            if value is None:
                self._remove(parts)
                return
            cursor = self._data
            for part in parts[:-1]:
                child = cursor.get(part)
                if not isinstance(child, dict):
                    child = {}
                    cursor[part] = child
                cursor = child
            cursor[parts[-1]] = copy.deepcopy(value)

    def keys(self, section: str | None = None) -> list[str]:
        with self._lock:
            node = self._data if section is None else self._lookup(section)
            if not isinstance(node, Mapping):
                return []
            return sorted(str(key) for key in node)

    def as_dict(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    def _lookup(self, key: str) -> object:
        cursor: object = self._data
        for part in _split(key):
            if not isinstance(cursor, Mapping) or part not in cursor:
                return _MISSING
            cursor = cursor[part]
        return cursor

    def _remove(self, parts: tuple[str, ...]) -> None:
        cursor: object = self._data
        for part in parts[:-1]:
            if not isinstance(cursor, dict) or part not in cursor:
                return
            cursor = cursor[part]
        if isinstance(cursor, dict):
            cursor.pop(parts[-1], None)

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            loaded = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigStoreError(f"invalid YAML in {self._path}: {exc}") from exc
        except OSError as exc:
            raise ConfigStoreError(f"unable to read {self._path}: {exc}") from exc
        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            raise ConfigStoreError(f"{self._path} must hold a mapping at the top level")
        return loaded


def _split(key: str) -> tuple[str, ...]:
    parts = tuple(part for part in key.split(".") if part)
    if not parts:
        raise ValueError(f"invalid config key {key!r}")
    return parts


__all__ = ["ConfigStore", "ConfigStoreError"]
