"""
strata — configuration schema and validation.

File: src/strata/config/schema.py

Purpose
- Define authoritative defaults for ``strata.toml`` and strict validation rules.

What should be included in this file
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields.
- Conversion of a validated mapping into frozen ``StrataSettings``.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secrets; credentials are referenced through ``*_env`` keys.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal, TypedDict

from strata.constants import (
    BACKEND_TYPES,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BACKUP_RETENTION,
    DEFAULT_CONFIG_RESOURCE,
    DEFAULT_CONFIG_VERSION,
    DEFAULT_CONNECTION_TIMEOUT_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_LIFETIME_SECONDS,
    DEFAULT_SYNC_TIMEOUT_SECONDS,
    DOCUMENT_DIR_NAME,
    DOCUMENT_SINGLE_FILE_NAME,
    MYSQL_DEFAULT_MAX_POOL_SIZE,
    MYSQL_DEFAULT_MIN_POOL_SIZE,
    SQLITE_DEFAULT_FILE_NAME,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
DOCUMENT_LAYOUT_VALUES: Final[tuple[str, ...]] = ("per_key", "single_file")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "pwd", "credential", "credentials"}
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("storage", "data_dir"),
    ("logging", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class StorageConfig(TypedDict):
    type: Literal["json", "mysql", "sqlite"]
    data_dir: str
    sync_timeout_seconds: float


class SQLiteConfig(TypedDict):
    file: str
    busy_timeout_ms: int
    busy_retry_limit: int
    busy_retry_backoff_ms: int
    connection_timeout_seconds: float


class MySQLConfig(TypedDict):
    host: str
    port: int
    database: str
    username: str
    password_env: str
    charset: str
    min_pool_size: int
    max_pool_size: int
    connection_timeout_seconds: float
    idle_timeout_seconds: float
    max_lifetime_seconds: float


class DocumentConfig(TypedDict):
    layout: Literal["per_key", "single_file"]
    directory: str
    file: str


class MigrationsConfig(TypedDict):
    current_config_version: str
    backup_before_run: bool
    backup_retention: int
    config_resource: str


class LoggingSectionConfig(TypedDict):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class StrataConfig(TypedDict):
    meta: MetaConfig
    storage: StorageConfig
    sqlite: SQLiteConfig
    mysql: MySQLConfig
    document: DocumentConfig
    migrations: MigrationsConfig
    logging: LoggingSectionConfig


DEFAULT_CONFIG: Final[StrataConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "storage": {
        "type": "sqlite",
        "data_dir": "data/",
        "sync_timeout_seconds": DEFAULT_SYNC_TIMEOUT_SECONDS,
    },
    "sqlite": {
        "file": SQLITE_DEFAULT_FILE_NAME,
        "busy_timeout_ms": 5_000,
        "busy_retry_limit": 4,
        "busy_retry_backoff_ms": 25,
        "connection_timeout_seconds": DEFAULT_CONNECTION_TIMEOUT_SECONDS,
    },
    "mysql": {
        "host": "localhost",
        "port": 3306,
        "database": "strata",
        "username": "root",
        "password_env": "STRATA_MYSQL_PASSWORD",
        "charset": "utf8mb4",
        "min_pool_size": MYSQL_DEFAULT_MIN_POOL_SIZE,
        "max_pool_size": MYSQL_DEFAULT_MAX_POOL_SIZE,
        "connection_timeout_seconds": DEFAULT_CONNECTION_TIMEOUT_SECONDS,
        "idle_timeout_seconds": DEFAULT_IDLE_TIMEOUT_SECONDS,
        "max_lifetime_seconds": DEFAULT_MAX_LIFETIME_SECONDS,
    },
    "document": {
        "layout": "per_key",
        "directory": DOCUMENT_DIR_NAME,
        "file": DOCUMENT_SINGLE_FILE_NAME,
    },
    "migrations": {
        "current_config_version": DEFAULT_CONFIG_VERSION,
        "backup_before_run": True,
        "backup_retention": DEFAULT_BACKUP_RETENTION,
        "config_resource": DEFAULT_CONFIG_RESOURCE,
    },
    "logging": {
        "level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One rejected field: dotted ``path`` plus a human-readable ``message``."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Strict validation found at least one issue; all of them are in ``issues``."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "- <root>: rejected"))


class _Issues:
    __slots__ = ("found",)

    def __init__(self) -> None:
        self.found: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self.found.append(ConfigValidationIssue(path, message))

    def __bool__(self) -> bool:
        return bool(self.found)


# Typed, validated views handed to the rest of the package.


@dataclass(frozen=True, slots=True)
class SQLiteSettings:
    file: str = SQLITE_DEFAULT_FILE_NAME
    busy_timeout_ms: int = 5_000
    busy_retry_limit: int = 4
    busy_retry_backoff_ms: int = 25
    connection_timeout_seconds: float = DEFAULT_CONNECTION_TIMEOUT_SECONDS


@dataclass(frozen=True, slots=True)
class MySQLSettings:
    host: str = "localhost"
    port: int = 3306
    database: str = "strata"
    username: str = "root"
    password_env: str = "STRATA_MYSQL_PASSWORD"
    charset: str = "utf8mb4"
    min_pool_size: int = MYSQL_DEFAULT_MIN_POOL_SIZE
    max_pool_size: int = MYSQL_DEFAULT_MAX_POOL_SIZE
    connection_timeout_seconds: float = DEFAULT_CONNECTION_TIMEOUT_SECONDS
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    max_lifetime_seconds: float = DEFAULT_MAX_LIFETIME_SECONDS


@dataclass(frozen=True, slots=True)
class DocumentSettings:
    layout: Literal["per_key", "single_file"] = "per_key"
    directory: str = DOCUMENT_DIR_NAME
    file: str = DOCUMENT_SINGLE_FILE_NAME


@dataclass(frozen=True, slots=True)
class MigrationSettings:
    current_config_version: str = DEFAULT_CONFIG_VERSION
    backup_before_run: bool = True
    backup_retention: int = DEFAULT_BACKUP_RETENTION
    config_resource: str = DEFAULT_CONFIG_RESOURCE


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str = "INFO"
    log_dir: str = "logs/"
    log_to_stdout: bool = False
    redact_secrets: bool = True


@dataclass(frozen=True, slots=True)
class StrataSettings:
    """Frozen effective settings; build with ``settings_from_config`` or ``load_settings``."""

    backend: Literal["json", "mysql", "sqlite"] = "sqlite"
    data_dir: Path = Path("data")
    sync_timeout_seconds: float = DEFAULT_SYNC_TIMEOUT_SECONDS
    sqlite: SQLiteSettings = SQLiteSettings()
    mysql: MySQLSettings = MySQLSettings()
    document: DocumentSettings = DocumentSettings()
    migrations: MigrationSettings = MigrationSettings()
    logging: LoggingSettings = LoggingSettings()

    @property
    def sqlite_path(self) -> Path:
        candidate = Path(self.sqlite.file).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.data_dir / candidate



def default_config() -> StrataConfig:
    """Fresh deep copy of ``DEFAULT_CONFIG``."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """What to do when ``meta.schema_version`` is not the supported one."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade strata.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade strata"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """New mapping with ``overlay`` deep-merged onto ``base``; neither input is mutated."""

    merged: dict[str, Any] = {key: _detached(base[key]) for key in sorted(base)}
    for key in sorted(overlay):
        incoming = overlay[key]
        current = merged.get(key)
        if isinstance(incoming, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, incoming)
        else:
            merged[key] = _detached(incoming)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Check every section against its field rules.

    Issues are collected rather than raised so a caller sees every bad field at
    once. ``config`` on the result is the normalized mapping, or ``None`` when
    anything was rejected.
    """

    issues = _Issues()
    root = _table(config, "<root>", issues)
    normalized = {} if root is None else _walk_sections(root, issues)
    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues.found))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def settings_from_config(config: Mapping[str, object]) -> StrataSettings:
    """Frozen settings for ``config`` layered over the defaults."""

    validated = assert_valid_config(merge_config(default_config(), config))
    storage = validated["storage"]
    return StrataSettings(
        backend=storage["type"],
        data_dir=Path(storage["data_dir"]),
        sync_timeout_seconds=storage["sync_timeout_seconds"],
        sqlite=SQLiteSettings(**validated["sqlite"]),
        mysql=MySQLSettings(**validated["mysql"]),
        document=DocumentSettings(**validated["document"]),
        migrations=MigrationSettings(**validated["migrations"]),
        logging=LoggingSettings(**validated["logging"]),
    )


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Key-sorted copy of ``config`` with sensitive values replaced by ``<redacted>``."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: _REDACTED if _looks_sensitive_key(str(key)) else _redact_nested(config[key])
        for key in sorted(config)
    }


# Field rules: each takes (raw value, dotted path, issues) and returns the
# normalized value, or None after recording an issue.
_Rule = Callable[[object, str, _Issues], Any]


def _text(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    text = value.strip()
    if not text:
        issues.add(path, "must not be empty")
    elif "\x00" in text:
        issues.add(path, "must not contain NUL bytes")
    else:
        return text
    return None


def _plain_name(value: object, path: str, issues: _Issues) -> str | None:
    name = _text(value, path, issues)
    if name is not None and (name in {".", ".."} or Path(name).name != name):
        issues.add(path, "must be a plain file or directory name without separators")
        return None
    return name


def _flag(value: object, path: str, issues: _Issues) -> bool | None:
    if not isinstance(value, bool):
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None
    return value


def _seconds(value: object, path: str, issues: _Issues) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    seconds = float(value)
    if not math.isfinite(seconds):
        issues.add(path, "must be finite")
    elif seconds <= 0:
        issues.add(path, "must be > 0")
    else:
        return seconds
    return None


def _integer(low: int, high: int | None = None) -> _Rule:
    def check(value: object, path: str, issues: _Issues) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
        elif value < low:
            issues.add(path, f"must be >= {low}")
        elif high is not None and value > high:
            issues.add(path, f"must be <= {high}")
        else:
            return value
        return None

    return check


def _one_of(choices: tuple[str, ...], fold: Callable[[str], str] = str) -> _Rule:
    def check(value: object, path: str, issues: _Issues) -> str | None:
        text = _text(value, path, issues)
        if text is None:
            return None
        text = fold(text)
        if text not in choices:
            expected = ", ".join(sorted(choices))
            issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
            return None
        return text

    return check


def _matching(pattern: re.Pattern[str], hint: str) -> _Rule:
    def check(value: object, path: str, issues: _Issues) -> str | None:
        text = _text(value, path, issues)
        if text is not None and not pattern.fullmatch(text):
            issues.add(path, hint)
            return None
        return text

    return check


_SECTION_RULES: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _integer(1)},
    "storage": {
        "type": _one_of(BACKEND_TYPES, fold=str.lower),
        "data_dir": _text,
        "sync_timeout_seconds": _seconds,
    },
    "sqlite": {
        "file": _text,
        "busy_timeout_ms": _integer(0),
        "busy_retry_limit": _integer(0),
        "busy_retry_backoff_ms": _integer(0),
        "connection_timeout_seconds": _seconds,
    },
    "mysql": {
        "host": _text,
        "port": _integer(1, 65_535),
        "database": _text,
        "username": _text,
        "password_env": _matching(
            _ENV_NAME_PATTERN, "must be an env var name (example: STRATA_MYSQL_PASSWORD)"
        ),
        "charset": _text,
        "min_pool_size": _integer(0),
        "max_pool_size": _integer(1),
        "connection_timeout_seconds": _seconds,
        "idle_timeout_seconds": _seconds,
        "max_lifetime_seconds": _seconds,
    },
    "document": {
        "layout": _one_of(DOCUMENT_LAYOUT_VALUES),
        "directory": _plain_name,
        "file": _plain_name,
    },
    "migrations": {
        "current_config_version": _matching(
            _VERSION_PATTERN, "must be a dotted numeric version (example: 1.2)"
        ),
        "backup_before_run": _flag,
        "backup_retention": _integer(0),
        "config_resource": _plain_name,
    },
    "logging": {
        "level": _one_of(LOG_LEVELS, fold=str.upper),
        "log_dir": _text,
        "log_to_stdout": _flag,
        "redact_secrets": _flag,
    },
}

_SECRET_HINT: Final[str] = (
    "embedded secret values are forbidden; use an *_env key with an env var name"
)
_REDACTED: Final[str] = "<redacted>"


def _walk_sections(root: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    _check_keys(root, _SECTION_RULES, "", issues)
    out: dict[str, Any] = {}
    for section in sorted(_SECTION_RULES.keys() & root.keys()):
        table = _table(root[section], section, issues)
        if table is None:
            continue
        rules = _SECTION_RULES[section]
        _check_keys(table, rules, section, issues)
        parsed = {
            key: rules[key](table[key], f"{section}.{key}", issues)
            for key in sorted(rules.keys() & table.keys())
        }
        out[section] = {key: value for key, value in parsed.items() if value is not None}

    version = out.get("meta", {}).get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.add("meta.schema_version", migration_guidance(version))
    mysql = out.get("mysql", {})
    if mysql.get("min_pool_size", 0) > mysql.get("max_pool_size", math.inf):
        issues.add("mysql.min_pool_size", "must be <= mysql.max_pool_size")
    return out


def _check_keys(
    table: Mapping[str, object], known: Mapping[str, object], prefix: str, issues: _Issues
) -> None:
    for key in sorted(table.keys() | known.keys()):
        path = f"{prefix}.{key}" if prefix else key
        if key not in known:
            issues.add(path, _SECRET_HINT if _looks_sensitive_key(key) else "unknown field")
        elif key not in table:
            issues.add(path, "missing required field")


def _table(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected table/object, got {type(value).__name__}")
        return None
    if not all(isinstance(key, str) for key in value):
        issues.add(path, "object keys must be strings")
        return None
    return dict(value)


def _looks_sensitive_key(key: str) -> bool:
    snake = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip()).lower()
    snake = _NON_ALNUM.sub("_", snake).strip("_")
    if snake.endswith("_env"):
        return False
    return not _SENSITIVE_KEY_TOKENS.isdisjoint(snake.split("_"))


def _detached(value: object) -> object:
    if isinstance(value, Mapping):
        return merge_config({}, value)
    return copy.deepcopy(value)


def _redact_nested(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redact_nested(item) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DocumentSettings",
    "LoggingSettings",
    "MigrationSettings",
    "MySQLSettings",
    "PATH_FIELDS",
    "SQLiteSettings",
    "StrataConfig",
    "StrataSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "settings_from_config",
    "validate_config",
]
