"""Stable constants shared across the storage, migration and config layers."""

from __future__ import annotations

from typing import Final

# Schema version of ``strata.toml``.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Backend identifiers accepted by ``storage.type``.
BACKEND_MYSQL: Final[str] = "mysql"
BACKEND_SQLITE: Final[str] = "sqlite"
BACKEND_JSON: Final[str] = "json"
BACKEND_TYPES: Final[tuple[str, ...]] = (BACKEND_JSON, BACKEND_MYSQL, BACKEND_SQLITE)

# Data directory layout.
DOCUMENT_DIR_NAME: Final[str] = "json-data"
DOCUMENT_SINGLE_FILE_NAME: Final[str] = "data.json"
SQLITE_DEFAULT_FILE_NAME: Final[str] = "database.db"
BACKUPS_DIR_NAME: Final[str] = "backups"
BACKUP_CONFIGS_DIR_NAME: Final[str] = "configs"
BACKUP_DATA_DIR_NAME: Final[str] = "data"
BACKUP_NAME_PREFIX: Final[str] = "strata"
CONFIG_FILE_SUFFIXES: Final[tuple[str, ...]] = (".json", ".toml", ".yaml", ".yml")
DEFAULT_CONFIG_RESOURCE: Final[str] = "config.yml"

# Migration bookkeeping.
MIGRATION_TABLE: Final[str] = "strata_migrations"
MIGRATION_RECORDS_KEY: Final[str] = "executed_migrations"
CONFIG_VERSION_KEY: Final[str] = "config-version"
DEFAULT_CONFIG_VERSION: Final[str] = "1.0"
DEFAULT_BACKUP_RETENTION: Final[int] = 5

# Pool defaults (seconds).
MYSQL_DEFAULT_MAX_POOL_SIZE: Final[int] = 10
MYSQL_DEFAULT_MIN_POOL_SIZE: Final[int] = 2
SQLITE_POOL_SIZE: Final[int] = 1
DEFAULT_CONNECTION_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_IDLE_TIMEOUT_SECONDS: Final[float] = 600.0
DEFAULT_MAX_LIFETIME_SECONDS: Final[float] = 1800.0
DEFAULT_SHUTDOWN_GRACE_SECONDS: Final[float] = 10.0

# Blocking helper timeout for QueryBuilder.sync*().
DEFAULT_SYNC_TIMEOUT_SECONDS: Final[float] = 30.0

__all__ = [
    "BACKEND_JSON",
    "BACKEND_MYSQL",
    "BACKEND_SQLITE",
    "BACKEND_TYPES",
    "BACKUPS_DIR_NAME",
    "BACKUP_CONFIGS_DIR_NAME",
    "BACKUP_DATA_DIR_NAME",
    "BACKUP_NAME_PREFIX",
    "CONFIG_FILE_SUFFIXES",
    "CONFIG_SCHEMA_VERSION",
    "CONFIG_VERSION_KEY",
    "DEFAULT_BACKUP_RETENTION",
    "DEFAULT_CONFIG_RESOURCE",
    "DEFAULT_CONFIG_VERSION",
    "DEFAULT_CONNECTION_TIMEOUT_SECONDS",
    "DEFAULT_IDLE_TIMEOUT_SECONDS",
    "DEFAULT_MAX_LIFETIME_SECONDS",
    "DEFAULT_SHUTDOWN_GRACE_SECONDS",
    "DEFAULT_SYNC_TIMEOUT_SECONDS",
    "DOCUMENT_DIR_NAME",
    "DOCUMENT_SINGLE_FILE_NAME",
    "MIGRATION_RECORDS_KEY",
    "MIGRATION_TABLE",
    "MYSQL_DEFAULT_MAX_POOL_SIZE",
    "MYSQL_DEFAULT_MIN_POOL_SIZE",
    "SQLITE_DEFAULT_FILE_NAME",
    "SQLITE_POOL_SIZE",
]
