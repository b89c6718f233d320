"""Versioned schema/config migrations, execution records and backups."""

from strata.migration.backup import BackupManager
from strata.migration.engine import MigrationEngine
from strata.migration.model import (
    ConfigMigration,
    Migration,
    MigrationContext,
    MigrationError,
    MigrationFailure,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
    RollbackFailure,
    RollbackResult,
    StepResult,
    compare_versions,
)
from strata.migration.records import DocumentRecordStore, RecordStore, SqlRecordStore
from strata.migration.sql import (
    add_column,
    config_migration,
    create_backup_table,
    create_index_if_not_exists,
    drop_index_if_exists,
    rename_table,
    sql_migration,
)

__all__ = [
    "BackupManager",
    "ConfigMigration",
    "DocumentRecordStore",
    "Migration",
    "MigrationContext",
    "MigrationEngine",
    "MigrationError",
    "MigrationFailure",
    "MigrationRecord",
    "MigrationResult",
    "MigrationStatus",
    "RecordStore",
    "RollbackFailure",
    "RollbackResult",
    "SqlRecordStore",
    "StepResult",
    "add_column",
    "compare_versions",
    "config_migration",
    "create_backup_table",
    "create_index_if_not_exists",
    "drop_index_if_exists",
    "rename_table",
    "sql_migration",
]
