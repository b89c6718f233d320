"""
strata — migration engine

File: src/strata/migration/engine.py

Purpose
- Applies registered schema migrations once each, in id order, and keeps the config
  resource's ``config-version`` current through config migrations.

Functional requirements
- Execution records are the only "already executed" signal; a record is written right
  after a forward operation succeeds and before the next migration starts.
- A failed forward operation is compensated by its reverse operation; the run continues.
- ``rollback_to`` reverts executed migrations newer than the target, newest first, and
  stops at the first reverse failure.
- A backup is taken before every run and every rollback (best effort).

Non-functional requirements
- Runs and rollbacks are serialized by one asyncio lock.
- Outcomes are values; only invalid definitions raise.
"""

from __future__ import annotations

import asyncio
import time
from functools import cmp_to_key
from typing import TYPE_CHECKING, Any

import structlog

from strata.config.store import ConfigStoreError
from strata.constants import (
    CONFIG_VERSION_KEY,
    DEFAULT_BACKUP_RETENTION,
    DEFAULT_CONFIG_VERSION,
)
from strata.migration.model import (
    ConfigMigration,
    Migration,
    MigrationContext,
    MigrationError,
    MigrationFailure,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
    MigrationStep,
    RollbackFailure,
    RollbackResult,
    StepResult,
    compare_versions,
    describe_error,
)
from strata.migration.records import RecordStore, record_store_for
from strata.observability.logging import correlation_scope
from strata.storage.errors import StorageError
from strata.utils.concurrency import call_maybe_async

if TYPE_CHECKING:
    from strata.migration.backup import BackupManager


class MigrationEngine:
    """Runs, reverts and reports on registered migrations for one persistence handle."""

    def __init__(
        self,
        context: MigrationContext,
        backups: BackupManager,
        *,
        current_version: str = DEFAULT_CONFIG_VERSION,
        backup_before_run: bool = True,
        backup_retention: int = DEFAULT_BACKUP_RETENTION,
        record_store: RecordStore | None = None,
        logger: Any | None = None,
    ) -> None:
        if backup_retention < 0:
            raise ValueError("backup_retention must be >= 0")
        self._context = context
        self._backups = backups
        self._current_version = current_version
        self._backup_before_run = backup_before_run
        self._backup_retention = backup_retention
        self._records = (
            record_store
            if record_store is not None
            else record_store_for(context.storage, context.documents)
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._migrations: dict[str, Migration] = {}
        self._config_migrations: dict[str, ConfigMigration] = {}
        self._lock = asyncio.Lock()
        self._has_run = False
        self._executed_count = 0
        self._failed_count = 0

    @property
    def current_version(self) -> str:
        return self._current_version

    @property
    def backups(self) -> BackupManager:
        return self._backups

    @property
    def migrations(self) -> tuple[Migration, ...]:
        return tuple(self._migrations[key] for key in sorted(self._migrations))

    @property
    def config_migrations(self) -> tuple[ConfigMigration, ...]:
        return tuple(self._config_migrations[key] for key in sorted(self._config_migrations))

    # Registration.

    def register_migration(self, migration: Migration) -> None:
        if not isinstance(migration, Migration):
            raise MigrationError(f"expected Migration, got {type(migration).__name__}")
        if migration.id in self._migrations:
            self._logger.warning("migration_replaced", migration_id=migration.id)
        if self._has_run:
            self._logger.warning("migration_registered_after_run", migration_id=migration.id)
        self._migrations[migration.id] = migration
        self._logger.info(
            "migration_registered", migration_id=migration.id, version=migration.version
        )

    def register_config_migration(self, migration: ConfigMigration) -> None:
        if not isinstance(migration, ConfigMigration):
            raise MigrationError(f"expected ConfigMigration, got {type(migration).__name__}")
        if migration.id in self._config_migrations:
            self._logger.warning("config_migration_replaced", migration_id=migration.id)
        self._config_migrations[migration.id] = migration
        self._logger.info(
            "config_migration_registered",
            migration_id=migration.id,
            from_version=migration.from_version,
            to_version=migration.to_version,
        )

    # Runs.

    async def run_migrations(self) -> MigrationResult:
        async with self._lock:
            self._has_run = True
            ordered = self.migrations
            self._logger.info("migration_run_started", registered=len(ordered))

            backup_name = await self._backup_if_enabled("run")

            executed: list[str] = []
            failures: list[MigrationFailure] = []
            try:
                executed_ids = {record.id for record in await self._records.list_records()}
            except StorageError as exc:
                self._logger.error("migration_records_unavailable", error=str(exc))
                failures = [
                    MigrationFailure(migration.id, describe_error(exc), reverse_attempted=False)
                    for migration in ordered
                ]
                ordered = ()
                executed_ids = set()

            for migration in ordered:
                if migration.id in executed_ids:
                    continue
                failure = await self._execute(migration)
                if failure is None:
                    executed.append(migration.id)
                else:
                    failures.append(failure)

            config_executed, config_failed = await self._run_config_migrations()

            self._executed_count += len(executed)
            self._failed_count += len(failures)
            result = MigrationResult(
                executed=tuple(executed),
                failed=tuple(failure.migration_id for failure in failures),
                failures=tuple(failures),
                config_executed=tuple(config_executed),
                config_failed=tuple(config_failed),
                backup_name=backup_name,
            )
            self._logger.info(
                "migration_run_completed",
                executed=len(result.executed),
                failed=len(result.failed),
                config_executed=len(result.config_executed),
                config_failed=len(result.config_failed),
                success=result.success,
            )
            return result

    async def rollback_to(self, target_id: str) -> RollbackResult:
        """Revert executed migrations whose version is newer than ``target_id``'s."""

        async with self._lock:
            self._logger.info("rollback_started", target_id=target_id)
            backup_name = await self._backup_if_enabled("rollback")

            target = self._migrations.get(target_id)
            if target is None:
                self._logger.error("rollback_target_unknown", target_id=target_id)
                return RollbackResult(
                    target_id=target_id,
                    error=f"unknown migration {target_id!r}",
                    backup_name=backup_name,
                )

            candidates = sorted(
                (
                    migration
                    for migration in self._migrations.values()
                    if compare_versions(migration.version, target.version) > 0
                ),
                key=cmp_to_key(_newest_first),
            )
            try:
                executed_ids = {record.id for record in await self._records.list_records()}
            except StorageError as exc:
                self._logger.error("migration_records_unavailable", error=str(exc))
                return RollbackResult(
                    target_id=target_id, error=describe_error(exc), backup_name=backup_name
                )

            selected = [migration for migration in candidates if migration.id in executed_ids]
            skipped = tuple(
                migration.id for migration in candidates if migration.id not in executed_ids
            )
            reverted: list[str] = []
            for index, migration in enumerate(selected):
                with correlation_scope(migration_id=migration.id):
                    outcome = await self._revert(migration)
                    if not outcome.succeeded:
                        failure = RollbackFailure(
                            migration_id=migration.id,
                            error=outcome.error or "reverse operation failed",
                            reverted=tuple(reverted),
                            untouched=tuple(item.id for item in selected[index + 1 :]),
                        )
                        self._logger.error(
                            "rollback_failed",
                            target_id=target_id,
                            migration_id=migration.id,
                            error=failure.error,
                            reverted=list(failure.reverted),
                            untouched=list(failure.untouched),
                        )
                        return RollbackResult(
                            target_id=target_id,
                            reverted=tuple(reverted),
                            failure=failure,
                            backup_name=backup_name,
                            skipped=skipped,
                        )
                    reverted.append(migration.id)
                    self._logger.info(
                        "migration_rolled_back",
                        migration_id=migration.id,
                        version=migration.version,
                    )

            self._logger.info("rollback_completed", target_id=target_id, reverted=reverted)
            return RollbackResult(
                target_id=target_id,
                reverted=tuple(reverted),
                backup_name=backup_name,
                skipped=skipped,
            )

    async def get_status(self) -> MigrationStatus:
        executed_ids = {record.id for record in await self._records.list_records()}
        ordered = sorted(self._migrations)
        return MigrationStatus(
            executed=tuple(key for key in ordered if key in executed_ids),
            pending=tuple(key for key in ordered if key not in executed_ids),
            current_version=self._current_version,
        )

    def shutdown(self) -> None:
        """Log session counts, clear registries and prune backups; never raises."""

        self._logger.info(
            "migration_engine_shutdown",
            registered=len(self._migrations),
            config_registered=len(self._config_migrations),
            executed=self._executed_count,
            failed=self._failed_count,
        )
        self._migrations.clear()
        self._config_migrations.clear()
        try:
            self._backups.cleanup_old_backups(self._backup_retention)
        except (OSError, ValueError) as exc:
            self._logger.warning("backup_prune_failed", error=str(exc))

    # Internals.

    async def _execute(self, migration: Migration) -> MigrationFailure | None:
        with correlation_scope(migration_id=migration.id):
            started = time.perf_counter()
            forward = await self._invoke(migration.forward)
            if forward.succeeded:
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                record = MigrationRecord.for_migration(migration, elapsed_ms)
                try:
                    await self._records.add(record)
                except StorageError as exc:
                    forward = StepResult.failed(f"recording failed: {describe_error(exc)}")
                else:
                    self._logger.info(
                        "migration_executed",
                        migration_id=migration.id,
                        version=migration.version,
                        execution_time_ms=elapsed_ms,
                    )
                    return None

            forward_error = forward.error or "forward operation failed"
            self._logger.error("migration_failed", migration_id=migration.id, error=forward_error)
            if migration.reverse is None:
                return MigrationFailure(migration.id, forward_error, reverse_attempted=False)

            reverse = await self._invoke(migration.reverse)
            if reverse.succeeded:
                self._logger.warning("migration_compensated", migration_id=migration.id)
                return MigrationFailure(migration.id, forward_error, reverse_attempted=True)

            reverse_error = reverse.error or "reverse operation failed"
            self._logger.error(
                "migration_compensation_failed", migration_id=migration.id, error=reverse_error
            )
            return MigrationFailure(
                migration.id,
                forward_error,
                reverse_attempted=True,
                reverse_error=reverse_error,
            )

    async def _revert(self, migration: Migration) -> StepResult:
        if migration.reverse is None:
            return StepResult.failed("migration has no reverse operation")
        outcome = await self._invoke(migration.reverse)
        if not outcome.succeeded:
            return outcome
        try:
            await self._records.remove(migration.id)
        except StorageError as exc:
            return StepResult.failed(f"record removal failed: {describe_error(exc)}")
        return outcome

    async def _invoke(self, step: MigrationStep) -> StepResult:
        try:
            outcome = await call_maybe_async(step, self._context)
        except Exception as exc:
            return StepResult.failed(exc)
        if isinstance(outcome, StepResult):
            return outcome
        return StepResult.ok()

    async def _run_config_migrations(self) -> tuple[list[str], list[str]]:
        config = self._context.config
        stored_version = config.get_str(CONFIG_VERSION_KEY) or DEFAULT_CONFIG_VERSION
        executed: list[str] = []
        failed: list[str] = []
        for migration in self.config_migrations:
            if not migration.applies_to(stored_version):
                continue
            with correlation_scope(migration_id=migration.id):
                try:
                    await call_maybe_async(migration.migrate, config)
                except Exception as exc:
                    failed.append(migration.id)
                    self._logger.error(
                        "config_migration_failed",
                        migration_id=migration.id,
                        error=describe_error(exc),
                    )
                    continue
                executed.append(migration.id)
                self._logger.info(
                    "config_migration_executed",
                    migration_id=migration.id,
                    from_version=migration.from_version,
                    to_version=migration.to_version,
                )

        config.set(CONFIG_VERSION_KEY, self._current_version)
        try:
            await asyncio.to_thread(config.save)
        except ConfigStoreError as exc:
            self._logger.error("config_version_save_failed", error=str(exc))
        else:
            self._logger.info(
                "config_version_updated",
                previous=stored_version,
                current=self._current_version,
            )
        return executed, failed

    async def _backup_if_enabled(self, reason: str) -> str | None:
        if not self._backup_before_run:
            return None
        backup_name = await self._backups.create_backup_async()
        if backup_name is None:
            self._logger.warning("migration_backup_failed", reason=reason)
        return backup_name


def _newest_first(left: Migration, right: Migration) -> int:
    order = compare_versions(right.version, left.version)
    if order:
        return order
    return (right.id > left.id) - (right.id < left.id)


__all__ = ["MigrationEngine"]
