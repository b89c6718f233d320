"""
strata — persistence facade

File: src/strata/persistence.py

Purpose
- The framework-facing handle: one active storage provider, JSON document helpers,
  transactions, migrations and backups behind a single explicitly constructed object.

Functional requirements
- ``Persistence.open(settings)`` selects the backend once; it cannot change afterwards.
- JSON helpers always work: they use the active provider when the backend is ``json``
  and a document store under the data directory otherwise.
- ``shutdown`` stops the engine, then the providers; it is idempotent and never raises.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar, overload

import structlog

from strata.config.store import ConfigStore
from strata.migration.backup import BackupManager
from strata.migration.engine import MigrationEngine
from strata.migration.model import MigrationContext
from strata.storage.document import DocumentProvider
from strata.storage.errors import UnsupportedOperationError
from strata.storage.factory import open_document_provider, open_provider
from strata.storage.query_builder import QueryBuilder
from strata.storage.relational import RelationalProvider

if TYPE_CHECKING:
    from strata.config.schema import StrataSettings
    from strata.migration.model import (
        ConfigMigration,
        Migration,
        MigrationResult,
        MigrationStatus,
        RollbackResult,
    )
    from strata.storage.provider import Row, SQLParams, StorageProvider
    from strata.storage.transaction import Transaction

T = TypeVar("T")


class Persistence:
    """Storage, migrations and backups for one data directory.

    Build with :meth:`open`; pass the handle to collaborators that need storage.
    """

    def __init__(
        self,
        settings: StrataSettings,
        provider: StorageProvider,
        documents: DocumentProvider,
        config: ConfigStore,
        engine: MigrationEngine,
        *,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._documents = documents
        self._config = config
        self._engine = engine
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._closed = False

    @classmethod
    def open(
        cls,
        settings: StrataSettings,
        *,
        data_dir: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> Persistence:
        """Open the configured backend and wire the migration engine around it."""

        if data_dir is not None:
            settings = dataclasses.replace(settings, data_dir=Path(data_dir))
        settings.data_dir.mkdir(parents=True, exist_ok=True)

        provider = open_provider(settings, environ=environ, logger=logger)
        documents: DocumentProvider | None = None
        try:
            documents = (
                provider
                if isinstance(provider, DocumentProvider)
                else open_document_provider(settings, logger=logger)
            )
            config = ConfigStore(
                settings.data_dir / settings.migrations.config_resource, logger=logger
            )
            backups = BackupManager(settings.data_dir, (provider, documents), logger=logger)
            backups.add_restore_hook(config.reload)
            engine = MigrationEngine(
                MigrationContext(storage=provider, config=config, documents=documents),
                backups,
                current_version=settings.migrations.current_config_version,
                backup_before_run=settings.migrations.backup_before_run,
                backup_retention=settings.migrations.backup_retention,
                logger=logger,
            )
        except BaseException:
            if documents is not None and documents is not provider:
                documents.shutdown()
            provider.shutdown()
            raise
        return cls(settings, provider, documents, config, engine, logger=logger)

    # Accessors.

    @property
    def settings(self) -> StrataSettings:
        return self._settings

    @property
    def provider(self) -> StorageProvider:
        return self._provider

    @property
    def documents(self) -> DocumentProvider:
        return self._documents

    @property
    def config(self) -> ConfigStore:
        return self._config

    @property
    def engine(self) -> MigrationEngine:
        return self._engine

    @property
    def backend_type(self) -> str:
        return self._provider.backend

    def is_connected(self) -> bool:
        return not self._closed and self._provider.is_connected()

    # Relational access.

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(
            self._provider, name, sync_timeout=self._settings.sync_timeout_seconds
        )

    async def query(self, sql: str, params: SQLParams = ()) -> list[Row]:
        return await self._provider.query(sql, params)

    async def update(self, sql: str, params: SQLParams = ()) -> int:
        return await self._provider.update(sql, params)

    async def execute(self, sql: str, params: SQLParams = ()) -> None:
        await self._provider.execute(sql, params)

    async def execute_batch(self, sql: str, param_sets: Sequence[SQLParams]) -> int:
        return await self._provider.execute_batch(sql, param_sets)

    async def begin_transaction(self) -> Transaction:
        return await self._provider.begin_transaction()

    def set_pool_size(self, min_size: int, max_size: int) -> None:
        if not isinstance(self._provider, RelationalProvider):
            raise UnsupportedOperationError(
                f"the {self.backend_type} backend has no connection pool"
            )
        self._provider.pool.set_pool_size(min_size, max_size)

    # JSON documents.

    async def set_json(self, key: str, value: object) -> None:
        await self._documents.set_document(key, value)

    @overload
    async def get_json(self, key: str) -> object | None: ...

    @overload
    async def get_json(self, key: str, type_: type[T], default: T | None = None) -> T | None: ...

    async def get_json(
        self, key: str, type_: type[Any] | None = None, default: object | None = None
    ) -> object | None:
        return await self._documents.get_document(key, type_, default)

    async def remove_json(self, key: str) -> bool:
        return await self._documents.remove_document(key)

    async def list_json_keys(self, prefix: str = "") -> list[str]:
        return await self._documents.list_keys(prefix)

    # Migrations.

    def register_migration(self, migration: Migration) -> None:
        self._engine.register_migration(migration)

    def register_config_migration(self, migration: ConfigMigration) -> None:
        self._engine.register_config_migration(migration)

    async def run_migrations(self) -> MigrationResult:
        return await self._engine.run_migrations()

    async def get_status(self) -> MigrationStatus:
        return await self._engine.get_status()

    async def rollback_to(self, migration_id: str) -> RollbackResult:
        return await self._engine.rollback_to(migration_id)

    # Backups.

    @property
    def backups(self) -> BackupManager:
        return self._engine.backups

    async def create_backup(self) -> str | None:
        return await self._engine.backups.create_backup_async()

    async def restore_from_backup(self, name: str) -> bool:
        return await self._engine.backups.restore_from_backup_async(name)

    def get_available_backups(self) -> list[str]:
        return self._engine.backups.get_available_backups()

    def cleanup_old_backups(self, keep_count: int) -> list[str]:
        return self._engine.backups.cleanup_old_backups(keep_count)

    # Lifecycle.

    def shutdown(self) -> None:
        """Stop the engine and providers; safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        steps: list[tuple[str, Any]] = [
            ("migration_engine", self._engine.shutdown),
            ("storage_provider", self._provider.shutdown),
        ]
        if self._documents is not self._provider:
            steps.append(("document_provider", self._documents.shutdown))
        for component, stop in steps:
            try:
                stop()
            except Exception as exc:
                self._logger.error(
                    "persistence_shutdown_step_failed", component=component, error=str(exc)
                )
        self._logger.info("persistence_shutdown", backend=self.backend_type)

    def __enter__(self) -> Persistence:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


__all__ = ["Persistence"]
