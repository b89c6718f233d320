"""Builders for migration tests: a real SQLite/JSON stack under ``tmp_path``."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final

from strata.config.store import ConfigStore
from strata.migration.backup import BackupManager
from strata.migration.engine import MigrationEngine
from strata.migration.model import Migration, MigrationContext, StepResult
from strata.storage.document import DocumentProvider
from strata.storage.sqlite import SQLiteProvider

if TYPE_CHECKING:
    from pathlib import Path

    from strata.storage.provider import StorageProvider

USERS_TABLE_SQL: Final[str] = "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)"


class StatementLog:
    """Minimal storage stand-in that remembers executed statements."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    async def execute(self, sql: str, params: object = ()) -> None:
        del params
        self.statements.append(sql)


@dataclass
class Stack:
    engine: MigrationEngine
    storage: StorageProvider
    documents: DocumentProvider
    config: ConfigStore
    backups: BackupManager

    def close(self) -> None:
        self.engine.shutdown()
        self.storage.shutdown()
        if self.documents is not self.storage:
            self.documents.shutdown()


def build_stack(
    data_dir: Path,
    *,
    backend: str = "sqlite",
    current_version: str = "1.0",
    backup_before_run: bool = False,
    backup_retention: int = 5,
) -> Stack:
    documents = DocumentProvider(data_dir)
    documents.start()
    storage: StorageProvider
    if backend == "json":
        storage = documents
    else:
        sqlite = SQLiteProvider(data_dir / "database.db", connection_timeout=1.0)
        sqlite.start()
        storage = sqlite
    config = ConfigStore(data_dir / "config.yml")
    backups = BackupManager(data_dir, (storage, documents))
    engine = MigrationEngine(
        MigrationContext(storage=storage, config=config, documents=documents),
        backups,
        current_version=current_version,
        backup_before_run=backup_before_run,
        backup_retention=backup_retention,
    )
    return Stack(engine, storage, documents, config, backups)


@dataclass
class CallLog:
    """Shared call journal; steps append ``"<id>:forward"`` / ``"<id>:reverse"``."""

    calls: list[str] = field(default_factory=list)

    def migration(
        self,
        migration_id: str,
        version: str,
        *,
        fail_forward: bool = False,
        fail_reverse: bool = False,
        reversible: bool = True,
    ) -> Migration:
        def forward(context: MigrationContext) -> StepResult:
            del context
            self.calls.append(f"{migration_id}:forward")
            if fail_forward:
                return StepResult.failed(f"{migration_id} forward failed")
            return StepResult.ok()

        def reverse(context: MigrationContext) -> None:
            del context
            self.calls.append(f"{migration_id}:reverse")
            if fail_reverse:
                raise RuntimeError(f"{migration_id} reverse failed")

        return Migration(
            id=migration_id,
            version=version,
            description=f"test migration {migration_id}",
            forward=forward,
            reverse=reverse if reversible else None,
        )


__all__ = ["USERS_TABLE_SQL", "CallLog", "Stack", "StatementLog", "build_stack"]
