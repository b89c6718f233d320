"""Migration engine: exactly-once runs, compensation, rollback and config versions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from structlog.testing import capture_logs

from strata.constants import CONFIG_VERSION_KEY, MIGRATION_RECORDS_KEY, MIGRATION_TABLE
from strata.migration.engine import MigrationEngine
from strata.migration.model import (
    ConfigMigration,
    Migration,
    MigrationContext,
    MigrationError,
    MigrationRecord,
)
from strata.migration.sql import config_migration, sql_migration
from strata.storage.errors import StorageError

from . import USERS_TABLE_SQL, CallLog, build_stack

if TYPE_CHECKING:
    from pathlib import Path

    from strata.config.store import ConfigStore


class _UnavailableRecords:
    """Record store whose backing table cannot be read."""

    async def ensure(self) -> None:
        raise StorageError("records table is locked")

    async def list_records(self) -> list[MigrationRecord]:
        raise StorageError("records table is locked")

    async def is_executed(self, migration_id: str) -> bool:
        raise StorageError("records table is locked")

    async def add(self, record: MigrationRecord) -> None:
        raise StorageError("records table is locked")

    async def remove(self, migration_id: str) -> bool:
        raise StorageError("records table is locked")


class _ReadOnlyRecords(_UnavailableRecords):
    """Record store that lists fine but refuses writes."""

    async def list_records(self) -> list[MigrationRecord]:
        return []


async def test_run_executes_each_migration_once_in_id_order(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    stack.engine.register_migration(log.migration("002_b", "1.1"))
    stack.engine.register_migration(log.migration("001_a", "1.0"))

    first = await stack.engine.run_migrations()
    second = await stack.engine.run_migrations()

    assert first.executed == ("001_a", "002_b")
    assert first.success
    assert second.executed == ()
    assert second.total == 0
    assert log.calls == ["001_a:forward", "002_b:forward"]
    rows = await stack.storage.query(f"SELECT id, checksum FROM {MIGRATION_TABLE} ORDER BY id")
    assert [row["id"] for row in rows] == ["001_a", "002_b"]
    assert all(len(str(row["checksum"])) == 64 for row in rows)
    stack.close()


async def test_records_survive_a_new_engine(tmp_path: Path) -> None:
    log = CallLog()
    first = build_stack(tmp_path)
    first.engine.register_migration(log.migration("001_a", "1.0"))
    await first.engine.run_migrations()
    first.close()

    second = build_stack(tmp_path)
    second.engine.register_migration(log.migration("001_a", "1.0"))
    result = await second.engine.run_migrations()

    assert result.executed == ()
    assert log.calls == ["001_a:forward"]
    second.close()


async def test_failed_forward_is_compensated_and_run_continues(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    stack.engine.register_migration(log.migration("001_a", "1.0"))
    stack.engine.register_migration(log.migration("002_b", "1.1", fail_forward=True))
    stack.engine.register_migration(log.migration("003_c", "1.2"))

    with capture_logs() as logs:
        result = await stack.engine.run_migrations()

    assert result.executed == ("001_a", "003_c")
    assert result.failed == ("002_b",)
    failure = result.failures[0]
    assert failure.forward_error == "002_b forward failed"
    assert failure.compensated
    assert log.calls == ["001_a:forward", "002_b:forward", "002_b:reverse", "003_c:forward"]
    status = await stack.engine.get_status()
    assert status.pending == ("002_b",)
    events = [entry["event"] for entry in logs]
    assert "migration_compensated" in events
    stack.close()


async def test_raising_forward_without_reverse_is_reported(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)

    def broken(context: MigrationContext) -> None:
        del context
        raise ValueError("column exists")

    stack.engine.register_migration(
        Migration(id="001_a", version="1.0", description="", forward=broken)
    )

    result = await stack.engine.run_migrations()

    failure = result.failures[0]
    assert failure.forward_error == "ValueError: column exists"
    assert failure.reverse_attempted is False
    stack.close()


async def test_failed_compensation_is_reported(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    stack.engine.register_migration(
        log.migration("001_a", "1.0", fail_forward=True, fail_reverse=True)
    )

    result = await stack.engine.run_migrations()

    failure = result.failures[0]
    assert failure.reverse_attempted
    assert failure.reverse_error == "RuntimeError: 001_a reverse failed"
    assert not failure.compensated
    stack.close()


async def test_sql_migration_creates_schema_through_provider(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    stack.engine.register_migration(
        sql_migration(
            "001_users",
            "1.0",
            "users table",
            up=[USERS_TABLE_SQL, "CREATE INDEX idx_users_name ON users (name)"],
            down=["DROP TABLE IF EXISTS users"],
        )
    )

    result = await stack.engine.run_migrations()
    await stack.storage.update("INSERT INTO users (id, name) VALUES (?, ?)", (1, "alice"))

    assert result.executed == ("001_users",)
    assert await stack.storage.query("SELECT name FROM users") == [{"name": "alice"}]
    stack.close()


async def test_async_steps_are_awaited(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    seen: list[str] = []

    async def forward(context: MigrationContext) -> None:
        await context.documents.set_document("seeded", True)
        seen.append("forward")

    stack.engine.register_migration(
        Migration(id="001_seed", version="1.0", description="seed", forward=forward)
    )
    await stack.engine.run_migrations()

    assert seen == ["forward"]
    assert await stack.documents.get_document("seeded") is True
    stack.close()


async def test_unreadable_records_fail_every_migration_without_running_them(
    tmp_path: Path,
) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    engine = MigrationEngine(
        MigrationContext(storage=stack.storage, config=stack.config, documents=stack.documents),
        stack.backups,
        backup_before_run=False,
        record_store=_UnavailableRecords(),
    )
    engine.register_migration(log.migration("001_a", "1.0"))
    engine.register_migration(log.migration("002_b", "1.1"))

    result = await engine.run_migrations()

    assert result.failed == ("001_a", "002_b")
    assert log.calls == []
    assert "records table is locked" in result.failures[0].forward_error
    stack.close()


async def test_recording_failure_counts_as_forward_failure(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    engine = MigrationEngine(
        MigrationContext(storage=stack.storage, config=stack.config, documents=stack.documents),
        stack.backups,
        backup_before_run=False,
        record_store=_ReadOnlyRecords(),
    )
    engine.register_migration(log.migration("001_a", "1.0"))

    result = await engine.run_migrations()

    assert result.failed == ("001_a",)
    assert result.failures[0].forward_error.startswith("recording failed")
    assert log.calls == ["001_a:forward", "001_a:reverse"]
    stack.close()


async def test_rollback_reverts_newer_executed_migrations_newest_first(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    for migration_id, version in (("001_a", "1.0"), ("002_b", "1.1"), ("003_c", "1.2")):
        stack.engine.register_migration(log.migration(migration_id, version))
    await stack.engine.run_migrations()

    result = await stack.engine.rollback_to("001_a")

    assert result
    assert result.reverted == ("003_c", "002_b")
    assert log.calls[-2:] == ["003_c:reverse", "002_b:reverse"]
    status = await stack.engine.get_status()
    assert status.executed == ("001_a",)
    assert status.pending == ("002_b", "003_c")
    stack.close()


async def test_rollback_stops_at_first_reverse_failure(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    stack.engine.register_migration(log.migration("001_a", "1.0"))
    stack.engine.register_migration(log.migration("002_b", "1.1"))
    stack.engine.register_migration(log.migration("003_c", "1.2", fail_reverse=True))
    stack.engine.register_migration(log.migration("004_d", "1.3"))
    await stack.engine.run_migrations()

    result = await stack.engine.rollback_to("001_a")

    assert not result
    assert result.reverted == ("004_d",)
    assert result.failure is not None
    assert result.failure.migration_id == "003_c"
    assert result.failure.reverted == ("004_d",)
    assert result.failure.untouched == ("002_b",)
    assert "002_b:reverse" not in log.calls
    status = await stack.engine.get_status()
    assert status.executed == ("001_a", "002_b", "003_c")
    stack.close()


async def test_rollback_skips_pending_and_rejects_irreversible(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    stack.engine.register_migration(log.migration("001_a", "1.0"))
    stack.engine.register_migration(log.migration("002_b", "1.1", reversible=False))
    await stack.engine.run_migrations()
    stack.engine.register_migration(log.migration("003_c", "1.2"))

    result = await stack.engine.rollback_to("001_a")

    assert result.skipped == ("003_c",)
    assert result.failure is not None
    assert result.failure.error == "migration has no reverse operation"
    stack.close()


async def test_rollback_to_unknown_target_reports_error(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)

    result = await stack.engine.rollback_to("999_missing")

    assert not result
    assert result.error == "unknown migration '999_missing'"
    stack.close()


async def test_config_migrations_apply_in_range_and_stamp_current_version(
    tmp_path: Path,
) -> None:
    stack = build_stack(tmp_path, current_version="1.2")
    stack.config.set(CONFIG_VERSION_KEY, "1.0")
    stack.config.set("database.pool", 4)
    stack.config.save()

    @config_migration("cfg_pool_rename", "1.0", "1.1")
    def rename_pool(config: ConfigStore) -> None:
        """Move database.pool to database.pool-size."""
        config.set("database.pool-size", config.get("database.pool"))
        config.set("database.pool", None)

    @config_migration("cfg_future", "1.5", "2.0")
    def future(config: ConfigStore) -> None:
        config.set("future", True)

    stack.engine.register_config_migration(rename_pool)
    stack.engine.register_config_migration(future)
    result = await stack.engine.run_migrations()

    assert rename_pool.description == "Move database.pool to database.pool-size."
    assert result.config_executed == ("cfg_pool_rename",)
    stack.config.reload()
    assert stack.config.get(CONFIG_VERSION_KEY) == "1.2"
    assert stack.config.get("database") == {"pool-size": 4}
    assert stack.config.contains("future") is False
    stack.close()


async def test_failed_config_migration_is_reported(tmp_path: Path) -> None:
    stack = build_stack(tmp_path, current_version="1.1")

    def explode(config: ConfigStore) -> None:
        del config
        raise KeyError("settings")

    stack.engine.register_config_migration(
        ConfigMigration(
            id="cfg_bad", from_version="1.0", to_version="1.1", description="", migrate=explode
        )
    )

    result = await stack.engine.run_migrations()

    assert result.config_failed == ("cfg_bad",)
    assert not result.success
    stack.close()


async def test_status_reports_pending_and_current_version(tmp_path: Path) -> None:
    stack = build_stack(tmp_path, current_version="2.0")
    log = CallLog()
    stack.engine.register_migration(log.migration("001_a", "1.0"))

    before = await stack.engine.get_status()
    await stack.engine.run_migrations()
    after = await stack.engine.get_status()

    assert before.pending == ("001_a",)
    assert before.has_pending
    assert after.executed == ("001_a",)
    assert after.current_version == "2.0"
    assert not after.has_pending
    stack.close()


async def test_registration_rules(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    log = CallLog()
    stack.engine.register_migration(log.migration("001_a", "1.0"))
    await stack.engine.run_migrations()

    with capture_logs() as logs:
        stack.engine.register_migration(log.migration("001_a", "1.0"))
        stack.engine.register_migration(log.migration("002_b", "1.1"))

    events = [entry["event"] for entry in logs]
    assert "migration_replaced" in events
    assert events.count("migration_registered_after_run") == 2
    with pytest.raises(MigrationError, match="expected Migration"):
        stack.engine.register_migration("001_a")  # type: ignore[arg-type]
    result = await stack.engine.run_migrations()
    assert result.executed == ("002_b",)
    stack.close()


async def test_json_backend_keeps_records_as_document(tmp_path: Path) -> None:
    stack = build_stack(tmp_path, backend="json")
    log = CallLog()
    stack.engine.register_migration(log.migration("001_a", "1.0"))
    stack.engine.register_migration(log.migration("002_b", "1.1"))

    await stack.engine.run_migrations()
    rollback = await stack.engine.rollback_to("001_a")

    stored = await stack.documents.get_document(MIGRATION_RECORDS_KEY)
    assert isinstance(stored, list)
    assert [item["id"] for item in stored] == ["001_a"]
    assert rollback.reverted == ("002_b",)
    stack.close()


async def test_backup_is_taken_before_runs_and_pruned_on_shutdown(tmp_path: Path) -> None:
    stack = build_stack(tmp_path, backup_before_run=True, backup_retention=1)
    stack.engine.register_migration(CallLog().migration("001_a", "1.0"))

    first = await stack.engine.run_migrations()
    second = await stack.engine.run_migrations()

    assert first.backup_name is not None
    assert second.backup_name is not None
    assert len(stack.backups.get_available_backups()) == 2
    stack.close()
    assert stack.backups.get_available_backups() == [second.backup_name]


def test_negative_retention_is_rejected(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)

    with pytest.raises(ValueError, match="backup_retention"):
        MigrationEngine(
            MigrationContext(
                storage=stack.storage, config=stack.config, documents=stack.documents
            ),
            stack.backups,
            backup_retention=-1,
        )
    stack.close()
