"""
strata — unit tests for the persistence facade

File: tests/unit/test_persistence.py

Purpose
- Validate that ``Persistence`` wires one backend, the document store, migrations and
  backups around a data directory.

What this test file should cover
- Backend selection for sqlite and json, fixed for the lifetime of the handle.
- JSON document helpers on every backend.
- Migrations and backups driven through the facade.
- Idempotent shutdown and context-manager use.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest
from structlog.testing import capture_logs

from strata import Persistence
from strata.config.schema import settings_from_config
from strata.migration.sql import config_migration, sql_migration
from strata.storage.document import DocumentProvider
from strata.storage.errors import UnsupportedOperationError
from strata.storage.sqlite import SQLiteProvider

if TYPE_CHECKING:
    from pathlib import Path

    from strata.config.store import ConfigStore


@dataclass
class Motd:
    text: str
    priority: int


def _open(tmp_path: Path, backend: str, **migrations: object) -> Persistence:
    settings = settings_from_config(
        {
            "storage": {"type": backend},
            "migrations": {"backup_before_run": False, **migrations},
        }
    )
    return Persistence.open(settings, data_dir=tmp_path)


def test_open_sqlite_backend_creates_database_under_data_dir(tmp_path: Path) -> None:
    with _open(tmp_path, "sqlite") as persistence:
        assert persistence.backend_type == "sqlite"
        assert isinstance(persistence.provider, SQLiteProvider)
        assert isinstance(persistence.documents, DocumentProvider)
        assert persistence.documents is not persistence.provider
        assert persistence.settings.data_dir == tmp_path
        assert persistence.is_connected()

    assert (tmp_path / "database.db").exists()


def test_open_json_backend_reuses_provider_as_document_store(tmp_path: Path) -> None:
    with _open(tmp_path, "json") as persistence:
        assert persistence.backend_type == "json"
        assert persistence.documents is persistence.provider


async def test_json_helpers_work_on_relational_backend(tmp_path: Path) -> None:
    with _open(tmp_path, "sqlite") as persistence:
        await persistence.set_json("motd", Motd(text="hello", priority=2))
        await persistence.set_json("motd-alt", {"text": "hi", "priority": 1})

        motd = await persistence.get_json("motd", Motd)
        missing = await persistence.get_json("absent", Motd, Motd(text="-", priority=0))

        assert motd == Motd(text="hello", priority=2)
        assert missing == Motd(text="-", priority=0)
        assert await persistence.list_json_keys("motd") == ["motd", "motd-alt"]
        assert await persistence.remove_json("motd-alt") is True
        assert await persistence.remove_json("motd-alt") is False

    assert (tmp_path / "json-data" / "motd.json").exists()


async def test_relational_helpers_and_transactions(tmp_path: Path) -> None:
    with _open(tmp_path, "sqlite") as persistence:
        await persistence.execute(
            "CREATE TABLE players (uuid TEXT PRIMARY KEY, name TEXT, coins INTEGER)"
        )
        inserted = await persistence.execute_batch(
            "INSERT INTO players (uuid, name, coins) VALUES (?, ?, ?)",
            [("u-1", "alex", 5), ("u-2", "sam", 7)],
        )
        assert inserted == 2

        async with await persistence.begin_transaction() as tx:
            tx.then_update("UPDATE players SET coins = coins + ? WHERE uuid = ?", (10, "u-1"))
            await tx.commit()

        rows = await persistence.query("SELECT uuid, coins FROM players ORDER BY uuid")
        assert rows == [{"uuid": "u-1", "coins": 15}, {"uuid": "u-2", "coins": 7}]
        assert await persistence.table("players").where("coins", ">", 10).count() == 1
        assert await persistence.update("DELETE FROM players WHERE uuid = ?", ("u-2",)) == 1


def test_set_pool_size_is_unsupported_for_json(tmp_path: Path) -> None:
    with _open(tmp_path, "json") as persistence:
        with pytest.raises(UnsupportedOperationError, match="no connection pool"):
            persistence.set_pool_size(1, 2)


def test_set_pool_size_applies_sqlite_cap(tmp_path: Path) -> None:
    with _open(tmp_path, "sqlite") as persistence:
        persistence.set_pool_size(1, 1)
        with pytest.raises(ValueError, match="capped at 1"):
            persistence.set_pool_size(1, 2)


async def test_migrations_run_once_through_the_facade(tmp_path: Path) -> None:
    with _open(tmp_path, "sqlite", current_config_version="1.1") as persistence:
        persistence.register_migration(
            sql_migration(
                "001_players",
                "1.0",
                "create players",
                up=["CREATE TABLE players (uuid TEXT PRIMARY KEY)"],
                down=["DROP TABLE players"],
            )
        )
        persistence.register_migration(
            sql_migration(
                "002_scores",
                "1.1",
                "create scores",
                up=["CREATE TABLE scores (uuid TEXT PRIMARY KEY, points INTEGER)"],
                down=["DROP TABLE scores"],
            )
        )

        @config_migration("cfg_rename_pool", "1.0", "1.1")
        def rename_pool(config: ConfigStore) -> None:
            """Rename database.pool to database.pool-size."""
            config.set("database.pool-size", config.get("database.pool", 4))
            config.set("database.pool", None)

        persistence.register_config_migration(rename_pool)

        status = await persistence.get_status()
        assert status.pending == ("001_players", "002_scores")

        first = await persistence.run_migrations()
        second = await persistence.run_migrations()

        assert first.success
        assert first.executed == ("001_players", "002_scores")
        assert first.config_executed == ("cfg_rename_pool",)
        assert second.executed == ()
        assert persistence.config.get("config-version") == "1.1"
        assert persistence.config.get("database.pool-size") == 4

        rollback = await persistence.rollback_to("001_players")
        assert rollback.success
        assert rollback.reverted == ("002_scores",)
        tables = await persistence.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name IN ('players', 'scores')"
        )
        assert tables == [{"name": "players"}]
        assert (await persistence.get_status()).pending == ("002_scores",)


async def test_backups_round_trip_through_the_facade(tmp_path: Path) -> None:
    with _open(tmp_path, "sqlite") as persistence:
        await persistence.set_json("motd", {"text": "before"})
        persistence.config.set("feature.enabled", True)
        persistence.config.save()

        name = await persistence.create_backup()
        assert name is not None
        assert persistence.get_available_backups() == [name]

        await persistence.set_json("motd", {"text": "after"})
        persistence.config.set("feature.enabled", False)
        persistence.config.save()

        assert await persistence.restore_from_backup(name) is True

        assert await persistence.get_json("motd") == {"text": "before"}
        assert persistence.config.get("feature.enabled") is True
        assert persistence.cleanup_old_backups(0) == [name]
        assert persistence.get_available_backups() == []


async def test_restored_config_survives_the_next_migration_run(tmp_path: Path) -> None:
    with _open(tmp_path, "sqlite") as persistence:
        persistence.config.set("feature.flag", "old")
        persistence.config.save()
        name = await persistence.create_backup()
        assert name is not None

        persistence.config.set("feature.flag", "new")
        persistence.config.save()
        assert await persistence.restore_from_backup(name) is True

        await persistence.run_migrations()

        assert persistence.config.get("feature.flag") == "old"
        on_disk = (tmp_path / "config.yml").read_text(encoding="utf-8")
        assert "flag: old" in on_disk
        assert "new" not in on_disk


def test_shutdown_is_idempotent_and_logged(tmp_path: Path) -> None:
    persistence = _open(tmp_path, "sqlite")

    with capture_logs() as logs:
        persistence.shutdown()
        persistence.shutdown()

    assert not persistence.is_connected()
    events = [entry["event"] for entry in logs]
    assert events.count("persistence_shutdown") == 1
    assert "persistence_shutdown_step_failed" not in events


def test_open_uses_settings_data_dir_when_not_overridden(tmp_path: Path) -> None:
    settings = settings_from_config(
        {"storage": {"type": "json", "data_dir": str(tmp_path / "plugin")}}
    )

    with Persistence.open(settings) as persistence:
        assert persistence.settings.data_dir == tmp_path / "plugin"

    assert (tmp_path / "plugin" / "json-data").is_dir()
