"""Execution-record stores: where "migration X has run" is remembered."""

from __future__ import annotations

from typing import TYPE_CHECKING, Final, Protocol

from strata.constants import MIGRATION_RECORDS_KEY, MIGRATION_TABLE
from strata.migration.model import MigrationRecord

if TYPE_CHECKING:
    from strata.storage.document import DocumentProvider
    from strata.storage.provider import StorageProvider

_CREATE_TABLE_SQL: Final[str] = f"""
CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
    id VARCHAR(100) PRIMARY KEY,
    version VARCHAR(20) NOT NULL,
    description TEXT,
    executed_at VARCHAR(32) NOT NULL,
    execution_time_ms BIGINT NOT NULL DEFAULT 0,
    checksum VARCHAR(64) NOT NULL
)
"""


class RecordStore(Protocol):
    async def ensure(self) -> None: ...

    async def list_records(self) -> list[MigrationRecord]: ...

    async def is_executed(self, migration_id: str) -> bool: ...

    async def add(self, record: MigrationRecord) -> None: ...

    async def remove(self, migration_id: str) -> bool: ...


class SqlRecordStore:
    """Records kept in the ``strata_migrations`` table of a relational provider."""

    def __init__(self, provider: StorageProvider, *, table: str = MIGRATION_TABLE) -> None:
        self._provider = provider
        self._table = table
        self._ensured = False

    async def ensure(self) -> None:
        if self._ensured:
            return
        await self._provider.execute(_CREATE_TABLE_SQL.replace(MIGRATION_TABLE, self._table))
        self._ensured = True

    async def list_records(self) -> list[MigrationRecord]:
        await self.ensure()
        rows = await self._provider.table(self._table).select().order_by("id").get()
        return [MigrationRecord.from_mapping(row) for row in rows]

    async def is_executed(self, migration_id: str) -> bool:
        await self.ensure()
        count = await self._provider.table(self._table).where("id", migration_id).count()
        return count > 0

    async def add(self, record: MigrationRecord) -> None:
        await self.ensure()
        await self._provider.table(self._table).insert().values(record.to_dict()).execute()

    async def remove(self, migration_id: str) -> bool:
        await self.ensure()
        builder = self._provider.table(self._table).delete().where("id", migration_id)
        return await builder.execute() > 0


class DocumentRecordStore:
    """Records kept as a list of dicts under the ``executed_migrations`` document key."""

    def __init__(self, documents: DocumentProvider, *, key: str = MIGRATION_RECORDS_KEY) -> None:
        self._documents = documents
        self._key = key

    async def ensure(self) -> None:
        return None

    async def list_records(self) -> list[MigrationRecord]:
        raw = await self._documents.get_document(self._key, list, [])
        records = [
            MigrationRecord.from_mapping(item)
            for item in raw or []
            if isinstance(item, dict) and "id" in item
        ]
        return sorted(records, key=lambda record: record.id)

    async def is_executed(self, migration_id: str) -> bool:
        return any(record.id == migration_id for record in await self.list_records())

    async def add(self, record: MigrationRecord) -> None:
        records = [item for item in await self.list_records() if item.id != record.id]
        records.append(record)
        await self._save(records)

    async def remove(self, migration_id: str) -> bool:
        records = await self.list_records()
        remaining = [record for record in records if record.id != migration_id]
        if len(remaining) == len(records):
            return False
        await self._save(remaining)
        return True

    async def _save(self, records: list[MigrationRecord]) -> None:
        await self._documents.set_document(self._key, [record.to_dict() for record in records])


def record_store_for(provider: StorageProvider, documents: DocumentProvider) -> RecordStore:
    """SQL table for relational providers, document key for the JSON backend."""

    if provider.dialect is None:
        return DocumentRecordStore(documents)
    return SqlRecordStore(provider)


__all__ = [
    "DocumentRecordStore",
    "RecordStore",
    "SqlRecordStore",
    "record_store_for",
]
