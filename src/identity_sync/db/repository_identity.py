"""
Identity Record Repository

asyncpg implementation of the IdentityStore protocol. One record table and one field
registry table per source; the registry is cached per source and refreshed on
initialize() and on every added field.
"""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import asyncpg
from loguru import logger

from identity_sync.clock import Clock
from identity_sync.clock import parse_iso
from identity_sync.clock import utc_now
from identity_sync.db.migrations import add_column
from identity_sync.db.migrations import ensure_source_tables
from identity_sync.db.migrations import quote_ident
from identity_sync.db.migrations import record_table
from identity_sync.db.migrations import registry_table
from identity_sync.enums import DataType
from identity_sync.enums import Source
from identity_sync.errors import RecordUpsertError
from identity_sync.errors import SchemaMigrationError
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.schema import FieldRegistryEntry
from identity_sync.store.base import default_field_entries
from identity_sync.store.base import prepare_row


class PostgresIdentityStore:
    """Per-source identity store backed by PostgreSQL."""

    def __init__(self, pool, clock: Clock = utc_now):
        self.pool = pool
        self.clock = clock
        self._registry: Dict[Source, Dict[str, FieldRegistryEntry]] = {}

    async def initialize(self, source: Source) -> None:
        async with self.pool.acquire() as conn:
            await ensure_source_tables(conn, source, default_field_entries(source, self.clock()))
            await self._load_registry(conn, source)
        logger.info("Identity store ready", source=source.value, fields=len(self._registry[source]))

    async def _load_registry(self, conn: asyncpg.Connection, source: Source) -> None:
        rows = await conn.fetch(
            f"""
            SELECT field_name, data_type, max_length, is_required, added_at
            FROM {registry_table(source)}
            ORDER BY added_at, field_name
            """
        )
        self._registry[source] = {
            row["field_name"]: FieldRegistryEntry(
                source=source,
                field_name=row["field_name"],
                data_type=DataType(row["data_type"]),
                max_length=row["max_length"],
                is_required=row["is_required"],
                added_at=parse_iso(row["added_at"]),
            )
            for row in rows
        }

    async def _registry_for(self, source: Source) -> Dict[str, FieldRegistryEntry]:
        if source not in self._registry:
            await self.initialize(source)
        return self._registry[source]

    async def get_records(self, source: Source, limit: Optional[int] = None, offset: int = 0) -> List[IdentityRecord]:
        await self._registry_for(source)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM {record_table(source)}
                ORDER BY updated_at DESC NULLS LAST, id
                LIMIT $1 OFFSET $2
                """,
                limit,
                offset,
            )
        return [IdentityRecord.from_row(dict(row)) for row in rows]

    async def get_record(self, source: Source, record_id: str) -> Optional[IdentityRecord]:
        await self._registry_for(source)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT * FROM {record_table(source)} WHERE id = $1", record_id)
        return IdentityRecord.from_row(dict(row)) if row else None

    async def get_by_external_id(self, source: Source, external_id: str) -> Optional[IdentityRecord]:
        await self._registry_for(source)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {record_table(source)} WHERE external_id = $1 LIMIT 1", external_id
            )
        return IdentityRecord.from_row(dict(row)) if row else None

    async def upsert(self, source: Source, record: IdentityRecord) -> IdentityRecord:
        """Insert or update one record inside a transaction."""
        registry = await self._registry_for(source)
        table = record_table(source)

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    existing = None
                    if record.id:
                        existing = await conn.fetchrow(f"SELECT * FROM {table} WHERE id = $1 FOR UPDATE", record.id)
                    if existing is None and record.external_id:
                        existing = await conn.fetchrow(
                            f"SELECT * FROM {table} WHERE external_id = $1 LIMIT 1 FOR UPDATE", record.external_id
                        )
                    existing_row: Optional[Dict[str, Any]] = dict(existing) if existing else None

                    row = prepare_row(source, record, registry, existing_row, self.clock())

                    clash = await conn.fetchval(
                        f"SELECT id FROM {table} WHERE lower(email) = lower($1) AND id <> $2 LIMIT 1",
                        row["email"],
                        row["id"],
                    )
                    if clash is not None:
                        raise RecordUpsertError(f"Email {row['email']} already belongs to record {clash}", source.value)

                    columns = list(row)
                    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
                    updates = ", ".join(
                        f"{quote_ident(col)} = EXCLUDED.{quote_ident(col)}"
                        for col in columns
                        if col not in ("id", "created_at")
                    )
                    stored = await conn.fetchrow(
                        f"""
                        INSERT INTO {table} ({", ".join(quote_ident(col) for col in columns)})
                        VALUES ({placeholders})
                        ON CONFLICT (id) DO UPDATE SET {updates}
                        RETURNING *
                        """,
                        *row.values(),
                    )
        except asyncpg.PostgresError as e:
            raise RecordUpsertError(f"Database rejected record: {e}", source.value) from e

        return IdentityRecord.from_row(dict(stored))

    async def delete(self, source: Source, record_id: str) -> bool:
        await self._registry_for(source)
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                f"DELETE FROM {record_table(source)} WHERE id = $1 RETURNING id", record_id
            )
        return deleted is not None

    async def truncate(self, source: Source) -> None:
        await self._registry_for(source)
        async with self.pool.acquire() as conn:
            await conn.execute(f"TRUNCATE TABLE {record_table(source)}")
        logger.info("Truncated store", source=source.value)

    async def count(self, source: Source) -> int:
        await self._registry_for(source)
        async with self.pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM {record_table(source)}")

    async def latest_sync_time(self, source: Source) -> Optional[datetime]:
        await self._registry_for(source)
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(f"SELECT MAX(last_synced_at) FROM {record_table(source)}")
        return parse_iso(value)

    async def get_field_registry(self, source: Source) -> List[FieldRegistryEntry]:
        return list((await self._registry_for(source)).values())

    async def add_field(self, source: Source, entry: FieldRegistryEntry) -> bool:
        registry = await self._registry_for(source)
        if entry.field_name in registry:
            return False

        try:
            async with self.pool.acquire() as conn:
                added = await add_column(conn, source, entry)
                if not added:
                    # Registered by another writer since our cache was loaded
                    await self._load_registry(conn, source)
                    return False
        except (asyncpg.PostgresError, ValueError) as e:
            raise SchemaMigrationError(f"Could not add column {entry.field_name}: {e}", source.value) from e

        registry[entry.field_name] = entry
        return True
