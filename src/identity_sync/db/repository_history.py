"""
Sync History Repository

Repository for run history (append-only table; one terminal update per entry).
"""

from datetime import datetime
from typing import Dict
from typing import List
from typing import Optional

import asyncpg

from identity_sync.clock import parse_iso
from identity_sync.clock import to_iso
from identity_sync.enums import HistoryStatus
from identity_sync.enums import Source
from identity_sync.enums import TriggerType
from identity_sync.models.schedule import HistoryEntry
from identity_sync.models.schedule import SourceRunStats
from identity_sync.models.schedule import SyncStats


def _from_row(row: asyncpg.Record) -> HistoryEntry:
    return HistoryEntry(
        id=row["id"],
        schedule_id=row["schedule_id"],
        chain_id=row["chain_id"],
        source=Source(row["source"]),
        trigger_type=TriggerType(row["trigger_type"]),
        start_time=parse_iso(row["start_time"]),
        end_time=parse_iso(row["end_time"]),
        status=HistoryStatus(row["status"]),
        users_processed=row["users_processed"],
        users_added=row["users_added"],
        users_updated=row["users_updated"],
        errors=row["errors"],
        error_message=row["error_message"],
        duration_ms=row["duration_ms"],
        created_at=parse_iso(row["created_at"]),
    )


class HistoryRepository:
    """Sync history repository (append-only, no updates after finalize)."""

    def __init__(self, pool):
        self.pool = pool

    async def create(self, entry: HistoryEntry) -> HistoryEntry:
        """Insert a RUNNING entry."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO identity_sync.sync_history
                    (id, schedule_id, chain_id, source, trigger_type, start_time, status, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                entry.id,
                entry.schedule_id,
                entry.chain_id,
                entry.source.value,
                entry.trigger_type.value,
                to_iso(entry.start_time),
                entry.status.value,
                to_iso(entry.created_at or entry.start_time),
            )
        return entry

    async def finalize(self, entry: HistoryEntry) -> HistoryEntry:
        """Write the terminal state. Only a RUNNING row is updated."""
        async with self.pool.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE identity_sync.sync_history
                SET status = $2,
                    end_time = $3,
                    users_processed = $4,
                    users_added = $5,
                    users_updated = $6,
                    errors = $7,
                    error_message = $8,
                    duration_ms = $9
                WHERE id = $1 AND status = 'running'
                RETURNING id
                """,
                entry.id,
                entry.status.value,
                to_iso(entry.end_time),
                entry.users_processed,
                entry.users_added,
                entry.users_updated,
                entry.errors,
                entry.error_message,
                entry.duration_ms,
            )
        if updated is None:
            raise ValueError(f"History entry {entry.id} is already finalized")
        return entry

    async def get(self, entry_id: str) -> Optional[HistoryEntry]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM identity_sync.sync_history WHERE id = $1", entry_id)
        return _from_row(row) if row else None

    async def list_recent(self, limit: int = 50) -> List[HistoryEntry]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM identity_sync.sync_history ORDER BY start_time DESC LIMIT $1", limit
            )
        return [_from_row(row) for row in rows]

    async def count_retries(self, chain_id: str) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM identity_sync.sync_history
                WHERE chain_id = $1 AND trigger_type = 'retry'
                """,
                chain_id,
            )

    async def get_stats(self, today_start: datetime) -> SyncStats:
        async with self.pool.acquire() as conn:
            total = await conn.fetchval("SELECT COUNT(*) FROM identity_sync.sync_history")
            today = await conn.fetchval(
                "SELECT COUNT(*) FROM identity_sync.sync_history WHERE start_time >= $1", to_iso(today_start)
            )
            error_rows = await conn.fetch(
                """
                SELECT * FROM identity_sync.sync_history
                WHERE status = 'failed'
                ORDER BY start_time DESC
                LIMIT 5
                """
            )
            source_rows = await conn.fetch(
                """
                SELECT source,
                       COUNT(*) AS count,
                       COALESCE(SUM(users_processed), 0) AS users_processed,
                       AVG(duration_ms) AS avg_duration_ms,
                       MAX(start_time) AS last_sync
                FROM identity_sync.sync_history
                GROUP BY source
                """
            )

        per_source: Dict[Source, SourceRunStats] = {
            Source(row["source"]): SourceRunStats(
                count=row["count"],
                users_processed=row["users_processed"],
                avg_duration_ms=float(row["avg_duration_ms"]) if row["avg_duration_ms"] is not None else None,
                last_sync=parse_iso(row["last_sync"]),
            )
            for row in source_rows
        }
        return SyncStats(
            total_syncs=total,
            today_syncs=today,
            recent_errors=[_from_row(row) for row in error_rows],
            per_source=per_source,
        )
