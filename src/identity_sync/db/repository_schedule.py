"""
Schedule Repository

Repository for sync schedules (plain CRUD on identity_sync.sync_schedules).
"""

from typing import List
from typing import Optional

import asyncpg

from identity_sync.clock import parse_iso
from identity_sync.clock import to_iso
from identity_sync.enums import ScheduleStatus
from identity_sync.enums import Source
from identity_sync.models.schedule import Schedule

COLUMNS = (
    "id",
    "source",
    "enabled",
    "cron_expression",
    "description",
    "timezone",
    "retry_on_error",
    "retry_attempts",
    "retry_delay_minutes",
    "last_run_at",
    "next_run_at",
    "status",
    "created_at",
    "updated_at",
)


def _to_params(schedule: Schedule) -> tuple:
    return (
        schedule.id,
        schedule.source.value,
        schedule.enabled,
        schedule.cron_expression,
        schedule.description,
        schedule.timezone,
        schedule.retry_on_error,
        schedule.retry_attempts,
        schedule.retry_delay_minutes,
        to_iso(schedule.last_run_at),
        to_iso(schedule.next_run_at),
        schedule.status.value,
        to_iso(schedule.created_at),
        to_iso(schedule.updated_at),
    )


def _from_row(row: asyncpg.Record) -> Schedule:
    return Schedule(
        id=row["id"],
        source=Source(row["source"]),
        enabled=row["enabled"],
        cron_expression=row["cron_expression"],
        description=row["description"],
        timezone=row["timezone"],
        retry_on_error=row["retry_on_error"],
        retry_attempts=row["retry_attempts"],
        retry_delay_minutes=row["retry_delay_minutes"],
        last_run_at=parse_iso(row["last_run_at"]),
        next_run_at=parse_iso(row["next_run_at"]),
        status=ScheduleStatus(row["status"]),
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
    )


class ScheduleRepository:
    """Sync schedule repository."""

    def __init__(self, pool):
        self.pool = pool

    async def create(self, schedule: Schedule) -> Schedule:
        placeholders = ", ".join(f"${i}" for i in range(1, len(COLUMNS) + 1))
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO identity_sync.sync_schedules ({', '.join(COLUMNS)}) VALUES ({placeholders})",
                *_to_params(schedule),
            )
        return schedule

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM identity_sync.sync_schedules WHERE id = $1", schedule_id)
        return _from_row(row) if row else None

    async def list(self) -> List[Schedule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM identity_sync.sync_schedules ORDER BY source, created_at")
        return [_from_row(row) for row in rows]

    async def update(self, schedule: Schedule) -> Schedule:
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(COLUMNS[1:], start=2))
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE identity_sync.sync_schedules SET {assignments} WHERE id = $1",
                *_to_params(schedule),
            )
        return schedule

    async def delete(self, schedule_id: str) -> bool:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM identity_sync.sync_schedules WHERE id = $1 RETURNING id", schedule_id
            )
        return deleted is not None
