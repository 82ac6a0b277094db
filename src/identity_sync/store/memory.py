"""
In-memory persistence.

Used when no database is configured and throughout the tests. Every method completes
without awaiting, so each call is atomic on the event loop.
"""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from loguru import logger

from identity_sync.clock import Clock
from identity_sync.clock import parse_iso
from identity_sync.clock import utc_now
from identity_sync.enums import HistoryStatus
from identity_sync.enums import Source
from identity_sync.enums import TriggerType
from identity_sync.errors import RecordUpsertError
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.schedule import HistoryEntry
from identity_sync.models.schedule import Schedule
from identity_sync.models.schedule import SourceRunStats
from identity_sync.models.schedule import SyncStats
from identity_sync.models.schema import FieldRegistryEntry
from identity_sync.store.base import default_field_entries
from identity_sync.store.base import prepare_row


class InMemoryIdentityStore:
    """Dict-backed IdentityStore."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._rows: Dict[Source, Dict[str, Dict[str, Any]]] = {}
        self._registry: Dict[Source, Dict[str, FieldRegistryEntry]] = {}

    async def initialize(self, source: Source) -> None:
        if source in self._rows:
            return
        self._rows[source] = {}
        self._registry[source] = {
            entry.field_name: entry for entry in default_field_entries(source, self._clock())
        }
        logger.debug("Initialized in-memory store", source=source.value)

    def _table(self, source: Source) -> Dict[str, Dict[str, Any]]:
        if source not in self._rows:
            raise RuntimeError(f"Store for '{source.value}' not initialized - call initialize() first")
        return self._rows[source]

    async def get_records(self, source: Source, limit: Optional[int] = None, offset: int = 0) -> List[IdentityRecord]:
        rows = sorted(self._table(source).values(), key=lambda row: row.get("updated_at") or "", reverse=True)
        end = None if limit is None else offset + limit
        return [IdentityRecord.from_row(row) for row in rows[offset:end]]

    async def get_record(self, source: Source, record_id: str) -> Optional[IdentityRecord]:
        row = self._table(source).get(record_id)
        return IdentityRecord.from_row(row) if row else None

    def _find_by_external_id(self, source: Source, external_id: str) -> Optional[Dict[str, Any]]:
        for row in self._table(source).values():
            if row.get("external_id") == external_id:
                return row
        return None

    async def get_by_external_id(self, source: Source, external_id: str) -> Optional[IdentityRecord]:
        row = self._find_by_external_id(source, external_id)
        return IdentityRecord.from_row(row) if row else None

    async def upsert(self, source: Source, record: IdentityRecord) -> IdentityRecord:
        table = self._table(source)

        existing = table.get(record.id) if record.id else None
        if existing is None and record.external_id:
            existing = self._find_by_external_id(source, record.external_id)

        row = prepare_row(source, record, self._registry[source], existing, self._clock())

        email_key = row["email"].strip().lower()
        for other in table.values():
            if other["id"] != row["id"] and (other.get("email") or "").strip().lower() == email_key:
                raise RecordUpsertError(
                    f"Email {row['email']} already belongs to record {other['id']}", source=source.value
                )

        if existing is not None:
            merged = dict(existing)
            merged.update(row)
            row = merged
        table[row["id"]] = row
        return IdentityRecord.from_row(row)

    async def delete(self, source: Source, record_id: str) -> bool:
        return self._table(source).pop(record_id, None) is not None

    async def truncate(self, source: Source) -> None:
        self._table(source).clear()
        logger.info("Truncated store", source=source.value)

    async def count(self, source: Source) -> int:
        return len(self._table(source))

    async def latest_sync_time(self, source: Source) -> Optional[datetime]:
        values = [row["last_synced_at"] for row in self._table(source).values() if row.get("last_synced_at")]
        return parse_iso(max(values)) if values else None

    async def get_field_registry(self, source: Source) -> List[FieldRegistryEntry]:
        self._table(source)
        return sorted(self._registry[source].values(), key=lambda entry: entry.added_at)

    async def add_field(self, source: Source, entry: FieldRegistryEntry) -> bool:
        self._table(source)
        registry = self._registry[source]
        if entry.field_name in registry:
            return False
        registry[entry.field_name] = entry
        for row in self._rows[source].values():
            row.setdefault(entry.field_name, None)
        return True


class InMemoryScheduleRepository:
    def __init__(self) -> None:
        self._schedules: Dict[str, Schedule] = {}

    async def create(self, schedule: Schedule) -> Schedule:
        self._schedules[schedule.id] = schedule.model_copy()
        return schedule

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        schedule = self._schedules.get(schedule_id)
        return schedule.model_copy() if schedule else None

    async def list(self) -> List[Schedule]:
        return [schedule.model_copy() for schedule in self._schedules.values()]

    async def update(self, schedule: Schedule) -> Schedule:
        self._schedules[schedule.id] = schedule.model_copy()
        return schedule

    async def delete(self, schedule_id: str) -> bool:
        return self._schedules.pop(schedule_id, None) is not None


class InMemoryHistoryRepository:
    def __init__(self) -> None:
        self._entries: Dict[str, HistoryEntry] = {}

    async def create(self, entry: HistoryEntry) -> HistoryEntry:
        self._entries[entry.id] = entry.model_copy()
        return entry

    async def finalize(self, entry: HistoryEntry) -> HistoryEntry:
        current = self._entries.get(entry.id)
        if current is not None and current.status != HistoryStatus.RUNNING:
            raise ValueError(f"History entry {entry.id} is already finalized")
        self._entries[entry.id] = entry.model_copy()
        return entry

    async def get(self, entry_id: str) -> Optional[HistoryEntry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy() if entry else None

    async def list_recent(self, limit: int = 50) -> List[HistoryEntry]:
        entries = sorted(self._entries.values(), key=lambda entry: entry.start_time, reverse=True)
        return [entry.model_copy() for entry in entries[:limit]]

    async def count_retries(self, chain_id: str) -> int:
        return sum(
            1
            for entry in self._entries.values()
            if entry.chain_id == chain_id and entry.trigger_type == TriggerType.RETRY
        )

    async def get_stats(self, today_start: datetime) -> SyncStats:
        entries = sorted(self._entries.values(), key=lambda entry: entry.start_time, reverse=True)
        per_source: Dict[Source, SourceRunStats] = {}
        for source in Source:
            runs = [entry for entry in entries if entry.source == source]
            if not runs:
                continue
            durations = [entry.duration_ms for entry in runs if entry.duration_ms is not None]
            per_source[source] = SourceRunStats(
                count=len(runs),
                users_processed=sum(entry.users_processed for entry in runs),
                avg_duration_ms=sum(durations) / len(durations) if durations else None,
                last_sync=runs[0].start_time,
            )

        return SyncStats(
            total_syncs=len(entries),
            today_syncs=sum(1 for entry in entries if entry.start_time >= today_start),
            recent_errors=[entry.model_copy() for entry in entries if entry.status == HistoryStatus.FAILED][:5],
            per_source=per_source,
        )
