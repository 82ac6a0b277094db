"""Protocols for the persistence layer."""

from datetime import datetime
from typing import List
from typing import Optional
from typing import Protocol

from identity_sync.enums import Source
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.schedule import HistoryEntry
from identity_sync.models.schedule import Schedule
from identity_sync.models.schedule import SyncStats
from identity_sync.models.schema import FieldRegistryEntry


class IdentityStore(Protocol):
    """Per-source record tables and their field registries."""

    async def initialize(self, source: Source) -> None:
        """Create the record and registry tables for a source if absent (idempotent)."""
        ...

    async def get_records(self, source: Source, limit: Optional[int] = None, offset: int = 0) -> List[IdentityRecord]:
        """Records of one source, most recently updated first."""
        ...

    async def get_record(self, source: Source, record_id: str) -> Optional[IdentityRecord]:
        ...

    async def get_by_external_id(self, source: Source, external_id: str) -> Optional[IdentityRecord]:
        ...

    async def upsert(self, source: Source, record: IdentityRecord) -> IdentityRecord:
        """Insert or update by id, then external_id. Unregistered fields are dropped."""
        ...

    async def delete(self, source: Source, record_id: str) -> bool:
        ...

    async def truncate(self, source: Source) -> None:
        ...

    async def count(self, source: Source) -> int:
        ...

    async def latest_sync_time(self, source: Source) -> Optional[datetime]:
        ...

    async def get_field_registry(self, source: Source) -> List[FieldRegistryEntry]:
        ...

    async def add_field(self, source: Source, entry: FieldRegistryEntry) -> bool:
        """Add a column and register it. Returns False if the field already existed."""
        ...


class ScheduleRepositoryProtocol(Protocol):
    async def create(self, schedule: Schedule) -> Schedule:
        ...

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        ...

    async def list(self) -> List[Schedule]:
        ...

    async def update(self, schedule: Schedule) -> Schedule:
        ...

    async def delete(self, schedule_id: str) -> bool:
        ...


class HistoryRepositoryProtocol(Protocol):
    """Append-only run history."""

    async def create(self, entry: HistoryEntry) -> HistoryEntry:
        ...

    async def finalize(self, entry: HistoryEntry) -> HistoryEntry:
        """Write the terminal state of a running entry."""
        ...

    async def get(self, entry_id: str) -> Optional[HistoryEntry]:
        ...

    async def list_recent(self, limit: int = 50) -> List[HistoryEntry]:
        ...

    async def count_retries(self, chain_id: str) -> int:
        """Number of retry-tagged entries in a failure chain."""
        ...

    async def get_stats(self, today_start: datetime) -> SyncStats:
        ...
