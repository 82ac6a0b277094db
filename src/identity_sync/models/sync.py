"""
Sync Job Models

Jobs, their immutable results, email conflicts and the structured outcome returned by
the orchestrator.
"""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from identity_sync.enums import JobStatus
from identity_sync.enums import Source
from identity_sync.enums import SourceSyncState
from identity_sync.enums import SyncMode
from identity_sync.errors import error_for_code
from identity_sync.models.schema import FieldRegistryEntry


class ConflictingUser(BaseModel):
    """Lightweight projection of one record involved in a conflict."""

    id: str
    source: Source
    display_name: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class EmailConflict(BaseModel):
    """The same email present in more than one source's store."""

    email: str
    sources: List[Source]
    users: List[ConflictingUser]


class SyncResults(BaseModel):
    """Counts for one job; frozen once built."""

    model_config = ConfigDict(frozen=True)

    total_processed: int = 0
    added: int = 0
    updated: int = 0
    errors: int = 0
    conflicts: List[EmailConflict] = Field(default_factory=list)
    new_fields: List[FieldRegistryEntry] = Field(default_factory=list)
    duration_ms: int = 0


class SyncJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    source: Source
    mode: SyncMode = SyncMode.FULL
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime
    started_by: str
    completed_at: Optional[datetime] = None
    results: Optional[SyncResults] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.RUNNING


class SyncOutcome(BaseModel):
    """
    Structured result of ``sync_source``.

    ``job`` is None when the request was rejected before a job existed
    (SyncInProgress, NotConfigured, NoSyncSupported).
    """

    success: bool
    source: Source
    job: Optional[SyncJob] = None
    error_code: Optional[str] = None
    message: str = ""

    def raise_for_error(self) -> "SyncOutcome":
        """Raise the matching IdentitySyncError for rejected requests; return self otherwise."""
        if self.job is None and self.error_code:
            raise error_for_code(self.error_code, self.message, source=self.source.value)
        return self


class SyncAllSummary(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    conflicts: int = 0
    outcomes: Dict[Source, SyncOutcome] = Field(default_factory=dict)


class ConnectionReport(BaseModel):
    success: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class SourceStatus(BaseModel):
    source: Source
    state: SourceSyncState
    last_sync: Optional[datetime] = None
    user_count: int = 0
    is_configured: bool
    sync_supported: bool
    running_job: Optional[SyncJob] = None
