"""Schedule, run history and retry models."""

from datetime import datetime
from typing import Dict
from typing import List
from typing import Optional
from uuid import uuid4
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from identity_sync.enums import SYNCABLE_SOURCES
from identity_sync.enums import HistoryStatus
from identity_sync.enums import ScheduleStatus
from identity_sync.enums import Source
from identity_sync.enums import TriggerType
from identity_sync.scheduler.cron import validate_cron


def _check_cron(value: str) -> str:
    value = " ".join(value.strip().strip('"').strip("'").split())
    if not validate_cron(value):
        raise ValueError(
            "Invalid cron expression. Must have 5 fields "
            "(minute hour day-of-month month day-of-week). Example: '0 6 * * *' for daily at 06:00."
        )
    return value


def _check_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {value}") from exc
    return value


class Schedule(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    source: Source
    enabled: bool = True
    cron_expression: str
    description: str = ""
    timezone: str = "Europe/Berlin"
    retry_on_error: bool = True
    retry_attempts: int = 3
    retry_delay_minutes: int = 15
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    status: ScheduleStatus = ScheduleStatus.INACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ScheduleCreate(BaseModel):
    """Request model for creating a schedule."""

    source: Source = Field(..., description="Syncable source (directory or ldap)")
    cron_expression: str = Field(
        ...,
        description="5-field cron expression (minute hour day-of-month month day-of-week)",
        examples=["0 6 * * *", "15 6 * * 1-5"],
    )
    enabled: bool = Field(default=True, description="Register a trigger immediately")
    description: str = Field(default="", max_length=500)
    timezone: Optional[str] = Field(default=None, description="IANA timezone, e.g. 'Europe/Berlin'")
    retry_on_error: bool = True
    retry_attempts: int = Field(default=3, ge=0, le=10)
    retry_delay_minutes: int = Field(default=15, ge=1, le=24 * 60)

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: Source) -> Source:
        """Only pulled sources can be scheduled."""
        if v not in SYNCABLE_SOURCES:
            raise ValueError(f"Source '{v.value}' does not support scheduled sync")
        return v

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: str) -> str:
        return _check_cron(v)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else _check_timezone(v)


class ScheduleUpdate(BaseModel):
    """Partial update; unset fields are left unchanged."""

    cron_expression: Optional[str] = None
    enabled: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=500)
    timezone: Optional[str] = None
    retry_on_error: Optional[bool] = None
    retry_attempts: Optional[int] = Field(default=None, ge=0, le=10)
    retry_delay_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else _check_cron(v)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else _check_timezone(v)


class HistoryEntry(BaseModel):
    """One run (scheduled, manual or retry). Finalized exactly once."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    schedule_id: Optional[str] = None
    chain_id: Optional[str] = None  # Id of the run that started a retry chain
    source: Source
    trigger_type: TriggerType
    start_time: datetime
    end_time: Optional[datetime] = None
    status: HistoryStatus = HistoryStatus.RUNNING
    users_processed: int = 0
    users_added: int = 0
    users_updated: int = 0
    errors: int = 0
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None


class RetryState(BaseModel):
    """A pending retry of a failed scheduled run."""

    schedule_id: str
    chain_id: str
    attempt: int
    max_attempts: int
    next_attempt_at: datetime


class SourceRunStats(BaseModel):
    count: int = 0
    users_processed: int = 0
    avg_duration_ms: Optional[float] = None
    last_sync: Optional[datetime] = None


class SyncStats(BaseModel):
    total_syncs: int
    today_syncs: int
    recent_errors: List[HistoryEntry]
    per_source: Dict[Source, SourceRunStats]
