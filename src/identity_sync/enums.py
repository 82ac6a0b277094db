"""
Identity Sync Enums

All enum types used throughout the engine.
Values are persisted as-is in the schedules/history tables.
"""

from enum import Enum

# ════════════════════════════════════════════════════════════════════════════
# Sources
# ════════════════════════════════════════════════════════════════════════════


class Source(str, Enum):
    """Origin of an identity record; each has its own store."""

    DIRECTORY = "directory"  # Directory service (Microsoft Graph)
    LDAP = "ldap"
    UPLOAD = "upload"  # Spreadsheet/CSV rows pushed by an operator
    MANUAL = "manual"  # Records entered by hand


# Sources that are pulled by the orchestrator; upload/manual records are pushed
SYNCABLE_SOURCES = (Source.DIRECTORY, Source.LDAP)


class SyncMode(str, Enum):
    """Sync mode requested by the caller."""

    FULL = "full"
    INCREMENTAL = "incremental"  # Only entries changed since the last sync, where the source supports it


class JobStatus(str, Enum):
    """Sync job lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICTS = "conflicts"  # Completed, but cross-source email conflicts need operator action


class SourceSyncState(str, Enum):
    """Coarse per-source state shown on the status endpoint."""

    IDLE = "idle"
    SYNCING = "syncing"


# ════════════════════════════════════════════════════════════════════════════
# Schema Enums
# ════════════════════════════════════════════════════════════════════════════


class DataType(str, Enum):
    """Inferred storage type of a registered field."""

    TEXT = "text"
    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"
    DATETIME = "datetime"


# ════════════════════════════════════════════════════════════════════════════
# Scheduler Enums
# ════════════════════════════════════════════════════════════════════════════


class ScheduleStatus(str, Enum):
    """Trigger registration state of a schedule."""

    ACTIVE = "active"  # Trigger registered
    INACTIVE = "inactive"  # No trigger registered
    ERROR = "error"  # Trigger registration failed


class TriggerType(str, Enum):
    """What started a history entry."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"


class HistoryStatus(str, Enum):
    """Outcome recorded on a history entry."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICTS = "conflicts"


# ════════════════════════════════════════════════════════════════════════════
# Ingest / Query Enums
# ════════════════════════════════════════════════════════════════════════════


class UploadMode(str, Enum):
    """How uploaded rows are applied to the upload store."""

    ADD = "add"  # Upsert alongside existing records
    REPLACE = "replace"  # Truncate the upload store first


class SortOrder(str, Enum):
    """Sort direction for unified user listings."""

    ASC = "asc"
    DESC = "desc"
