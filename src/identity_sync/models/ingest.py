"""Request and result models for pushed sources (uploads and manual entry)."""

from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from identity_sync.enums import UploadMode
from identity_sync.models.schema import FieldRegistryEntry
from identity_sync.models.schema import RecordValidationError
from identity_sync.schema.registry import EMAIL_PATTERN


def _check_email(value: str) -> str:
    value = value.strip()
    if not EMAIL_PATTERN.match(value):
        raise ValueError(f"Invalid email format: {value}")
    return value


class UploadRequest(BaseModel):
    """Already-parsed spreadsheet rows."""

    rows: List[Dict[str, Any]] = Field(..., min_length=1, description="One object per spreadsheet row")
    mode: UploadMode = Field(default=UploadMode.ADD, description="'replace' empties the upload store first")
    mapping: Optional[Dict[str, str]] = Field(
        default=None,
        description="Explicit column -> field mapping; unmapped columns are auto-mapped by name",
        examples=[{"E-Mail Adresse": "email", "Vorname": "first_name"}],
    )


class IngestResult(BaseModel):
    total_processed: int = 0
    added: int = 0
    updated: int = 0
    errors: int = 0
    new_fields: List[FieldRegistryEntry] = Field(default_factory=list)
    invalid_rows: List[RecordValidationError] = Field(default_factory=list)
    error_details: List[str] = Field(default_factory=list)
    duration_ms: int = 0


class UploadAnalysis(BaseModel):
    """Preview of an upload without storing anything."""

    row_count: int
    columns: List[str]
    sample_rows: List[Dict[str, Any]]
    suggested_mapping: Dict[str, str]
    issues: List[str]


class ManualRecordCreate(BaseModel):
    """Request model for creating a manual record."""

    email: str = Field(..., description="Unique within the manual store (case-insensitive)")
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    display_name: Optional[str] = Field(default=None, max_length=200, description="Defaults to 'first last'")
    is_active: bool = True
    department: Optional[str] = None
    job_title: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(
        default_factory=dict, description="Additional attributes; unseen names are added to the schema"
    )

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)


class ManualRecordUpdate(BaseModel):
    """Partial update; unset fields are left unchanged."""

    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    display_name: Optional[str] = Field(default=None, max_length=200)
    is_active: Optional[bool] = None
    department: Optional[str] = None
    job_title: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    custom_fields: Optional[Dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else _check_email(v)
