"""Field registry and schema migration models."""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from identity_sync.enums import DataType
from identity_sync.enums import Source


class FieldRegistryEntry(BaseModel):
    """One known column of a source's store. ``data_type`` never changes once registered."""

    model_config = ConfigDict(frozen=True)

    source: Source
    field_name: str
    data_type: DataType
    max_length: Optional[int] = None
    is_required: bool = False
    added_at: datetime


class FailedMigration(BaseModel):
    field_name: str
    error: str
    error_code: str = "SchemaMigrationError"


class MigrationReport(BaseModel):
    applied: List[FieldRegistryEntry] = Field(default_factory=list)
    failed: List[FailedMigration] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class AutoMigrationResult(MigrationReport):
    """Migration report plus the batch, now compatible with the store's schema."""

    records: List[Dict[str, Any]] = Field(default_factory=list)


class RecordValidationError(BaseModel):
    index: int
    field_name: str
    message: str


class ValidationReport(BaseModel):
    valid: List[int] = Field(default_factory=list)  # Indexes of valid records in the batch
    errors: List[RecordValidationError] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class SchemaReport(BaseModel):
    source: Source
    total_fields: int
    recently_added: List[FieldRegistryEntry]
    field_types: Dict[DataType, int]
    last_update: Optional[datetime] = None
