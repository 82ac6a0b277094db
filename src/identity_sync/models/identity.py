"""
Identity Record Model

Canonical user shape stored in every per-source store. Source-specific data lives in
``attributes``; which attribute names are legal, and their types, is decided by the
source's field registry.
"""

from datetime import date
from datetime import datetime
from typing import Any
from typing import Dict
from typing import Optional
from typing import Union

from pydantic import BaseModel
from pydantic import Field

from identity_sync.clock import parse_iso
from identity_sync.enums import Source

# Dynamic attribute value: one of text, integer, real, boolean, datetime (or null)
Value = Union[str, int, float, bool, datetime, date, None]

CANONICAL_COLUMNS = (
    "id",
    "email",
    "first_name",
    "last_name",
    "display_name",
    "is_active",
    "last_synced_at",
    "source",
    "external_id",
    "created_at",
    "updated_at",
)

TIMESTAMP_COLUMNS = ("last_synced_at", "created_at", "updated_at")


class IdentityRecord(BaseModel):
    """Normalized user record."""

    id: Optional[str] = None  # Generated by the store on first insert when missing
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    is_active: bool = True
    last_synced_at: Optional[datetime] = None
    source: Source
    external_id: Optional[str] = None  # Source-native key used for upsert matching
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def email_key(self) -> str:
        """Lowercased email used for uniqueness and conflict grouping."""
        return self.email.strip().lower()

    def to_row(self) -> Dict[str, Any]:
        """Flatten canonical fields and attributes into one column -> value map."""
        row: Dict[str, Any] = {
            key: value for key, value in self.attributes.items() if key not in CANONICAL_COLUMNS
        }
        row.update(
            {
                "id": self.id,
                "email": self.email,
                "first_name": self.first_name,
                "last_name": self.last_name,
                "display_name": self.display_name,
                "is_active": self.is_active,
                "last_synced_at": self.last_synced_at,
                "source": self.source.value,
                "external_id": self.external_id,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "IdentityRecord":
        """Rebuild a record from a stored row (timestamps may be ISO strings)."""
        attributes = {key: value for key, value in row.items() if key not in CANONICAL_COLUMNS}
        is_active = row.get("is_active")
        return cls(
            id=row.get("id"),
            email=row.get("email") or "",
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            display_name=row.get("display_name"),
            is_active=True if is_active is None else bool(is_active),
            last_synced_at=parse_iso(row.get("last_synced_at")),
            source=Source(row["source"]),
            external_id=row.get("external_id"),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
            attributes=attributes,
        )
