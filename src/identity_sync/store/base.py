"""
Upsert rules shared by every IdentityStore implementation.

A write is filtered down to registered fields and coerced to the registered types, so a
store never holds a column the registry does not know about.
"""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from uuid import uuid4

from loguru import logger

from identity_sync.enums import DataType
from identity_sync.enums import Source
from identity_sync.errors import RecordUpsertError
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.schema import FieldRegistryEntry
from identity_sync.schema.values import coerce_value

# (field_name, data_type, max_length, is_required)
DEFAULT_FIELDS = (
    ("id", DataType.TEXT, 255, True),
    ("email", DataType.TEXT, 255, True),
    ("first_name", DataType.TEXT, 100, False),
    ("last_name", DataType.TEXT, 100, False),
    ("display_name", DataType.TEXT, 200, False),
    ("is_active", DataType.BOOLEAN, None, False),
    ("last_synced_at", DataType.DATETIME, None, False),
    ("source", DataType.TEXT, 20, False),
    ("external_id", DataType.TEXT, 255, False),
    ("created_at", DataType.DATETIME, None, False),
    ("updated_at", DataType.DATETIME, None, False),
)


def default_field_entries(source: Source, now: datetime) -> List[FieldRegistryEntry]:
    """Registry rows every store starts with."""
    return [
        FieldRegistryEntry(
            source=source,
            field_name=name,
            data_type=data_type,
            max_length=max_length,
            is_required=is_required,
            added_at=now,
        )
        for name, data_type, max_length, is_required in DEFAULT_FIELDS
    ]


def generate_record_id(source: Source) -> str:
    return f"{source.value}_{uuid4().hex}"


def prepare_row(
    source: Source,
    record: IdentityRecord,
    registry: Dict[str, FieldRegistryEntry],
    existing: Optional[Dict[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    """
    Build the stored row for an upsert.

    Args:
        source: Store being written
        record: Incoming record
        registry: field_name -> entry for the source
        existing: Stored row matched by id or external_id, if any
        now: Write timestamp

    Returns:
        Column -> storage value, restricted to registered fields

    Raises:
        RecordUpsertError: if the record has no email
    """
    row = record.to_row()
    row["source"] = source.value

    if existing is not None:
        row["id"] = existing["id"]
        row["created_at"] = existing.get("created_at")
    else:
        row["id"] = record.id or generate_record_id(source)
        row["created_at"] = record.created_at or now
    row["updated_at"] = now
    if row.get("last_synced_at") is None:
        row["last_synced_at"] = now

    stored: Dict[str, Any] = {}
    dropped = []
    for field_name, value in row.items():
        entry = registry.get(field_name)
        if entry is None:
            dropped.append(field_name)
            continue
        try:
            stored[field_name] = coerce_value(value, entry.data_type, entry.max_length)
        except ValueError as exc:
            logger.warning(
                "Value does not match registered type, storing null",
                source=source.value,
                field=field_name,
                data_type=entry.data_type.value,
                error=str(exc),
            )
            stored[field_name] = None

    if dropped:
        logger.debug("Dropped unregistered fields", source=source.value, fields=sorted(dropped))

    if not stored.get("email"):
        raise RecordUpsertError("Record has no email", source=source.value)

    return stored
