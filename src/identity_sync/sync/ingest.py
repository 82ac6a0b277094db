"""
Ingest for pushed sources

Uploads arrive as already-parsed spreadsheet rows; manual records are entered one at a
time. Both go through the same schema registry and store as pulled sources, so custom
columns are discovered and migrated the same way.
"""

import time
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional

from loguru import logger

from identity_sync.clock import Clock
from identity_sync.clock import utc_now
from identity_sync.enums import Source
from identity_sync.enums import UploadMode
from identity_sync.errors import DuplicateEmail
from identity_sync.errors import IdentitySyncError
from identity_sync.errors import RecordNotFound
from identity_sync.errors import RecordUpsertError
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.ingest import IngestResult
from identity_sync.models.ingest import ManualRecordCreate
from identity_sync.models.ingest import ManualRecordUpdate
from identity_sync.models.ingest import UploadAnalysis
from identity_sync.schema.registry import EMAIL_PATTERN
from identity_sync.schema.registry import SchemaRegistry
from identity_sync.store.base import generate_record_id
from identity_sync.store.protocols import IdentityStore
from identity_sync.sync.normalizers import UPLOAD_COLUMN_MAP
from identity_sync.sync.normalizers import collect_attributes
from identity_sync.sync.normalizers import column_key
from identity_sync.sync.normalizers import map_upload_row
from identity_sync.sync.normalizers import normalize_pushed_row

LARGE_UPLOAD_ROWS = 1000
SAMPLE_ROWS = 5


async def _email_index(store: IdentityStore, source: Source) -> Dict[str, str]:
    """Lowercased email -> record id for one store."""
    return {record.email_key: record.id for record in await store.get_records(source)}


class UploadIngestor:
    """Applies uploaded rows to the upload store."""

    source = Source.UPLOAD

    def __init__(self, store: IdentityStore, registry: SchemaRegistry, clock: Clock = utc_now):
        self.store = store
        self.registry = registry
        self.clock = clock

    def analyze_upload(self, rows: List[Mapping[str, Any]]) -> UploadAnalysis:
        """Columns, sample rows, suggested mapping and obvious problems; stores nothing."""
        columns: List[str] = []
        for row in rows:
            columns.extend(column for column in row if column not in columns)

        suggested = {}
        for column in columns:
            target = UPLOAD_COLUMN_MAP.get(column_key(column))
            if target is not None:
                suggested[column] = target

        issues = []
        email_column = next((column for column, target in suggested.items() if target == "email"), None)
        if email_column is None:
            issues.append("No email column found; email is required")
        else:
            invalid = [
                row for row in rows if not EMAIL_PATTERN.match(str(row.get(email_column) or "").strip())
            ]
            if invalid:
                issues.append(f"{len(invalid)} rows with missing or invalid email addresses")
        if len(rows) > LARGE_UPLOAD_ROWS:
            issues.append(f"Large upload ({len(rows)} rows); processing may take a while")

        return UploadAnalysis(
            row_count=len(rows),
            columns=columns,
            sample_rows=[dict(row) for row in rows[:SAMPLE_ROWS]],
            suggested_mapping=suggested,
            issues=issues,
        )

    async def process_upload(
        self,
        rows: List[Mapping[str, Any]],
        mode: UploadMode = UploadMode.ADD,
        mapping: Optional[Mapping[str, str]] = None,
        uploaded_by: str = "system",
    ) -> IngestResult:
        """
        Map, validate, migrate and store uploaded rows.

        In ``add`` mode a row whose email already exists in the upload store updates
        that record; in ``replace`` mode the store is emptied first.
        """
        started = time.monotonic()
        logger.info("Processing upload", rows=len(rows), mode=mode.value, uploaded_by=uploaded_by)

        mapped = [map_upload_row(row, mapping) for row in rows]
        validation = await self.registry.validate_records(self.source, mapped)

        now = self.clock()
        records: List[IdentityRecord] = []
        for index in validation.valid:
            record = normalize_pushed_row(self.source, mapped[index], now)
            if record is not None:
                record.attributes["uploaded_by"] = uploaded_by
                records.append(record)

        result = IngestResult(
            total_processed=len(rows),
            invalid_rows=validation.errors,
            errors=len(rows) - len(records),
        )

        if mode == UploadMode.REPLACE:
            await self.store.truncate(self.source)

        migration = await self.registry.auto_migrate(self.source, [record.attributes for record in records])
        result.new_fields = migration.applied

        existing = await _email_index(self.store, self.source)
        for record in records:
            existing_id = existing.get(record.email_key)
            if existing_id is not None and record.id is None:
                record.id = existing_id
            try:
                stored = await self.store.upsert(self.source, record)
            except RecordUpsertError as exc:
                result.errors += 1
                result.error_details.append(f"{record.email}: {exc.message}")
                continue

            if existing_id is not None:
                result.updated += 1
            else:
                result.added += 1
            existing[stored.email_key] = stored.id

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.success(
            "Upload processed",
            processed=result.total_processed,
            added=result.added,
            updated=result.updated,
            errors=result.errors,
            new_fields=[entry.field_name for entry in result.new_fields],
        )
        return result


class ManualRecordService:
    """CRUD for hand-entered records."""

    source = Source.MANUAL

    def __init__(self, store: IdentityStore, registry: SchemaRegistry, clock: Clock = utc_now):
        self.store = store
        self.registry = registry
        self.clock = clock

    async def _ensure_unique_email(self, email: str, record_id: Optional[str] = None) -> None:
        owner = (await _email_index(self.store, self.source)).get(email.strip().lower())
        if owner is not None and owner != record_id:
            raise DuplicateEmail(f"Email {email} already exists", source=self.source.value)

    async def _save(self, record: IdentityRecord) -> IdentityRecord:
        await self.registry.auto_migrate(self.source, [record.attributes])
        return await self.store.upsert(self.source, record)

    async def create_record(self, data: ManualRecordCreate, created_by: str = "system") -> IdentityRecord:
        await self._ensure_unique_email(data.email)

        record_id = generate_record_id(self.source)
        attributes: Dict[str, Any] = {
            key: value
            for key, value in {
                "department": data.department,
                "job_title": data.job_title,
                "phone": data.phone,
                "notes": data.notes,
            }.items()
            if value is not None
        }
        attributes.update(collect_attributes(data.custom_fields))
        attributes["created_by"] = created_by

        display_name = data.display_name or " ".join(
            part for part in (data.first_name, data.last_name) if part
        )
        record = IdentityRecord(
            id=record_id,
            email=data.email,
            first_name=data.first_name,
            last_name=data.last_name,
            display_name=display_name or None,
            is_active=data.is_active,
            last_synced_at=self.clock(),
            source=self.source,
            external_id=record_id,
            attributes=attributes,
        )
        stored = await self._save(record)
        logger.info("Manual record created", record_id=stored.id, created_by=created_by)
        return stored

    async def get_record(self, record_id: str) -> IdentityRecord:
        record = await self.store.get_record(self.source, record_id)
        if record is None:
            raise RecordNotFound(f"Manual record {record_id} not found", source=self.source.value)
        return record

    async def list_records(self, limit: Optional[int] = None, offset: int = 0) -> List[IdentityRecord]:
        return await self.store.get_records(self.source, limit=limit, offset=offset)

    async def update_record(
        self, record_id: str, data: ManualRecordUpdate, updated_by: str = "system"
    ) -> IdentityRecord:
        record = await self.get_record(record_id)
        changes = data.model_dump(exclude_unset=True, exclude={"custom_fields"})

        if "email" in changes and changes["email"].lower() != record.email_key:
            await self._ensure_unique_email(changes["email"], record_id)

        canonical = {key: value for key, value in changes.items() if key in IdentityRecord.model_fields}
        extra = {key: value for key, value in changes.items() if key not in IdentityRecord.model_fields}

        attributes = dict(record.attributes)
        attributes.update(extra)
        attributes.update(collect_attributes(data.custom_fields or {}))
        attributes["updated_by"] = updated_by

        updated = record.model_copy(update={**canonical, "attributes": attributes, "last_synced_at": self.clock()})
        stored = await self._save(updated)
        logger.info("Manual record updated", record_id=record_id, fields=sorted(changes), updated_by=updated_by)
        return stored

    async def delete_record(self, record_id: str, deleted_by: str = "system") -> None:
        if not await self.store.delete(self.source, record_id):
            raise RecordNotFound(f"Manual record {record_id} not found", source=self.source.value)
        logger.info("Manual record deleted", record_id=record_id, deleted_by=deleted_by)

    async def bulk_create(self, items: List[ManualRecordCreate], created_by: str = "system") -> IngestResult:
        """Create each item independently; failures are reported per item."""
        started = time.monotonic()
        result = IngestResult(total_processed=len(items))
        for item in items:
            try:
                await self.create_record(item, created_by=created_by)
            except IdentitySyncError as exc:
                result.errors += 1
                result.error_details.append(f"{item.email}: {exc.message}")
                continue
            result.added += 1

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Manual bulk create finished", added=result.added, errors=result.errors)
        return result
