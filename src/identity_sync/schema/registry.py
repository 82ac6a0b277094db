"""
Schema Registry

Diffs incoming batches against a source's field registry, infers types for unseen fields
and applies additive migrations through the store. Registered types never change.
"""

import re
from collections import Counter
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping

from loguru import logger

from identity_sync.clock import Clock
from identity_sync.clock import utc_now
from identity_sync.enums import DataType
from identity_sync.enums import Source
from identity_sync.errors import SchemaMigrationError
from identity_sync.models.schema import AutoMigrationResult
from identity_sync.models.schema import FailedMigration
from identity_sync.models.schema import FieldRegistryEntry
from identity_sync.models.schema import MigrationReport
from identity_sync.models.schema import RecordValidationError
from identity_sync.models.schema import SchemaReport
from identity_sync.models.schema import ValidationReport
from identity_sync.schema.inference import infer_field_type
from identity_sync.schema.inference import is_empty
from identity_sync.store.protocols import IdentityStore

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
RECENT_FIELD_WINDOW = timedelta(days=7)

Row = Mapping[str, Any]


class SchemaRegistry:
    """Schema evolution for the per-source stores."""

    def __init__(self, store: IdentityStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def _known_fields(self, source: Source) -> Dict[str, FieldRegistryEntry]:
        return {entry.field_name: entry for entry in await self.store.get_field_registry(source)}

    async def discover_new_fields(self, source: Source, records: Iterable[Row]) -> List[FieldRegistryEntry]:
        """
        Infer entries for every field of the batch that the registry does not know yet.

        Fields whose values are all empty are skipped until a batch carries a value.
        """
        known = await self._known_fields(source)

        observed: Dict[str, List[Any]] = {}
        for record in records:
            for field_name, value in record.items():
                if field_name in known:
                    continue
                observed.setdefault(field_name, []).append(value)

        now = self.clock()
        entries = []
        for field_name, values in observed.items():
            inferred = infer_field_type(field_name, values)
            if inferred is None:
                logger.debug("Skipping field without values", source=source.value, field=field_name)
                continue
            data_type, max_length = inferred
            entries.append(
                FieldRegistryEntry(
                    source=source,
                    field_name=field_name,
                    data_type=data_type,
                    max_length=max_length,
                    is_required=False,
                    added_at=now,
                )
            )

        if entries:
            logger.info(
                "Discovered new fields",
                source=source.value,
                fields={entry.field_name: entry.data_type.value for entry in entries},
            )
        return entries

    async def apply_migrations(self, source: Source, entries: Iterable[FieldRegistryEntry]) -> MigrationReport:
        """
        Add each entry to the store. One field's failure never stops the others.

        Already-registered fields are reported as applied without being added again.
        """
        report = MigrationReport()
        for entry in entries:
            try:
                added = await self.store.add_field(source, entry)
            except SchemaMigrationError as exc:
                report.failed.append(FailedMigration(field_name=entry.field_name, error=exc.message))
                logger.warning(
                    "Schema migration failed for field", source=source.value, field=entry.field_name, error=exc.message
                )
                continue

            report.applied.append(entry)
            if added:
                logger.info(
                    "Added field",
                    source=source.value,
                    field=entry.field_name,
                    data_type=entry.data_type.value,
                    max_length=entry.max_length,
                )

        return report

    async def auto_migrate(self, source: Source, records: List[Dict[str, Any]]) -> AutoMigrationResult:
        """Discover and apply in one call; returns the applied entries and the batch."""
        discovered = await self.discover_new_fields(source, records)
        report = await self.apply_migrations(source, discovered)
        return AutoMigrationResult(applied=report.applied, failed=report.failed, records=records)

    async def validate_records(self, source: Source, records: List[Row]) -> ValidationReport:
        """Check required fields and email format for each record of a batch."""
        required = [entry.field_name for entry in await self.store.get_field_registry(source) if entry.is_required]
        # Ids are generated on insert
        required = [field_name for field_name in required if field_name != "id"]

        report = ValidationReport()
        for index, record in enumerate(records):
            problems = [
                RecordValidationError(index=index, field_name=field_name, message=f"{field_name} is required")
                for field_name in required
                if is_empty(record.get(field_name))
            ]
            email = record.get("email")
            if not is_empty(email) and not EMAIL_PATTERN.match(str(email).strip()):
                problems.append(
                    RecordValidationError(index=index, field_name="email", message=f"Invalid email format: {email}")
                )

            if problems:
                report.errors.extend(problems)
            else:
                report.valid.append(index)

        return report

    async def generate_schema_report(self, source: Source) -> SchemaReport:
        entries = await self.store.get_field_registry(source)
        cutoff = self.clock() - RECENT_FIELD_WINDOW
        type_counts = Counter(entry.data_type for entry in entries)
        return SchemaReport(
            source=source,
            total_fields=len(entries),
            recently_added=[entry for entry in entries if entry.added_at >= cutoff],
            field_types={data_type: type_counts.get(data_type, 0) for data_type in DataType},
            last_update=max((entry.added_at for entry in entries), default=None),
        )
