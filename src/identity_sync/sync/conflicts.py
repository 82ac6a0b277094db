"""Cross-source email collision detection."""

from collections import defaultdict
from typing import Dict
from typing import List
from typing import Sequence

from loguru import logger

from identity_sync.enums import Source
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.sync import ConflictingUser
from identity_sync.models.sync import EmailConflict
from identity_sync.store.protocols import IdentityStore


class ConflictDetector:
    """Groups every stored record by lowercased email; groups spanning sources are conflicts."""

    def __init__(self, store: IdentityStore, sources: Sequence[Source] = tuple(Source)):
        self.store = store
        self.sources = tuple(sources)

    async def detect_email_conflicts(self) -> List[EmailConflict]:
        groups: Dict[str, List[IdentityRecord]] = defaultdict(list)
        for source in self.sources:
            for record in await self.store.get_records(source):
                if record.email:
                    groups[record.email_key].append(record)

        conflicts = []
        for _, records in sorted(groups.items()):
            sources = sorted({record.source for record in records}, key=lambda source: source.value)
            if len(sources) < 2:
                continue
            conflicts.append(
                EmailConflict(
                    # Display case of the first record found, in source order
                    email=records[0].email,
                    sources=sources,
                    users=[
                        ConflictingUser(
                            id=record.id,
                            source=record.source,
                            display_name=record.display_name,
                            last_synced_at=record.last_synced_at,
                        )
                        for record in records
                    ],
                )
            )

        if conflicts:
            logger.warning("Email conflicts detected across sources", count=len(conflicts))
        return conflicts
