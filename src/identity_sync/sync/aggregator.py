"""
Unified User Aggregator

Read-only merged view over every per-source store: filtering, sorting and pagination
happen in memory after loading the requested sources.
"""

import math
from collections import defaultdict
from datetime import date
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Set
from typing import Tuple

from loguru import logger

from identity_sync.enums import SortOrder
from identity_sync.enums import Source
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.unified import DashboardStats
from identity_sync.models.unified import Page
from identity_sync.models.unified import Pagination
from identity_sync.models.unified import UnifiedUser
from identity_sync.models.unified import UserQuery
from identity_sync.store.protocols import IdentityStore
from identity_sync.sync.conflicts import ConflictDetector

SEARCH_FIELDS = ("email", "first_name", "last_name", "display_name")


def to_unified(record: IdentityRecord, conflicts: Optional[List[Source]] = None) -> UnifiedUser:
    return UnifiedUser(
        id=record.id,
        email=record.email,
        first_name=record.first_name,
        last_name=record.last_name,
        display_name=record.display_name,
        is_active=record.is_active,
        source=record.source,
        external_id=record.external_id,
        last_synced_at=record.last_synced_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        raw=record.to_row(),
        conflicts=conflicts or [],
    )


def sort_key(value: Any) -> Tuple[int, Any]:
    """
    Comparable key for mixed-type values.

    Dates compare chronologically, numbers numerically and strings case-insensitively;
    values of different kinds are ordered by kind.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (0, value.timestamp())
    if isinstance(value, date):
        return (0, datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value).lower())


def field_value(user: UnifiedUser, field_name: str) -> Any:
    if field_name in UnifiedUser.model_fields and field_name not in ("raw", "conflicts"):
        value = getattr(user, field_name)
        return value.value if isinstance(value, Source) else value
    return user.raw.get(field_name)


def sort_users(users: List[UnifiedUser], field_name: str, order: SortOrder) -> List[UnifiedUser]:
    """Sort by any canonical or attribute field; nulls always last."""
    present = [user for user in users if field_value(user, field_name) not in (None, "")]
    missing = [user for user in users if field_value(user, field_name) in (None, "")]
    present.sort(key=lambda user: sort_key(field_value(user, field_name)), reverse=order == SortOrder.DESC)
    return present + missing


def matches_search(user: UnifiedUser, search: str) -> bool:
    needle = search.strip().lower()
    if not needle:
        return True
    return any(needle in (getattr(user, field_name) or "").lower() for field_name in SEARCH_FIELDS)


class UserAggregator:
    """Merged, read-only view across all sources."""

    def __init__(self, store: IdentityStore, detector: ConflictDetector):
        self.store = store
        self.detector = detector

    async def _load(self, sources: List[Source]) -> List[IdentityRecord]:
        records: List[IdentityRecord] = []
        for source in sources:
            records.extend(await self.store.get_records(source))
        return records

    async def _sources_by_email(self) -> Dict[str, Set[Source]]:
        by_email: Dict[str, Set[Source]] = defaultdict(set)
        for record in await self._load(list(Source)):
            by_email[record.email_key].add(record.source)
        return by_email

    def _with_conflicts(self, records: List[IdentityRecord], by_email: Dict[str, Set[Source]]) -> List[UnifiedUser]:
        return [
            to_unified(
                record,
                sorted(
                    (source for source in by_email.get(record.email_key, ()) if source != record.source),
                    key=lambda source: source.value,
                ),
            )
            for record in records
        ]

    async def get_unified_users(self, query: UserQuery) -> Page[UnifiedUser]:
        sources = query.sources or list(Source)
        by_email = await self._sources_by_email()
        users = self._with_conflicts(await self._load(sources), by_email)

        if query.search:
            users = [user for user in users if matches_search(user, query.search)]
        if query.is_active is not None:
            users = [user for user in users if user.is_active == query.is_active]

        users = sort_users(users, query.sort_by, query.sort_order)

        total = len(users)
        pages = math.ceil(total / query.limit) if total else 0
        start = (query.page - 1) * query.limit
        items = users[start : start + query.limit]

        logger.debug(
            "Unified users listed",
            sources=[source.value for source in sources],
            total=total,
            page=query.page,
            returned=len(items),
        )
        return Page[UnifiedUser](
            items=items,
            pagination=Pagination(
                total=total,
                page=query.page,
                limit=query.limit,
                pages=pages,
                has_next=query.page < pages,
                has_prev=query.page > 1,
            ),
        )

    async def get_dashboard_stats(self) -> DashboardStats:
        breakdown = {source: await self.store.count(source) for source in Source}
        sync_times = [await self.store.latest_sync_time(source) for source in Source]
        conflicts = await self.detector.detect_email_conflicts()
        return DashboardStats(
            total_users=sum(breakdown.values()),
            source_breakdown=breakdown,
            conflicts=len(conflicts),
            last_activity=max((value for value in sync_times if value is not None), default=None),
        )

    async def find_users_by_email(self, email: str) -> List[UnifiedUser]:
        """Every record holding ``email`` (case-insensitive), one per source at most."""
        key = email.strip().lower()
        records = [record for record in await self._load(list(Source)) if record.email_key == key]
        by_email = {key: {record.source for record in records}}
        return self._with_conflicts(records, by_email)

    async def export_all_users(self) -> List[UnifiedUser]:
        by_email = await self._sources_by_email()
        users = self._with_conflicts(await self._load(list(Source)), by_email)
        return sorted(users, key=lambda user: (user.email.lower(), user.source.value))
