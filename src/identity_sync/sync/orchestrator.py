"""
Sync Orchestrator

Runs one end-to-end sync per source: fetch -> normalize -> auto-migrate -> upsert ->
conflict scan. At most one job per source is in flight; the guard lives in EngineState.

Every entry point returns a SyncOutcome instead of raising, so the scheduler can record
the result of any run in its history.
"""

import asyncio
import time
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from loguru import logger

from identity_sync.clock import Clock
from identity_sync.clock import utc_now
from identity_sync.connectors.base import SourceConnector
from identity_sync.enums import SYNCABLE_SOURCES
from identity_sync.enums import JobStatus
from identity_sync.enums import Source
from identity_sync.enums import SourceSyncState
from identity_sync.enums import SyncMode
from identity_sync.errors import IdentitySyncError
from identity_sync.errors import NoSyncRunning
from identity_sync.errors import NoSyncSupported
from identity_sync.errors import NotConfigured
from identity_sync.errors import RecordUpsertError
from identity_sync.errors import SyncCancelled
from identity_sync.errors import SyncInProgress
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.sync import ConnectionReport
from identity_sync.models.sync import EmailConflict
from identity_sync.models.sync import SourceStatus
from identity_sync.models.sync import SyncAllSummary
from identity_sync.models.sync import SyncJob
from identity_sync.models.sync import SyncOutcome
from identity_sync.models.sync import SyncResults
from identity_sync.schema.registry import SchemaRegistry
from identity_sync.state import EngineState
from identity_sync.store.protocols import IdentityStore
from identity_sync.sync.conflicts import ConflictDetector
from identity_sync.sync.normalizers import normalize

UNEXPECTED_ERROR_CODE = "SyncError"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class SyncOrchestrator:
    """Drives syncs for the pulled sources."""

    def __init__(
        self,
        store: IdentityStore,
        registry: SchemaRegistry,
        connectors: Dict[Source, SourceConnector],
        detector: ConflictDetector,
        state: EngineState,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.registry = registry
        self.connectors = connectors
        self.detector = detector
        self.state = state
        self.clock = clock

    # ════════════════════════════════════════════════════════════════════════
    # Sync
    # ════════════════════════════════════════════════════════════════════════

    async def sync_source(
        self, source: Source, mode: SyncMode = SyncMode.FULL, triggered_by: str = "system"
    ) -> SyncOutcome:
        """
        Run one sync for ``source``.

        Rejections (NoSyncSupported, SyncInProgress, NotConfigured) come back without a
        job. A job that fails after it started comes back with status ``failed`` and
        the error code of the failure.
        """
        connector = self.connectors.get(source)
        if source not in SYNCABLE_SOURCES or connector is None:
            return _rejected(source, NoSyncSupported(f"Source '{source.value}' does not support sync"))

        job = SyncJob(source=source, mode=mode, started_at=self.clock(), started_by=triggered_by)
        if not await self.state.try_register(source, job):
            running = self.state.get_running(source)
            logger.warning(
                "Sync already running, rejecting request",
                source=source.value,
                running_job_id=running.id if running else None,
            )
            return _rejected(source, SyncInProgress(f"A sync for '{source.value}' is already running"))

        try:
            if not connector.is_configured():
                return _rejected(source, NotConfigured(f"Source '{source.value}' is not configured"))

            logger.info("Sync started", source=source.value, job_id=job.id, mode=mode.value, triggered_by=triggered_by)
            return await self._run(job, connector)
        finally:
            await self.state.release(source, job)

    async def _run(self, job: SyncJob, connector: SourceConnector) -> SyncOutcome:
        source = job.source
        started = time.monotonic()

        try:
            since = await self.store.latest_sync_time(source) if job.mode == SyncMode.INCREMENTAL else None
            raw_records = await connector.fetch(since=since)
        except IdentitySyncError as exc:
            return self._fail(job, exc.code, exc.message, started)
        except Exception as exc:  # pylint: disable=broad-except
            logger.opt(exception=exc).error("Unexpected error while fetching", source=source.value, job_id=job.id)
            return self._fail(job, UNEXPECTED_ERROR_CODE, str(exc), started)

        if job.is_terminal:
            return self._cancelled(job)

        try:
            results = await self._process(job, raw_records, started)
        except Exception as exc:  # pylint: disable=broad-except
            logger.opt(exception=exc).error("Unexpected error while processing", source=source.value, job_id=job.id)
            return self._fail(job, UNEXPECTED_ERROR_CODE, str(exc), started)

        if job.is_terminal:
            job.results = results
            return self._cancelled(job)

        job.results = results
        job.completed_at = self.clock()
        job.status = JobStatus.CONFLICTS if results.conflicts else JobStatus.COMPLETED

        logger.success(
            "Sync finished",
            source=source.value,
            job_id=job.id,
            status=job.status.value,
            processed=results.total_processed,
            added=results.added,
            updated=results.updated,
            errors=results.errors,
            conflicts=len(results.conflicts),
            new_fields=[entry.field_name for entry in results.new_fields],
            duration_ms=results.duration_ms,
        )
        return SyncOutcome(
            success=True,
            source=source,
            job=job,
            message=f"Sync for '{source.value}' finished with status {job.status.value}",
        )

    async def _process(self, job: SyncJob, raw_records: List[dict], started: float) -> SyncResults:
        source = job.source
        now = self.clock()

        records: List[IdentityRecord] = []
        errors = 0
        for index, raw in enumerate(raw_records):
            try:
                record = normalize(source, raw, now)
            except ValueError as exc:
                logger.warning("Could not normalize record", source=source.value, index=index, error=str(exc))
                errors += 1
                continue
            if record is None:
                logger.debug("Skipping record without email", source=source.value, index=index)
                errors += 1
                continue
            records.append(record)

        migration = await self.registry.auto_migrate(source, [record.attributes for record in records])
        if migration.failed:
            logger.warning(
                "Some fields could not be migrated and will be dropped",
                source=source.value,
                fields=[failure.field_name for failure in migration.failed],
            )

        added = updated = 0
        for record in records:
            if job.is_terminal:
                break
            existing = await self.store.get_record(source, record.id) if record.id else None
            if existing is None and record.external_id:
                existing = await self.store.get_by_external_id(source, record.external_id)
            try:
                await self.store.upsert(source, record)
            except RecordUpsertError as exc:
                logger.warning(
                    "Record could not be stored",
                    source=source.value,
                    external_id=record.external_id,
                    error=exc.message,
                )
                errors += 1
                continue
            if existing is not None:
                updated += 1
            else:
                added += 1

        # Cancelled jobs skip the conflict scan
        conflicts = [] if job.is_terminal else await self.detector.detect_email_conflicts()

        return SyncResults(
            total_processed=len(raw_records),
            added=added,
            updated=updated,
            errors=errors,
            conflicts=conflicts,
            new_fields=migration.applied,
            duration_ms=_elapsed_ms(started),
        )

    def _fail(self, job: SyncJob, code: str, message: str, started: float) -> SyncOutcome:
        job.status = JobStatus.FAILED
        job.completed_at = self.clock()
        job.error_message = message
        job.results = SyncResults(duration_ms=_elapsed_ms(started))
        logger.error("Sync failed", source=job.source.value, job_id=job.id, error_code=code, error_message=message)
        return SyncOutcome(success=False, source=job.source, job=job, error_code=code, message=message)

    def _cancelled(self, job: SyncJob) -> SyncOutcome:
        logger.info("Sync stopped after cancellation", source=job.source.value, job_id=job.id)
        return SyncOutcome(
            success=False,
            source=job.source,
            job=job,
            error_code=SyncCancelled.code,
            message=job.error_message or "Sync cancelled",
        )

    def configured_sources(self) -> List[Source]:
        """Pulled sources that have a configured connector."""
        return [
            source
            for source in SYNCABLE_SOURCES
            if source in self.connectors and self.connectors[source].is_configured()
        ]

    async def sync_all_sources(self, triggered_by: str = "system") -> SyncAllSummary:
        """Sync every configured pulled source concurrently."""
        sources = self.configured_sources()
        logger.info("Syncing all sources", sources=[source.value for source in sources], triggered_by=triggered_by)

        results = await asyncio.gather(
            *(self.sync_source(source, triggered_by=triggered_by) for source in sources),
            return_exceptions=True,
        )
        return summarize_outcomes(sources, results)

    # ════════════════════════════════════════════════════════════════════════
    # Control and status
    # ════════════════════════════════════════════════════════════════════════

    async def cancel_sync(self, source: Source) -> SyncJob:
        """
        Mark the running job of ``source`` as cancelled and free the source.

        In-flight I/O is not interrupted; the job stops at its next record or once its
        fetch returns.
        """
        job = self.state.get_running(source)
        if job is None:
            raise NoSyncRunning(f"No sync running for '{source.value}'", source=source.value)

        job.status = JobStatus.FAILED
        job.completed_at = self.clock()
        job.error_message = "Sync cancelled"
        await self.state.release(source, job)

        logger.info("Sync cancelled", source=source.value, job_id=job.id)
        return job

    def is_sync_running(self, source: Source) -> bool:
        return self.state.get_running(source) is not None

    def get_running_jobs(self) -> List[SyncJob]:
        return list(self.state.running_jobs.values())

    async def get_all_source_status(self) -> List[SourceStatus]:
        statuses = []
        for source in Source:
            connector: Optional[SourceConnector] = self.connectors.get(source)
            running = self.state.get_running(source)
            statuses.append(
                SourceStatus(
                    source=source,
                    state=SourceSyncState.SYNCING if running else SourceSyncState.IDLE,
                    last_sync=await self.store.latest_sync_time(source),
                    user_count=await self.store.count(source),
                    # Pushed sources need no credentials
                    is_configured=connector.is_configured() if connector else True,
                    sync_supported=source in SYNCABLE_SOURCES and connector is not None,
                    running_job=running,
                )
            )
        return statuses

    async def test_all_connections(self) -> Dict[Source, ConnectionReport]:
        sources = list(self.connectors)
        reports = await asyncio.gather(*(self.connectors[source].test_connection() for source in sources))
        return dict(zip(sources, reports))

    async def detect_email_conflicts(self) -> List[EmailConflict]:
        return await self.detector.detect_email_conflicts()


def _rejected(source: Source, error: IdentitySyncError) -> SyncOutcome:
    logger.info("Sync request rejected", source=source.value, error_code=error.code)
    return SyncOutcome(success=False, source=source, error_code=error.code, message=error.message)


def summarize_outcomes(sources: List[Source], results: List[Any]) -> SyncAllSummary:
    """
    Tally the outcomes of a concurrent sync of ``sources``.

    ``results`` comes from ``asyncio.gather(..., return_exceptions=True)``; a raised
    exception counts as a failed sync.
    """
    summary = SyncAllSummary(total=len(sources))
    for source, result in zip(sources, results):
        if isinstance(result, BaseException):
            logger.opt(exception=result).error("Sync raised unexpectedly", source=source.value)
            result = SyncOutcome(success=False, source=source, error_code=UNEXPECTED_ERROR_CODE, message=str(result))

        summary.outcomes[source] = result
        if result.job is not None and result.job.status == JobStatus.CONFLICTS:
            summary.conflicts += 1
        elif result.success:
            summary.completed += 1
        else:
            summary.failed += 1

    return summary
