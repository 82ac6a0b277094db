"""
Scheduler Service

Owns schedule CRUD, cron trigger registration, run history and the retry loop.

Schedule state machine:
    inactive -> active    trigger registered
    inactive -> error     trigger registration failed
    active   -> inactive  stopped, disabled or deleted

Retry budget: every failed or conflicted run belongs to a chain whose id is the id of the
run that started it. A new retry is queued only while the chain holds fewer ``retry``
history entries than the schedule's ``retry_attempts``.
"""

import asyncio
import contextlib
import time
from datetime import datetime
from datetime import timedelta
from functools import partial
from typing import List
from typing import Optional
from zoneinfo import ZoneInfo

from loguru import logger

from identity_sync.clock import Clock
from identity_sync.clock import utc_now
from identity_sync.enums import SYNCABLE_SOURCES
from identity_sync.enums import HistoryStatus
from identity_sync.enums import JobStatus
from identity_sync.enums import ScheduleStatus
from identity_sync.enums import Source
from identity_sync.enums import SyncMode
from identity_sync.enums import TriggerType
from identity_sync.errors import NON_RETRYABLE_CODES
from identity_sync.errors import ScheduleNotFound
from identity_sync.models.schedule import HistoryEntry
from identity_sync.models.schedule import RetryState
from identity_sync.models.schedule import Schedule
from identity_sync.models.schedule import ScheduleCreate
from identity_sync.models.schedule import ScheduleUpdate
from identity_sync.models.schedule import SyncStats
from identity_sync.models.sync import SyncAllSummary
from identity_sync.models.sync import SyncOutcome
from identity_sync.scheduler.cron import compute_next_run
from identity_sync.scheduler.retry import RetryQueue
from identity_sync.scheduler.triggers import TriggerBackend
from identity_sync.state import EngineState
from identity_sync.store.protocols import HistoryRepositoryProtocol
from identity_sync.store.protocols import ScheduleRepositoryProtocol
from identity_sync.sync.orchestrator import SyncOrchestrator
from identity_sync.sync.orchestrator import summarize_outcomes

# (source, cron, description); created disabled unless the source is configured
DEFAULT_SCHEDULES = (
    (Source.DIRECTORY, "0 6 * * *", "Daily directory sync at 06:00"),
    (Source.LDAP, "15 6 * * *", "Daily LDAP sync at 06:15"),
)

# Fields whose change requires the trigger to be re-registered
TRIGGER_FIELDS = frozenset({"enabled", "cron_expression", "timezone"})

HISTORY_STATUS_BY_JOB_STATUS = {
    JobStatus.COMPLETED: HistoryStatus.COMPLETED,
    JobStatus.CONFLICTS: HistoryStatus.CONFLICTS,
    JobStatus.FAILED: HistoryStatus.FAILED,
    JobStatus.RUNNING: HistoryStatus.FAILED,
}


class SchedulerService:
    """Cron schedules, history and retries for the pulled sources."""

    def __init__(
        self,
        schedules: ScheduleRepositoryProtocol,
        history: HistoryRepositoryProtocol,
        orchestrator: SyncOrchestrator,
        state: EngineState,
        backend: TriggerBackend,
        retry_queue: Optional[RetryQueue] = None,
        clock: Clock = utc_now,
        default_timezone: str = "Europe/Berlin",
        poll_interval_seconds: float = 30.0,
    ):
        self.schedules = schedules
        self.history = history
        self.orchestrator = orchestrator
        self.state = state
        self.backend = backend
        self.retry_queue = retry_queue if retry_queue is not None else RetryQueue()
        self.clock = clock
        self.default_timezone = default_timezone
        self.poll_interval_seconds = poll_interval_seconds
        self._retry_task: Optional[asyncio.Task] = None

    # ════════════════════════════════════════════════════════════════════════
    # Lifecycle
    # ════════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Start the trigger backend, register every enabled schedule and start the retry loop."""
        self.backend.start()
        for schedule in await self.schedules.list():
            if schedule.enabled:
                await self._register(schedule)
            elif schedule.status != ScheduleStatus.INACTIVE:
                # Status left over from a previous process
                await self._save(schedule.model_copy(update={"status": ScheduleStatus.INACTIVE}))

        if self._retry_task is None:
            self._retry_task = asyncio.create_task(self.run_retry_loop())
        logger.success("Scheduler started", triggers=len(self.state.triggers))

    async def shutdown(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retry_task
            self._retry_task = None

        for schedule_id in list(self.state.triggers):
            self._unregister(schedule_id)
        self.backend.shutdown()

        if len(self.retry_queue):
            logger.warning("Dropping pending retries on shutdown", pending=len(self.retry_queue))
        self.retry_queue.clear()
        logger.info("Scheduler stopped")

    # ════════════════════════════════════════════════════════════════════════
    # Schedule CRUD
    # ════════════════════════════════════════════════════════════════════════

    async def create_schedule(self, data: ScheduleCreate) -> Schedule:
        now = self.clock()
        tz_name = data.timezone or self.default_timezone
        schedule = Schedule(
            **data.model_dump(exclude={"timezone"}),
            timezone=tz_name,
            status=ScheduleStatus.INACTIVE,
            next_run_at=compute_next_run(data.cron_expression, tz_name, now),
            created_at=now,
            updated_at=now,
        )
        await self.schedules.create(schedule)
        logger.info(
            "Schedule created",
            schedule_id=schedule.id,
            source=schedule.source.value,
            cron=schedule.cron_expression,
            enabled=schedule.enabled,
        )

        if schedule.enabled:
            schedule = await self._register(schedule)
        return schedule

    async def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.schedules.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(f"Schedule {schedule_id} not found")
        return schedule

    async def list_schedules(self) -> List[Schedule]:
        return await self.schedules.list()

    async def update_schedule(self, schedule_id: str, data: ScheduleUpdate) -> Schedule:
        schedule = await self.get_schedule(schedule_id)
        changes = {key: value for key, value in data.model_dump(exclude_unset=True).items() if value is not None}
        if not changes:
            return schedule

        updated = schedule.model_copy(update=changes)
        if not TRIGGER_FIELDS & changes.keys():
            return await self._save(updated)

        # Always cancel before re-registering so a schedule never holds two triggers
        self._unregister(schedule_id)
        if updated.enabled:
            return await self._register(updated)

        self.retry_queue.discard(schedule_id)
        return await self._save(updated.model_copy(update={"status": ScheduleStatus.INACTIVE}))

    async def delete_schedule(self, schedule_id: str) -> None:
        await self.get_schedule(schedule_id)
        self._unregister(schedule_id)
        self.retry_queue.discard(schedule_id)
        await self.schedules.delete(schedule_id)
        logger.info("Schedule deleted", schedule_id=schedule_id)

    async def start_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.get_schedule(schedule_id)
        return await self._register(schedule.model_copy(update={"enabled": True}))

    async def stop_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.get_schedule(schedule_id)
        self._unregister(schedule_id)
        self.retry_queue.discard(schedule_id)
        stopped = await self._save(schedule.model_copy(update={"enabled": False, "status": ScheduleStatus.INACTIVE}))
        logger.info("Schedule stopped", schedule_id=schedule_id)
        return stopped

    async def create_default_schedules(self) -> List[Schedule]:
        """Create the daily directory/ldap schedules when no schedule exists yet."""
        if await self.schedules.list():
            return []

        created = []
        for source, cron_expression, description in DEFAULT_SCHEDULES:
            connector = self.orchestrator.connectors.get(source)
            configured = connector is not None and connector.is_configured()
            created.append(
                await self.create_schedule(
                    ScheduleCreate(
                        source=source,
                        cron_expression=cron_expression,
                        description=description,
                        enabled=configured,
                        timezone=self.default_timezone,
                    )
                )
            )
        logger.info("Default schedules created", count=len(created))
        return created

    async def _save(self, schedule: Schedule) -> Schedule:
        schedule = schedule.model_copy(update={"updated_at": self.clock()})
        return await self.schedules.update(schedule)

    async def _register(self, schedule: Schedule) -> Schedule:
        """Register the trigger (replacing any existing one) and persist the new status."""
        self._unregister(schedule.id)
        try:
            handle = self.backend.register_trigger(
                schedule.cron_expression,
                schedule.timezone,
                partial(self.fire, schedule.id),
                name=f"sync-{schedule.source.value}-{schedule.id}",
            )
        except ValueError as exc:
            logger.error(
                "Trigger registration failed",
                schedule_id=schedule.id,
                cron=schedule.cron_expression,
                error=str(exc),
            )
            return await self._save(schedule.model_copy(update={"status": ScheduleStatus.ERROR}))

        self.state.triggers[schedule.id] = handle
        next_run = self.backend.next_fire_time(handle) or compute_next_run(
            schedule.cron_expression, schedule.timezone, self.clock()
        )
        logger.info("Schedule active", schedule_id=schedule.id, source=schedule.source.value, next_run_at=next_run)
        return await self._save(schedule.model_copy(update={"status": ScheduleStatus.ACTIVE, "next_run_at": next_run}))

    def _unregister(self, schedule_id: str) -> None:
        handle = self.state.triggers.pop(schedule_id, None)
        if handle is not None:
            self.backend.cancel(handle)

    # ════════════════════════════════════════════════════════════════════════
    # Runs
    # ════════════════════════════════════════════════════════════════════════

    async def fire(self, schedule_id: str) -> Optional[HistoryEntry]:
        """Trigger callback: run the schedule's sync once."""
        schedule = await self.schedules.get(schedule_id)
        if schedule is None or not schedule.enabled:
            logger.warning("Trigger fired for missing or disabled schedule", schedule_id=schedule_id)
            self._unregister(schedule_id)
            return None
        return await self._run_schedule(schedule, TriggerType.SCHEDULED)

    async def _run_schedule(
        self, schedule: Schedule, trigger_type: TriggerType, chain_id: Optional[str] = None
    ) -> HistoryEntry:
        entry, outcome = await self._run_with_history(
            schedule.source, trigger_type, "scheduler", schedule_id=schedule.id, chain_id=chain_id
        )

        # Re-read so a concurrent edit of the schedule is not overwritten
        current = await self.schedules.get(schedule.id)
        if current is not None:
            handle = self.state.triggers.get(schedule.id)
            next_run = (self.backend.next_fire_time(handle) if handle is not None else None) or compute_next_run(
                current.cron_expression, current.timezone, self.clock()
            )
            await self._save(current.model_copy(update={"last_run_at": entry.start_time, "next_run_at": next_run}))
            schedule = current

        if self._should_retry(schedule, outcome):
            await self._enqueue_retry(schedule, entry.chain_id)
        return entry

    async def _run_with_history(
        self,
        source: Source,
        trigger_type: TriggerType,
        triggered_by: str,
        schedule_id: Optional[str] = None,
        chain_id: Optional[str] = None,
        mode: SyncMode = SyncMode.FULL,
    ):
        now = self.clock()
        entry = HistoryEntry(
            schedule_id=schedule_id,
            source=source,
            trigger_type=trigger_type,
            start_time=now,
            created_at=now,
        )
        entry.chain_id = chain_id or entry.id
        await self.history.create(entry)

        started = time.monotonic()
        outcome = await self.orchestrator.sync_source(source, mode, triggered_by=triggered_by)
        entry = await self._finalize(entry, outcome, int((time.monotonic() - started) * 1000))
        return entry, outcome

    async def _finalize(self, entry: HistoryEntry, outcome: SyncOutcome, elapsed_ms: int) -> HistoryEntry:
        job = outcome.job
        results = job.results if job is not None else None
        status = HISTORY_STATUS_BY_JOB_STATUS[job.status] if job is not None else HistoryStatus.FAILED

        error_message = None
        if status == HistoryStatus.FAILED:
            error_message = f"{outcome.error_code}: {outcome.message}" if outcome.error_code else outcome.message
        elif status == HistoryStatus.CONFLICTS:
            error_message = f"{len(results.conflicts)} email conflicts across sources"

        finalized = entry.model_copy(
            update={
                "status": status,
                "end_time": self.clock(),
                "users_processed": results.total_processed if results else 0,
                "users_added": results.added if results else 0,
                "users_updated": results.updated if results else 0,
                "errors": results.errors if results else 0,
                "error_message": error_message,
                "duration_ms": results.duration_ms if results and results.duration_ms else elapsed_ms,
            }
        )
        await self.history.finalize(finalized)
        logger.info(
            "Run recorded",
            history_id=finalized.id,
            source=finalized.source.value,
            trigger_type=finalized.trigger_type.value,
            status=finalized.status.value,
        )
        return finalized

    def _should_retry(self, schedule: Schedule, outcome: SyncOutcome) -> bool:
        if not schedule.retry_on_error or outcome.error_code in NON_RETRYABLE_CODES:
            return False
        if outcome.job is not None:
            return outcome.job.status in (JobStatus.FAILED, JobStatus.CONFLICTS)
        return not outcome.success

    async def _enqueue_retry(self, schedule: Schedule, chain_id: str) -> Optional[RetryState]:
        used = await self.history.count_retries(chain_id)
        if used >= schedule.retry_attempts:
            logger.warning(
                "Retry budget exhausted", schedule_id=schedule.id, chain_id=chain_id, attempts=schedule.retry_attempts
            )
            return None

        retry = RetryState(
            schedule_id=schedule.id,
            chain_id=chain_id,
            attempt=used + 1,
            max_attempts=schedule.retry_attempts,
            next_attempt_at=self.clock() + timedelta(minutes=schedule.retry_delay_minutes),
        )
        if not self.retry_queue.push(retry):
            return None
        logger.info(
            "Retry scheduled",
            schedule_id=schedule.id,
            attempt=retry.attempt,
            max_attempts=retry.max_attempts,
            next_attempt_at=retry.next_attempt_at,
        )
        return retry

    async def process_due_retries(self, now: Optional[datetime] = None) -> List[HistoryEntry]:
        """Run every retry due at ``now``; returns the history entries of the retries that ran."""
        entries = []
        for retry in self.retry_queue.pop_due(now or self.clock()):
            schedule = await self.schedules.get(retry.schedule_id)
            if schedule is None or not schedule.enabled:
                logger.info("Skipping retry of missing or disabled schedule", schedule_id=retry.schedule_id)
                continue
            logger.info("Running retry", schedule_id=schedule.id, attempt=retry.attempt, chain_id=retry.chain_id)
            entries.append(await self._run_schedule(schedule, TriggerType.RETRY, chain_id=retry.chain_id))
        return entries

    async def run_retry_loop(self) -> None:
        """Poll the retry queue until cancelled."""
        while True:
            try:
                await self.process_due_retries()
            except asyncio.CancelledError:
                raise
            except Exception as e:  # pylint: disable=broad-except
                logger.opt(exception=e).error("Retry loop iteration failed")
            await asyncio.sleep(self.poll_interval_seconds)

    async def trigger_manual_sync(
        self, source: Source, triggered_by: str = "manual", mode: SyncMode = SyncMode.FULL
    ) -> SyncOutcome:
        """
        Run a sync now and record it in history. Manual runs are never retried.

        Sources that cannot be synced are rejected without a history entry.
        """
        if source not in SYNCABLE_SOURCES:
            return await self.orchestrator.sync_source(source, mode, triggered_by=triggered_by)
        _, outcome = await self._run_with_history(source, TriggerType.MANUAL, triggered_by, mode=mode)
        return outcome

    async def trigger_manual_sync_all(self, triggered_by: str = "manual") -> SyncAllSummary:
        """Run every configured pulled source now, concurrently, recording each run in history."""
        sources = self.orchestrator.configured_sources()
        logger.info("Manual sync of all sources", sources=[source.value for source in sources], triggered_by=triggered_by)

        async def run(source: Source) -> SyncOutcome:
            _, outcome = await self._run_with_history(source, TriggerType.MANUAL, triggered_by)
            return outcome

        results = await asyncio.gather(*(run(source) for source in sources), return_exceptions=True)
        return summarize_outcomes(sources, results)

    # ════════════════════════════════════════════════════════════════════════
    # History
    # ════════════════════════════════════════════════════════════════════════

    async def get_sync_history(self, limit: int = 50) -> List[HistoryEntry]:
        return await self.history.list_recent(limit)

    async def get_sync_stats(self) -> SyncStats:
        local_now = self.clock().astimezone(ZoneInfo(self.default_timezone))
        today_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.history.get_stats(today_start)
