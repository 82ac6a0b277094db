"""
Trigger backends

The scheduler service only needs "call this coroutine on this cron expression" and
"stop calling it". Production uses APScheduler; tests inject a fake.
"""

from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import Protocol
from zoneinfo import ZoneInfo

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

TriggerCallback = Callable[[], Awaitable[None]]

# A fire missed by less than this (event loop busy, process paused) still runs
MISFIRE_GRACE_SECONDS = 300


class TriggerBackend(Protocol):
    def start(self) -> None:
        ...

    def shutdown(self) -> None:
        ...

    def register_trigger(
        self, cron_expression: str, timezone_name: str, callback: TriggerCallback, name: Optional[str] = None
    ) -> Any:
        """
        Fire ``callback`` on every match of ``cron_expression``.

        Returns an opaque handle for cancel().

        Raises:
            ValueError: the expression or timezone cannot be scheduled
        """
        ...

    def cancel(self, handle: Any) -> None:
        ...

    def next_fire_time(self, handle: Any) -> Optional[datetime]:
        ...


class APSchedulerBackend:
    """Cron triggers on an APScheduler AsyncIOScheduler (in-memory job store)."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Trigger backend started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Trigger backend stopped")

    def register_trigger(
        self, cron_expression: str, timezone_name: str, callback: TriggerCallback, name: Optional[str] = None
    ) -> str:
        try:
            trigger = CronTrigger.from_crontab(cron_expression, timezone=ZoneInfo(timezone_name))
        except KeyError as e:
            # ZoneInfoNotFoundError is a KeyError
            raise ValueError(f"Unknown timezone: {timezone_name}") from e

        job = self.scheduler.add_job(
            callback,
            trigger=trigger,
            name=name,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
        )
        logger.debug("Registered cron trigger", job_id=job.id, cron=cron_expression, timezone=timezone_name)
        return job.id

    def cancel(self, handle: str) -> None:
        try:
            self.scheduler.remove_job(handle)
        except JobLookupError:
            logger.debug("Trigger already removed", job_id=handle)

    def next_fire_time(self, handle: str) -> Optional[datetime]:
        job = self.scheduler.get_job(handle)
        if job is None:
            return None
        # Pending jobs (scheduler not started yet) have no next_run_time attribute
        next_run = getattr(job, "next_run_time", None)
        return next_run.astimezone(timezone.utc) if next_run else None
