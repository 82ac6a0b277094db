"""Tests for the APScheduler trigger backend."""

import asyncio
from datetime import datetime
from datetime import timezone

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from identity_sync.scheduler.triggers import APSchedulerBackend


async def _noop():
    return None


@pytest.fixture
def backend():
    return APSchedulerBackend(AsyncIOScheduler(timezone=timezone.utc))


class TestAPSchedulerBackend:
    def test_register_and_cancel(self, backend):
        handle = backend.register_trigger("0 6 * * *", "Europe/Berlin", _noop, name="ldap sync")

        job = backend.scheduler.get_job(handle)
        assert job is not None
        assert job.name == "ldap sync"
        assert str(job.trigger.timezone) == "Europe/Berlin"

        backend.cancel(handle)
        assert backend.scheduler.get_job(handle) is None

    def test_cancel_unknown_handle_is_ignored(self, backend):
        backend.cancel("does-not-exist")

    def test_invalid_cron(self, backend):
        with pytest.raises(ValueError):
            backend.register_trigger("61 6 * * *", "Europe/Berlin", _noop)

    def test_unknown_timezone(self, backend):
        with pytest.raises(ValueError, match="Unknown timezone"):
            backend.register_trigger("0 6 * * *", "Mars/Olympus_Mons", _noop)

    def test_next_fire_time_before_start(self, backend):
        handle = backend.register_trigger("0 6 * * *", "Europe/Berlin", _noop)

        assert backend.next_fire_time(handle) is None
        assert backend.next_fire_time("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_next_fire_time_once_started(self, backend):
        handle = backend.register_trigger("0 6 * * *", "Europe/Berlin", _noop)
        backend.start()
        try:
            next_run = backend.next_fire_time(handle)
            assert next_run is not None
            assert next_run.tzinfo == timezone.utc
            assert next_run > datetime.now(timezone.utc)
            assert backend.scheduler.running
        finally:
            backend.shutdown()
        # AsyncIOScheduler stops on the next event loop iteration
        await asyncio.sleep(0)
        assert not backend.scheduler.running
