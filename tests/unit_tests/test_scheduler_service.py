"""Tests for schedules, run history and retries."""

from datetime import datetime
from datetime import timezone

import pytest

from identity_sync.enums import HistoryStatus
from identity_sync.enums import ScheduleStatus
from identity_sync.enums import Source
from identity_sync.enums import TriggerType
from identity_sync.errors import NoSyncSupported
from identity_sync.errors import ScheduleNotFound
from identity_sync.errors import SourceConnectionError
from identity_sync.models.ingest import ManualRecordCreate
from identity_sync.models.schedule import ScheduleCreate
from identity_sync.models.schedule import ScheduleUpdate

LDAP_ENTRY = {"dn": "CN=Jane Doe,OU=Staff,DC=example,DC=com", "mail": "jane.doe@example.com", "givenName": "Jane"}


def _ldap_schedule(**kwargs):
    data = {"source": Source.LDAP, "cron_expression": "0 6 * * *"}
    data.update(kwargs)
    return ScheduleCreate(**data)


class TestScheduleLifecycle:
    """Trigger registration follows the schedule's enabled flag."""

    @pytest.mark.asyncio
    async def test_create_enabled_registers_trigger(self, engine, trigger_backend):
        await engine.initialize()

        schedule = await engine.scheduler.create_schedule(_ldap_schedule())

        assert schedule.status == ScheduleStatus.ACTIVE
        assert schedule.timezone == "Europe/Berlin"
        assert schedule.next_run_at == datetime(2026, 1, 6, 5, 0, tzinfo=timezone.utc)
        handle = engine.state.triggers[schedule.id]
        assert trigger_backend.triggers[handle]["cron_expression"] == "0 6 * * *"
        assert trigger_backend.triggers[handle]["timezone"] == "Europe/Berlin"

    @pytest.mark.asyncio
    async def test_create_disabled_stays_inactive(self, engine, trigger_backend):
        await engine.initialize()

        schedule = await engine.scheduler.create_schedule(_ldap_schedule(enabled=False))

        assert schedule.status == ScheduleStatus.INACTIVE
        assert schedule.id not in engine.state.triggers
        assert trigger_backend.triggers == {}

    @pytest.mark.asyncio
    async def test_rejected_trigger_sets_error_status(self, engine, trigger_backend):
        await engine.initialize()
        trigger_backend.reject("0 6 * * *")

        schedule = await engine.scheduler.create_schedule(_ldap_schedule())

        assert schedule.status == ScheduleStatus.ERROR
        assert schedule.id not in engine.state.triggers
        assert (await engine.scheduler.get_schedule(schedule.id)).status == ScheduleStatus.ERROR

        trigger_backend.rejected_expressions.clear()
        restarted = await engine.scheduler.start_schedule(schedule.id)
        assert restarted.status == ScheduleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_cron_change_replaces_trigger(self, engine, trigger_backend):
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())
        old_handle = engine.state.triggers[schedule.id]

        updated = await engine.scheduler.update_schedule(schedule.id, ScheduleUpdate(cron_expression="30 7 * * 1-5"))

        new_handle = engine.state.triggers[schedule.id]
        assert updated.cron_expression == "30 7 * * 1-5"
        assert old_handle in trigger_backend.cancelled
        assert new_handle != old_handle
        assert list(trigger_backend.triggers) == [new_handle]

    @pytest.mark.asyncio
    async def test_non_trigger_change_keeps_trigger(self, engine, trigger_backend):
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())
        handle = engine.state.triggers[schedule.id]

        updated = await engine.scheduler.update_schedule(schedule.id, ScheduleUpdate(description="nightly"))

        assert updated.description == "nightly"
        assert engine.state.triggers[schedule.id] == handle
        assert trigger_backend.cancelled == []

    @pytest.mark.asyncio
    async def test_disable_via_update(self, engine, trigger_backend):
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())

        updated = await engine.scheduler.update_schedule(schedule.id, ScheduleUpdate(enabled=False))

        assert updated.status == ScheduleStatus.INACTIVE
        assert schedule.id not in engine.state.triggers
        assert trigger_backend.triggers == {}

    @pytest.mark.asyncio
    async def test_stop_and_start(self, engine, trigger_backend):
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())

        stopped = await engine.scheduler.stop_schedule(schedule.id)
        assert stopped.enabled is False
        assert stopped.status == ScheduleStatus.INACTIVE
        assert trigger_backend.triggers == {}

        started = await engine.scheduler.start_schedule(schedule.id)
        assert started.enabled is True
        assert started.status == ScheduleStatus.ACTIVE
        assert len(trigger_backend.triggers) == 1

    @pytest.mark.asyncio
    async def test_delete(self, engine, trigger_backend):
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())

        await engine.scheduler.delete_schedule(schedule.id)

        assert trigger_backend.triggers == {}
        with pytest.raises(ScheduleNotFound):
            await engine.scheduler.get_schedule(schedule.id)
        with pytest.raises(ScheduleNotFound):
            await engine.scheduler.delete_schedule(schedule.id)

    @pytest.mark.asyncio
    async def test_start_registers_stored_schedules(self, engine, trigger_backend):
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())
        disabled = await engine.scheduler.create_schedule(_ldap_schedule(enabled=False))

        await engine.scheduler.start()
        try:
            assert trigger_backend.running
            assert schedule.id in engine.state.triggers
            assert disabled.id not in engine.state.triggers
            assert len(trigger_backend.triggers) == 1
        finally:
            await engine.scheduler.shutdown()

        assert not trigger_backend.running
        assert engine.state.triggers == {}


class TestDefaultSchedules:
    @pytest.mark.asyncio
    async def test_enabled_only_for_configured_sources(self, engine, ldap_connector):
        ldap_connector.configured = False
        await engine.initialize()

        created = await engine.scheduler.create_default_schedules()

        by_source = {schedule.source: schedule for schedule in created}
        assert by_source[Source.DIRECTORY].enabled is True
        assert by_source[Source.DIRECTORY].status == ScheduleStatus.ACTIVE
        assert by_source[Source.DIRECTORY].cron_expression == "0 6 * * *"
        assert by_source[Source.LDAP].enabled is False
        assert by_source[Source.LDAP].status == ScheduleStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_only_when_no_schedule_exists(self, engine):
        await engine.initialize()
        await engine.scheduler.create_default_schedules()

        assert await engine.scheduler.create_default_schedules() == []
        assert len(await engine.scheduler.list_schedules()) == 2


class TestScheduledRuns:
    """Trigger callbacks write history and update the schedule."""

    @pytest.mark.asyncio
    async def test_fire_records_history(self, engine, trigger_backend, ldap_connector, clock):
        ldap_connector.seed(LDAP_ENTRY)
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())

        await trigger_backend.fire(engine.state.triggers[schedule.id])

        history = await engine.scheduler.get_sync_history()
        assert len(history) == 1
        entry = history[0]
        assert entry.trigger_type == TriggerType.SCHEDULED
        assert entry.status == HistoryStatus.COMPLETED
        assert entry.schedule_id == schedule.id
        assert entry.chain_id == entry.id
        assert entry.users_processed == 1
        assert entry.users_added == 1
        assert entry.end_time is not None
        assert (await engine.scheduler.get_schedule(schedule.id)).last_run_at == clock()

    @pytest.mark.asyncio
    async def test_fire_for_disabled_schedule_does_nothing(self, engine):
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule(enabled=False))

        assert await engine.scheduler.fire(schedule.id) is None
        assert await engine.scheduler.get_sync_history() == []


class TestRetries:
    """Failed scheduled runs are retried within the schedule's budget."""

    @pytest.mark.asyncio
    async def test_retry_budget(self, engine, trigger_backend, ldap_connector, clock):
        ldap_connector.fail_with(SourceConnectionError("LDAP server unreachable", source="ldap"))
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule(retry_attempts=2, retry_delay_minutes=5))

        first = await trigger_backend.fire(engine.state.triggers[schedule.id])
        assert first.status == HistoryStatus.FAILED
        assert first.error_message == "ConnectionError: LDAP server unreachable"
        assert len(engine.scheduler.retry_queue) == 1

        # Not due yet
        assert await engine.scheduler.process_due_retries() == []

        for _ in range(3):
            clock.advance(minutes=5)
            await engine.scheduler.process_due_retries()

        history = await engine.scheduler.get_sync_history()
        retries = [entry for entry in history if entry.trigger_type == TriggerType.RETRY]
        assert len(history) == 3
        assert len(retries) == 2
        assert all(entry.chain_id == first.id for entry in retries)
        assert all(entry.status == HistoryStatus.FAILED for entry in retries)
        assert len(engine.scheduler.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_successful_retry_ends_chain(self, engine, trigger_backend, ldap_connector, clock):
        ldap_connector.seed(LDAP_ENTRY)
        ldap_connector.fail_with(SourceConnectionError("timeout"))
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule(retry_delay_minutes=1))
        await trigger_backend.fire(engine.state.triggers[schedule.id])

        ldap_connector.fail_with(None)
        clock.advance(minutes=1)
        entries = await engine.scheduler.process_due_retries()

        assert [entry.status for entry in entries] == [HistoryStatus.COMPLETED]
        assert len(engine.scheduler.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_conflicts_are_retried(self, engine, trigger_backend, ldap_connector, clock):
        ldap_connector.seed(LDAP_ENTRY)
        await engine.initialize()
        await engine.manual.create_record(ManualRecordCreate(email="jane.doe@example.com"))
        schedule = await engine.scheduler.create_schedule(_ldap_schedule(retry_attempts=2, retry_delay_minutes=5))

        first = await trigger_backend.fire(engine.state.triggers[schedule.id])

        assert first.status == HistoryStatus.CONFLICTS
        assert len(engine.scheduler.retry_queue) == 1

        clock.advance(minutes=5)
        [retry] = await engine.scheduler.process_due_retries()

        assert retry.trigger_type == TriggerType.RETRY
        assert retry.chain_id == first.id
        assert retry.status == HistoryStatus.CONFLICTS
        assert len(engine.scheduler.retry_queue) == 1

    @pytest.mark.asyncio
    async def test_not_configured_is_not_retried(self, engine, trigger_backend, ldap_connector):
        ldap_connector.configured = False
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())

        entry = await trigger_backend.fire(engine.state.triggers[schedule.id])

        assert entry.status == HistoryStatus.FAILED
        assert entry.error_message.startswith("NotConfigured")
        assert len(engine.scheduler.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_retry_disabled(self, engine, trigger_backend, ldap_connector):
        ldap_connector.fail_with(SourceConnectionError("timeout"))
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule(retry_on_error=False))

        await trigger_backend.fire(engine.state.triggers[schedule.id])

        assert len(engine.scheduler.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_stopping_schedule_drops_pending_retries(self, engine, trigger_backend, ldap_connector):
        ldap_connector.fail_with(SourceConnectionError("timeout"))
        await engine.initialize()
        schedule = await engine.scheduler.create_schedule(_ldap_schedule())
        await trigger_backend.fire(engine.state.triggers[schedule.id])

        await engine.scheduler.stop_schedule(schedule.id)

        assert len(engine.scheduler.retry_queue) == 0


class TestManualSync:
    @pytest.mark.asyncio
    async def test_manual_run_is_recorded(self, engine, ldap_connector):
        ldap_connector.seed(LDAP_ENTRY)
        await engine.initialize()

        outcome = await engine.scheduler.trigger_manual_sync(Source.LDAP, triggered_by="operator")

        assert outcome.success
        assert outcome.job.started_by == "operator"
        history = await engine.scheduler.get_sync_history()
        assert [entry.trigger_type for entry in history] == [TriggerType.MANUAL]
        assert history[0].schedule_id is None

    @pytest.mark.asyncio
    async def test_failed_manual_run_is_never_retried(self, engine, ldap_connector):
        ldap_connector.fail_with(SourceConnectionError("timeout"))
        await engine.initialize()

        outcome = await engine.scheduler.trigger_manual_sync(Source.LDAP)

        assert not outcome.success
        assert outcome.error_code == SourceConnectionError.code
        assert len(engine.scheduler.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_sync_all_records_each_run(self, engine, ldap_connector, directory_connector):
        ldap_connector.seed(LDAP_ENTRY)
        directory_connector.fail_with(SourceConnectionError("Graph unavailable"))
        await engine.initialize()

        summary = await engine.scheduler.trigger_manual_sync_all(triggered_by="operator")

        assert summary.total == 2
        assert summary.completed == 1
        assert summary.failed == 1
        history = await engine.scheduler.get_sync_history()
        assert {entry.source: entry.status for entry in history} == {
            Source.LDAP: HistoryStatus.COMPLETED,
            Source.DIRECTORY: HistoryStatus.FAILED,
        }
        assert all(entry.trigger_type == TriggerType.MANUAL for entry in history)
        assert len(engine.scheduler.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_sync_all_skips_unconfigured_sources(self, engine, ldap_connector, directory_connector):
        ldap_connector.seed(LDAP_ENTRY)
        directory_connector.configured = False
        await engine.initialize()

        summary = await engine.scheduler.trigger_manual_sync_all()

        assert summary.total == 1
        assert set(summary.outcomes) == {Source.LDAP}
        assert [entry.source for entry in await engine.scheduler.get_sync_history()] == [Source.LDAP]

    @pytest.mark.asyncio
    async def test_pushed_source_is_rejected_without_history(self, engine):
        await engine.initialize()

        outcome = await engine.scheduler.trigger_manual_sync(Source.UPLOAD)

        assert outcome.job is None
        assert outcome.error_code == NoSyncSupported.code
        assert await engine.scheduler.get_sync_history() == []


class TestSyncStats:
    @pytest.mark.asyncio
    async def test_stats(self, engine, ldap_connector, directory_connector):
        ldap_connector.seed(LDAP_ENTRY)
        directory_connector.fail_with(SourceConnectionError("Graph unavailable"))
        await engine.initialize()
        await engine.scheduler.trigger_manual_sync(Source.LDAP)
        await engine.scheduler.trigger_manual_sync(Source.DIRECTORY)

        stats = await engine.scheduler.get_sync_stats()

        assert stats.total_syncs == 2
        assert stats.today_syncs == 2
        assert [entry.source for entry in stats.recent_errors] == [Source.DIRECTORY]
        assert stats.per_source[Source.LDAP].count == 1
        assert stats.per_source[Source.LDAP].users_processed == 1
