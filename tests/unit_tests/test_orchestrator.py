"""Tests for the sync orchestrator."""

import asyncio

import pytest
from pydantic import ValidationError

from identity_sync.enums import DataType
from identity_sync.enums import JobStatus
from identity_sync.enums import Source
from identity_sync.enums import SourceSyncState
from identity_sync.enums import SyncMode
from identity_sync.errors import NoSyncRunning
from identity_sync.errors import NoSyncSupported
from identity_sync.errors import NotConfigured
from identity_sync.errors import SourceConnectionError
from identity_sync.errors import SyncCancelled
from identity_sync.errors import SyncInProgress
from identity_sync.sync.orchestrator import UNEXPECTED_ERROR_CODE
from tests.consts import FIXED_NOW

DIRECTORY_USER = {"id": "u1", "mail": "a@x.com", "givenName": "A"}
LDAP_ENTRY = {"dn": "CN=A,OU=Staff,DC=example,DC=com", "mail": "A@X.com", "sn": "Smith"}


class TestSyncSource:
    """End-to-end runs against the in-memory store."""

    @pytest.mark.asyncio
    async def test_first_sync_adds_and_registers_fields(self, engine, directory_connector):
        directory_connector.seed(DIRECTORY_USER)
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.DIRECTORY, triggered_by="test")

        assert outcome.success
        job = outcome.job
        assert job.status == JobStatus.COMPLETED
        assert job.started_by == "test"
        assert job.completed_at == FIXED_NOW
        assert job.results.total_processed == 1
        assert job.results.added == 1
        assert job.results.updated == 0
        assert job.results.errors == 0

        fields = {entry.field_name: entry for entry in await engine.store.get_field_registry(Source.DIRECTORY)}
        assert fields["mail"].data_type == DataType.TEXT
        assert fields["mail"].max_length == 255
        assert "mail" in {entry.field_name for entry in job.results.new_fields}

        stored = await engine.store.get_record(Source.DIRECTORY, "directory_u1")
        assert stored.email == "a@x.com"
        assert stored.first_name == "A"
        assert stored.attributes["mail"] == "a@x.com"

    @pytest.mark.asyncio
    async def test_second_sync_updates(self, engine, directory_connector):
        directory_connector.seed(DIRECTORY_USER)
        await engine.initialize()
        await engine.orchestrator.sync_source(Source.DIRECTORY)

        directory_connector.replace({**DIRECTORY_USER, "givenName": "Anna"})
        outcome = await engine.orchestrator.sync_source(Source.DIRECTORY)

        assert outcome.job.results.added == 0
        assert outcome.job.results.updated == 1
        assert outcome.job.results.new_fields == []
        assert (await engine.store.get_record(Source.DIRECTORY, "directory_u1")).first_name == "Anna"
        assert await engine.store.count(Source.DIRECTORY) == 1

    @pytest.mark.asyncio
    async def test_records_without_email_are_errors(self, engine, directory_connector):
        directory_connector.seed(DIRECTORY_USER, {"id": "u2", "displayName": "No Mail"})
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.DIRECTORY)

        assert outcome.job.status == JobStatus.COMPLETED
        assert outcome.job.results.total_processed == 2
        assert outcome.job.results.added == 1
        assert outcome.job.results.errors == 1

    @pytest.mark.asyncio
    async def test_duplicate_email_within_source_is_counted(self, engine, directory_connector):
        directory_connector.seed(DIRECTORY_USER, {"id": "u2", "mail": "A@x.com"})
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.DIRECTORY)

        assert outcome.job.results.added == 1
        assert outcome.job.results.errors == 1

    @pytest.mark.asyncio
    async def test_dn_case_change_counts_as_update(self, engine, ldap_connector):
        ldap_connector.seed(LDAP_ENTRY)
        await engine.initialize()
        await engine.orchestrator.sync_source(Source.LDAP)

        ldap_connector.replace({**LDAP_ENTRY, "dn": LDAP_ENTRY["dn"].lower()})
        outcome = await engine.orchestrator.sync_source(Source.LDAP)

        assert outcome.job.results.added == 0
        assert outcome.job.results.updated == 1
        [stored] = await engine.store.get_records(Source.LDAP)
        assert stored.external_id == "cn=a,ou=staff,dc=example,dc=com"

    @pytest.mark.asyncio
    async def test_cross_source_email_gives_conflicts_status(self, engine, directory_connector, ldap_connector):
        directory_connector.seed(DIRECTORY_USER)
        ldap_connector.seed(LDAP_ENTRY)
        await engine.initialize()
        await engine.orchestrator.sync_source(Source.DIRECTORY)

        outcome = await engine.orchestrator.sync_source(Source.LDAP)

        assert outcome.success
        assert outcome.job.status == JobStatus.CONFLICTS
        conflicts = outcome.job.results.conflicts
        assert len(conflicts) == 1
        assert conflicts[0].email == "a@x.com"
        assert conflicts[0].sources == [Source.DIRECTORY, Source.LDAP]

    @pytest.mark.asyncio
    async def test_incremental_passes_last_sync_time(self, engine, ldap_connector, clock):
        ldap_connector.seed(LDAP_ENTRY)
        await engine.initialize()
        await engine.orchestrator.sync_source(Source.LDAP)
        clock.advance(hours=1)

        await engine.orchestrator.sync_source(Source.LDAP, SyncMode.INCREMENTAL)

        assert ldap_connector._calls == [("fetch", None), ("fetch", FIXED_NOW)]

    @pytest.mark.asyncio
    async def test_results_are_frozen(self, engine, ldap_connector):
        ldap_connector.seed(LDAP_ENTRY)
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.LDAP)

        with pytest.raises(ValidationError):
            outcome.job.results.added = 5


class TestRejections:
    """Requests that never start a job."""

    @pytest.mark.asyncio
    async def test_pushed_source(self, engine):
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.UPLOAD)

        assert outcome.job is None
        assert outcome.error_code == NoSyncSupported.code
        with pytest.raises(NoSyncSupported):
            outcome.raise_for_error()

    @pytest.mark.asyncio
    async def test_not_configured_releases_guard(self, engine, directory_connector):
        directory_connector.configured = False
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.DIRECTORY)

        assert outcome.job is None
        assert outcome.error_code == NotConfigured.code
        assert directory_connector._calls == []
        assert not engine.orchestrator.is_sync_running(Source.DIRECTORY)

    @pytest.mark.asyncio
    async def test_concurrent_sync_is_rejected(self, engine, ldap_connector):
        ldap_connector.seed(LDAP_ENTRY)
        gate = ldap_connector.hold()
        await engine.initialize()

        first = asyncio.create_task(engine.orchestrator.sync_source(Source.LDAP))
        await ldap_connector.fetch_started.wait()

        assert engine.orchestrator.is_sync_running(Source.LDAP)
        second = await engine.orchestrator.sync_source(Source.LDAP)
        assert second.job is None
        assert second.error_code == SyncInProgress.code

        gate.set()
        outcome = await first
        assert outcome.success
        assert not engine.orchestrator.is_sync_running(Source.LDAP)

    @pytest.mark.asyncio
    async def test_other_sources_run_in_parallel(self, engine, ldap_connector, directory_connector):
        directory_connector.seed(DIRECTORY_USER)
        gate = ldap_connector.hold()
        await engine.initialize()

        ldap_task = asyncio.create_task(engine.orchestrator.sync_source(Source.LDAP))
        await ldap_connector.fetch_started.wait()

        directory_outcome = await engine.orchestrator.sync_source(Source.DIRECTORY)
        assert directory_outcome.success

        gate.set()
        assert (await ldap_task).success


class TestFailures:
    @pytest.mark.asyncio
    async def test_connection_error_fails_job(self, engine, ldap_connector):
        ldap_connector.fail_with(SourceConnectionError("LDAP bind failed", source="ldap"))
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.LDAP)

        assert not outcome.success
        assert outcome.job.status == JobStatus.FAILED
        assert outcome.job.error_message == "LDAP bind failed"
        assert outcome.error_code == SourceConnectionError.code
        # A job existed, so nothing is raised
        assert outcome.raise_for_error() is outcome
        assert not engine.orchestrator.is_sync_running(Source.LDAP)

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(self, engine, ldap_connector):
        ldap_connector.fail_with(RuntimeError("boom"))
        await engine.initialize()

        outcome = await engine.orchestrator.sync_source(Source.LDAP)

        assert outcome.job.status == JobStatus.FAILED
        assert outcome.error_code == UNEXPECTED_ERROR_CODE


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_job(self, engine, ldap_connector):
        ldap_connector.seed(LDAP_ENTRY)
        gate = ldap_connector.hold()
        await engine.initialize()
        task = asyncio.create_task(engine.orchestrator.sync_source(Source.LDAP))
        await ldap_connector.fetch_started.wait()

        cancelled = await engine.orchestrator.cancel_sync(Source.LDAP)

        assert cancelled.status == JobStatus.FAILED
        assert cancelled.error_message == "Sync cancelled"
        assert not engine.orchestrator.is_sync_running(Source.LDAP)

        gate.set()
        outcome = await task
        assert not outcome.success
        assert outcome.error_code == SyncCancelled.code
        assert await engine.store.count(Source.LDAP) == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_writing_records(self, engine, ldap_connector, monkeypatch):
        ldap_connector.seed(
            *({"dn": f"CN=User {i},OU=Staff,DC=example,DC=com", "mail": f"user{i}@example.com"} for i in range(50))
        )
        await engine.initialize()
        upsert = engine.store.upsert
        written = []
        five_written = asyncio.Event()

        async def slow_upsert(source, record):
            written.append(record.id)
            if len(written) == 5:
                five_written.set()
            await asyncio.sleep(0)
            return await upsert(source, record)

        monkeypatch.setattr(engine.store, "upsert", slow_upsert)
        task = asyncio.create_task(engine.orchestrator.sync_source(Source.LDAP))
        await five_written.wait()

        await engine.orchestrator.cancel_sync(Source.LDAP)
        outcome = await task

        assert outcome.error_code == SyncCancelled.code
        assert outcome.job.status == JobStatus.FAILED
        assert 5 <= len(written) <= 6
        assert await engine.store.count(Source.LDAP) == len(written)
        assert outcome.job.results.conflicts == []

    @pytest.mark.asyncio
    async def test_cancel_without_running_job(self, engine):
        await engine.initialize()

        with pytest.raises(NoSyncRunning):
            await engine.orchestrator.cancel_sync(Source.LDAP)


class TestSyncAllSources:
    @pytest.mark.asyncio
    async def test_summary(self, engine, directory_connector, ldap_connector):
        directory_connector.seed(DIRECTORY_USER)
        ldap_connector.fail_with(SourceConnectionError("down"))
        await engine.initialize()

        summary = await engine.orchestrator.sync_all_sources(triggered_by="test")

        assert summary.total == 2
        assert summary.completed == 1
        assert summary.failed == 1
        assert summary.conflicts == 0
        assert summary.outcomes[Source.LDAP].error_code == SourceConnectionError.code

    @pytest.mark.asyncio
    async def test_unconfigured_sources_are_skipped(self, engine, directory_connector, ldap_connector):
        ldap_connector.configured = False
        await engine.initialize()

        summary = await engine.orchestrator.sync_all_sources()

        assert summary.total == 1
        assert list(summary.outcomes) == [Source.DIRECTORY]
        assert ldap_connector._calls == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_source_status(self, engine, directory_connector, ldap_connector):
        directory_connector.seed(DIRECTORY_USER)
        ldap_connector.configured = False
        await engine.initialize()
        await engine.orchestrator.sync_source(Source.DIRECTORY)

        statuses = {status.source: status for status in await engine.orchestrator.get_all_source_status()}

        assert set(statuses) == set(Source)
        assert statuses[Source.DIRECTORY].user_count == 1
        assert statuses[Source.DIRECTORY].last_sync == FIXED_NOW
        assert statuses[Source.DIRECTORY].state == SourceSyncState.IDLE
        assert statuses[Source.LDAP].is_configured is False
        assert statuses[Source.UPLOAD].is_configured is True
        assert statuses[Source.UPLOAD].sync_supported is False
        assert statuses[Source.MANUAL].last_sync is None

    @pytest.mark.asyncio
    async def test_running_jobs_listed(self, engine, ldap_connector):
        gate = ldap_connector.hold()
        await engine.initialize()
        task = asyncio.create_task(engine.orchestrator.sync_source(Source.LDAP))
        await ldap_connector.fetch_started.wait()

        running = engine.orchestrator.get_running_jobs()
        statuses = {status.source: status for status in await engine.orchestrator.get_all_source_status()}

        assert [job.source for job in running] == [Source.LDAP]
        assert statuses[Source.LDAP].state == SourceSyncState.SYNCING
        assert statuses[Source.LDAP].running_job.id == running[0].id

        gate.set()
        await task

    @pytest.mark.asyncio
    async def test_connections(self, engine, directory_connector, ldap_connector):
        directory_connector.seed(DIRECTORY_USER)
        ldap_connector.configured = False

        reports = await engine.orchestrator.test_all_connections()

        assert reports[Source.DIRECTORY].success
        assert reports[Source.DIRECTORY].details == {"records": 1}
        assert not reports[Source.LDAP].success
