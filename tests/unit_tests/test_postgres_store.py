"""Tests for the asyncpg-backed identity store, with a mocked pool."""

import asyncpg
import pytest

from identity_sync.db.repository_identity import PostgresIdentityStore
from identity_sync.enums import DataType
from identity_sync.enums import Source
from identity_sync.errors import RecordUpsertError
from identity_sync.errors import SchemaMigrationError
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.schema import FieldRegistryEntry
from tests.consts import FIXED_NOW


def _registry_rows():
    return [
        {"field_name": "id", "data_type": "text", "max_length": 255, "is_required": True, "added_at": FIXED_NOW.isoformat()},
        {
            "field_name": "email",
            "data_type": "text",
            "max_length": 255,
            "is_required": True,
            "added_at": FIXED_NOW.isoformat(),
        },
        {
            "field_name": "external_id",
            "data_type": "text",
            "max_length": 255,
            "is_required": False,
            "added_at": FIXED_NOW.isoformat(),
        },
        {
            "field_name": "source",
            "data_type": "text",
            "max_length": 20,
            "is_required": False,
            "added_at": FIXED_NOW.isoformat(),
        },
    ]


def _executed_sql(conn):
    return [call.args[0] for call in conn.execute.await_args_list]


@pytest.fixture
def pg_store(mock_db_pool, clock):
    mock_db_pool.conn.fetch.return_value = _registry_rows()
    return PostgresIdentityStore(mock_db_pool, clock=clock)


class TestInitialize:
    """Table creation and registry loading."""

    @pytest.mark.asyncio
    async def test_creates_tables_and_loads_registry(self, pg_store, mock_db_pool):
        await pg_store.initialize(Source.LDAP)

        statements = " ".join(_executed_sql(mock_db_pool.conn))
        assert "CREATE TABLE IF NOT EXISTS identity_sync.records_ldap" in statements
        assert "CREATE TABLE IF NOT EXISTS identity_sync.field_registry_ldap" in statements
        assert "lower(email)" in statements
        mock_db_pool.conn.executemany.assert_awaited_once()

        fields = await pg_store.get_field_registry(Source.LDAP)
        assert [entry.field_name for entry in fields] == ["id", "email", "external_id", "source"]
        assert fields[0].added_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_registry_is_loaded_lazily(self, pg_store, mock_db_pool):
        """First use of an uninitialized source initializes it."""
        mock_db_pool.conn.fetchval.return_value = 3

        assert await pg_store.count(Source.DIRECTORY) == 3
        assert any("records_directory" in sql for sql in _executed_sql(mock_db_pool.conn))


class TestAddField:
    """Additive migrations."""

    @pytest.mark.asyncio
    async def test_adds_column(self, pg_store, mock_db_pool):
        await pg_store.initialize(Source.LDAP)
        mock_db_pool.conn.fetchval.return_value = "cost_center"
        entry = FieldRegistryEntry(
            source=Source.LDAP, field_name="cost_center", data_type=DataType.INTEGER, added_at=FIXED_NOW
        )

        assert await pg_store.add_field(Source.LDAP, entry) is True

        alter = _executed_sql(mock_db_pool.conn)[-1]
        assert 'ADD COLUMN IF NOT EXISTS "cost_center" BIGINT' in alter
        assert "cost_center" in {entry.field_name for entry in await pg_store.get_field_registry(Source.LDAP)}

    @pytest.mark.asyncio
    async def test_known_field_is_skipped(self, pg_store, mock_db_pool):
        await pg_store.initialize(Source.LDAP)
        calls_before = mock_db_pool.conn.execute.await_count
        entry = FieldRegistryEntry(source=Source.LDAP, field_name="email", data_type=DataType.TEXT, added_at=FIXED_NOW)

        assert await pg_store.add_field(Source.LDAP, entry) is False
        assert mock_db_pool.conn.execute.await_count == calls_before

    @pytest.mark.asyncio
    async def test_concurrently_registered_field_reloads_registry(self, pg_store, mock_db_pool):
        await pg_store.initialize(Source.LDAP)
        mock_db_pool.conn.fetchval.return_value = None
        entry = FieldRegistryEntry(source=Source.LDAP, field_name="site", data_type=DataType.TEXT, added_at=FIXED_NOW)

        assert await pg_store.add_field(Source.LDAP, entry) is False
        assert mock_db_pool.conn.fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_identifier_is_a_migration_error(self, pg_store, mock_db_pool):
        await pg_store.initialize(Source.LDAP)
        mock_db_pool.conn.fetchval.return_value = "bad name"
        entry = FieldRegistryEntry(
            source=Source.LDAP, field_name="bad name", data_type=DataType.TEXT, added_at=FIXED_NOW
        )

        with pytest.raises(SchemaMigrationError):
            await pg_store.add_field(Source.LDAP, entry)


class TestUpsert:
    """Insert-or-update inside a transaction."""

    @pytest.mark.asyncio
    async def test_insert_new_row(self, pg_store, mock_db_pool, clock):
        await pg_store.initialize(Source.LDAP)
        stored_row = {
            "id": "ldap_1",
            "email": "a@x.com",
            "external_id": "cn=a",
            "source": "ldap",
        }
        mock_db_pool.conn.fetchrow.side_effect = [None, stored_row]
        mock_db_pool.conn.fetchval.return_value = None

        stored = await pg_store.upsert(
            Source.LDAP, IdentityRecord(email="a@x.com", source=Source.LDAP, external_id="cn=a")
        )

        assert stored.id == "ldap_1"
        insert_sql = mock_db_pool.conn.fetchrow.await_args_list[-1].args[0]
        assert "INSERT INTO identity_sync.records_ldap" in insert_sql
        assert "ON CONFLICT (id) DO UPDATE" in insert_sql
        # Only registered columns are written
        assert '"first_name"' not in insert_sql

    @pytest.mark.asyncio
    async def test_email_clash_is_rejected(self, pg_store, mock_db_pool):
        await pg_store.initialize(Source.LDAP)
        mock_db_pool.conn.fetchrow.side_effect = [None]
        mock_db_pool.conn.fetchval.return_value = "ldap_other"

        with pytest.raises(RecordUpsertError):
            await pg_store.upsert(Source.LDAP, IdentityRecord(email="a@x.com", source=Source.LDAP, external_id="cn=a"))

    @pytest.mark.asyncio
    async def test_database_error_is_an_upsert_error(self, pg_store, mock_db_pool):
        await pg_store.initialize(Source.LDAP)
        mock_db_pool.conn.fetchrow.side_effect = asyncpg.PostgresError("connection reset")

        with pytest.raises(RecordUpsertError):
            await pg_store.upsert(Source.LDAP, IdentityRecord(email="a@x.com", source=Source.LDAP, external_id="cn=a"))
