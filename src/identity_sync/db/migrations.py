"""Database migrations for the identity sync schema.

Shared tables (schedules, history) live in schema.sql. Per-source record and field
registry tables are created on demand by ``ensure_source_tables`` and only ever grow
through ``add_column``.
"""

import re
from pathlib import Path
from typing import Iterable

import asyncpg
from loguru import logger

from identity_sync.clock import to_iso
from identity_sync.enums import DataType
from identity_sync.enums import Source
from identity_sync.models.schema import FieldRegistryEntry

SCHEMA_NAME = "identity_sync"
SHARED_TABLES = {"sync_schedules", "sync_history"}

# Postgres identifiers are limited to 63 bytes
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_identifier(name: str) -> str:
    if not IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid column name: {name!r}")
    return name


def quote_ident(name: str) -> str:
    return f'"{validate_identifier(name)}"'


def record_table(source: Source) -> str:
    return f"{SCHEMA_NAME}.records_{source.value}"


def registry_table(source: Source) -> str:
    return f"{SCHEMA_NAME}.field_registry_{source.value}"


def column_type(entry: FieldRegistryEntry) -> str:
    """SQL column type for a registry entry. Datetimes are stored as ISO-8601 text."""
    if entry.data_type == DataType.TEXT:
        return f"VARCHAR({entry.max_length})" if entry.max_length else "TEXT"
    return {
        DataType.INTEGER: "BIGINT",
        DataType.REAL: "DOUBLE PRECISION",
        DataType.BOOLEAN: "BOOLEAN",
        DataType.DATETIME: "TEXT",
    }[entry.data_type]


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create the identity_sync schema and shared tables.

    All SQL uses IF NOT EXISTS, so it's safe to run on every startup.

    Parameters
    ----------
    pool : asyncpg.Pool
        Database connection pool

    Raises
    ------
    FileNotFoundError
        If schema.sql file not found
    """
    schema_path = Path(__file__).parent / "schema.sql"

    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    schema_sql = schema_path.read_text(encoding="utf-8")
    logger.info(f"Loaded schema from {schema_path}")

    async with pool.acquire() as conn:
        try:
            await conn.execute(schema_sql)
            logger.info("Identity sync shared tables ready")
        except Exception as e:
            logger.error(f"Migration failed: {e}")
            raise

        await _run_incremental_migrations_impl(conn)


async def _run_incremental_migrations_impl(conn: asyncpg.Connection) -> None:
    """Add columns introduced after the first release to existing databases."""
    for table, column, ddl in (
        ("sync_history", "chain_id", "VARCHAR(64)"),
        ("sync_schedules", "description", "TEXT NOT NULL DEFAULT ''"),
    ):
        try:
            await conn.execute(f"ALTER TABLE {SCHEMA_NAME}.{table} ADD COLUMN IF NOT EXISTS {column} {ddl}")
            logger.debug(f"Ensured {column} on {SCHEMA_NAME}.{table}")
        except asyncpg.PostgresError as col_err:
            logger.warning(f"Column {column} on {table} (may already exist): {col_err}")


async def ensure_source_tables(
    conn: asyncpg.Connection, source: Source, seed_entries: Iterable[FieldRegistryEntry]
) -> None:
    """Create the record + field registry tables of one source and seed the registry."""
    seed_entries = list(seed_entries)
    columns = []
    for entry in seed_entries:
        column = f"{quote_ident(entry.field_name)} {column_type(entry)}"
        if entry.field_name == "id":
            column += " PRIMARY KEY"
        elif entry.is_required:
            column += " NOT NULL"
        columns.append(column)

    async with conn.transaction():
        await conn.execute(f"CREATE TABLE IF NOT EXISTS {record_table(source)} ({', '.join(columns)})")
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {registry_table(source)} (
                field_name   VARCHAR(63) PRIMARY KEY,
                data_type    VARCHAR(20) NOT NULL,
                max_length   INTEGER,
                is_required  BOOLEAN     NOT NULL DEFAULT FALSE,
                added_at     TEXT        NOT NULL
            )
            """
        )
        await conn.execute(
            f"CREATE UNIQUE INDEX IF NOT EXISTS idx_records_{source.value}_email "
            f"ON {record_table(source)} (lower(email))"
        )
        await conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_records_{source.value}_last_synced "
            f"ON {record_table(source)} (last_synced_at)"
        )
        await conn.executemany(
            f"""
            INSERT INTO {registry_table(source)} (field_name, data_type, max_length, is_required, added_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (field_name) DO NOTHING
            """,
            [
                (entry.field_name, entry.data_type.value, entry.max_length, entry.is_required, to_iso(entry.added_at))
                for entry in seed_entries
            ],
        )

    logger.debug("Ensured source tables", source=source.value)


async def add_column(conn: asyncpg.Connection, source: Source, entry: FieldRegistryEntry) -> bool:
    """Add a column and its registry row in one transaction.

    Returns False when the field was already registered (nothing is changed).
    """
    async with conn.transaction():
        inserted = await conn.fetchval(
            f"""
            INSERT INTO {registry_table(source)} (field_name, data_type, max_length, is_required, added_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (field_name) DO NOTHING
            RETURNING field_name
            """,
            entry.field_name,
            entry.data_type.value,
            entry.max_length,
            entry.is_required,
            to_iso(entry.added_at),
        )
        if inserted is None:
            return False

        await conn.execute(
            f"ALTER TABLE {record_table(source)} "
            f"ADD COLUMN IF NOT EXISTS {quote_ident(entry.field_name)} {column_type(entry)}"
        )
    return True


async def verify_schema(pool: asyncpg.Pool) -> dict:
    """Report which identity_sync tables exist.

    Returns
    -------
    dict
        {
            "schema_exists": bool,
            "tables": list[str],
            "missing_shared_tables": list[str],
        }
    """
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1
            ORDER BY table_name
            """,
            SCHEMA_NAME,
        )
    tables = [row["table_name"] for row in rows]
    return {
        "schema_exists": bool(tables),
        "tables": tables,
        "missing_shared_tables": sorted(SHARED_TABLES - set(tables)),
    }
