"""
Identity Database Connection Pool

Manages the asyncpg connection pool for the identity stores, schedules and history.
Runs the shared-table migrations on initialization; per-source tables are created by
the identity store when a source is first initialized.
"""

from typing import Optional

import asyncpg
from loguru import logger

from identity_sync.db.migrations import run_migrations
from identity_sync.db.migrations import verify_schema


class IdentityDBPool:
    """Identity database connection pool manager."""

    def __init__(self, connection_string: str, min_size: int = 2, max_size: int = 10):
        """
        Initialize identity DB pool.

        Args:
            connection_string: PostgreSQL connection string
            min_size: Minimum pooled connections
            max_size: Maximum pooled connections
        """
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None
        self._pool_initialized = False

    async def initialize(self) -> None:
        """Create the pool, validate it and apply the shared-table migrations."""
        if self._pool_initialized and self.pool is not None:
            logger.debug("Identity DB pool already initialized")
            return

        try:
            logger.info("Initializing identity database pool")

            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,  # Query timeout (60 seconds)
                timeout=15,  # Connection timeout (15 seconds)
                max_cached_statement_lifetime=0,  # Columns change at runtime; don't cache statements
            )

            async with self.pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    raise RuntimeError("Pool validation query failed")

            logger.info("Identity DB pool validated")

            await run_migrations(self.pool)

            self._pool_initialized = True
            logger.success("Identity database initialized successfully")

        except Exception as e:
            logger.opt(exception=e).error("Failed to initialize identity DB pool")
            if self.pool:
                await self.pool.close()
                self.pool = None
            raise

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if self.pool:
            logger.info("Closing identity database pool")
            await self.pool.close()
            self.pool = None
            self._pool_initialized = False
            logger.info("Identity DB pool closed")

    def acquire(self):
        """
        Pooled connection as an async context manager.

        Usage:
            async with pool.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM identity_sync.sync_schedules WHERE id = $1", schedule_id)
        """
        if not self.pool:
            raise RuntimeError("Identity DB pool not initialized - call initialize() first")
        return self.pool.acquire()

    async def health_check(self) -> bool:
        """True when a pooled connection answers the validation query."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, OSError) as e:
            logger.error("Identity DB health check failed", error=str(e))
            return False

    async def describe(self) -> dict:
        """Health plus the list of identity_sync tables (for the database health endpoint)."""
        healthy = await self.health_check()
        if not healthy:
            return {"healthy": False}
        return {"healthy": True, **await verify_schema(self.pool)}
