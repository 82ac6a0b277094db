"""PostgreSQL persistence (asyncpg)."""
