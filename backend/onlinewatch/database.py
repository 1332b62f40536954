"""
Database connection layer: asyncpg pool plus the schema the scraper writes to.

The scrape cycle takes one connection from the pool for its whole duration
(see scheduler.py) and reconciles on it after commit; health checks use
short-lived pool connections.
"""
import logging
from typing import Any, Optional

import asyncpg
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from onlinewatch.config import settings

logger = logging.getLogger(__name__)

# Transient exceptions that justify a retry on startup (not programming bugs)
_TRANSIENT_EXCEPTIONS = (
    ConnectionError, TimeoutError, OSError,
    asyncpg.PostgresConnectionError, asyncpg.CannotConnectNowError,
)

SCHEMA_STATEMENTS = (
    """CREATE TABLE IF NOT EXISTS channels (
           id BIGSERIAL PRIMARY KEY,
           name TEXT NOT NULL UNIQUE
       )""",
    """CREATE TABLE IF NOT EXISTS users (
           id BIGSERIAL PRIMARY KEY,
           public_id TEXT NOT NULL UNIQUE,
           name TEXT,
           online BOOLEAN NOT NULL DEFAULT FALSE
       )""",
    """CREATE TABLE IF NOT EXISTS visits (
           id BIGSERIAL PRIMARY KEY,
           user_id BIGINT NOT NULL REFERENCES users(id),
           channel_id BIGINT NOT NULL REFERENCES channels(id),
           timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
       )""",
    # Hot paths: "latest visit for (user, channel)" and "visits of a channel by time"
    "CREATE INDEX IF NOT EXISTS idx_visits_user_channel_ts ON visits (user_id, channel_id, timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_visits_channel_ts ON visits (channel_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_visits_timestamp ON visits (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_users_online ON users (online) WHERE online",
)


class Database:
    """Async Postgres connection pool via asyncpg."""

    def __init__(self, dsn: Optional[str] = None) -> None:
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        retry=retry_if_exception_type(_TRANSIENT_EXCEPTIONS),
        reraise=True,
    )
    async def connect(self) -> None:
        """Create the connection pool. Call once at app startup."""
        if self._pool is not None:
            return
        dsn = self._dsn or settings.DATABASE_URL
        if not dsn:
            raise RuntimeError("DATABASE_URL is not set.")
        self._pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=2,
            max_size=10,
            command_timeout=30,
        )
        logger.info("asyncpg pool created (min=2, max=10)")

    async def close(self) -> None:
        """Close the connection pool. Call at app shutdown."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("asyncpg pool closed")

    def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized: call await db.connect() first")
        return self._pool

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        pool = self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        logger.info("Schema ensured (%d statements)", len(SCHEMA_STATEMENTS))

    async def fetchval(self, query: str, *args: Any) -> Any:
        """Execute a query and return the first column of the first row."""
        pool = self._ensure_pool()
        return await pool.fetchval(query, *args)

    @property
    def pool(self) -> asyncpg.Pool:
        """Access the underlying pool (e.g. for explicit transactions)."""
        return self._ensure_pool()


# Global singleton: import and use everywhere
db = Database()


def affected_rows(status: Optional[str]) -> int:
    """Row count from an asyncpg status string such as "UPDATE 5"."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0
