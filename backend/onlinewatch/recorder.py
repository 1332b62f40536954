"""
Visit recorder: turns a sighting into a visit row unless it continues a
recent visit of the same user in the same channel.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

import asyncpg

from onlinewatch.errors import StorageError

logger = logging.getLogger(__name__)

DEDUP_THRESHOLD = timedelta(minutes=10)

_STORAGE_EXCEPTIONS = (asyncpg.PostgresError, asyncpg.InterfaceError)


def should_log_visit(
    last_seen: Optional[datetime],
    seen_at: datetime,
    threshold: timedelta = DEDUP_THRESHOLD,
) -> bool:
    """True when seen_at starts a new visit.

    Sighting times are not monotonic; a sighting older than the last visit
    gives a negative gap and is treated like any other gap below threshold.
    """
    if last_seen is None:
        return True
    return seen_at - last_seen >= threshold


async def record_visit(
    conn: asyncpg.Connection,
    user_id: int,
    channel_id: int,
    seen_at: datetime,
    threshold: timedelta = DEDUP_THRESHOLD,
) -> bool:
    """Log a visit for (user_id, channel_id) and mark the user online.

    Returns True when a new visit row was inserted.
    """
    try:
        last_seen = await conn.fetchval(
            """SELECT timestamp FROM visits
               WHERE user_id = $1 AND channel_id = $2
               ORDER BY timestamp DESC LIMIT 1""",
            user_id, channel_id,
        )
        inserted = should_log_visit(last_seen, seen_at, threshold)
        if inserted:
            await conn.execute(
                "INSERT INTO visits (user_id, channel_id, timestamp) VALUES ($1, $2, $3)",
                user_id, channel_id, seen_at,
            )
        else:
            logger.debug("Visit continues: user=%s channel=%s last=%s", user_id, channel_id, last_seen)
        await conn.execute("UPDATE users SET online = TRUE WHERE id = $1", user_id)
    except _STORAGE_EXCEPTIONS as e:
        raise StorageError(f"record_visit(user={user_id}, channel={channel_id}) failed: {e}") from e
    return inserted
