"""
Online/offline reconciliation at the end of a scrape cycle.

Active ids are COPY-loaded into a temporary staging table and joined against,
so the statement size stays constant no matter how many users were sighted.
"""
import logging
from dataclasses import dataclass
from typing import Iterable

import asyncpg

from onlinewatch.database import affected_rows

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    turned_online: int
    turned_offline: int


async def reconcile(conn: asyncpg.Connection, active_ids: Iterable[int]) -> ReconcileResult:
    """Make `users.online` equal to membership in active_ids."""
    ids = sorted(set(active_ids))
    async with conn.transaction():
        if not ids:
            # Nobody sighted: everyone still flagged online goes offline
            status = await conn.execute("UPDATE users SET online = FALSE WHERE online = TRUE")
            result = ReconcileResult(turned_online=0, turned_offline=affected_rows(status))
        else:
            await conn.execute(
                "CREATE TEMP TABLE _active_ids (user_id BIGINT PRIMARY KEY) ON COMMIT DROP"
            )
            await conn.copy_records_to_table(
                "_active_ids", records=[(i,) for i in ids], columns=["user_id"],
            )
            on_status = await conn.execute(
                """UPDATE users SET online = TRUE
                   WHERE online = FALSE
                   AND id IN (SELECT user_id FROM _active_ids)"""
            )
            off_status = await conn.execute(
                """UPDATE users SET online = FALSE
                   WHERE online = TRUE
                   AND NOT EXISTS (SELECT 1 FROM _active_ids a WHERE a.user_id = users.id)"""
            )
            result = ReconcileResult(
                turned_online=affected_rows(on_status),
                turned_offline=affected_rows(off_status),
            )

    logger.info(
        "Reconciled online status: %d active, +%d online, -%d offline",
        len(ids), result.turned_online, result.turned_offline,
    )
    return result
