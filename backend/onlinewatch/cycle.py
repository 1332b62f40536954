"""
Per-cycle state. A CycleContext is created when a scrape cycle starts and
closed when it ends; nothing in it survives into the next cycle.
"""
import asyncio
import contextvars
import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

import asyncpg

from onlinewatch.recorder import DEDUP_THRESHOLD
from onlinewatch.registry import CycleCache, Registry

logger = logging.getLogger(__name__)

# Set while a cycle runs so every log line of that cycle carries its id
cycle_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("cycle_id", default="-")


class ActiveUserSet:
    """Set of user ids sighted this cycle, with a hard size cap."""

    def __init__(self, max_size: int) -> None:
        self._ids: set[int] = set()
        self._max_size = max_size
        self.dropped = 0

    def add(self, user_id: int) -> bool:
        if user_id in self._ids:
            return True
        if len(self._ids) >= self._max_size:
            if self.dropped == 0:
                logger.warning("Active user set reached its cap (%d): further ids dropped", self._max_size)
            self.dropped += 1
            return False
        self._ids.add(user_id)
        return True

    def snapshot(self) -> frozenset[int]:
        return frozenset(self._ids)

    def clear(self) -> None:
        self._ids.clear()
        self.dropped = 0

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class CycleContext:
    """Everything one scrape cycle writes through.

    All durable writes share `conn` (inside the cycle transaction); concurrent
    fetch workers take `write_lock` before touching it, which also makes the
    cache and active set single-writer.
    """

    def __init__(
        self,
        conn: asyncpg.Connection,
        *,
        max_active_users: int,
        dedup_threshold: timedelta = DEDUP_THRESHOLD,
        cycle_id: Optional[str] = None,
    ) -> None:
        self.cycle_id = cycle_id or uuid.uuid4().hex[:12]
        self.conn = conn
        self.cache = CycleCache()
        self.registry = Registry(conn, self.cache)
        self.active = ActiveUserSet(max_active_users)
        self.dedup_threshold = dedup_threshold
        self.write_lock = asyncio.Lock()
        self.started_at = datetime.now(timezone.utc)
        self.channels_processed = 0
        self.rate_limits_hit = 0
        self.visits_recorded = 0
        self.storage_errors = 0
        self.outcomes: Counter = Counter()

    def close(self) -> None:
        """Drop cached mappings and sighted ids."""
        self.cache.clear()
        self.active.clear()
