"""
Scrape cycle scheduler.

Every SCRAPE_INTERVAL_SECONDS a cycle is started as its own task:
  - If the previous cycle is still running the new one is skipped, not queued
  - Channels are processed in fixed-size batches; workers inside a batch run
    concurrently, batches run one after another
  - After a batch with any 429 the scheduler backs off longer before the next
  - All registry/visit writes of a cycle live in one transaction
  - After commit, online/offline flags are reconciled against the users
    sighted during the cycle
"""
import asyncio
import logging
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx
import sentry_sdk

from onlinewatch.channels import ChannelListSource
from onlinewatch.config import Settings, settings
from onlinewatch.cycle import CycleContext, cycle_id_var
from onlinewatch.database import Database, db
from onlinewatch.fetcher import FetchOutcome, FetchWorker
from onlinewatch.metrics import metrics
from onlinewatch.models import FetchStatus, ScrapeStatus
from onlinewatch.reconciler import reconcile

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 30.0  # seconds to wait for an in-flight cycle on shutdown
USER_AGENT = "onlinewatch/1.0"


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class CycleScheduler:
    """Runs scrape cycles on a fixed period, never two at once."""

    def __init__(
        self,
        database: Database,
        channel_source: ChannelListSource,
        *,
        config: Settings = settings,
        client: Optional[httpx.AsyncClient] = None,
        worker_factory: Callable[..., FetchWorker] = FetchWorker,
        reconciler: Callable[..., Awaitable] = reconcile,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ) -> None:
        self._db = database
        self._channels = channel_source
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._worker_factory = worker_factory
        self._reconciler = reconciler
        self._sleep = sleep
        # Held for the whole cycle: locked == Running, unlocked == Idle
        self._cycle_lock = asyncio.Lock()
        self._timer_task: asyncio.Task | None = None
        self._cycle_tasks: set[asyncio.Task] = set()
        self.running = False

        # Last-cycle metrics for the status endpoint
        self.last_cycle_started: datetime | None = None
        self.last_cycle_completed: datetime | None = None
        self.last_cycle_duration_ms = 0
        self.last_cycle_channel_count = 0
        self.last_cycle_succeeded: bool | None = None
        self.total_channels = 0
        self.cycle_count = 0
        self.rate_limits_hit = 0
        self.active_users_tracked = 0
        self.cycles_skipped = 0

    @property
    def is_fetching(self) -> bool:
        return self._cycle_lock.locked()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            logger.warning("Scheduler is already running")
            return
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT},
                timeout=self._config.REQUEST_TIMEOUT_SECONDS,
            )
        self.running = True
        self._timer_task = asyncio.create_task(self._timer(), name="scrape-timer")
        logger.info(
            "Scheduler started (interval=%.0fs, batch_size=%d)",
            self._config.SCRAPE_INTERVAL_SECONDS, self._config.SCRAPE_BATCH_SIZE,
        )

    async def stop(self) -> None:
        """Stop the timer, let an in-flight cycle finish (bounded), close the HTTP client."""
        logger.info("Stopping scheduler...")
        self.running = False
        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass

        pending = [t for t in self._cycle_tasks if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=STOP_TIMEOUT)
            for task in still_running:
                logger.warning("Cycle did not finish in %.0fs, cancelling", STOP_TIMEOUT)
                task.cancel()
            if still_running:
                await asyncio.wait(still_running)

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Scheduler stopped.")

    async def _timer(self) -> None:
        """Fire a cycle every interval; an overrunning cycle turns the next tick into a skip."""
        while self.running:
            task = asyncio.create_task(self.run_cycle(), name="scrape-cycle")
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.sleep(self._config.SCRAPE_INTERVAL_SECONDS)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> bool:
        """Run one full scrape cycle. Returns False if skipped because one is running."""
        if self._cycle_lock.locked():
            self.cycles_skipped += 1
            logger.warning("Skipping periodic fetch - previous fetch still in progress")
            return False

        async with self._cycle_lock:
            token = cycle_id_var.set(uuid.uuid4().hex[:12])
            metrics.scrape_in_progress.set(1)
            started_mono = time.monotonic()
            self.last_cycle_started = datetime.now(timezone.utc)
            self.rate_limits_hit = 0
            self.total_channels = 0
            ctx: CycleContext | None = None
            succeeded = False
            try:
                logger.info("Starting periodic user fetch...")
                channels = await self._channels.load()
                self.total_channels = len(channels)
                logger.info("Processing %d channels...", len(channels))

                async with self._db.pool.acquire() as conn:
                    ctx = CycleContext(
                        conn,
                        max_active_users=self._config.MAX_ACTIVE_USERS,
                        dedup_threshold=self._config.dedup_threshold,
                        cycle_id=cycle_id_var.get(),
                    )
                    tx = conn.transaction()
                    await tx.start()
                    try:
                        await self._run_batches(ctx, channels)
                        await tx.commit()
                    except BaseException:
                        await self._rollback(tx)
                        raise

                    active_ids = ctx.active.snapshot()
                    result = await self._reconciler(conn, active_ids)

                self.active_users_tracked = len(active_ids)
                metrics.active_users.set(len(active_ids))
                metrics.status_changes_total.inc(("online",), result.turned_online)
                metrics.status_changes_total.inc(("offline",), result.turned_offline)
                succeeded = True
                logger.info(
                    "Cycle done: %d channels, %d visits recorded, %d users active, %d storage errors, outcomes=%s",
                    ctx.channels_processed, ctx.visits_recorded, len(active_ids), ctx.storage_errors,
                    {k.value: v for k, v in ctx.outcomes.items()},
                )
            except Exception as e:
                logger.error("Error in periodic user fetch: %s", e)
                logger.error(traceback.format_exc())
                if sentry_sdk.is_initialized():
                    sentry_sdk.capture_exception(e)
            finally:
                if ctx is not None:
                    self.last_cycle_channel_count = ctx.channels_processed
                    ctx.close()
                else:
                    self.last_cycle_channel_count = 0
                elapsed = time.monotonic() - started_mono
                self.last_cycle_completed = datetime.now(timezone.utc)
                self.last_cycle_duration_ms = int(elapsed * 1000)
                self.last_cycle_succeeded = succeeded
                self.cycle_count += 1
                metrics.cycles_total.inc(("completed",) if succeeded else ("failed",))
                metrics.last_cycle_duration_seconds.set(round(elapsed, 3))
                metrics.scrape_in_progress.set(0)
                logger.info(
                    "%s periodic user fetch in %dms",
                    "Completed" if succeeded else "Aborted", self.last_cycle_duration_ms,
                )
                cycle_id_var.reset(token)
        return True

    async def _run_batches(self, ctx: CycleContext, channels: list[str]) -> None:
        batch_size = self._config.SCRAPE_BATCH_SIZE
        batches = [] if not channels else _chunks(channels, batch_size)
        worker = self._worker_factory(
            self._client, ctx,
            url=self._config.ONLINE_USERS_URL,
            timeout=self._config.REQUEST_TIMEOUT_SECONDS,
        )
        total = len(batches)

        for batch_num, batch in enumerate(batches, start=1):
            # Only log every 10th batch to keep the log readable
            if batch_num % 10 == 1 or batch_num == total:
                logger.info("Processing batch %d/%d", batch_num, total)

            outcomes: list[FetchOutcome] = await asyncio.gather(*(worker.run(ch) for ch in batch))
            ctx.channels_processed += len(batch)
            self.last_cycle_channel_count = ctx.channels_processed

            rate_limited = sum(1 for o in outcomes if o.status is FetchStatus.RATE_LIMITED)
            if rate_limited:
                ctx.rate_limits_hit += rate_limited
                self.rate_limits_hit += rate_limited

            if batch_num == total:
                break
            if rate_limited:
                logger.warning(
                    "Rate limit detected (%d in batch), backing off %.1fs",
                    rate_limited, self._config.RATE_LIMIT_BACKOFF_SECONDS,
                )
                await self._sleep(self._config.RATE_LIMIT_BACKOFF_SECONDS)
            else:
                await self._sleep(self._config.SCRAPE_BATCH_DELAY_SECONDS)

    async def _rollback(self, tx) -> None:
        try:
            await tx.rollback()
            logger.warning("Cycle transaction rolled back")
        except Exception as e:
            logger.error("Rollback failed: %s", e)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> ScrapeStatus:
        return ScrapeStatus(
            isFetching=self.is_fetching,
            lastCycleStarted=self.last_cycle_started,
            lastCycleCompleted=self.last_cycle_completed,
            lastCycleDurationMs=self.last_cycle_duration_ms,
            lastCycleChannelCount=self.last_cycle_channel_count,
            totalChannels=self.total_channels,
            cycleCount=self.cycle_count,
            rateLimitsHit=self.rate_limits_hit,
            intervalMs=self._config.interval_ms,
            lastCycleSucceeded=self.last_cycle_succeeded,
            activeUsersTracked=self.active_users_tracked,
        )


# Global singleton
scrape_scheduler = CycleScheduler(db, ChannelListSource(settings.CHANNELS_FILE))
