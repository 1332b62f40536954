"""
Scrape status routes
"""
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from onlinewatch.database import db
from onlinewatch.models import HealthResponse, ScrapeStatus
from onlinewatch.scheduler import scrape_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Status"])

STALE_INTERVALS = 3  # no completed cycle for this many intervals -> degraded
_started_mono = time.monotonic()


@router.get("/scrapeStatus", response_model=ScrapeStatus)
async def scrape_status():
    """Metrics of the last scrape cycle."""
    return scrape_scheduler.get_status()


def _health_reasons(status: ScrapeStatus, running: bool, db_ok: bool, now: datetime) -> list[str]:
    reasons: list[str] = []
    if not db_ok:
        reasons.append("database_unreachable")
    if not running:
        reasons.append("scheduler_not_running")
    stale_after = STALE_INTERVALS * status.intervalMs / 1000
    if status.lastCycleCompleted is not None:
        age = (now - status.lastCycleCompleted).total_seconds()
        if age > stale_after:
            reasons.append(f"last_cycle_{int(age)}s_ago")
    elif time.monotonic() - _started_mono > stale_after:
        reasons.append("no_cycle_completed")
    return reasons


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check: degraded when the DB is unreachable or scraping has stalled."""
    db_ok = False
    try:
        await db.fetchval("SELECT 1")
        db_ok = True
    except Exception as e:
        logger.debug("Health DB check failed: %s", e)

    status = scrape_scheduler.get_status()
    reasons = _health_reasons(status, scrape_scheduler.running, db_ok, datetime.now(timezone.utc))
    ok = not reasons
    return JSONResponse(
        status_code=200 if ok else 503,
        content={
            "status": "healthy" if ok else "degraded",
            "database": "connected" if db_ok else "unreachable",
            "scheduler": "running" if scrape_scheduler.running else "stopped",
            "reasons": reasons or None,
        },
    )
