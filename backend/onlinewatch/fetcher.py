"""
Fetch worker: one upstream request per channel, then ingestion of the
sightings it returned.

fetch_online_users() only talks to the network and classifies the result.
FetchWorker.run() adds the write side: registry + visit recorder + active set,
all through the cycle's shared connection.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from onlinewatch.cycle import CycleContext
from onlinewatch.errors import (
    InvalidChannelError,
    NetworkTimeout,
    RateLimited,
    StorageError,
    UpstreamError,
)
from onlinewatch.metrics import metrics
from onlinewatch.models import FetchStatus, OnlineUsersPayload, Sighting
from onlinewatch.recorder import record_visit

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


@dataclass
class FetchOutcome:
    channel: Any
    status: FetchStatus
    sightings: list[Sighting] = field(default_factory=list)
    seen_at: Optional[datetime] = None
    reason: Optional[str] = None
    invalid_entries: int = 0


def is_valid_channel_name(channel: Any) -> bool:
    return isinstance(channel, str) and channel.strip() != ""


def parse_sightings(users: list) -> tuple[list[Sighting], int]:
    """Validate each raw user entry; returns (sightings, number skipped)."""
    sightings: list[Sighting] = []
    skipped = 0
    for raw in users:
        try:
            sightings.append(Sighting.model_validate(raw))
        except ValidationError:
            skipped += 1
    return sightings, skipped


async def _request(client: httpx.AsyncClient, url: str, channel: str) -> OnlineUsersPayload:
    async with client.stream("GET", url, params={"channel": channel}) as resp:
        if resp.status_code == 429:
            raise RateLimited(channel)
        if not resp.is_success:
            raise UpstreamError(f"HTTP {resp.status_code}", status_code=resp.status_code)
        body = await resp.aread()
    try:
        return OnlineUsersPayload.model_validate_json(body)
    except ValidationError as e:
        raise UpstreamError(f"unusable body: {e.error_count()} error(s)") from e


async def fetch_online_users(
    client: httpx.AsyncClient,
    channel: Any,
    *,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> FetchOutcome:
    """Query who is online in `channel` and classify the response."""
    try:
        if not is_valid_channel_name(channel):
            raise InvalidChannelError(repr(channel))
        try:
            payload = await asyncio.wait_for(_request(client, url, channel), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise NetworkTimeout(channel) from e
    except InvalidChannelError:
        logger.warning("Skipping invalid channel name: %r", channel)
        return FetchOutcome(channel, FetchStatus.EMPTY, reason="invalid channel name")
    except NetworkTimeout:
        logger.error("Timeout: %s (>%.1fs)", channel, timeout)
        return FetchOutcome(channel, FetchStatus.TIMED_OUT, reason="timeout")
    except RateLimited:
        logger.warning("Rate limited on: %s", channel)
        return FetchOutcome(channel, FetchStatus.RATE_LIMITED, reason="HTTP 429")
    except UpstreamError as e:
        logger.error("Failed: %s (%s)", channel, e)
        return FetchOutcome(channel, FetchStatus.FAILED, reason=str(e))
    except httpx.HTTPError as e:
        logger.error("Error: %s - %s", channel, e)
        return FetchOutcome(channel, FetchStatus.FAILED, reason=type(e).__name__)

    # No one online: skip all DB work for this channel
    if not payload.users or payload.num_online == 0:
        return FetchOutcome(channel, FetchStatus.EMPTY, reason="no users online")

    sightings, skipped = parse_sightings(payload.users)
    if skipped:
        logger.warning("%s: skipped %d malformed user entries", channel, skipped)
    if not sightings:
        return FetchOutcome(channel, FetchStatus.EMPTY, reason="no valid users", invalid_entries=skipped)
    return FetchOutcome(
        channel,
        FetchStatus.SUCCESS,
        sightings=sightings,
        seen_at=datetime.now(timezone.utc),
        invalid_entries=skipped,
    )


class FetchWorker:
    """Fetches one channel and writes its sightings into the running cycle."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        ctx: CycleContext,
        *,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = client
        self._ctx = ctx
        self._url = url
        self._timeout = timeout

    async def run(self, channel: Any) -> FetchOutcome:
        try:
            outcome = await fetch_online_users(self._client, channel, url=self._url, timeout=self._timeout)
        except Exception as e:
            logger.exception("Unexpected fetch error for %s: %s", channel, e)
            outcome = FetchOutcome(channel, FetchStatus.FAILED, reason=type(e).__name__)
        if outcome.status is FetchStatus.SUCCESS:
            try:
                await self._ingest(outcome)
            except Exception as e:
                # Contained to this channel
                logger.exception("Ingest failed for %s: %s", channel, e)
                outcome.status = FetchStatus.FAILED
                outcome.reason = f"ingest error: {type(e).__name__}"
        self._ctx.outcomes[outcome.status] += 1
        metrics.fetch_outcomes_total.inc((outcome.status.value,))
        if outcome.status is FetchStatus.RATE_LIMITED:
            metrics.rate_limits_total.inc()
        return outcome

    async def _ingest(self, outcome: FetchOutcome) -> int:
        """Write every sighting of a successful fetch. Returns sightings stored."""
        ctx = self._ctx
        channel = outcome.channel
        stored = 0
        async with ctx.write_lock:
            try:
                async with ctx.conn.transaction():
                    channel_id = await ctx.registry.resolve_channel(channel)
            except StorageError as e:
                ctx.registry.forget_channel(channel)
                ctx.storage_errors += 1
                metrics.storage_errors_total.inc()
                logger.error("Skipping channel %s: %s", channel, e)
                outcome.status = FetchStatus.FAILED
                outcome.reason = f"storage error: {e}"
                return 0

            for sighting in outcome.sightings:
                try:
                    # One savepoint per sighting
                    async with ctx.conn.transaction():
                        user_id = await ctx.registry.resolve_user(sighting.public_id, sighting.display_name)
                        inserted = await record_visit(
                            ctx.conn, user_id, channel_id, outcome.seen_at, ctx.dedup_threshold,
                        )
                except StorageError as e:
                    ctx.registry.forget_user(sighting.public_id)
                    ctx.storage_errors += 1
                    metrics.storage_errors_total.inc()
                    logger.error("Skipping sighting %s in %s: %s", sighting.public_id, channel, e)
                    continue
                stored += 1
                if inserted:
                    ctx.visits_recorded += 1
                    metrics.visits_recorded_total.inc()
                ctx.active.add(user_id)

        metrics.sightings_total.inc(stored)
        logger.debug("%s: %d sightings stored", channel, stored)
        return stored
