"""
Pydantic models for upstream payloads and status responses
"""
from pydantic import BaseModel, Field
from typing import Any, List, Optional
from datetime import datetime
from enum import Enum


# ============================================================
# Enums
# ============================================================

class FetchStatus(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


# ============================================================
# Upstream payload
# ============================================================

class Sighting(BaseModel):
    """One user reported online in a channel."""
    public_id: str = Field(..., min_length=1)
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or "Unknown"


class OnlineUsersPayload(BaseModel):
    """Body of GET online_users?channel=...

    `users` stays untyped here so that one malformed entry can be skipped
    without rejecting the whole channel.
    """
    users: Optional[List[Any]] = None
    num_online: Optional[int] = None


# ============================================================
# Status Models
# ============================================================

class ScrapeStatus(BaseModel):
    isFetching: bool
    lastCycleStarted: Optional[datetime] = None
    lastCycleCompleted: Optional[datetime] = None
    lastCycleDurationMs: int = 0
    lastCycleChannelCount: int = 0
    totalChannels: int = 0
    cycleCount: int = 0
    rateLimitsHit: int = 0
    intervalMs: int
    lastCycleSucceeded: Optional[bool] = None
    activeUsersTracked: int = 0


class HealthResponse(BaseModel):
    status: str
    database: str
    scheduler: str
    reasons: Optional[List[str]] = None
