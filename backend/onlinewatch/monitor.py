#!/usr/bin/env python3
"""
onlinewatch - scrape monitoring script
Polls /api/scrapeStatus and reports stalled or degraded scraping.

    python -m onlinewatch.monitor

Environment:
    MONITOR_STATUS_URL   default http://127.0.0.1:3008/api/scrapeStatus
    MONITOR_INTERVAL     seconds between checks, default 60
"""

import os
import time
from datetime import datetime, timezone
from typing import Optional

import requests

STATUS_URL = os.getenv("MONITOR_STATUS_URL", "http://127.0.0.1:3008/api/scrapeStatus")
CHECK_INTERVAL = int(os.getenv("MONITOR_INTERVAL", "60"))
STALE_INTERVALS = 3
RATE_LIMIT_WARN = 10


def fetch_status(url: str = STATUS_URL) -> Optional[dict]:
    """Get scrape status, None if unreachable"""
    try:
        response = requests.get(url, timeout=10)
        if response.status_code == 200:
            return response.json()
        print(f"   Status endpoint returned HTTP {response.status_code}")
        return None
    except (requests.RequestException, ValueError) as e:
        print(f"   Status endpoint unreachable: {e}")
        return None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def evaluate_status(status: Optional[dict], now: Optional[datetime] = None) -> list[str]:
    """List of problems found in a scrapeStatus payload (empty when healthy)"""
    if status is None:
        return ["status endpoint unreachable"]
    now = now or datetime.now(timezone.utc)
    problems = []

    interval_s = (status.get("intervalMs") or 0) / 1000
    completed = _parse_ts(status.get("lastCycleCompleted"))
    if completed is None:
        if status.get("cycleCount", 0) == 0 and not status.get("isFetching"):
            problems.append("no cycle has run yet")
    elif interval_s and (now - completed).total_seconds() > STALE_INTERVALS * interval_s:
        problems.append(f"last cycle completed {int((now - completed).total_seconds())}s ago")

    if status.get("lastCycleSucceeded") is False:
        problems.append("last cycle failed")
    if status.get("rateLimitsHit", 0) >= RATE_LIMIT_WARN:
        problems.append(f"{status['rateLimitsHit']} rate limits in last cycle")
    total = status.get("totalChannels", 0)
    done = status.get("lastCycleChannelCount", 0)
    if not status.get("isFetching") and total and done < total:
        problems.append(f"only {done}/{total} channels processed")
    return problems


def monitor_loop():
    """Main monitoring loop"""
    print("🔍 onlinewatch scrape monitoring started")
    print(f"   Status URL: {STATUS_URL}")
    print(f"   Check interval: {CHECK_INTERVAL}s")
    print("-" * 60)

    iteration = 0
    while True:
        iteration += 1
        print(f"\n[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}] Check #{iteration}")

        status = fetch_status()
        problems = evaluate_status(status)
        if status:
            print(f"   Cycles: {status.get('cycleCount')}  Fetching: {status.get('isFetching')}"
                  f"  Last duration: {status.get('lastCycleDurationMs')}ms")
        if problems:
            for p in problems:
                print(f"   ❌ {p}")
        else:
            print("   ✅ healthy")

        time.sleep(CHECK_INTERVAL)


if __name__ == "__main__":
    try:
        monitor_loop()
    except KeyboardInterrupt:
        print("\n\n⏹️  Monitoring stopped by user")
