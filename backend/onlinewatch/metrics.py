"""
Prometheus-compatible metrics for the scraper.

Counters and gauges are rendered in Prometheus text exposition format by the
/metrics endpoint. Plain Python with lock-protected values, no client library.

Metrics exposed:
  - onlinewatch_cycles_total                 (counter)  Cycles by result (completed/failed)
  - onlinewatch_fetch_outcomes_total         (counter)  Channel fetches by outcome
  - onlinewatch_sightings_total              (counter)  Sightings ingested
  - onlinewatch_visits_recorded_total        (counter)  New visit rows
  - onlinewatch_storage_errors_total         (counter)  Sightings skipped on storage errors
  - onlinewatch_rate_limits_total            (counter)  429 responses
  - onlinewatch_status_changes_total         (counter)  Users flipped online/offline by reconciliation
  - onlinewatch_scrape_in_progress           (gauge)    1 while a cycle runs
  - onlinewatch_last_cycle_duration_seconds  (gauge)    Duration of the last cycle
  - onlinewatch_active_users                 (gauge)    Users sighted in the last cycle
"""

import threading
import time
from typing import Dict, Tuple


class _Counter:
    """Thread-safe monotonically increasing counter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: float = 0

    def inc(self, amount: float = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class _LabeledCounter:
    """Thread-safe counter with label dimensions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[Tuple[str, ...], float] = {}

    def inc(self, labels: Tuple[str, ...], amount: float = 1) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0) + amount

    def get(self, labels: Tuple[str, ...]) -> float:
        with self._lock:
            return self._values.get(labels, 0)

    def items(self) -> list:
        with self._lock:
            return sorted(self._values.items())


class _Gauge:
    """Thread-safe gauge that can go up or down."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: float = 0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class MetricsRegistry:
    """Central registry for all scraper metrics."""

    def __init__(self) -> None:
        # Counters
        self.cycles_total = _LabeledCounter()
        self.fetch_outcomes_total = _LabeledCounter()
        self.status_changes_total = _LabeledCounter()
        self.sightings_total = _Counter()
        self.visits_recorded_total = _Counter()
        self.storage_errors_total = _Counter()
        self.rate_limits_total = _Counter()

        # Gauges
        self.scrape_in_progress = _Gauge()
        self.last_cycle_duration_seconds = _Gauge()
        self.active_users = _Gauge()

        self._start_time = time.time()

    def render(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: list[str] = []

        def simple(name: str, kind: str, help_text: str, value: float) -> None:
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {kind}")
            lines.append(f"{name} {value}")

        def labeled(name: str, label: str, help_text: str, counter: _LabeledCounter) -> None:
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} counter")
            for labels, value in counter.items():
                lines.append(f'{name}{{{label}="{labels[0]}"}} {value}')

        labeled("onlinewatch_cycles_total", "result", "Scrape cycles by result.", self.cycles_total)
        labeled("onlinewatch_fetch_outcomes_total", "outcome", "Channel fetches by outcome.", self.fetch_outcomes_total)
        labeled(
            "onlinewatch_status_changes_total", "direction",
            "Users flipped by reconciliation.", self.status_changes_total,
        )
        simple("onlinewatch_sightings_total", "counter", "Sightings ingested.", self.sightings_total.value)
        simple("onlinewatch_visits_recorded_total", "counter", "New visit rows inserted.", self.visits_recorded_total.value)
        simple(
            "onlinewatch_storage_errors_total", "counter",
            "Sightings skipped because of storage errors.", self.storage_errors_total.value,
        )
        simple("onlinewatch_rate_limits_total", "counter", "Upstream 429 responses.", self.rate_limits_total.value)
        simple("onlinewatch_scrape_in_progress", "gauge", "1 while a scrape cycle is running.", self.scrape_in_progress.value)
        simple(
            "onlinewatch_last_cycle_duration_seconds", "gauge",
            "Duration of the last scrape cycle.", self.last_cycle_duration_seconds.value,
        )
        simple("onlinewatch_active_users", "gauge", "Users sighted in the last cycle.", self.active_users.value)
        simple(
            "onlinewatch_uptime_seconds", "gauge",
            "Seconds since the metrics registry was created.", round(time.time() - self._start_time, 1),
        )

        # Prometheus text format requires a trailing newline
        lines.append("")
        return "\n".join(lines)


# Singleton instance -- import this from anywhere in the package
metrics = MetricsRegistry()
