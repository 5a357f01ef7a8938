"""
Adaptive refresh-interval estimation.

Each feed keeps an exponentially weighted estimate of the interval between new
entries. After a successful fetch:

    observed  = elapsed_since_last_fetch / new_entries       (new entries seen)
              = elapsed_since_last_productive_fetch          (nothing new)
    estimate  = alpha * observed + (1 - alpha) * estimate

A fetch that finds nothing new is evidence the interval is at least as long as
the quiet period, so the estimate grows. Effective intervals are clamped to the
configured bounds.
"""

from datetime import datetime
from typing import Optional

from ..computed_params import compute_parameters
from ..models.config import DEFAULT_CONFIG, EngineConfig
from ..models.feed import FeedState
from ..models.scoring import seconds_between
from .records import FeedSchedule


def ewma(previous: float, observed: float, alpha: float) -> float:
    return alpha * observed + (1.0 - alpha) * previous


def observed_interval(
    since_fetch: float,
    since_change: float,
    new_entries: float,
) -> float:
    if new_entries > 0:
        return since_fetch / new_entries
    return max(since_fetch, since_change)


class RefreshEstimator:
    """Interval bookkeeping for FeedSchedule records (caller holds the record lock)."""

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG):
        params = compute_parameters(config)
        self.alpha = config.refresh_alpha
        self.min_interval = params["min_interval_seconds"]
        self.max_interval = params["max_interval_seconds"]
        self.initial_interval = params["initial_interval_seconds"]
        self.probe_interval = params["probe_interval_seconds"]
        self.backoff_base = params["failure_backoff_seconds"]
        self.backoff_max = params["max_failure_backoff_seconds"]

    def clamp(self, seconds: float) -> float:
        return min(max(seconds, self.min_interval), self.max_interval)

    def effective_interval(self, record: FeedSchedule) -> float:
        if record.state == FeedState.EPHEMERAL:
            return self.probe_interval
        return self.clamp(record.estimated_interval)

    def observe(self, record: FeedSchedule, now: datetime, new_entries: float) -> float:
        """Fold one successful fetch into the estimate and return the new estimate."""
        if record.last_fetch_at is not None:
            since_fetch = seconds_between(now, record.last_fetch_at)
            since_change = seconds_between(now, record.last_change_at or record.last_fetch_at)
            observed = observed_interval(since_fetch, since_change, new_entries)
            if record.has_prior:
                record.estimated_interval = ewma(record.estimated_interval, observed, self.alpha)
            else:
                record.estimated_interval = observed
                record.has_prior = True
            record.estimated_interval = self.clamp(record.estimated_interval)
        return record.estimated_interval

    def backoff(self, consecutive_failures: int) -> float:
        if consecutive_failures <= 0:
            return 0.0
        return min(self.backoff_base * 2 ** (consecutive_failures - 1), self.backoff_max)

    def retry_at_ok(self, last_attempt_at: Optional[datetime], failures: int, now: datetime) -> bool:
        if failures <= 0 or last_attempt_at is None:
            return True
        return seconds_between(now, last_attempt_at) >= self.backoff(failures)

    def due_ratio(self, record: FeedSchedule, now: datetime) -> float:
        """time_since_last_fetch / effective_interval; never-fetched feeds are due now."""
        interval = self.effective_interval(record)
        if record.last_fetch_at is None:
            return max(1.0, seconds_between(now, record.added_at) / interval)
        return seconds_between(now, record.last_fetch_at) / interval
