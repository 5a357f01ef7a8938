"""
Scheduler records — mutable per-feed and per-entry state owned by the Scheduler.

Each record carries its own lock; every mutation of a record happens under it,
so outcome reports for different items never contend and reports for the same
item are applied one at a time.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Optional

from pydantic import BaseModel, ConfigDict

from ..models.feed import Feed, FeedState


@dataclass
class FeedSchedule:
    """Adaptive state of one feed."""

    feed: Feed
    state: FeedState
    estimated_interval: float
    added_at: datetime
    has_prior: bool = True
    quality: float = 0.0
    consistency: float = 0.0
    history: Deque[float] = field(default_factory=deque)
    below_streak: int = 0
    evaluations: int = 0
    scored_entries: int = 0
    last_epoch: Optional[int] = None
    last_fetch_at: Optional[datetime] = None
    last_change_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    attempts: int = 0
    consecutive_failures: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass
class EntrySchedule:
    """Pending full-content fetch of one entry."""

    entry_id: str
    feed_id: str
    score: float = 0.0
    attempts: int = 0
    consecutive_failures: int = 0
    last_attempt_at: Optional[datetime] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class FeedStatus(BaseModel):
    """Read-only view of a feed's adaptive state, for persistence and audit."""

    model_config = ConfigDict(frozen=True)

    feed_id: str
    url: str
    state: FeedState
    estimated_interval_seconds: float
    quality: float
    consistency: float
    below_streak: int
    last_fetch_at: Optional[datetime] = None


class StateTransition(BaseModel):
    """A feed lifecycle change. previous is None when the feed was just created."""

    model_config = ConfigDict(frozen=True)

    feed_id: str
    previous: Optional[FeedState]
    current: FeedState
    reason: str
    epoch: Optional[int] = None
    at: datetime
