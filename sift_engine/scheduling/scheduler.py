"""
Scheduler — fetch planning and feed lifecycle.

Turns feed and entry scores into an ordered fetch plan:

    priority = due_ratio * quality_multiplier
    due_ratio = time_since_last_fetch / effective_interval
    quality_multiplier = max(min_quality_multiplier, 1 + boost * quality)

An item is eligible once due_ratio >= 1 (feeds) or its score is positive
(entries), and it is outside any failure backoff. Order: priority desc, then
quality desc, then identifier asc. Ephemeral feeds are probed on a fixed
interval with priority capped at ephemeral_priority_cap.

next_fetch() only reads; record_outcome() and on_score_update() mutate one
record under that record's lock.
"""

import heapq
import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ..models.config import DEFAULT_CONFIG, EngineConfig
from ..models.feed import Feed, FeedState
from ..models.fetchable import EntryTarget, FeedTarget, FetchableItem
from ..models.scoring import utcnow
from .pruning import PrunePolicy
from .records import EntrySchedule, FeedSchedule, FeedStatus, StateTransition
from .refresh import RefreshEstimator

logger = logging.getLogger(__name__)

Target = Union[FeedTarget, EntryTarget]


class Scheduler:
    """Priority ordering over fetchable feeds and entries."""

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG):
        self.config = config
        self.refresh = RefreshEstimator(config)
        self.policy = PrunePolicy(config)
        self._registry_lock = threading.RLock()
        self._events_lock = threading.Lock()
        self._feeds: Dict[str, FeedSchedule] = {}
        self._urls: Dict[str, str] = {}
        self._entries: Dict[str, EntrySchedule] = {}
        self._transitions: List[StateTransition] = []
        self._undrained = 0

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_feed(
        self,
        feed: Feed,
        state: FeedState = FeedState.ACTIVE,
        now: Optional[datetime] = None,
    ) -> bool:
        """Track a configured feed; returns False when its id or URL is already tracked."""
        now = now or utcnow()
        with self._registry_lock:
            if feed.id in self._feeds or feed.url in self._urls:
                return False
            ephemeral = state == FeedState.EPHEMERAL
            record = FeedSchedule(
                feed=feed,
                state=state,
                estimated_interval=self.refresh.probe_interval if ephemeral else self.refresh.initial_interval,
                has_prior=not ephemeral,
                added_at=now,
            )
            self._feeds[feed.id] = record
            self._urls[feed.url] = feed.id
        self._emit(feed.id, None, state, "discovered" if ephemeral else "configured", None, now)
        return True

    def discover(
        self,
        url: str,
        tags: Iterable[str] = (),
        source_entry_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Feed]:
        """Create an ephemeral feed for an untracked URL surfaced by an entry."""
        with self._registry_lock:
            if url in self._urls or url in self._feeds:
                return None
            feed = Feed.from_url(url, tags=frozenset(tags))
            if not self.add_feed(feed, state=FeedState.EPHEMERAL, now=now):
                return None
        logger.info("[schedule] FEED_DISCOVERED url=%s source_entry=%s", url, source_entry_id)
        return feed

    def track_entry(self, entry_id: str, feed_id: str, score: float = 0.0) -> bool:
        """Queue an entry for a full-content fetch."""
        with self._registry_lock:
            if entry_id in self._entries:
                return False
            self._entries[entry_id] = EntrySchedule(entry_id=entry_id, feed_id=feed_id, score=score)
            return True

    def untrack_entry(self, entry_id: str) -> bool:
        with self._registry_lock:
            return self._entries.pop(entry_id, None) is not None

    def feed_ids(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._feeds)

    def feed_state(self, feed_id: str) -> Optional[FeedState]:
        record = self._feeds.get(feed_id)
        return record.state if record is not None else None

    def feed_status(self, feed_id: str) -> Optional[FeedStatus]:
        record = self._feeds.get(feed_id)
        if record is None:
            return None
        with record.lock:
            return FeedStatus(
                feed_id=record.feed.id,
                url=record.feed.url,
                state=record.state,
                estimated_interval_seconds=record.estimated_interval,
                quality=record.quality,
                consistency=record.consistency,
                below_streak=record.below_streak,
                last_fetch_at=record.last_fetch_at,
            )

    def prune_threshold(self, feed_id: str) -> float:
        record = self._feeds[feed_id]
        with record.lock:
            return self.policy.prune_threshold(record)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def next_fetch(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> Iterator[FetchableItem]:
        """
        Eligible items, highest priority first.

        Lazy: priorities are read when iteration starts. Call again after state
        changes for a fresh ordering.
        """
        now = now or utcnow()
        with self._registry_lock:
            feeds = list(self._feeds.values())
            entries = list(self._entries.values())

        heap: List[Tuple[float, float, int, str, FetchableItem]] = []
        for record in feeds:
            with record.lock:
                item = self._feed_item(record, now)
            if item is not None:
                heap.append((-item.priority, -item.quality, 0, record.feed.id, item))
        for record in entries:
            with record.lock:
                item = self._entry_item(record, now)
            if item is not None:
                heap.append((-item.priority, -item.quality, 1, record.entry_id, item))
        heapq.heapify(heap)

        produced = 0
        while heap and (limit is None or produced < limit):
            yield heapq.heappop(heap)[-1]
            produced += 1

    def _quality_multiplier(self, quality: float) -> float:
        return max(
            self.config.min_quality_multiplier,
            1.0 + self.config.quality_priority_boost * quality,
        )

    def _feed_item(self, record: FeedSchedule, now: datetime) -> Optional[FetchableItem]:
        if record.state == FeedState.PRUNED:
            return None
        if not self.refresh.retry_at_ok(record.last_attempt_at, record.consecutive_failures, now):
            return None
        due = self.refresh.due_ratio(record, now)
        if due < 1.0:
            return None
        priority = due * self._quality_multiplier(record.quality)
        if record.state == FeedState.EPHEMERAL:
            priority = min(priority, self.config.ephemeral_priority_cap)
        return FetchableItem(
            target=FeedTarget(feed_id=record.feed.id),
            priority=priority,
            quality=record.quality,
            attempts=record.attempts,
            last_attempt_at=record.last_attempt_at,
        )

    def _entry_item(self, record: EntrySchedule, now: datetime) -> Optional[FetchableItem]:
        if record.score <= 0:
            return None
        if not self.refresh.retry_at_ok(record.last_attempt_at, record.consecutive_failures, now):
            return None
        return FetchableItem(
            target=EntryTarget(entry_id=record.entry_id, feed_id=record.feed_id),
            priority=self.config.entry_priority_weight * record.score,
            quality=record.score,
            attempts=record.attempts,
            last_attempt_at=record.last_attempt_at,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        item: Union[FetchableItem, Target],
        success: bool,
        observed_change_magnitude: float = 0.0,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Apply a fetch result. For feeds, observed_change_magnitude is the number of
        new entries seen. Returns False when the item is no longer tracked.
        """
        now = now or utcnow()
        target = item.target if isinstance(item, FetchableItem) else item
        match target:
            case FeedTarget(feed_id=feed_id):
                return self._record_feed_outcome(feed_id, success, observed_change_magnitude, now)
            case EntryTarget(entry_id=entry_id):
                return self._record_entry_outcome(entry_id, success, now)
        raise TypeError(f"not a fetch target: {target!r}")

    def _record_feed_outcome(self, feed_id: str, success: bool, magnitude: float, now: datetime) -> bool:
        record = self._feeds.get(feed_id)
        if record is None:
            logger.warning("[schedule] OUTCOME_UNKNOWN_FEED feed_id=%s", feed_id)
            return False
        with record.lock:
            record.attempts += 1
            record.last_attempt_at = now
            if not success:
                record.consecutive_failures += 1
                logger.info(
                    "[schedule] FETCH_FAILED feed_id=%s failures=%s backoff_s=%.0f",
                    feed_id, record.consecutive_failures,
                    self.refresh.backoff(record.consecutive_failures),
                )
                return True
            record.consecutive_failures = 0
            estimate = self.refresh.observe(record, now, max(0.0, magnitude))
            record.last_fetch_at = now
            if magnitude > 0 or record.last_change_at is None:
                record.last_change_at = now
        logger.debug("[schedule] FETCH_OK feed_id=%s new=%s interval_s=%.0f", feed_id, magnitude, estimate)
        return True

    def _record_entry_outcome(self, entry_id: str, success: bool, now: datetime) -> bool:
        with self._registry_lock:
            record = self._entries.get(entry_id)
            if record is None:
                logger.warning("[schedule] OUTCOME_UNKNOWN_ENTRY entry_id=%s", entry_id)
                return False
            with record.lock:
                record.attempts += 1
                record.last_attempt_at = now
                if success:
                    del self._entries[entry_id]
                    return True
                record.consecutive_failures += 1
                if record.attempts >= self.config.max_entry_attempts:
                    del self._entries[entry_id]
                    logger.warning(
                        "[schedule] ENTRY_FETCH_ABANDONED entry_id=%s attempts=%s",
                        entry_id, record.attempts,
                    )
        return True

    def on_score_update(
        self,
        target: Target,
        score: float,
        epoch: Optional[int] = None,
        member_count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[StateTransition]:
        """
        Feed a new score into the scheduler.

        Feed targets: one pruning/promotion step per epoch. Re-sending the epoch
        last applied to a feed replaces its score without counting the epoch twice.
        Entry targets: update the content-fetch priority.
        """
        match target:
            case FeedTarget(feed_id=feed_id):
                return self._feed_score_update(feed_id, score, epoch, member_count, now or utcnow())
            case EntryTarget(entry_id=entry_id):
                record = self._entries.get(entry_id)
                if record is not None:
                    with record.lock:
                        record.score = score
                return None
        raise TypeError(f"not a fetch target: {target!r}")

    def _feed_score_update(
        self,
        feed_id: str,
        score: float,
        epoch: Optional[int],
        member_count: Optional[int],
        now: datetime,
    ) -> Optional[StateTransition]:
        record = self._feeds.get(feed_id)
        if record is None:
            logger.warning("[schedule] SCORE_UNKNOWN_FEED feed_id=%s", feed_id)
            return None
        with record.lock:
            if member_count is not None:
                record.scored_entries = member_count
            if epoch is not None and epoch == record.last_epoch:
                self.policy.replace_score(record, score)
                return None
            record.last_epoch = epoch
            previous = record.state
            decision = self.policy.step(record, score)
            if decision is None:
                return None
            record.state, reason = decision
        logger.info(
            "[schedule] FEED_TRANSITION feed_id=%s %s->%s reason=%s",
            feed_id, previous.value, record.state.value, reason,
        )
        return self._emit(feed_id, previous, record.state, reason, epoch, now)

    # ------------------------------------------------------------------
    # Transition events
    # ------------------------------------------------------------------

    def _emit(
        self,
        feed_id: str,
        previous: Optional[FeedState],
        current: FeedState,
        reason: str,
        epoch: Optional[int],
        now: datetime,
    ) -> StateTransition:
        event = StateTransition(
            feed_id=feed_id, previous=previous, current=current, reason=reason, epoch=epoch, at=now,
        )
        with self._events_lock:
            self._transitions.append(event)
        return event

    def transitions(self) -> List[StateTransition]:
        """Every transition since construction, oldest first."""
        with self._events_lock:
            return list(self._transitions)

    def drain_transitions(self) -> List[StateTransition]:
        """Transitions not yet drained, oldest first."""
        with self._events_lock:
            pending = self._transitions[self._undrained:]
            self._undrained = len(self._transitions)
            return pending
