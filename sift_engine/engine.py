"""
Sift Engine — scoring & scheduling facade

Owns the long-lived components and the current RankingState:
- graph: mutual-kNN SimilarityGraph over entry embeddings
- interactions: InteractionSource (in-memory InteractionLog by default)
- scheduler: fetch planning and feed lifecycle
- recompute(): snapshot -> personalization -> tag bias -> scheduler updates

No I/O happens here: hosts fetch, parse and embed, then hand records in.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from .errors import ConsistencyViolation, DataError, RankingCancelled
from .graph.mutual_knn import SimilarityGraph
from .models.config import EngineConfig, resolve_config
from .models.entry import Entry, InteractionState, ensure_entry
from .models.feed import Feed, FeedState
from .models.fetchable import EntryTarget, FeedTarget, FetchableItem
from .models.interaction import (
    Interaction,
    InteractionKind,
    InteractionLog,
    InteractionSource,
    ensure_interaction,
    latest_by_entry,
)
from .models.scoring import EMPTY_STATE, RankingState, utcnow
from .scheduling.records import FeedStatus, StateTransition
from .scheduling.scheduler import Scheduler
from .stages.orchestrator import recompute_epoch
from .stages.personalization import CancellationToken, PersonalizationEngine
from .stages.tag_bias import TagWeights

logger = logging.getLogger(__name__)


@dataclass
class IngestReport:
    """Outcome of one ingest batch. Rejected records never stop the batch."""

    accepted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    discovered: List[str] = field(default_factory=list)
    errors: List[DataError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class InteractionReport:
    """Outcome of one interaction batch: valid records are stored, malformed ones reported."""

    stored: int = 0
    errors: List[DataError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class SiftEngine:
    """Single-user scoring & scheduling engine."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        interactions: Optional[InteractionSource] = None,
        tag_weights: Optional[Union[TagWeights, Mapping[str, float]]] = None,
    ):
        self.config = resolve_config(config)
        self.graph = SimilarityGraph(
            self.config.k,
            dimension=self.config.dimension,
            lock_stripes=self.config.lock_stripes,
        )
        self.interactions = interactions if interactions is not None else InteractionLog()
        self.scheduler = Scheduler(self.config)
        self.personalization = PersonalizationEngine(self.config)
        self._tag_weights = tag_weights if isinstance(tag_weights, TagWeights) else TagWeights(tag_weights)

        self._entries_lock = threading.RLock()
        self._entries: Dict[str, Entry] = {}
        self._members: Dict[str, Set[str]] = {}
        self._read: Set[str] = set()

        self._state_lock = threading.Lock()
        self._recompute_lock = threading.Lock()
        self._state: RankingState = EMPTY_STATE
        self._running: Optional[CancellationToken] = None
        self._force = False

    # ------------------------------------------------------------------
    # Feeds and entries
    # ------------------------------------------------------------------

    def add_feed(
        self,
        feed: Union[Feed, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> bool:
        """Register a configured feed (starts active)."""
        feed = feed if isinstance(feed, Feed) else Feed.model_validate(feed)
        added = self.scheduler.add_feed(feed, state=FeedState.ACTIVE, now=now)
        if added:
            with self._entries_lock:
                self._members.setdefault(feed.id, set())
        return added

    def ingest_entries(
        self,
        records: Iterable[Union[Entry, Dict[str, Any]]],
        now: Optional[datetime] = None,
    ) -> IngestReport:
        """
        Validate, embed into the graph and route discovery for a batch of entries.

        Entries without fetched_at are queued for a full-content fetch.
        """
        now = now or utcnow()
        report = IngestReport()
        for record in records:
            try:
                entry = ensure_entry(record)
                if self.scheduler.feed_state(entry.feed_id) is None:
                    raise DataError(f"entry references unknown feed {entry.feed_id!r}", record_id=entry.id)
                changed = self.graph.upsert(entry.id, entry.embedding)
            except DataError as exc:
                logger.warning("[engine] INGEST_REJECTED record_id=%s error=%s", exc.record_id, exc)
                report.errors.append(exc)
                continue

            self._store_entry(entry)
            (report.accepted if changed else report.unchanged).append(entry.id)
            if entry.fetched_at is None:
                self.scheduler.track_entry(entry.id, entry.feed_id)
            for url in entry.discovered_feeds:
                feed = self.scheduler.discover(url, tags=entry.tags, source_entry_id=entry.id, now=now)
                if feed is not None:
                    with self._entries_lock:
                        self._members.setdefault(feed.id, set())
                    report.discovered.append(feed.id)

        logger.info(
            "[engine] INGEST accepted=%s unchanged=%s rejected=%s discovered=%s",
            len(report.accepted), len(report.unchanged), len(report.errors), len(report.discovered),
        )
        return report

    def _store_entry(self, entry: Entry) -> None:
        with self._entries_lock:
            old = self._entries.get(entry.id)
            if old is not None and old.feed_id != entry.feed_id:
                self._members.get(old.feed_id, set()).discard(entry.id)
            self._entries[entry.id] = entry
            self._members.setdefault(entry.feed_id, set()).add(entry.id)

    def remove_entry(self, entry_id: str) -> bool:
        """Drop an entry from the graph, feed membership and fetch queue."""
        removed = self.graph.remove(entry_id)
        with self._entries_lock:
            entry = self._entries.pop(entry_id, None)
            if entry is not None:
                self._members.get(entry.feed_id, set()).discard(entry_id)
            self._read.discard(entry_id)
        self.scheduler.untrack_entry(entry_id)
        return removed or entry is not None

    def entry(self, entry_id: str) -> Optional[Entry]:
        with self._entries_lock:
            return self._entries.get(entry_id)

    def feed_entries(self, feed_id: str) -> List[str]:
        with self._entries_lock:
            return sorted(self._members.get(feed_id, ()))

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    def record_interaction(
        self,
        entry_id: str,
        kind: Union[InteractionKind, str],
        timestamp: Optional[datetime] = None,
    ) -> Interaction:
        """Record one interaction; raises DataError for an unknown kind."""
        interaction = ensure_interaction(
            {"entry_id": entry_id, "kind": kind, "timestamp": timestamp or utcnow()}
        )
        self.record_interactions([interaction])
        return interaction

    def record_interactions(self, items: Iterable[Union[Interaction, Dict[str, Any]]]) -> InteractionReport:
        """
        Append a batch of interactions to the interaction store.

        Malformed records are reported and skipped; the rest are stored. A batch
        storing at least cancel_batch_threshold items cancels a running
        recompute, since its result would be stale on arrival.
        """
        report = InteractionReport()
        batch = []
        for item in items:
            try:
                batch.append(ensure_interaction(item))
            except DataError as exc:
                logger.warning("[engine] INTERACTION_REJECTED record_id=%s error=%s", exc.record_id, exc)
                report.errors.append(exc)
        report.stored = self.interactions.extend(batch) if batch else 0
        if report.stored >= self.config.cancel_batch_threshold and self.cancel_recompute():
            logger.info("[engine] RECOMPUTE_CANCELLED_BY_BATCH size=%s", report.stored)
        return report

    def mark_read(self, entry_id: str) -> None:
        with self._entries_lock:
            self._read.add(entry_id)

    def interaction_state(self, entry_id: str) -> InteractionState:
        """Latest explicit signal wins; otherwise read or none."""
        items = latest_by_entry(
            i for i in self.interactions.interactions() if i.entry_id == entry_id
        ).get(entry_id)
        if items:
            if items[-1].kind == InteractionKind.LIKE:
                return InteractionState.LIKED
            return InteractionState.DISLIKED
        with self._entries_lock:
            return InteractionState.READ if entry_id in self._read else InteractionState.NONE

    # ------------------------------------------------------------------
    # Tag weights
    # ------------------------------------------------------------------

    @property
    def tag_weights(self) -> TagWeights:
        return self._tag_weights

    def set_tag_weights(self, weights: Union[TagWeights, Mapping[str, float]]) -> None:
        """Replace the tag-weight table; the next recompute re-scores even if nothing else moved."""
        self._tag_weights = weights if isinstance(weights, TagWeights) else TagWeights(weights)
        self._force = True

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    @property
    def state(self) -> RankingState:
        with self._state_lock:
            return self._state

    def recompute(self, now: Optional[datetime] = None) -> RankingState:
        """
        Run one recompute epoch and push the scores to the scheduler.

        On ConsistencyViolation or RankingCancelled the previous state is kept
        and returned.
        """
        now = now or utcnow()
        with self._recompute_lock:
            previous = self.state
            token = CancellationToken()
            with self._state_lock:
                self._running = token
            try:
                snapshot = self.graph.snapshot(verify=True)
                seeds = self.personalization.seeds(self.interactions.interactions(), now)
                with self._entries_lock:
                    entry_tags = {entry_id: e.tags for entry_id, e in self._entries.items()}
                    members = {feed_id: sorted(ids) for feed_id, ids in self._members.items()}
                force, self._force = self._force, False
                state = recompute_epoch(
                    previous,
                    snapshot,
                    seeds,
                    entry_tags,
                    members,
                    tag_weights=self._tag_weights,
                    config=self.config,
                    cancel=token,
                    force=force,
                    now=now,
                )
            except ConsistencyViolation as exc:
                logger.error("[engine] RECOMPUTE_ABORTED reason=consistency error=%s", exc)
                return previous
            except RankingCancelled:
                self._force = self._force or force
                logger.info("[engine] RECOMPUTE_ABORTED reason=cancelled version=%s", previous.version)
                return previous
            finally:
                with self._state_lock:
                    self._running = None

            if state is previous:
                return previous
            with self._state_lock:
                self._state = state
            self._push_scores(state, members, now)
            return state

    def _push_scores(self, state: RankingState, members: Mapping[str, List[str]], now: datetime) -> None:
        for feed_id in self.scheduler.feed_ids():
            scored = [m for m in members.get(feed_id, ()) if m in state.scores]
            self.scheduler.on_score_update(
                FeedTarget(feed_id=feed_id),
                state.feed_scores.get(feed_id, 0.0),
                epoch=state.version,
                member_count=len(scored),
                now=now,
            )
        for entry_id, score in state.scores.items():
            self.scheduler.on_score_update(EntryTarget(entry_id=entry_id), score)

    def cancel_recompute(self) -> bool:
        """Cancel the running recompute, if any."""
        with self._state_lock:
            token = self._running
        if token is None:
            return False
        token.cancel()
        return True

    def entry_score(self, entry_id: str) -> Optional[float]:
        return self.state.scores.get(entry_id)

    def feed_score(self, feed_id: str) -> Optional[float]:
        return self.state.feed_scores.get(feed_id)

    def top_entries(self, limit: int = 10) -> List[str]:
        scores = self.state.scores
        return sorted(scores, key=lambda entry_id: (-scores[entry_id], entry_id))[:limit]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def fetch_plan(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[FetchableItem]:
        return list(self.scheduler.next_fetch(now=now, limit=limit))

    def record_outcome(
        self,
        item: Union[FetchableItem, FeedTarget, EntryTarget],
        success: bool,
        observed_change_magnitude: float = 0.0,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.scheduler.record_outcome(item, success, observed_change_magnitude, now=now)

    def feed_status(self, feed_id: str) -> Optional[FeedStatus]:
        return self.scheduler.feed_status(feed_id)

    def transitions(self) -> List[StateTransition]:
        return self.scheduler.transitions()
