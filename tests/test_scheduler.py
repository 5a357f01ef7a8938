"""
Scheduler tests: refresh estimation, fetch ordering, failure backoff, entry
fetches, discovery and feed lifecycle transitions.
"""

import pytest

from sift_engine.computed_params import HOUR
from sift_engine.models.config import DEFAULT_CONFIG
from sift_engine.models.feed import Feed, FeedState
from sift_engine.models.fetchable import EntryTarget, FeedTarget
from sift_engine.scheduling import Scheduler, ewma
from sift_engine.scheduling.refresh import observed_interval


def feed(feed_id):
    return Feed(id=feed_id, url=f"https://{feed_id}.example/feed.xml")


def plan_ids(scheduler, now, limit=None):
    return [item.key[1] for item in scheduler.next_fetch(now=now, limit=limit)]


class TestRefreshEstimate:
    def test_ewma(self):
        assert ewma(10.0, 20.0, 0.3) == pytest.approx(13.0)

    def test_observed_interval(self):
        assert observed_interval(3600.0, 3600.0, 4) == 900.0
        assert observed_interval(3600.0, 7200.0, 0) == 7200.0

    def test_estimate_follows_observed_changes(self, t0, at):
        scheduler = Scheduler()
        scheduler.add_feed(feed("a"), now=t0)
        scheduler.record_outcome(FeedTarget(feed_id="a"), True, 3, now=t0)
        initial = DEFAULT_CONFIG.initial_refresh_interval_hours * HOUR
        assert scheduler.feed_status("a").estimated_interval_seconds == pytest.approx(initial)

        # Four new entries in two hours: observed interval 30 minutes
        scheduler.record_outcome(FeedTarget(feed_id="a"), True, 4, now=at(hours=2))
        expected = 0.3 * 0.5 * HOUR + 0.7 * initial
        assert scheduler.feed_status("a").estimated_interval_seconds == pytest.approx(expected)

        # Nothing new for two more hours: quiet period counts as the observation
        scheduler.record_outcome(FeedTarget(feed_id="a"), True, 0, now=at(hours=4))
        expected = 0.3 * 2 * HOUR + 0.7 * expected
        assert scheduler.feed_status("a").estimated_interval_seconds == pytest.approx(expected)

    def test_estimate_is_clamped(self, t0, at):
        scheduler = Scheduler()
        scheduler.add_feed(feed("a"), now=t0)
        scheduler.record_outcome(FeedTarget(feed_id="a"), True, 1, now=t0)
        for minute in range(1, 40):
            scheduler.record_outcome(FeedTarget(feed_id="a"), True, 100, now=at(minutes=minute))
        minimum = DEFAULT_CONFIG.min_refresh_interval_minutes * 60
        assert scheduler.feed_status("a").estimated_interval_seconds == pytest.approx(minimum)

    def test_failure_does_not_touch_estimate(self, t0, at):
        scheduler = Scheduler()
        scheduler.add_feed(feed("a"), now=t0)
        before = scheduler.feed_status("a").estimated_interval_seconds
        scheduler.record_outcome(FeedTarget(feed_id="a"), False, now=at(hours=1))
        assert scheduler.feed_status("a").estimated_interval_seconds == before
        assert scheduler.feed_status("a").last_fetch_at is None


class TestOrdering:
    @pytest.fixture(autouse=True)
    def setup(self, t0):
        self.scheduler = Scheduler()
        for feed_id in ("c", "a", "b"):
            self.scheduler.add_feed(feed(feed_id), now=t0)

    def test_never_fetched_feeds_are_due(self, t0):
        items = list(self.scheduler.next_fetch(now=t0))
        assert [i.key[1] for i in items] == ["a", "b", "c"]
        assert all(i.priority == pytest.approx(1.0) for i in items)

    def test_quality_raises_priority(self, t0):
        self.scheduler.on_score_update(FeedTarget(feed_id="b"), 0.5, epoch=1)
        self.scheduler.on_score_update(FeedTarget(feed_id="c"), 0.2, epoch=1)
        items = list(self.scheduler.next_fetch(now=t0))
        assert [i.key[1] for i in items] == ["b", "c", "a"]
        assert [i.priority for i in items] == pytest.approx([1.5, 1.2, 1.0])

    def test_tie_on_priority_goes_to_quality(self, t0, at):
        self.scheduler.on_score_update(FeedTarget(feed_id="c"), 0.5, epoch=1)
        # a is 1.5x overdue with no quality: same priority as c
        self.scheduler.record_outcome(FeedTarget(feed_id="a"), True, 0, now=t0)
        self.scheduler.record_outcome(FeedTarget(feed_id="c"), True, 0, now=at(hours=3))
        plan = list(self.scheduler.next_fetch(now=at(hours=9)))
        assert [i.key[1] for i in plan][:2] == ["c", "a"]
        assert plan[0].priority == pytest.approx(plan[1].priority)

    def test_not_due_feeds_are_skipped(self, t0, at):
        self.scheduler.record_outcome(FeedTarget(feed_id="a"), True, 1, now=t0)
        assert "a" not in plan_ids(self.scheduler, at(hours=1))
        assert "a" in plan_ids(self.scheduler, at(hours=6))

    def test_limit_and_laziness(self, t0):
        assert plan_ids(self.scheduler, t0, limit=2) == ["a", "b"]
        plan = self.scheduler.next_fetch(now=t0)
        assert next(plan).key == ("feed", "a")

    def test_duplicate_feed_is_ignored(self, t0):
        assert self.scheduler.add_feed(feed("a"), now=t0) is False
        assert self.scheduler.feed_ids() == ["a", "b", "c"]


class TestFailures:
    def test_exponential_backoff(self, t0, at):
        scheduler = Scheduler()
        scheduler.add_feed(feed("a"), now=t0)
        scheduler.record_outcome(FeedTarget(feed_id="a"), False, now=t0)
        assert plan_ids(scheduler, at(minutes=5)) == []
        assert plan_ids(scheduler, at(minutes=10)) == ["a"]
        scheduler.record_outcome(FeedTarget(feed_id="a"), False, now=at(minutes=10))
        assert plan_ids(scheduler, at(minutes=25)) == []
        assert plan_ids(scheduler, at(minutes=30)) == ["a"]
        scheduler.record_outcome(FeedTarget(feed_id="a"), True, 1, now=at(minutes=30))
        assert scheduler.refresh.backoff(0) == 0.0

    def test_backoff_is_capped(self):
        scheduler = Scheduler()
        assert scheduler.refresh.backoff(30) == DEFAULT_CONFIG.max_failure_backoff_hours * HOUR

    def test_unknown_targets(self, t0):
        scheduler = Scheduler()
        assert scheduler.record_outcome(FeedTarget(feed_id="x"), True, now=t0) is False
        assert scheduler.record_outcome(EntryTarget(entry_id="x"), True, now=t0) is False
        assert scheduler.on_score_update(FeedTarget(feed_id="x"), 0.4) is None


class TestEntryFetches:
    @pytest.fixture(autouse=True)
    def setup(self):
        self.scheduler = Scheduler()
        self.scheduler.track_entry("e1", "f")

    def test_only_positive_scores_are_eligible(self, t0):
        assert plan_ids(self.scheduler, t0) == []
        self.scheduler.on_score_update(EntryTarget(entry_id="e1"), -0.2)
        assert plan_ids(self.scheduler, t0) == []
        self.scheduler.on_score_update(EntryTarget(entry_id="e1"), 0.4)
        items = list(self.scheduler.next_fetch(now=t0))
        assert items[0].key == ("entry", "e1")
        assert items[0].priority == pytest.approx(0.4)
        assert items[0].target.feed_id == "f"

    def test_success_removes_entry(self, t0):
        self.scheduler.on_score_update(EntryTarget(entry_id="e1"), 0.4)
        item = next(self.scheduler.next_fetch(now=t0))
        assert self.scheduler.record_outcome(item, True, now=t0) is True
        assert plan_ids(self.scheduler, t0) == []
        assert self.scheduler.record_outcome(item, True, now=t0) is False

    def test_abandoned_after_max_attempts(self, t0, at):
        self.scheduler.on_score_update(EntryTarget(entry_id="e1"), 0.4)
        for attempt in range(DEFAULT_CONFIG.max_entry_attempts):
            assert self.scheduler.record_outcome(EntryTarget(entry_id="e1"), False, now=at(hours=attempt))
        assert plan_ids(self.scheduler, at(days=3)) == []


class TestPruningHysteresis:
    @pytest.fixture(autouse=True)
    def setup(self, make_config, t0):
        config = make_config(prune_base_threshold=0.1, max_consistency_bonus=0.0, prune_min_consecutive_epochs=3)
        self.scheduler = Scheduler(config)
        self.scheduler.add_feed(feed("f"), now=t0)
        self.epoch = 0

    def score(self, value):
        self.epoch += 1
        return self.scheduler.on_score_update(FeedTarget(feed_id="f"), value, epoch=self.epoch)

    def pruned_events(self):
        return [t for t in self.scheduler.transitions() if t.current == FeedState.PRUNED]

    def test_short_dips_do_not_prune(self):
        for value in (0.5, 0.05, 0.05, 0.5, 0.05, 0.05, 0.5):
            assert self.score(value) is None
        assert self.scheduler.feed_state("f") == FeedState.ACTIVE
        assert self.pruned_events() == []

    def test_prunes_exactly_once(self, t0):
        events = [self.score(v) for v in (0.05, 0.05, 0.05, 0.05, 0.01)]
        assert events[:2] == [None, None]
        assert events[2] is not None and events[2].previous == FeedState.ACTIVE
        assert events[3:] == [None, None]
        assert len(self.pruned_events()) == 1
        assert self.scheduler.feed_state("f") == FeedState.PRUNED
        assert plan_ids(self.scheduler, t0) == []

    def test_resent_epoch_is_not_double_counted(self):
        self.score(0.05)
        self.score(0.05)
        for _ in range(3):
            self.scheduler.on_score_update(FeedTarget(feed_id="f"), 0.05, epoch=self.epoch)
        assert self.scheduler.feed_state("f") == FeedState.ACTIVE
        assert self.scheduler.feed_status("f").below_streak == 2

    def test_resent_epoch_refreshes_consistency(self):
        self.score(0.2)
        self.score(0.4)
        self.scheduler.on_score_update(FeedTarget(feed_id="f"), 0.2, epoch=self.epoch)
        status = self.scheduler.feed_status("f")
        assert status.quality == 0.2
        assert status.consistency == pytest.approx(0.0)


class TestDiscovery:
    @pytest.fixture(autouse=True)
    def setup(self, t0):
        self.scheduler = Scheduler()
        self.url = "https://new.example/atom.xml"
        self.feed = self.scheduler.discover(self.url, tags=["rust"], source_entry_id="e1", now=t0)
        self.epoch = 0

    def score(self, value, members=5):
        self.epoch += 1
        return self.scheduler.on_score_update(
            FeedTarget(feed_id=self.feed.id), value, epoch=self.epoch, member_count=members,
        )

    def test_discovered_feed_is_ephemeral(self):
        assert self.scheduler.feed_state(self.feed.id) == FeedState.EPHEMERAL
        event = self.scheduler.transitions()[0]
        assert event.previous is None and event.current == FeedState.EPHEMERAL
        assert self.feed.tags == frozenset({"rust"})

    def test_known_url_is_not_rediscovered(self, t0):
        assert self.scheduler.discover(self.url, now=t0) is None
        self.scheduler.add_feed(Feed(id="known", url="https://known.example/rss"), now=t0)
        assert self.scheduler.discover("https://known.example/rss", now=t0) is None

    def test_url_matching_a_configured_feed_id_is_not_rediscovered(self, t0):
        url = "https://renamed.example/rss"
        self.scheduler.add_feed(Feed(id=url, url="https://elsewhere.example/rss"), now=t0)
        assert self.scheduler.discover(url, now=t0) is None
        assert self.scheduler.feed_state(url) == FeedState.ACTIVE

    def test_probe_priority_is_capped(self, t0, at):
        item = next(self.scheduler.next_fetch(now=t0))
        assert item.priority == pytest.approx(DEFAULT_CONFIG.ephemeral_priority_cap)
        self.scheduler.record_outcome(item, True, 2, now=t0)
        assert plan_ids(self.scheduler, at(hours=12)) == []
        assert plan_ids(self.scheduler, at(hours=24)) == [self.feed.id]

    def test_waits_for_enough_scored_entries(self):
        for _ in range(10):
            assert self.score(-0.5, members=2) is None
        assert self.scheduler.feed_state(self.feed.id) == FeedState.EPHEMERAL

    def test_promotion(self):
        event = self.score(0.2)
        assert event.previous == FeedState.EPHEMERAL and event.current == FeedState.ACTIVE
        assert self.scheduler.feed_state(self.feed.id) == FeedState.ACTIVE

    def test_rejection_below_threshold(self):
        assert self.score(-0.2) is None
        assert self.score(-0.2) is None
        event = self.score(-0.2)
        assert event.current == FeedState.PRUNED
        assert event.reason.startswith("rejected")

    def test_rejection_when_undecided(self):
        events = [self.score(0.01) for _ in range(DEFAULT_CONFIG.ephemeral_max_evaluations)]
        assert events[:-1] == [None] * (len(events) - 1)
        assert events[-1].current == FeedState.PRUNED
        assert "undecided" in events[-1].reason

    def test_drain_transitions(self):
        drained = self.scheduler.drain_transitions()
        assert len(drained) == 1
        assert self.scheduler.drain_transitions() == []
        self.score(0.2)
        assert [t.current for t in self.scheduler.drain_transitions()] == [FeedState.ACTIVE]
        assert len(self.scheduler.transitions()) == 2
