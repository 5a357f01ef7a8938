"""
Feed pruning and ephemeral-feed promotion.

The prune threshold adapts to how consistently a feed has scored:

    prune_threshold = base - bonus
    bonus           = max_bonus * confidence / (1 + variance / scale)
    confidence      = min(1, len(history) / window)

variance is the consistency metric: the variance of the feed's scores over the
last `window` epochs, taken before the current epoch is added. Low variance
means a large bonus, i.e. a more lenient threshold.

Active feeds are pruned after `prune_min_consecutive_epochs` consecutive epochs
below threshold. Ephemeral feeds are evaluated once they have enough scored
entries: they are promoted above `threshold + promotion_margin`, rejected with
the same hysteresis below `threshold`, and rejected after
`ephemeral_max_evaluations` undecided evaluations.
"""

from typing import Optional, Tuple

import numpy as np

from ..models.config import DEFAULT_CONFIG, EngineConfig
from ..models.feed import FeedState
from .records import FeedSchedule


class PrunePolicy:
    """Per-epoch lifecycle decisions (caller holds the record lock)."""

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG):
        self.base_threshold = config.prune_base_threshold
        self.max_bonus = config.max_consistency_bonus
        self.variance_scale = config.consistency_variance_scale
        self.window = config.consistency_window
        self.min_consecutive = config.prune_min_consecutive_epochs
        self.promotion_margin = config.promotion_margin
        self.min_entries = config.ephemeral_min_entries
        self.max_evaluations = config.ephemeral_max_evaluations

    def consistency_bonus(self, variance: float, history_len: int) -> float:
        confidence = min(1.0, history_len / self.window)
        return self.max_bonus * confidence / (1.0 + variance / self.variance_scale)

    def prune_threshold(self, record: FeedSchedule) -> float:
        return self.base_threshold - self.consistency_bonus(record.consistency, len(record.history))

    def promotion_threshold(self, record: FeedSchedule) -> float:
        return self.prune_threshold(record) + self.promotion_margin

    def record_score(self, record: FeedSchedule, score: float) -> None:
        record.quality = score
        record.history.append(score)
        while len(record.history) > self.window:
            record.history.popleft()
        record.consistency = float(np.var(record.history)) if record.history else 0.0

    def replace_score(self, record: FeedSchedule, score: float) -> None:
        """Overwrite the latest epoch's score, e.g. when that epoch is re-sent."""
        if not record.history:
            self.record_score(record, score)
            return
        record.quality = score
        record.history[-1] = score
        record.consistency = float(np.var(record.history))

    def step(self, record: FeedSchedule, score: float) -> Optional[Tuple[FeedState, str]]:
        """
        Apply one recompute epoch with feed score `score`.

        Returns (new_state, reason) when the feed changes state, else None.
        """
        threshold = self.prune_threshold(record)
        promote_at = threshold + self.promotion_margin
        self.record_score(record, score)

        if record.state == FeedState.PRUNED:
            return None

        if record.state == FeedState.ACTIVE:
            if score < threshold:
                record.below_streak += 1
                if record.below_streak >= self.min_consecutive:
                    return FeedState.PRUNED, (
                        f"score {score:.4f} below threshold {threshold:.4f} "
                        f"for {record.below_streak} epochs"
                    )
            else:
                record.below_streak = 0
            return None

        # Ephemeral: probe until enough entries have been scored
        if record.scored_entries < self.min_entries:
            return None
        record.evaluations += 1
        if score >= promote_at:
            record.below_streak = 0
            return FeedState.ACTIVE, f"promoted: score {score:.4f} >= {promote_at:.4f}"
        if score < threshold:
            record.below_streak += 1
            if record.below_streak >= self.min_consecutive:
                return FeedState.PRUNED, f"rejected: score {score:.4f} below {threshold:.4f}"
        else:
            record.below_streak = 0
        if record.evaluations >= self.max_evaluations:
            return FeedState.PRUNED, f"rejected: undecided after {record.evaluations} evaluations"
        return None
