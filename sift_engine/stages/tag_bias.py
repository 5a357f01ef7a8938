"""
Tag bias: combine graph affinity with tag overlap, and aggregate feed scores.

For a candidate x and seed y:

    weight(x, y) = affinity(x) * share(y) * sum(tag_weight[i] for i in tags(x) & tags(y))

share(y) is y's signed share of total seed mass. This approximates "the part of
x's affinity attributable to y" without per-seed walks: exact attribution would
need one personalized walk per seed.

The bias is normalised by the affinity magnitude and squashed with tanh, so

    score(x) = affinity(x) * (1 + tanh(sum_y weight(x, y) / |affinity(x)|))

keeps the sign of the affinity and stays within (0, 2) times its magnitude.
"""

import math
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Sequence

from ..errors import ConfigurationError
from ..models.config import DEFAULT_CONFIG, EngineConfig
from .personalization import seed_shares

DEFAULT_TAG_WEIGHT = 1.0


class TagWeights:
    """Tag name -> positive weight; unlisted tags weigh DEFAULT_TAG_WEIGHT."""

    def __init__(self, weights: Optional[Mapping[str, float]] = None):
        self._weights: Dict[str, float] = {}
        for tag, weight in (weights or {}).items():
            self._weights[_normalize_tag(tag)] = _validate_weight(tag, weight)

    def get(self, tag: str) -> float:
        return self._weights.get(tag, DEFAULT_TAG_WEIGHT)

    def with_weight(self, tag: str, weight: float) -> "TagWeights":
        """Copy with one tag's weight replaced."""
        updated = dict(self._weights)
        updated[_normalize_tag(tag)] = weight
        return TagWeights(updated)

    def overlap(self, a: FrozenSet[str], b: FrozenSet[str]) -> float:
        """Sum of weights over shared tags."""
        if not a or not b:
            return 0.0
        return sum(self.get(tag) for tag in a & b)

    def as_dict(self) -> Dict[str, float]:
        return dict(self._weights)

    def __len__(self) -> int:
        return len(self._weights)


def _normalize_tag(tag: str) -> str:
    if not isinstance(tag, str) or not tag.strip():
        raise ConfigurationError(f"invalid tag name {tag!r}")
    return tag.strip().lower()


def _validate_weight(tag: str, weight: float) -> float:
    try:
        value = float(weight)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"weight for tag {tag!r} is not a number") from exc
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"weight for tag {tag!r} must be positive, got {weight!r}")
    return value


def trimmed_top_k_mean(values: Iterable[float], top_k: int, trim_fraction: float) -> float:
    """
    Mean of the top_k highest values after trimming floor(trim_fraction * n)
    from each end of that window. Empty input scores 0.
    """
    window = sorted(values, reverse=True)[:top_k]
    if not window:
        return 0.0
    trim = int(len(window) * trim_fraction)
    kept = window[trim: len(window) - trim] if trim else window
    return sum(kept) / len(kept)


class TagBias:
    """Entry and feed scoring for one ranking epoch."""

    def __init__(
        self,
        tag_weights: TagWeights,
        entry_tags: Mapping[str, FrozenSet[str]],
        affinity: Mapping[str, float],
        seeds: Mapping[str, float],
        config: EngineConfig = DEFAULT_CONFIG,
    ):
        self.tag_weights = tag_weights
        self.entry_tags = entry_tags
        self.affinity = affinity
        self.shares = seed_shares(seeds)
        self.config = config

    def bias(self, entry_id: str) -> float:
        """Raw tag-bias term: sum over seeds of weight(x, y)."""
        a = self.affinity.get(entry_id, 0.0)
        tags = self.entry_tags.get(entry_id, frozenset())
        if a == 0.0 or not tags:
            return 0.0
        total = 0.0
        for seed_id, share in self.shares.items():
            overlap = self.tag_weights.overlap(tags, self.entry_tags.get(seed_id, frozenset()))
            if overlap:
                total += a * share * overlap
        return total

    def normalized_bias(self, entry_id: str) -> float:
        a = self.affinity.get(entry_id, 0.0)
        if a == 0.0:
            return 0.0
        return math.tanh(self.bias(entry_id) / abs(a))

    def score(self, entry_id: str) -> float:
        """Final entry score: affinity modulated, never overridden, by tag bias."""
        a = self.affinity.get(entry_id, 0.0)
        return a * (1.0 + self.normalized_bias(entry_id))

    def scores(self) -> Dict[str, float]:
        return {entry_id: self.score(entry_id) for entry_id in self.affinity}

    def feed_score(
        self,
        entry_ids: Sequence[str],
        scores: Optional[Mapping[str, float]] = None,
    ) -> float:
        """Trimmed top-k mean over the feed's current member scores."""
        if scores is None:
            values = [self.score(entry_id) for entry_id in entry_ids]
        else:
            values = [scores.get(entry_id, 0.0) for entry_id in entry_ids]
        return trimmed_top_k_mean(
            values,
            self.config.feed_score_top_k,
            self.config.feed_score_trim_fraction,
        )
