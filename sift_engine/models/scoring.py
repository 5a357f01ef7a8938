"""
Scoring models — ranking results, versioned ranking state and decay helpers.

Contains:
- recency_decay: exp(-age / tau) used for interaction seeds
- RankResult: output of one personalized ranking pass
- RankingState: the explicit, versioned ranking state passed between epochs
"""

import math
from datetime import datetime, timezone
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field


def seconds_between(later: datetime, earlier: datetime) -> float:
    """Elapsed seconds, clamped at zero (future timestamps count as now)."""
    return max(0.0, (later - earlier).total_seconds())


def recency_decay(age_seconds: float, tau_seconds: float) -> float:
    """Exponential decay exp(-age / tau); approaches but never reaches zero."""
    return math.exp(-max(0.0, age_seconds) / tau_seconds)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RankResult(BaseModel):
    """Signed personalized affinity per entry for one snapshot and seed set."""

    model_config = ConfigDict(frozen=True)

    scores: Dict[str, float]
    iterations: int
    converged: bool
    residual: float
    graph_version: int

    @property
    def approximate(self) -> bool:
        return not self.converged


class RankingState(BaseModel):
    """
    Versioned ranking state produced by one recompute epoch.

    Treat the contained mappings as read-only: a new epoch produces a new state.
    seed_signature identifies the seed set the state was computed from;
    content_signature the entry tags and feed membership.
    """

    model_config = ConfigDict(frozen=True)

    version: int = 0
    graph_version: int = -1
    seed_signature: Tuple[Tuple[str, float], ...] = ()
    content_signature: str = ""
    affinity: Dict[str, float] = Field(default_factory=dict)
    scores: Dict[str, float] = Field(default_factory=dict)
    feed_scores: Dict[str, float] = Field(default_factory=dict)
    converged: bool = True
    iterations: int = 0
    computed_at: datetime = Field(default_factory=utcnow)


EMPTY_STATE = RankingState()
