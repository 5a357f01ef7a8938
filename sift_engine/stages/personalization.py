"""
Personalization: random walk with restart seeded by likes and dislikes.

Seeds come from interactions: each interacted entry gets a weight whose sign is
its most recent kind and whose magnitude is the sum of exp(-age / tau) over all
of its interaction timestamps. The restart vector is the seed weights
normalised to sum(|r|) = 1, and ranking iterates

    s' = (1 - d) * r + d * P^T s

over a graph snapshot until the L1 change drops below the tolerance or the
iteration cap is reached. Dislikes diffuse negative affinity through the same
walk; the output is signed and not renormalised.
"""

import logging
import threading
import warnings
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np

from ..computed_params import decay_tau_seconds
from ..errors import ConvergenceWarning, RankingCancelled
from ..graph.snapshot import GraphSnapshot
from ..models.config import DEFAULT_CONFIG, EngineConfig
from ..models.interaction import Interaction, InteractionKind, latest_by_entry
from ..models.scoring import RankResult, recency_decay, seconds_between

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked once per ranking iteration."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RankingCancelled("ranking pass cancelled")


def seed_weights_from_interactions(
    interactions: Iterable[Interaction],
    now: datetime,
    tau_seconds: float,
) -> Dict[str, float]:
    """
    Signed, recency-decayed seed weight per interacted entry.

    The latest interaction decides the sign; every timestamp of the entry adds
    exp(-age / tau) to the magnitude, so repeated signals reinforce.
    """
    seeds: Dict[str, float] = {}
    for entry_id, items in latest_by_entry(interactions).items():
        sign = 1.0 if items[-1].kind == InteractionKind.LIKE else -1.0
        magnitude = sum(
            recency_decay(seconds_between(now, item.timestamp), tau_seconds) for item in items
        )
        seeds[entry_id] = sign * magnitude
    return seeds


def seed_signature(seeds: Mapping[str, float]) -> Tuple[Tuple[str, float], ...]:
    """Hashable identity of a seed set, used to skip unchanged recomputes."""
    return tuple(sorted((entry_id, round(weight, 9)) for entry_id, weight in seeds.items()))


def seed_shares(seeds: Mapping[str, float]) -> Dict[str, float]:
    """Each seed's signed share of total seed mass (sum of |share| == 1)."""
    total = sum(abs(w) for w in seeds.values())
    if total <= 0:
        return {}
    return {entry_id: w / total for entry_id, w in seeds.items() if w != 0}


class PersonalizationEngine:
    """Personalized PageRank over graph snapshots."""

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG):
        self.config = config
        self.damping = config.damping
        self.tolerance = config.tolerance
        self.max_iterations = config.max_iterations
        self.tau_seconds = decay_tau_seconds(config)

    def seeds(self, interactions: Iterable[Interaction], now: datetime) -> Dict[str, float]:
        return seed_weights_from_interactions(interactions, now, self.tau_seconds)

    def restart_vector(self, seeds: Mapping[str, float], snapshot: GraphSnapshot) -> np.ndarray:
        """Seeds placed on snapshot positions and normalised to sum(|r|) = 1."""
        r = np.zeros(len(snapshot), dtype=np.float64)
        missing = []
        for entry_id, weight in seeds.items():
            pos = snapshot.position(entry_id)
            if pos is None:
                missing.append(entry_id)
                continue
            r[pos] = weight
        if missing:
            logger.info(
                "[rank] SEEDS_NOT_IN_GRAPH count=%s sample=%s",
                len(missing), sorted(missing)[:5],
            )
        total = np.abs(r).sum()
        return r / total if total > 0 else r

    def rank(
        self,
        seeds: Mapping[str, float],
        snapshot: GraphSnapshot,
        warm_start: Optional[Mapping[str, float]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RankResult:
        """
        Run the walk to convergence and return signed affinity per snapshot entry.

        warm_start: previous scores used as the starting vector; it changes the
        number of iterations, not the fixed point.
        Raises RankingCancelled when `cancel` fires; nothing is kept.
        """
        r = self.restart_vector(seeds, snapshot)
        if not np.any(r):
            return RankResult(
                scores={entry_id: 0.0 for entry_id in snapshot.ids},
                iterations=0,
                converged=True,
                residual=0.0,
                graph_version=snapshot.version,
            )

        operator = snapshot.transition()
        s = r.copy()
        if warm_start:
            s = np.array([warm_start.get(entry_id, 0.0) for entry_id in snapshot.ids], dtype=np.float64)

        restart = (1.0 - self.damping) * r
        residual = float("inf")
        converged = False
        iterations = 0
        for iterations in range(1, self.max_iterations + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            updated = restart + self.damping * operator.propagate(s)
            residual = float(np.abs(updated - s).sum())
            s = updated
            if residual < self.tolerance:
                converged = True
                break

        if not converged:
            logger.warning(
                "[rank] NOT_CONVERGED iterations=%s residual=%.3e tolerance=%.1e graph_version=%s",
                iterations, residual, self.tolerance, snapshot.version,
            )
            warnings.warn(
                f"ranking stopped after {iterations} iterations with residual {residual:.3e}",
                ConvergenceWarning,
                stacklevel=2,
            )

        return RankResult(
            scores={entry_id: float(v) for entry_id, v in zip(snapshot.ids, s)},
            iterations=iterations,
            converged=converged,
            residual=residual,
            graph_version=snapshot.version,
        )
