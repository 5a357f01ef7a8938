"""
Recompute orchestration — run personalization then tag bias to produce the next
RankingState.

The main entry point is recompute_epoch, a pure function of the previous
state, a graph snapshot and the current seeds. The engine owns the state and
decides when to call it.
"""

import hashlib
import logging
from datetime import datetime
from typing import Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

from ..graph.snapshot import GraphSnapshot
from ..models.config import EngineConfig, resolve_config
from ..models.scoring import RankingState, utcnow
from .personalization import (
    CancellationToken,
    PersonalizationEngine,
    seed_shares,
    seed_signature,
)
from .tag_bias import TagBias, TagWeights

logger = logging.getLogger(__name__)


def epoch_signature(seeds: Mapping[str, float]) -> Tuple[Tuple[str, float], ...]:
    """
    Signature of the normalised seed shares.

    All seeds decay by the same factor as time passes, so the shares (and hence
    the fixed point) only move when interactions are added.
    """
    return seed_signature(seed_shares(seeds))


def content_signature(
    entry_tags: Mapping[str, FrozenSet[str]],
    feed_members: Mapping[str, Sequence[str]],
) -> str:
    """Digest of entry tags and feed membership, which final and feed scores depend on."""
    digest = hashlib.blake2b(digest_size=16)
    for entry_id in sorted(entry_tags):
        digest.update("\x1f".join(["e", entry_id, *sorted(entry_tags[entry_id])]).encode())
        digest.update(b"\x1e")
    for feed_id in sorted(feed_members):
        digest.update("\x1f".join(["f", feed_id, *sorted(feed_members[feed_id])]).encode())
        digest.update(b"\x1e")
    return digest.hexdigest()


def is_current(
    previous: RankingState,
    snapshot: GraphSnapshot,
    seeds: Mapping[str, float],
) -> bool:
    """True when neither the graph nor the seed set moved since `previous`."""
    return (
        previous.graph_version == snapshot.version
        and previous.seed_signature == epoch_signature(seeds)
    )


def _feed_scores(
    bias: TagBias,
    scores: Mapping[str, float],
    feed_members: Mapping[str, Sequence[str]],
) -> Dict[str, float]:
    return {
        feed_id: bias.feed_score([m for m in members if m in scores], scores)
        for feed_id, members in feed_members.items()
    }


def recompute_epoch(
    previous: RankingState,
    snapshot: GraphSnapshot,
    seeds: Mapping[str, float],
    entry_tags: Mapping[str, FrozenSet[str]],
    feed_members: Mapping[str, Sequence[str]],
    tag_weights: Optional[TagWeights] = None,
    config: Optional[EngineConfig] = None,
    cancel: Optional[CancellationToken] = None,
    force: bool = False,
    now: Optional[datetime] = None,
) -> RankingState:
    """
    Produce the ranking state for `snapshot` and `seeds`.

    Returns `previous` itself when it is still current (and not forced).
    When only entry tags or feed membership moved, the previous walk is kept
    and just tag bias and feed aggregation run again. Otherwise runs the walk,
    warm-started from the previous affinity, then applies tag bias and
    aggregates feed scores.

    Raises:
        RankingCancelled: `cancel` fired during the walk; `previous` stays valid.
    """
    config = resolve_config(config)
    tag_weights = tag_weights or TagWeights()
    content = content_signature(entry_tags, feed_members)
    walk_current = is_current(previous, snapshot, seeds)

    # 1. Skip when nothing the scores depend on has moved
    if not force and walk_current and previous.content_signature == content:
        logger.debug("[rank] EPOCH_REUSED version=%s graph_version=%s", previous.version, snapshot.version)
        return previous

    # 2. Personalized walk, unless the previous one still holds
    if walk_current:
        affinity, converged, iterations = previous.affinity, previous.converged, previous.iterations
        logger.debug("[rank] WALK_REUSED version=%s graph_version=%s", previous.version, snapshot.version)
    else:
        engine = PersonalizationEngine(config)
        warm_start = previous.affinity if config.warm_start and previous.affinity else None
        result = engine.rank(seeds, snapshot, warm_start=warm_start, cancel=cancel)
        affinity, converged, iterations = result.scores, result.converged, result.iterations

    # 3. Tag bias and feed aggregation
    bias = TagBias(tag_weights, entry_tags, affinity, seeds, config)
    scores = bias.scores()
    feed_scores = _feed_scores(bias, scores, feed_members)

    state = RankingState(
        version=previous.version + 1,
        graph_version=snapshot.version,
        seed_signature=epoch_signature(seeds),
        content_signature=content,
        affinity=affinity,
        scores=scores,
        feed_scores=feed_scores,
        converged=converged,
        iterations=iterations,
        computed_at=now or utcnow(),
    )
    logger.info(
        "[rank] EPOCH version=%s graph_version=%s entries=%s seeds=%s iterations=%s converged=%s",
        state.version, state.graph_version, len(scores), len(seeds), state.iterations, state.converged,
    )
    return state
