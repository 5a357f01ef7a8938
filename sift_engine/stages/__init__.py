"""Ranking stages: personalization (random walk), tag bias, epoch orchestration."""

from .orchestrator import content_signature, epoch_signature, recompute_epoch
from .personalization import CancellationToken, PersonalizationEngine, seed_weights_from_interactions
from .tag_bias import TagBias, TagWeights, trimmed_top_k_mean

__all__ = [
    "CancellationToken",
    "PersonalizationEngine",
    "TagBias",
    "TagWeights",
    "content_signature",
    "epoch_signature",
    "recompute_epoch",
    "seed_weights_from_interactions",
    "trimmed_top_k_mean",
]
