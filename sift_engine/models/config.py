"""
Engine configuration — graph, personalization, tag bias, scheduler and pruning parameters.

EngineConfig defaults are defined here. Hosts may pass a dict (e.g. loaded from a
JSON file by settings.load_config); from_dict() merges its sections with these defaults.
"""

import math
from typing import Dict, Optional

from pydantic import BaseModel, ValidationError, model_validator

from ..errors import ConfigurationError


class EngineConfig(BaseModel):
    """Configuration for the scoring & scheduling engine."""

    # -------------------------------------------------------------------------
    # Similarity graph
    # -------------------------------------------------------------------------

    # Number of nearest neighbours per entry. An edge exists only when both
    # endpoints are in each other's top-k.
    k: int = 10

    # Embedding dimension. None = fixed by the first accepted embedding.
    dimension: Optional[int] = None

    # Number of lock stripes guarding graph neighbourhoods.
    lock_stripes: int = 64

    # -------------------------------------------------------------------------
    # Personalization (random walk with restart)
    # s' = (1 - damping) * r + damping * P^T s
    # -------------------------------------------------------------------------

    # Fraction of mass diffused along edges per iteration. Must be in [0, 1).
    damping: float = 0.85
    # L1 change between iterations below which the walk is converged.
    tolerance: float = 1e-6
    # Hard cap on iterations; guarantees termination on adversarial graphs.
    max_iterations: int = 100
    # An interaction this old contributes half the restart weight of a fresh one.
    decay_half_life_days: float = 14.0
    # Start each run from the previous solution when one is available.
    warm_start: bool = True

    # -------------------------------------------------------------------------
    # Tag bias and feed aggregation
    # -------------------------------------------------------------------------

    # Number of best member entries considered for a feed score.
    feed_score_top_k: int = 10
    # Fraction trimmed from each end of the top-k window before averaging.
    feed_score_trim_fraction: float = 0.1

    # -------------------------------------------------------------------------
    # Scheduler: adaptive refresh intervals
    # interval = refresh_alpha * observed + (1 - refresh_alpha) * interval
    # -------------------------------------------------------------------------

    refresh_alpha: float = 0.3
    # Prior for configured feeds before any fetch has been observed.
    initial_refresh_interval_hours: float = 6.0
    # Effective interval bounds. The upper bound keeps low-quality feeds from starving.
    min_refresh_interval_minutes: float = 15.0
    max_refresh_interval_hours: float = 72.0
    # priority multiplier = max(min_quality_multiplier, 1 + quality_priority_boost * quality)
    quality_priority_boost: float = 1.0
    min_quality_multiplier: float = 0.25
    # Failed fetches wait base * 2 ** (failures - 1) before becoming eligible again.
    failure_backoff_minutes: float = 10.0
    max_failure_backoff_hours: float = 24.0
    # Entry content fetches are dropped after this many failed attempts.
    max_entry_attempts: int = 3
    # Entry priority = entry_priority_weight * score (positive scores only).
    entry_priority_weight: float = 1.0

    # -------------------------------------------------------------------------
    # Pruning and ephemeral feeds
    # prune_threshold = prune_base_threshold - consistency_bonus(variance)
    # -------------------------------------------------------------------------

    prune_base_threshold: float = 0.0
    # Largest amount a perfectly consistent feed's threshold may be lowered.
    max_consistency_bonus: float = 0.05
    # Variance at which the bonus is halved.
    consistency_variance_scale: float = 0.01
    # Number of past epochs kept for the consistency metric.
    consistency_window: int = 10
    # Consecutive epochs below threshold before an active feed is pruned.
    prune_min_consecutive_epochs: int = 3
    # Extra score an ephemeral feed needs above its prune threshold to be promoted.
    promotion_margin: float = 0.05
    # Scored entries needed before an ephemeral feed is evaluated.
    ephemeral_min_entries: int = 5
    # Evaluations after which an undecided ephemeral feed is rejected.
    ephemeral_max_evaluations: int = 5
    ephemeral_probe_interval_hours: float = 24.0
    ephemeral_priority_cap: float = 0.5

    # -------------------------------------------------------------------------
    # Orchestration
    # -------------------------------------------------------------------------

    # Interaction batches at least this large cancel a running recompute.
    cancel_batch_threshold: int = 100

    @model_validator(mode="after")
    def check_ranges(self):
        if self.k < 1:
            raise ValueError(f"k must be >= 1, got {self.k}")
        if self.dimension is not None and self.dimension < 1:
            raise ValueError(f"dimension must be >= 1, got {self.dimension}")
        if self.lock_stripes < 1:
            raise ValueError(f"lock_stripes must be >= 1, got {self.lock_stripes}")
        if not (0.0 <= self.damping < 1.0):
            raise ValueError(f"damping must be in [0, 1), got {self.damping}")
        if not (self.tolerance > 0 and math.isfinite(self.tolerance)):
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not (self.decay_half_life_days > 0):
            raise ValueError("decay_half_life_days must be positive")
        if self.feed_score_top_k < 1:
            raise ValueError("feed_score_top_k must be >= 1")
        if not (0.0 <= self.feed_score_trim_fraction < 0.5):
            raise ValueError("feed_score_trim_fraction must be in [0, 0.5)")
        if not (0.0 < self.refresh_alpha <= 1.0):
            raise ValueError(f"refresh_alpha must be in (0, 1], got {self.refresh_alpha}")
        if self.min_refresh_interval_minutes <= 0:
            raise ValueError("min_refresh_interval_minutes must be positive")
        if self.max_refresh_interval_hours * 60 < self.min_refresh_interval_minutes:
            raise ValueError("max_refresh_interval_hours is below the minimum interval")
        if self.initial_refresh_interval_hours <= 0 or self.ephemeral_probe_interval_hours <= 0:
            raise ValueError("refresh interval priors must be positive")
        for name in (
            "quality_priority_boost",
            "min_quality_multiplier",
            "failure_backoff_minutes",
            "max_failure_backoff_hours",
            "entry_priority_weight",
            "max_consistency_bonus",
            "promotion_margin",
            "ephemeral_priority_cap",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.consistency_variance_scale <= 0:
            raise ValueError("consistency_variance_scale must be positive")
        if self.consistency_window < 2:
            raise ValueError("consistency_window must be >= 2")
        if self.prune_min_consecutive_epochs < 1:
            raise ValueError("prune_min_consecutive_epochs must be >= 1")
        if self.ephemeral_min_entries < 1 or self.ephemeral_max_evaluations < 1:
            raise ValueError("ephemeral thresholds must be >= 1")
        if self.max_entry_attempts < 1:
            raise ValueError("max_entry_attempts must be >= 1")
        if self.cancel_batch_threshold < 1:
            raise ValueError("cancel_batch_threshold must be >= 1")
        return self

    @classmethod
    def from_dict(cls, config_dict: Dict) -> "EngineConfig":
        """Create config from a dictionary (e.g., loaded from JSON).

        Accepts either flat keys or the sections graph, personalization,
        tag_bias, scheduler, pruning. Unknown keys are ignored.
        """
        flat = {}
        for section in ("graph", "personalization", "tag_bias", "scheduler", "pruning"):
            if section in config_dict:
                flat.update(config_dict[section])
        flat.update({k: v for k, v in config_dict.items() if not isinstance(v, dict)})
        allowed = set(cls.model_fields)
        filtered = {k: v for k, v in flat.items() if k in allowed}
        return build_config(**filtered)


def build_config(**overrides) -> EngineConfig:
    """Construct an EngineConfig, translating validation failures to ConfigurationError."""
    try:
        return EngineConfig.model_validate(overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


DEFAULT_CONFIG = EngineConfig()


def resolve_config(config: Optional["EngineConfig"]) -> "EngineConfig":
    """Return config or DEFAULT_CONFIG when none is provided."""
    return config if config is not None else DEFAULT_CONFIG
