"""
Computed Parameters for the scoring & scheduling engine

Derives read-only parameters from the user-tunable EngineConfig: decay
constants in seconds, refresh-interval bounds in seconds, the effective
promotion threshold and the backoff schedule. Components read these
instead of converting units themselves.
"""

import math
from typing import Any, Dict

from .models.config import EngineConfig

HOUR = 3600.0
DAY = 24 * HOUR


def decay_tau_seconds(config: EngineConfig) -> float:
    """tau for exp(-dt / tau) such that decay(half_life) == 0.5."""
    return config.decay_half_life_days * DAY / math.log(2)


def compute_parameters(config: EngineConfig) -> Dict[str, Any]:
    """
    Compute derived parameters from base parameters.

    Args:
        config: Validated engine configuration

    Returns:
        Dictionary of computed parameter values
    """
    computed: Dict[str, Any] = {}

    # =========================================================================
    # Interaction decay
    # =========================================================================
    computed["decay_tau_seconds"] = decay_tau_seconds(config)
    computed["decay_lambda_per_day"] = math.log(2) / config.decay_half_life_days

    # =========================================================================
    # Random walk
    # =========================================================================
    # Contraction bound: L1 error after stopping is at most
    # tolerance * damping / (1 - damping).
    computed["restart_probability"] = 1.0 - config.damping
    computed["error_bound"] = config.tolerance * config.damping / (1.0 - config.damping)

    # =========================================================================
    # Refresh intervals (seconds)
    # =========================================================================
    computed["min_interval_seconds"] = config.min_refresh_interval_minutes * 60.0
    computed["max_interval_seconds"] = config.max_refresh_interval_hours * HOUR
    computed["initial_interval_seconds"] = min(
        max(config.initial_refresh_interval_hours * HOUR, computed["min_interval_seconds"]),
        computed["max_interval_seconds"],
    )
    computed["probe_interval_seconds"] = config.ephemeral_probe_interval_hours * HOUR
    computed["failure_backoff_seconds"] = config.failure_backoff_minutes * 60.0
    computed["max_failure_backoff_seconds"] = config.max_failure_backoff_hours * HOUR

    # =========================================================================
    # Pruning
    # =========================================================================
    computed["most_lenient_prune_threshold"] = (
        config.prune_base_threshold - config.max_consistency_bonus
    )
    computed["base_promotion_threshold"] = (
        config.prune_base_threshold + config.promotion_margin
    )

    return computed
