"""Data models for the scoring & scheduling engine."""

from .config import DEFAULT_CONFIG, EngineConfig, build_config, resolve_config
from .entry import Entry, InteractionState, ensure_entries, ensure_entry
from .feed import Feed, FeedState
from .fetchable import EntryTarget, FeedTarget, FetchableItem, target_key
from .interaction import (
    Interaction,
    InteractionKind,
    InteractionLog,
    InteractionSource,
    ensure_interaction,
    ensure_interactions,
)
from .scoring import EMPTY_STATE, RankResult, RankingState, recency_decay

__all__ = [
    "DEFAULT_CONFIG",
    "EMPTY_STATE",
    "EngineConfig",
    "Entry",
    "EntryTarget",
    "Feed",
    "FeedState",
    "FeedTarget",
    "FetchableItem",
    "Interaction",
    "InteractionKind",
    "InteractionLog",
    "InteractionSource",
    "InteractionState",
    "RankResult",
    "RankingState",
    "build_config",
    "ensure_entries",
    "ensure_entry",
    "ensure_interaction",
    "ensure_interactions",
    "recency_decay",
    "resolve_config",
    "target_key",
]
