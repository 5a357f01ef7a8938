"""
Sift scoring & scheduling engine.

Learns taste from likes and dislikes over a mutual-kNN graph of entry
embeddings, ranks entries and feeds, and plans what to fetch next.
"""

from .engine import IngestReport, InteractionReport, SiftEngine
from .errors import (
    ConfigurationError,
    ConsistencyViolation,
    ConvergenceWarning,
    DataError,
    RankingCancelled,
    SiftError,
)
from .graph import GraphSnapshot, SimilarityGraph
from .models import (
    DEFAULT_CONFIG,
    EngineConfig,
    Entry,
    EntryTarget,
    Feed,
    FeedState,
    FeedTarget,
    FetchableItem,
    Interaction,
    InteractionKind,
    InteractionLog,
    InteractionState,
    RankingState,
)
from .scheduling import Scheduler, StateTransition
from .stages import CancellationToken, PersonalizationEngine, TagBias, TagWeights, recompute_epoch

__all__ = [
    "CancellationToken",
    "ConfigurationError",
    "ConsistencyViolation",
    "ConvergenceWarning",
    "DEFAULT_CONFIG",
    "DataError",
    "EngineConfig",
    "Entry",
    "EntryTarget",
    "Feed",
    "FeedState",
    "FeedTarget",
    "FetchableItem",
    "GraphSnapshot",
    "IngestReport",
    "InteractionReport",
    "Interaction",
    "InteractionKind",
    "InteractionLog",
    "InteractionState",
    "PersonalizationEngine",
    "RankingCancelled",
    "RankingState",
    "Scheduler",
    "SiftEngine",
    "SiftError",
    "SimilarityGraph",
    "StateTransition",
    "TagBias",
    "TagWeights",
    "recompute_epoch",
]
