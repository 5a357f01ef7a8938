"""Similarity graph: mutual-kNN maintenance, snapshots and neighbourhood locks."""

from .mutual_knn import SimilarityGraph
from .similarity import MIN_SIMILARITY, cosine_similarity, validate_embedding
from .snapshot import GraphSnapshot, TransitionOperator

__all__ = [
    "GraphSnapshot",
    "MIN_SIMILARITY",
    "SimilarityGraph",
    "TransitionOperator",
    "cosine_similarity",
    "validate_embedding",
]
