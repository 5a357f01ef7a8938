"""
Similarity utilities — embedding validation and cosine similarity.

A zero vector has no direction: its similarity to anything is MIN_SIMILARITY and
it never becomes a neighbour.
"""

from typing import Optional, Sequence, Tuple

import numpy as np

from ..errors import DataError

MIN_SIMILARITY = -1.0


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors."""
    v1_arr = np.asarray(v1, dtype=np.float64)
    v2_arr = np.asarray(v2, dtype=np.float64)
    if v1_arr.size == 0 or v2_arr.size == 0:
        return MIN_SIMILARITY
    norm_product = np.linalg.norm(v1_arr) * np.linalg.norm(v2_arr)
    if norm_product == 0:
        return MIN_SIMILARITY
    return float(np.clip(np.dot(v1_arr, v2_arr) / norm_product, -1.0, 1.0))


def validate_embedding(
    entry_id: str,
    embedding: Sequence[float],
    dimension: Optional[int],
) -> np.ndarray:
    """Return the embedding as a float64 vector or raise DataError."""
    try:
        arr = np.asarray(embedding, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise DataError(f"embedding for {entry_id!r} is not numeric", record_id=entry_id) from exc
    if arr.ndim != 1 or arr.size == 0:
        raise DataError(
            f"embedding for {entry_id!r} must be a non-empty 1-D vector, got shape {arr.shape}",
            record_id=entry_id,
        )
    if dimension is not None and arr.size != dimension:
        raise DataError(
            f"embedding dimension mismatch for {entry_id!r}: expected {dimension}, got {arr.size}",
            record_id=entry_id,
        )
    if not np.all(np.isfinite(arr)):
        raise DataError(f"embedding for {entry_id!r} contains non-finite values", record_id=entry_id)
    return arr


def unit_vector(arr: np.ndarray) -> Tuple[np.ndarray, bool]:
    """(unit vector, is_zero). Zero vectors are returned unchanged."""
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return np.zeros_like(arr), True
    return arr / norm, False
