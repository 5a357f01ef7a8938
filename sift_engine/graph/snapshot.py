"""
Immutable graph snapshots for batch ranking.

A GraphSnapshot is a CSR copy of the mutual-kNN adjacency taken at one graph
version. Ranking passes work only against snapshots, so concurrent upserts
never change the operator mid-iteration.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class TransitionOperator:
    """
    Row-stochastic random-walk operator over snapshot edges.

    Edge weights are cosine similarities rescaled to (1 + cos) / 2 and
    normalised per row. Rows without positive weight keep their mass
    (implicit self loop), so every row sums to one.
    """

    size: int
    rows: np.ndarray
    cols: np.ndarray
    probs: np.ndarray
    dangling: np.ndarray

    def propagate(self, scores: np.ndarray) -> np.ndarray:
        """Return P^T @ scores."""
        spread = np.bincount(
            self.cols,
            weights=self.probs * scores[self.rows],
            minlength=self.size,
        )
        return spread + np.where(self.dangling, scores, 0.0)


@dataclass(frozen=True)
class GraphSnapshot:
    """CSR view of the graph at `version`; ids sorted for deterministic output."""

    version: int
    ids: Tuple[str, ...]
    indptr: np.ndarray
    indices: np.ndarray
    weights: np.ndarray
    _positions: Dict[str, int] = field(default_factory=dict, repr=False, compare=False)
    _operator: List[TransitionOperator] = field(default_factory=list, repr=False, compare=False)

    def __post_init__(self):
        for arr in (self.indptr, self.indices, self.weights):
            _frozen(arr)
        self._positions.update({entry_id: i for i, entry_id in enumerate(self.ids)})

    @classmethod
    def build(
        cls,
        version: int,
        adjacency: Dict[str, Dict[str, float]],
    ) -> "GraphSnapshot":
        """Build from {entry_id: {neighbor_id: weight}}; every node must be a key."""
        ids = tuple(sorted(adjacency))
        positions = {entry_id: i for i, entry_id in enumerate(ids)}
        indptr = np.zeros(len(ids) + 1, dtype=np.int64)
        indices: List[int] = []
        weights: List[float] = []
        for i, entry_id in enumerate(ids):
            neighbours = sorted(adjacency[entry_id].items(), key=lambda item: positions[item[0]])
            for neighbour_id, weight in neighbours:
                indices.append(positions[neighbour_id])
                weights.append(weight)
            indptr[i + 1] = len(indices)
        return cls(
            version=version,
            ids=ids,
            indptr=indptr,
            indices=np.asarray(indices, dtype=np.int64),
            weights=np.asarray(weights, dtype=np.float64),
        )

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._positions

    def position(self, entry_id: str) -> Optional[int]:
        return self._positions.get(entry_id)

    def neighbors(self, entry_id: str) -> List[Tuple[str, float]]:
        i = self._positions.get(entry_id)
        if i is None:
            return []
        lo, hi = self.indptr[i], self.indptr[i + 1]
        return [(self.ids[j], float(w)) for j, w in zip(self.indices[lo:hi], self.weights[lo:hi])]

    @property
    def edge_count(self) -> int:
        return int(len(self.indices) // 2)

    def transition(self) -> TransitionOperator:
        """Random-walk operator, built once per snapshot."""
        if self._operator:
            return self._operator[0]
        n = len(self.ids)
        rows = np.repeat(np.arange(n, dtype=np.int64), np.diff(self.indptr))
        rescaled = (1.0 + self.weights) / 2.0
        row_sums = np.bincount(rows, weights=rescaled, minlength=n) if n else np.zeros(0)
        dangling = row_sums <= 0.0
        safe = np.where(dangling, 1.0, row_sums)
        probs = rescaled / safe[rows] if len(rows) else rescaled
        operator = TransitionOperator(
            size=n,
            rows=_frozen(rows),
            cols=self.indices,
            probs=_frozen(np.asarray(probs, dtype=np.float64)),
            dangling=_frozen(np.asarray(dangling, dtype=bool)),
        )
        self._operator.append(operator)
        return operator
