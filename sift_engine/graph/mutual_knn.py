"""
Mutual-kNN similarity graph over entry embeddings.

Entries live in an arena: each id maps to a stable integer slot, vectors are
rows of a growable unit-vector matrix, and neighbour lists hold slots. An
undirected edge (v, w) with cosine weight exists iff v is in w's top-k and w is
in v's top-k. Similarities are rounded to 12 decimals before ranking, and ties
go to the lower entry id.

Updates are incremental. Upserting or removing x recomputes the directed top-k
of x, of every entry whose top-k contained x, and of every entry whose top-k x
now enters; mutual edges are then re-derived for the touched pairs only.

Writers are optimistic. A write is planned without locks against the state at
some version, then the writer write-locks the stripes of the slots it touches
(its region) and validates the plan against every commit made since. Writers
in disjoint regions proceed in parallel; a plan invalidated by a concurrent
commit is recomputed. Readers lock the stripes they read.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, FrozenSet, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Set, Tuple

import numpy as np

from ..errors import ConfigurationError, ConsistencyViolation, DataError
from .locks import StripedLocks
from .similarity import unit_vector, validate_embedding
from .snapshot import GraphSnapshot

logger = logging.getLogger(__name__)

_INITIAL_CAPACITY = 64
_SIMILARITY_DECIMALS = 12
_COMMIT_LOG_SIZE = 4096

Ranked = List[Tuple[int, float]]


def quantize(similarities):
    """Round similarities so that mathematically equal values compare equal."""
    return np.round(similarities, _SIMILARITY_DECIMALS)


def _similarity(a: np.ndarray, b: np.ndarray) -> float:
    return float(quantize(np.dot(a, b)))


class _View:
    """Planning-time view of the arena with one slot's vector overridden."""

    def __init__(self, matrix: np.ndarray, active: np.ndarray, ids: List[Optional[str]],
                 slot: int, unit: Optional[np.ndarray]):
        self.matrix = matrix
        self.active = active
        self.ids = ids
        self.slot = slot
        self.unit = unit

    def vector(self, s: int) -> np.ndarray:
        return self.unit if s == self.slot else self.matrix[s]

    def similarities(self, candidates: np.ndarray, s: int) -> np.ndarray:
        v = self.vector(s)
        sims = self.matrix[candidates] @ v
        if self.unit is not None and s != self.slot:
            hit = int(np.searchsorted(candidates, self.slot))
            if hit < candidates.size and candidates[hit] == self.slot:
                sims[hit] = np.dot(self.unit, v)
        return quantize(sims)


@dataclass
class _Plan:
    entry_id: str
    slot: int
    existing: Optional[int]
    base_version: int
    raw: Optional[np.ndarray]
    # None when the entry will have no graph participation
    unit: Optional[np.ndarray]
    removing: bool
    new_topk: Dict[int, Ranked]
    region: Set[int]


class _Commit(NamedTuple):
    version: int
    slot: int
    entry_id: str
    unit: Optional[np.ndarray]
    affected: FrozenSet[int]
    region: FrozenSet[int]


class SimilarityGraph:
    """Incrementally maintained mutual-kNN graph."""

    def __init__(self, k: int, dimension: Optional[int] = None, lock_stripes: int = 64):
        if not isinstance(k, int) or k < 1:
            raise ConfigurationError(f"k must be a positive integer, got {k!r}")
        if dimension is not None and dimension < 1:
            raise ConfigurationError(f"dimension must be positive, got {dimension!r}")
        if lock_stripes < 1:
            raise ConfigurationError("lock_stripes must be positive")
        self.k = k
        self._dimension = dimension
        self._locks = StripedLocks(lock_stripes)
        # Guards the arena bookkeeping, validation and installation; never held while planning
        self._commit_lock = threading.Lock()
        self._log: Deque[_Commit] = deque(maxlen=_COMMIT_LOG_SIZE)
        self._version = 0

        # Arena
        self._ids: List[Optional[str]] = []
        self._index: Dict[str, int] = {}
        self._free: List[int] = []
        self._matrix: Optional[np.ndarray] = None
        self._active = np.zeros(0, dtype=bool)
        self._raw: Dict[int, np.ndarray] = {}

        # Directed top-k (ordered best first) and its reverse index; values are replaced, never mutated
        self._topk: Dict[int, Ranked] = {}
        self._in_topk: Dict[int, FrozenSet[int]] = {}

        # Mutual edges
        self._adj: Dict[int, Dict[int, float]] = {}

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._index

    def entry_ids(self) -> List[str]:
        with self._commit_lock:
            return sorted(self._index)

    def neighbors(self, entry_id: str) -> List[Tuple[str, float]]:
        """Mutual neighbours of entry_id as (id, cosine weight), best first."""
        slot = self._index.get(entry_id)
        if slot is None:
            return []
        with self._locks.read([slot]):
            if self._index.get(entry_id) != slot:
                return []
            items = [(self._ids[other], weight) for other, weight in self._adj.get(slot, {}).items()]
        items.sort(key=lambda item: (-item[1], item[0]))
        return items

    def read_region(self, entry_ids: Iterable[str]):
        """
        Context manager holding read locks on the neighbourhoods of entry_ids.

        Writers whose region overlaps wait until it exits; writers elsewhere do not.
        """
        slots = [self._index[e] for e in entry_ids if e in self._index]
        return self._locks.read(slots)

    def edges(self) -> Iterator[Tuple[str, str, float]]:
        """Each undirected edge once, as (lower id, higher id, weight)."""
        with self._locks.read_all():
            result = []
            for slot, neighbours in self._adj.items():
                a = self._ids[slot]
                for other, weight in neighbours.items():
                    b = self._ids[other]
                    if a < b:
                        result.append((a, b, weight))
        return iter(sorted(result))

    def snapshot(self, verify: bool = False) -> GraphSnapshot:
        """Immutable copy of the current adjacency; optionally verify invariants first."""
        with self._locks.read_all():
            if verify:
                self._check_invariants_locked()
            adjacency = {
                entry_id: {self._ids[o]: w for o, w in self._adj.get(slot, {}).items()}
                for entry_id, slot in self._index.items()
            }
            version = self._version
        return GraphSnapshot.build(version, adjacency)

    def check_invariants(self) -> None:
        """Raise ConsistencyViolation unless edges are symmetric and exactly mutual-kNN."""
        with self._locks.read_all():
            self._check_invariants_locked()

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    def upsert(self, entry_id: str, embedding: Sequence[float]) -> bool:
        """
        Insert or update an entry's vector and repair the affected neighbourhood.

        Returns False when the stored vector is already identical (no change).
        Raises DataError for malformed vectors. A new entry is then left out of
        the graph; an existing one is detached (kept, without edges) until a
        valid vector arrives.
        """
        try:
            raw = validate_embedding(entry_id, embedding, self._dimension)
        except DataError:
            if self._detach(entry_id):
                logger.warning("[graph] DETACHED entry_id=%s reason=invalid_embedding", entry_id)
            raise
        unit, is_zero = unit_vector(raw)
        return self._write(entry_id, raw, None if is_zero else unit, removing=False)

    def remove(self, entry_id: str) -> bool:
        """Remove an entry and all incident edges; returns False when unknown."""
        return self._write(entry_id, None, None, removing=True)

    def _detach(self, entry_id: str) -> bool:
        with self._commit_lock:
            slot = self._index.get(entry_id)
            if slot is None or (not self._active[slot] and slot not in self._raw):
                return False
        return self._write(entry_id, None, None, removing=False)

    def _write(self, entry_id: str, raw: Optional[np.ndarray], unit: Optional[np.ndarray], removing: bool) -> bool:
        attempts = 0
        while True:
            attempts += 1
            plan = self._plan(entry_id, raw, unit, removing)
            if plan is None:
                return False
            with self._locks.write(plan.region):
                with self._commit_lock:
                    if not self._conflicts(plan):
                        self._install(plan)
                        version = self._version
                        break
                    if plan.existing is None:
                        self._free.append(plan.slot)
            logger.debug("[graph] WRITE_RETRY entry_id=%s attempt=%s", entry_id, attempts)

        logger.debug(
            "[graph] %s entry_id=%s slot=%s affected=%s attempts=%s version=%s",
            "REMOVE" if removing else "UPSERT", entry_id, plan.slot, len(plan.new_topk), attempts, version,
        )
        return True

    # ------------------------------------------------------------------
    # Planning (no locks held beyond a short copy of the arena bookkeeping)
    # ------------------------------------------------------------------

    def _plan(
        self,
        entry_id: str,
        raw: Optional[np.ndarray],
        unit: Optional[np.ndarray],
        removing: bool,
    ) -> Optional[_Plan]:
        with self._commit_lock:
            existing = self._index.get(entry_id)
            if existing is None and raw is None:
                return None
            if raw is not None:
                if existing is not None and existing in self._raw and np.array_equal(self._raw[existing], raw):
                    return None
                if self._dimension is None:
                    self._dimension = raw.size
                elif raw.size != self._dimension:
                    raise DataError(
                        f"embedding dimension mismatch for {entry_id!r}: expected {self._dimension}, got {raw.size}",
                        record_id=entry_id,
                    )
            slot = existing if existing is not None else self._allocate_slot()
            base_version = self._version
            ids = list(self._ids)
            active = self._active[: len(ids)].copy()
            matrix = self._matrix
            contained_in = self._in_topk.get(slot, frozenset()) if existing is not None else frozenset()

        participating = unit is not None and not removing
        ids[slot] = entry_id
        active[slot] = participating
        view = _View(matrix, active, ids, slot, unit if participating else None)

        affected: Set[int] = {slot} | set(contained_in)
        if participating:
            affected |= self._entrants(view)
        new_topk = {s: self._rank(view, s) for s in affected}

        region: Set[int] = set(new_topk)
        for s, ranked in new_topk.items():
            region.update(other for other, _ in self._topk.get(s, []))
            region.update(other for other, _ in ranked)

        return _Plan(
            entry_id=entry_id,
            slot=slot,
            existing=existing,
            base_version=base_version,
            raw=raw,
            unit=view.unit,
            removing=removing,
            new_topk=new_topk,
            region=region,
        )

    def _entrants(self, view: _View) -> Set[int]:
        """Slots whose top-k the overridden vector now enters."""
        n = len(view.ids)
        sims = quantize(view.matrix[:n] @ view.unit)
        result = set()
        for other in np.nonzero(view.active)[0]:
            other = int(other)
            if other != view.slot and self._enters(other, view.slot, view.ids[view.slot], float(sims[other])):
                result.add(other)
        return result

    def _enters(self, target: int, slot: int, name: str, sim: float) -> bool:
        """Would (slot, name, sim) rank inside target's current top-k?"""
        ranked = self._topk.get(target, [])
        if len(ranked) < self.k:
            return True
        worst, worst_sim = ranked[-1]
        worst_name = self._ids[worst]
        if worst == slot or worst_name is None:
            return True
        return (-sim, name) < (-worst_sim, worst_name)

    def _rank(self, view: _View, slot: int) -> Ranked:
        """Directed top-k of `slot` as [(slot, sim)], best first."""
        if not view.active[slot]:
            return []
        mask = view.active.copy()
        mask[slot] = False
        candidates = np.nonzero(mask)[0]
        if candidates.size == 0:
            return []
        sims = view.similarities(candidates, slot)
        if candidates.size > self.k:
            kth = np.partition(sims, -self.k)[-self.k]
            keep = sims >= kth
            candidates, sims = candidates[keep], sims[keep]
        ranked = sorted(
            zip(candidates.tolist(), sims.tolist()),
            key=lambda item: (-item[1], view.ids[item[0]]),
        )
        return ranked[: self.k]

    # ------------------------------------------------------------------
    # Validation and installation (commit lock and region stripes held)
    # ------------------------------------------------------------------

    def _conflicts(self, plan: _Plan) -> bool:
        """True when a commit since the plan's base version invalidates it."""
        if self._index.get(plan.entry_id) != plan.existing:
            return True
        if self._version == plan.base_version:
            return False
        if not self._log or self._log[0].version > plan.base_version + 1:
            return True
        for commit in reversed(self._log):
            if commit.version <= plan.base_version:
                break
            if commit.region & plan.region:
                return True
            if plan.unit is not None and self._joins_lists_of(plan, commit):
                return True
            if commit.unit is not None and self._joins_plan(commit, plan):
                return True
        return False

    def _joins_lists_of(self, plan: _Plan, commit: _Commit) -> bool:
        """Does the planned vector belong in a list the commit recomputed?"""
        for target in commit.affected:
            if not self._active[target]:
                continue
            if any(other == plan.slot for other, _ in self._topk.get(target, [])):
                return True
            sim = _similarity(plan.unit, self._matrix[target])
            if self._enters(target, plan.slot, plan.entry_id, sim):
                return True
        return False

    def _joins_plan(self, commit: _Commit, plan: _Plan) -> bool:
        """Does the committed vector belong in a list the plan computed?"""
        for s, ranked in plan.new_topk.items():
            if s == plan.slot:
                vector = plan.unit
            else:
                vector = self._matrix[s] if self._active[s] else None
            if vector is None:
                continue
            if len(ranked) < self.k:
                return True
            worst, worst_sim = ranked[-1]
            worst_name = plan.entry_id if worst == plan.slot else self._ids[worst]
            if worst_name is None:
                return True
            if (-_similarity(commit.unit, vector), commit.entry_id) < (-worst_sim, worst_name):
                return True
        return False

    def _install(self, plan: _Plan) -> None:
        slot = plan.slot
        if plan.existing is None:
            self._index[plan.entry_id] = slot
            self._ids[slot] = plan.entry_id
            self._adj[slot] = {}
        participating = plan.unit is not None
        self._matrix[slot] = plan.unit if participating else 0.0
        self._active[slot] = participating
        if plan.raw is not None:
            self._raw[slot] = plan.raw.copy()
        else:
            self._raw.pop(slot, None)

        self._commit(plan.new_topk)

        if plan.removing:
            self._adj.pop(slot, None)
            self._topk.pop(slot, None)
            self._in_topk.pop(slot, None)
            del self._index[plan.entry_id]
            self._ids[slot] = None
            self._free.append(slot)
        self._version += 1
        self._log.append(
            _Commit(
                version=self._version,
                slot=slot,
                entry_id=plan.entry_id,
                unit=plan.unit.copy() if participating else None,
                affected=frozenset(plan.new_topk),
                region=frozenset(plan.region),
            )
        )

    def _allocate_slot(self) -> int:
        if self._free:
            return self._free.pop()
        slot = len(self._ids)
        if self._matrix is None:
            self._matrix = np.zeros((_INITIAL_CAPACITY, self._dimension), dtype=np.float64)
            self._active = np.zeros(_INITIAL_CAPACITY, dtype=bool)
        elif slot >= self._matrix.shape[0]:
            capacity = self._matrix.shape[0] * 2
            grown = np.zeros((capacity, self._dimension), dtype=np.float64)
            grown[: self._matrix.shape[0]] = self._matrix
            active = np.zeros(capacity, dtype=bool)
            active[: self._active.shape[0]] = self._active
            self._matrix, self._active = grown, active
        self._ids.append(None)
        return slot

    def _members(self, slot: int) -> Set[int]:
        return {other for other, _ in self._topk.get(slot, ())}

    def _pair_weight(self, a: int, b: int) -> float:
        if self._ids[a] > self._ids[b]:
            a, b = b, a
        return float(np.clip(np.dot(self._matrix[a], self._matrix[b]), -1.0, 1.0))

    def _commit(self, new_topk: Dict[int, Ranked]) -> None:
        """Install new top-k lists and re-derive the mutual edges they touch."""
        pairs: Set[Tuple[int, int]] = set()
        for s, ranked in new_topk.items():
            for other, _ in self._topk.get(s, []):
                self._in_topk[other] = self._in_topk.get(other, frozenset()) - {s}
                pairs.add((min(s, other), max(s, other)))
            self._topk[s] = ranked
            for other, _ in ranked:
                self._in_topk[other] = self._in_topk.get(other, frozenset()) | {s}
                pairs.add((min(s, other), max(s, other)))

        for a, b in pairs:
            mutual = (
                self._active[a]
                and self._active[b]
                and b in self._members(a)
                and a in self._members(b)
            )
            if mutual:
                weight = self._pair_weight(a, b)
                self._adj.setdefault(a, {})[b] = weight
                self._adj.setdefault(b, {})[a] = weight
            else:
                self._adj.get(a, {}).pop(b, None)
                self._adj.get(b, {}).pop(a, None)

    def _check_invariants_locked(self) -> None:
        for slot, neighbours in self._adj.items():
            if slot in neighbours:
                raise ConsistencyViolation(f"self loop on {self._ids[slot]!r}")
            for other, weight in neighbours.items():
                back = self._adj.get(other, {}).get(slot)
                if back is None or back != weight:
                    raise ConsistencyViolation(
                        f"asymmetric edge {self._ids[slot]!r} -> {self._ids[other]!r}"
                    )
                if slot not in self._members(other) or other not in self._members(slot):
                    raise ConsistencyViolation(
                        f"edge {self._ids[slot]!r} -- {self._ids[other]!r} is not mutual-kNN"
                    )
        for slot in self._topk:
            for other in self._members(slot):
                if slot in self._members(other) and other not in self._adj.get(slot, {}):
                    raise ConsistencyViolation(
                        f"missing mutual edge {self._ids[slot]!r} -- {self._ids[other]!r}"
                    )
