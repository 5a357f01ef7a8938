"""
Similarity graph tests: mutual-kNN invariants under incremental updates,
embedding validation, snapshots and concurrent access.
"""

import threading

import numpy as np
import pytest

from sift_engine.errors import ConfigurationError, DataError
from sift_engine.graph import GraphSnapshot, SimilarityGraph, cosine_similarity, validate_embedding
from sift_engine.graph.mutual_knn import quantize


def brute_force_edges(vectors, k):
    """Recompute the mutual-kNN edge set from scratch."""
    units = {}
    for entry_id, vec in vectors.items():
        arr = np.asarray(vec, dtype=np.float64)
        norm = np.linalg.norm(arr)
        if norm > 0:
            units[entry_id] = arr / norm
    topk = {}
    for entry_id, u in units.items():
        ranked = sorted(
            (other for other in units if other != entry_id),
            key=lambda other: (-float(quantize(units[other] @ u)), other),
        )
        topk[entry_id] = set(ranked[:k])
    return {
        (a, b)
        for a in topk
        for b in topk[a]
        if a < b and a in topk[b]
    }


def graph_edges(graph):
    return {(a, b) for a, b, _ in graph.edges()}


class TestConstruction:
    def test_rejects_non_positive_k(self):
        with pytest.raises(ConfigurationError):
            SimilarityGraph(0)

    def test_rejects_bad_dimension(self):
        with pytest.raises(ConfigurationError):
            SimilarityGraph(3, dimension=0)

    def test_empty_graph(self):
        graph = SimilarityGraph(3)
        assert len(graph) == 0
        assert graph.version == 0
        assert list(graph.edges()) == []
        assert len(graph.snapshot()) == 0


class TestMutualKnn:
    @pytest.fixture(autouse=True)
    def setup(self, cluster_embeddings):
        self.vectors = cluster_embeddings
        self.graph = SimilarityGraph(2)
        for entry_id, vec in self.vectors.items():
            self.graph.upsert(entry_id, vec)

    def test_two_clusters_are_disconnected(self):
        assert graph_edges(self.graph) == {("a", "b"), ("a", "c"), ("b", "c"), ("d", "e")}

    def test_matches_brute_force(self):
        assert graph_edges(self.graph) == brute_force_edges(self.vectors, 2)
        self.graph.check_invariants()

    def test_edges_are_symmetric(self):
        for entry_id in self.graph.entry_ids():
            for other, weight in self.graph.neighbors(entry_id):
                back = dict(self.graph.neighbors(other))
                assert back[entry_id] == weight

    def test_edge_weight_is_cosine(self):
        weights = {(a, b): w for a, b, w in self.graph.edges()}
        expected = cosine_similarity(self.vectors["d"], self.vectors["e"])
        assert weights[("d", "e")] == pytest.approx(expected)

    def test_idempotent_upsert(self):
        version = self.graph.version
        before = list(self.graph.edges())
        assert self.graph.upsert("a", self.vectors["a"]) is False
        assert self.graph.version == version
        assert list(self.graph.edges()) == before

    def test_move_entry_between_clusters(self):
        self.graph.upsert("c", [-1.0, 0.05, 0.05])
        self.vectors["c"] = [-1.0, 0.05, 0.05]
        assert graph_edges(self.graph) == brute_force_edges(self.vectors, 2)
        assert ("a", "b") in graph_edges(self.graph)
        assert all("a" != n for n, _ in self.graph.neighbors("c"))

    def test_remove_drops_incident_edges(self):
        assert self.graph.remove("a") is True
        del self.vectors["a"]
        assert "a" not in self.graph
        assert all("a" not in pair for pair in graph_edges(self.graph))
        assert graph_edges(self.graph) == brute_force_edges(self.vectors, 2)
        self.graph.check_invariants()

    def test_remove_unknown(self):
        version = self.graph.version
        assert self.graph.remove("nope") is False
        assert self.graph.version == version

    def test_reinsert_after_remove_reuses_slot(self):
        self.graph.remove("d")
        self.graph.upsert("f", [-1.0, 0.05, 0.0])
        del self.vectors["d"]
        self.vectors["f"] = [-1.0, 0.05, 0.0]
        assert graph_edges(self.graph) == brute_force_edges(self.vectors, 2)
        assert ("e", "f") in graph_edges(self.graph)


class TestIncrementalSequences:
    def test_random_upsert_remove_sequence(self):
        rng = np.random.RandomState(7)
        graph = SimilarityGraph(3)
        vectors = {}
        for step in range(200):
            action = rng.rand()
            entry_id = f"e{rng.randint(0, 40):02d}"
            if action < 0.65:
                vec = rng.normal(size=4).tolist()
                graph.upsert(entry_id, vec)
                vectors[entry_id] = vec
            elif action < 0.7:
                graph.upsert(entry_id, [0.0, 0.0, 0.0, 0.0])
                vectors[entry_id] = [0.0, 0.0, 0.0, 0.0]
            else:
                graph.remove(entry_id)
                vectors.pop(entry_id, None)
            if step % 20 == 0:
                graph.check_invariants()
        graph.check_invariants()
        assert graph_edges(graph) == brute_force_edges(vectors, 3)
        assert sorted(vectors) == graph.entry_ids()

    def test_growth_beyond_initial_capacity(self):
        rng = np.random.RandomState(11)
        graph = SimilarityGraph(4)
        vectors = {f"n{i:03d}": rng.normal(size=3).tolist() for i in range(150)}
        for entry_id, vec in vectors.items():
            graph.upsert(entry_id, vec)
        assert len(graph) == 150
        assert graph_edges(graph) == brute_force_edges(vectors, 4)


class TestTiesAndZeroVectors:
    def test_ties_go_to_lower_id(self):
        graph = SimilarityGraph(1)
        graph.upsert("a", [1.0, 0.0])
        graph.upsert("c", [0.0, -1.0])
        graph.upsert("b", [0.0, 1.0])
        # a is equidistant from b and c; b wins on id
        assert [(x, y) for x, y, _ in graph.edges()] == [("a", "b")]

    def test_zero_vector_has_no_neighbors(self):
        graph = SimilarityGraph(2)
        graph.upsert("a", [1.0, 0.0])
        graph.upsert("b", [0.9, 0.1])
        graph.upsert("z", [0.0, 0.0])
        assert "z" in graph
        assert graph.neighbors("z") == []
        assert all("z" not in pair for pair in graph_edges(graph))
        graph.check_invariants()

    def test_equal_similarities_after_removal_go_to_lower_id(self, cluster_embeddings):
        graph = SimilarityGraph(2)
        for entry_id, vec in cluster_embeddings.items():
            graph.upsert(entry_id, vec)
        graph.remove("a")
        # c is exactly as far from d as from e; the matrix product can differ in the last bit
        assert [n for n, _ in graph.neighbors("c")] == ["b", "d"]
        graph.check_invariants()

    def test_quantize_merges_last_bit_noise(self):
        sims = quantize(np.array([-0.9753812927662663, -0.9753812927662662]))
        assert sims[0] == sims[1]

    def test_zero_vector_update_detaches_entry(self):
        graph = SimilarityGraph(2)
        graph.upsert("a", [1.0, 0.0])
        graph.upsert("b", [0.9, 0.1])
        assert graph.neighbors("a")
        graph.upsert("b", [0.0, 0.0])
        assert graph.neighbors("a") == []
        graph.check_invariants()


class TestValidation:
    def test_dimension_fixed_by_first_embedding(self):
        graph = SimilarityGraph(2)
        graph.upsert("a", [1.0, 0.0, 0.0])
        assert graph.dimension == 3
        with pytest.raises(DataError) as exc_info:
            graph.upsert("b", [1.0, 0.0])
        assert exc_info.value.record_id == "b"
        assert "b" not in graph

    def test_configured_dimension(self):
        graph = SimilarityGraph(2, dimension=2)
        with pytest.raises(DataError):
            graph.upsert("a", [1.0, 0.0, 0.0])

    @pytest.mark.parametrize("bad", [[], [float("nan"), 1.0], [float("inf"), 0.0], ["x", 1.0], [[1.0], [2.0]]])
    def test_malformed_embeddings(self, bad):
        with pytest.raises(DataError):
            validate_embedding("a", bad, None)

    def test_rejected_update_detaches_until_corrected(self):
        graph = SimilarityGraph(2)
        graph.upsert("a", [1.0, 0.0])
        graph.upsert("b", [0.9, 0.1])
        with pytest.raises(DataError):
            graph.upsert("a", [float("nan"), 0.0])
        assert "a" in graph
        assert graph.neighbors("a") == []
        assert graph.neighbors("b") == []
        graph.check_invariants()

        version = graph.version
        with pytest.raises(DataError):
            graph.upsert("a", [1.0, 0.0, 0.0])
        assert graph.version == version

        assert graph.upsert("a", [1.0, 0.0]) is True
        assert [n for n, _ in graph.neighbors("a")] == ["b"]


class TestSnapshot:
    def test_snapshot_is_isolated_from_later_updates(self, cluster_embeddings):
        graph = SimilarityGraph(2)
        for entry_id, vec in cluster_embeddings.items():
            graph.upsert(entry_id, vec)
        snapshot = graph.snapshot(verify=True)
        graph.remove("a")
        assert "a" in snapshot
        assert snapshot.version == graph.version - 1
        assert [n for n, _ in snapshot.neighbors("a")] == ["b", "c"]
        assert snapshot.edge_count == 4

    def test_arrays_are_read_only(self, cluster_embeddings):
        graph = SimilarityGraph(2)
        for entry_id, vec in cluster_embeddings.items():
            graph.upsert(entry_id, vec)
        snapshot = graph.snapshot()
        with pytest.raises(ValueError):
            snapshot.weights[0] = 0.5

    def test_transition_rows_are_stochastic(self):
        snapshot = GraphSnapshot.build(
            1,
            {
                "a": {"b": 0.5, "c": -0.5},
                "b": {"a": 0.5},
                "c": {"a": -0.5},
                "z": {},
            },
        )
        operator = snapshot.transition()
        row_sums = np.bincount(operator.rows, weights=operator.probs, minlength=4)
        row_sums = row_sums + operator.dangling
        assert np.allclose(row_sums, 1.0)
        assert operator.dangling.tolist() == [False, False, False, True]
        # a -> b gets (1 + 0.5) / 2 = 0.75, a -> c gets 0.25
        assert operator.probs[:2].tolist() == pytest.approx([0.75, 0.25])

    def test_transition_is_cached(self):
        snapshot = GraphSnapshot.build(1, {"a": {"b": 1.0}, "b": {"a": 1.0}})
        assert snapshot.transition() is snapshot.transition()


class TestConcurrency:
    def test_concurrent_writers_and_readers(self):
        graph = SimilarityGraph(3, lock_stripes=8)
        rng = np.random.RandomState(3)
        batches = [
            [(f"w{w}-{i:02d}", rng.normal(size=5).tolist()) for i in range(25)]
            for w in range(4)
        ]
        errors = []
        stop = threading.Event()

        def write(batch):
            try:
                for entry_id, vec in batch:
                    graph.upsert(entry_id, vec)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        def read():
            try:
                while not stop.is_set():
                    for entry_id in graph.entry_ids()[:10]:
                        graph.neighbors(entry_id)
                    graph.snapshot()
            except Exception as exc:
                errors.append(exc)

        readers = [threading.Thread(target=read) for _ in range(2)]
        writers = [threading.Thread(target=write, args=(b,)) for b in batches]
        for t in readers + writers:
            t.start()
        for t in writers:
            t.join()
        stop.set()
        for t in readers:
            t.join()

        assert errors == []
        assert len(graph) == 100
        graph.check_invariants()
        vectors = {entry_id: vec for batch in batches for entry_id, vec in batch}
        assert graph_edges(graph) == brute_force_edges(vectors, 3)

    def test_writers_in_disjoint_regions_do_not_block_each_other(self):
        graph = SimilarityGraph(1, lock_stripes=64)
        vectors = {
            "a": [1.0, 0.0, 0.0],
            "b": [0.9, 0.1, 0.0],
            "d": [-1.0, 0.0, 0.0],
            "e": [-0.9, 0.1, 0.0],
        }
        for entry_id, vec in vectors.items():
            graph.upsert(entry_id, vec)

        near_a = threading.Thread(target=graph.upsert, args=("a2", [1.0, 0.05, 0.0]))
        near_d = threading.Thread(target=graph.upsert, args=("e2", [-1.0, 0.05, 0.0]))
        with graph.read_region(["a", "b"]):
            near_a.start()
            near_d.start()
            near_d.join(timeout=5)
            assert not near_d.is_alive()
            assert "e2" in graph
            # the write next to a waits for the held neighbourhood
            assert near_a.is_alive()
            assert "a2" not in graph
        near_a.join(timeout=5)
        assert not near_a.is_alive()

        vectors.update({"a2": [1.0, 0.05, 0.0], "e2": [-1.0, 0.05, 0.0]})
        graph.check_invariants()
        assert graph_edges(graph) == brute_force_edges(vectors, 1)

    def test_concurrent_writers_in_one_region_converge(self):
        graph = SimilarityGraph(2, lock_stripes=4)
        rng = np.random.RandomState(5)
        base = rng.normal(size=4)
        vectors = {f"n{i:02d}": (base + 0.01 * rng.normal(size=4)).tolist() for i in range(40)}
        items = sorted(vectors.items())
        threads = [
            threading.Thread(target=lambda chunk=items[w::4]: [graph.upsert(e, v) for e, v in chunk])
            for w in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        graph.check_invariants()
        assert graph_edges(graph) == brute_force_edges(vectors, 2)
