"""Tests for mnemo VectorIndex: HNSW search, removal, growth and concurrency."""
import threading

import numpy as np
import pytest

from conftest import DIM, blend, unit
from mnemo.errors import MissingEmbedding
from mnemo.vector_index import VectorIndex


class TestSearch:
    def test_empty_index_returns_empty(self, index):
        assert index.search(unit(0), 5) == []

    def test_nearest_first(self, index):
        index.insert("a", unit(0))
        index.insert("b", blend(0, 1, 0.8))
        index.insert("c", unit(1))
        hits = index.search(unit(0), 3)
        assert [h[0] for h in hits] == ["a", "b", "c"]
        assert hits[0][1] == pytest.approx(1.0, abs=1e-5)
        assert hits[1][1] == pytest.approx(0.8, abs=1e-5)
        assert hits[2][1] == pytest.approx(0.0, abs=1e-5)

    def test_k_larger_than_index(self, index):
        index.insert("a", unit(0))
        index.insert("b", unit(1))
        assert len(index.search(unit(0), 50)) == 2

    def test_vectors_are_normalized(self, index):
        index.insert("a", [3.0] + [0.0] * (DIM - 1))
        assert index.search(unit(0), 1)[0][1] == pytest.approx(1.0, abs=1e-5)

    def test_non_positive_k(self, index):
        index.insert("a", unit(0))
        assert index.search(unit(0), 0) == []


class TestMutation:
    def test_insert_without_embedding_rejected(self, index):
        with pytest.raises(MissingEmbedding) as exc:
            index.insert("a", None)
        assert exc.value.record_id == "a"
        assert "a" not in index

    def test_bad_shape_rejected(self, index):
        with pytest.raises(ValueError):
            index.insert("a", [1.0, 2.0])

    def test_zero_vector_rejected(self, index):
        with pytest.raises(ValueError):
            index.insert("a", [0.0] * DIM)

    def test_remove(self, index):
        index.insert("a", unit(0))
        index.insert("b", unit(1))
        assert index.remove("a") is True
        assert index.remove("a") is False
        assert [h[0] for h in index.search(unit(0), 5)] == ["b"]
        assert len(index) == 1

    def test_reinsert_replaces_vector(self, index):
        index.insert("a", unit(0))
        index.insert("a", unit(1))
        assert len(index) == 1
        assert index.search(unit(1), 1)[0][0] == "a"

    def test_grows_past_capacity(self):
        idx = VectorIndex(dim=DIM, capacity=4)
        rng = np.random.default_rng(7)
        for i in range(20):
            idx.insert(f"r{i}", rng.normal(size=DIM).tolist())
        assert len(idx) == 20
        assert idx.capacity >= 20

    def test_clear(self, index):
        index.insert("a", unit(0))
        index.clear()
        assert len(index) == 0
        assert index.search(unit(0), 1) == []

    def test_set_ef_search(self, index):
        index.set_ef_search(200)
        assert index.ef_search == 200
        with pytest.raises(ValueError):
            index.set_ef_search(0)


class TestConcurrency:
    def test_concurrent_insert_and_search(self):
        idx = VectorIndex(dim=DIM, capacity=8)
        rng = np.random.default_rng(11)
        vectors = {f"r{i}": rng.normal(size=DIM).tolist() for i in range(200)}
        errors = []

        def writer(keys):
            try:
                for key in keys:
                    idx.insert(key, vectors[key])
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        def reader():
            try:
                for _ in range(100):
                    idx.search(unit(0), 5)
            except Exception as e:  # pragma: no cover
                errors.append(e)

        keys = list(vectors)
        threads = [threading.Thread(target=writer, args=(keys[i::4],)) for i in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert len(idx) == 200
