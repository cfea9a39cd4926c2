"""
mnemo Vector Index -- HNSW approximate nearest-neighbour search over embeddings.

Backed by hnswlib (hierarchical navigable small-world graph, cosine space).
``M`` and ``ef_construction`` are fixed when the index is built; ``ef_search``
can be raised at runtime to trade latency for recall.

Concurrency: insert, remove and search all run under the shared side of a
reader/writer lock, since hnswlib supports concurrent add_items, mark_deleted
and knn_query. Only capacity growth (resize_index) and clear() take the
exclusive side, so readers never wait on ordinary writes.

The index is eventually consistent with the record store: it is rebuilt from
the durable embeddings table when the service opens.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import hnswlib
import numpy as np

from mnemo.errors import MissingEmbedding

logger = logging.getLogger("mnemo.vector_index")


class _ReadWriteLock:
    """Many readers or one writer. Waiting writers hold off new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class VectorIndex:
    """HNSW index keyed by record id.

    hnswlib works on integer labels; the index allocates one label per record
    id and never reuses it, so a removed record can't resurface under a new id.
    """

    def __init__(
        self,
        dim: int,
        m: int = 16,
        ef_construction: int = 64,
        ef_search: int = 50,
        capacity: int = 1024,
    ):
        self.dim = dim
        self.m = m
        self.ef_construction = ef_construction
        self._ef = ef_search
        self._rw = _ReadWriteLock()
        self._alloc_lock = threading.Lock()
        self._labels: Dict[str, int] = {}  # record id -> label (live only)
        self._ids: Dict[int, str] = {}  # label -> record id (live only)
        self._next_label = 0
        self._capacity = capacity
        self._index = self._new_index(capacity)

    def _new_index(self, capacity: int):
        index = hnswlib.Index(space="cosine", dim=self.dim)
        index.init_index(max_elements=capacity, ef_construction=self.ef_construction, M=self.m)
        index.set_ef(self._ef)
        return index

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._labels

    @property
    def ef_search(self) -> int:
        return self._ef

    @property
    def capacity(self) -> int:
        return self._capacity

    def set_ef_search(self, ef: int) -> None:
        """Set the runtime search breadth (higher = better recall, slower)."""
        if ef < 1:
            raise ValueError(f"ef_search must be >= 1, got {ef}")
        with self._rw.write():
            self._index.set_ef(ef)
            self._ef = ef

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _prepare(self, record_id: str, embedding: Optional[Sequence[float]]) -> np.ndarray:
        if embedding is None:
            raise MissingEmbedding(record_id)
        vec = np.asarray(embedding, dtype=np.float32)
        if vec.shape != (self.dim,):
            raise ValueError(f"embedding for {record_id} has shape {vec.shape}, expected ({self.dim},)")
        norm = float(np.linalg.norm(vec))
        if not np.isfinite(norm) or norm == 0.0:
            raise ValueError(f"embedding for {record_id} is zero or non-finite")
        return vec / norm

    def _allocate(self, record_ids: List[str]) -> List[int]:
        """Assign labels, growing the graph first when capacity runs out."""
        with self._alloc_lock:
            labels = []
            for record_id in record_ids:
                label = self._labels.get(record_id)
                if label is None:
                    label = self._next_label
                    self._next_label += 1
                labels.append(label)
            if self._next_label > self._capacity:
                new_capacity = max(self._capacity * 2, self._next_label)
                with self._rw.write():
                    self._index.resize_index(new_capacity)
                    self._capacity = new_capacity
                logger.debug("Resized vector index to %d elements", new_capacity)
            return labels

    def insert(self, record_id: str, embedding: Optional[Sequence[float]]) -> None:
        """Add or replace the vector for ``record_id``.

        Raises MissingEmbedding when ``embedding`` is None.
        """
        self.insert_many([(record_id, embedding)])

    def insert_many(self, items: Iterable[Tuple[str, Optional[Sequence[float]]]]) -> int:
        """Bulk insert; all embeddings are validated before any is added."""
        prepared = [(record_id, self._prepare(record_id, emb)) for record_id, emb in items]
        if not prepared:
            return 0
        ids = [record_id for record_id, _ in prepared]
        labels = self._allocate(ids)
        data = np.vstack([vec for _, vec in prepared])
        with self._rw.read():
            self._index.add_items(data, np.asarray(labels, dtype=np.int64))
        with self._alloc_lock:
            for record_id, label in zip(ids, labels):
                self._labels[record_id] = label
                self._ids[label] = record_id
        return len(prepared)

    def remove(self, record_id: str) -> bool:
        """Remove ``record_id`` from search results. Returns False if absent."""
        with self._alloc_lock:
            label = self._labels.pop(record_id, None)
            if label is None:
                return False
            self._ids.pop(label, None)
        with self._rw.read():
            try:
                self._index.mark_deleted(label)
            except RuntimeError as e:
                # Already marked; the mapping removal above is what search honours.
                logger.debug("mark_deleted(%d) for %s failed: %s", label, record_id, e)
        return True

    def clear(self) -> None:
        """Drop every vector and start from an empty graph of the same shape."""
        with self._alloc_lock:
            with self._rw.write():
                self._index = self._new_index(self._capacity)
                self._labels.clear()
                self._ids.clear()
                self._next_label = 0

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query_embedding: Sequence[float], k: int) -> List[Tuple[str, float]]:
        """Return up to ``k`` (record_id, cosine similarity) pairs, best first.

        An empty index yields an empty list.
        """
        if k <= 0:
            return []
        query = self._prepare("<query>", query_embedding).reshape(1, -1)
        k = min(k, len(self._labels))
        if k == 0:
            return []

        with self._rw.read():
            while k > 0:
                try:
                    labels, distances = self._index.knn_query(query, k=k)
                    break
                except RuntimeError as e:
                    # Too few reachable live elements for this k (many deletions).
                    logger.debug("knn_query k=%d failed: %s", k, e)
                    k //= 2
            else:
                return []

        results = []
        for label, dist in zip(labels[0], distances[0]):
            record_id = self._ids.get(int(label))
            if record_id is None:
                continue
            similarity = max(-1.0, min(1.0, 1.0 - float(dist)))
            results.append((record_id, similarity))
        return results
