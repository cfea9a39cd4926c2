"""
mnemo Backfill -- fills in embeddings for records saved without one.

``save`` persists a record with a null embedding and enqueues its id here.
A daemon thread drains the queue in small batches: embed, write the vector
to the store, insert it into the HNSW index. If the provider is down the
record simply stays pending; ``sweep()`` re-enqueues everything still
pending (call it on startup or from a scheduler).
"""

import logging
import queue
import threading
from typing import Dict, List, Optional

from mnemo.config import StoreConfig
from mnemo.embeddings import EmbeddingProvider, embed_batch_with_timeout
from mnemo.errors import EmbeddingUnavailable
from mnemo.sqlite_store import RecordStore
from mnemo.vector_index import VectorIndex

logger = logging.getLogger("mnemo.backfill")

_BATCH = 16
_POLL_S = 0.5


class EmbeddingBackfillWorker:
    """Queue of record ids awaiting embeddings, consumed by one worker thread."""

    def __init__(
        self,
        store: RecordStore,
        index: VectorIndex,
        provider: EmbeddingProvider,
        config: StoreConfig,
        batch_size: int = _BATCH,
    ):
        self.store = store
        self.index = index
        self.provider = provider
        self.config = config
        self.batch_size = batch_size
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.stats: Dict[str, int] = {"embedded": 0, "deferred": 0, "skipped": 0}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="mnemo-backfill", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def enqueue(self, record_id: str) -> None:
        self._queue.put(record_id)

    def sweep(self, owner: Optional[str] = None) -> int:
        """Enqueue every live record that still lacks an embedding."""
        ids = self.store.pending_embedding_ids(owner=owner)
        for record_id in ids:
            self._queue.put(record_id)
        if ids:
            logger.info("Backfill sweep queued %d records", len(ids))
        return len(ids)

    def join(self) -> None:
        """Block until every queued id has been attempted."""
        if self.running:
            self._queue.join()
        else:
            while self._drain_once(block=False):
                pass

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop.is_set():
            self._drain_once(block=True)

    def _drain_once(self, block: bool) -> int:
        """Take up to one batch off the queue and process it. Returns batch size."""
        batch: List[str] = []
        try:
            batch.append(self._queue.get(block=block, timeout=_POLL_S if block else None))
        except queue.Empty:
            return 0
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
        try:
            self.process(batch)
        except Exception as e:
            logger.warning("Backfill batch of %d failed: %s", len(batch), e, exc_info=True)
        finally:
            for _ in batch:
                self._queue.task_done()
        return len(batch)

    def process(self, record_ids: List[str]) -> int:
        """Embed and index ``record_ids`` now. Returns how many were embedded."""
        ids = list(dict.fromkeys(record_ids))
        records = self.store.get_many(ids, live_only=True)
        todo = [records[i] for i in ids if i in records and i not in self.index]
        self.stats["skipped"] += len(ids) - len(todo)
        if not todo:
            return 0
        try:
            vectors = embed_batch_with_timeout(
                self.provider, [r.content for r in todo], self.config.embed_timeout
            )
        except EmbeddingUnavailable as e:
            self.stats["deferred"] += len(todo)
            logger.warning("Embedding unavailable, %d records stay pending: %s", len(todo), e)
            return 0

        done = 0
        for record, vector in zip(todo, vectors):
            if not self.store.set_embedding(record.id, vector):
                continue
            if record.id in self.store.live_ids([record.id]):
                self.index.insert(record.id, vector)
            done += 1
        self.stats["embedded"] += done
        logger.debug("Backfilled %d embeddings", done)
        return done
