"""
mnemo Retrieval -- semantic query over the live store.

    embed query -> over-fetch from the HNSW index -> hard filters in SQLite
    -> composite score -> similarity floor -> sort -> truncate to k

Access side effects (access_count, last_accessed_at, decay refresh) are
submitted to a background executor after the result is built, so callers
never wait on them.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, List, Optional, Set, Tuple

from mnemo import scoring
from mnemo.config import StoreConfig
from mnemo.embeddings import EmbeddingProvider, embed_with_timeout
from mnemo.sqlite_store import RecordStore
from mnemo.types import MemoryRecord, QueryFilters, utcnow
from mnemo.vector_index import VectorIndex

logger = logging.getLogger("mnemo.retrieval")


class RetrievalEngine:
    """Answers ``retrieve`` calls against a RecordStore + VectorIndex pair."""

    def __init__(
        self,
        store: RecordStore,
        index: VectorIndex,
        provider: EmbeddingProvider,
        config: StoreConfig,
    ):
        self.store = store
        self.index = index
        self.provider = provider
        self.config = config
        self._touch_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mnemo-touch")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def retrieve(
        self,
        owner: str,
        query_text: str,
        k: int = 10,
        filters: Any = None,
        similarity_floor: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[MemoryRecord]:
        """Return at most ``k`` live records of ``owner``, best first.

        Raises ValueError for ``k <= 0`` or an empty query, and
        EmbeddingUnavailable when the query cannot be embedded.
        """
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")
        if not owner:
            raise ValueError("owner is required")
        if not query_text or not query_text.strip():
            raise ValueError("query_text must not be empty")
        filters = QueryFilters.coerce(filters)
        floor = self.config.similarity_floor if similarity_floor is None else similarity_floor
        now = now or utcnow()

        query_vec = embed_with_timeout(self.provider, query_text, self.config.embed_timeout)
        # The index is shared by all owners; widen until k survive the filters.
        fetch = k * self.config.overfetch_factor
        while True:
            hits = self.index.search(query_vec, fetch)
            scored = self._score(owner, hits, filters, floor, now)
            if len(scored) >= k or fetch >= len(self.index):
                break
            fetch = min(fetch * 2, len(self.index))

        scored.sort(key=lambda r: (-r.relevance, -r.created_at.timestamp(), r.id))
        results = scored[:k]
        logger.debug(
            "retrieve owner=%s k=%d: searched %d, %d survived filters, returning %d",
            owner, k, fetch, len(scored), len(results),
        )
        if results:
            self._schedule_touch([r.id for r in results], now)
        return results

    def _score(
        self,
        owner: str,
        hits: List[Tuple[str, float]],
        filters: Optional[QueryFilters],
        floor: float,
        now: datetime,
    ) -> List[MemoryRecord]:
        if not hits:
            return []
        similarities = dict(hits)
        candidates = self.store.get_many(list(similarities), owner=owner, live_only=True, filters=filters)
        scored = []
        for record_id, record in candidates.items():
            similarity = similarities[record_id]
            # Negative cosine counts as zero; only an explicit floor above 0 excludes it.
            if max(0.0, similarity) < floor:
                continue
            composite = scoring.score(
                similarity,
                record.importance,
                record.access_count,
                record.last_accessed_at,
                record.decay_factor,
                now,
            )
            record.relevance = scoring.apply_priority(
                composite, record.priority_score, self.config.priority_weight
            )
            scored.append(record)
        return scored

    # ------------------------------------------------------------------
    # Access side effects
    # ------------------------------------------------------------------

    def _schedule_touch(self, record_ids: List[str], now: datetime) -> None:
        future = self._touch_executor.submit(self._touch, record_ids, now)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _touch(self, record_ids: List[str], now: datetime) -> None:
        try:
            self.store.touch_many(record_ids, self.config.access_refresh, now)
        except Exception as e:
            # Access stats are advisory; a lost update never affects correctness.
            logger.warning("Access stat update for %d records failed: %s", len(record_ids), e)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding access-stat updates."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self.flush()
        self._touch_executor.shutdown(wait=True)
