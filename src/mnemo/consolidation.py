"""
mnemo Consolidation -- merge near-duplicate memories into single records.

One run walks a bounded batch through::

    Scanning -> Clustering -> (per cluster) Merging -> Archiving -> Committed
                                                   \\-> Aborted

Clustering reads the HNSW index and the store without locks, so it never
blocks retrieval. Each cluster is then processed under per-record locks
(taken in sorted id order) and committed atomically:

1. every source is written to the archive (its own durable transaction)
2. the merged record is inserted and the sources flagged archived, in one
   store transaction that first re-checks the sources are still live
3. the index gains the merged vector and drops the sources

A failure in one cluster is logged and counted; the batch carries on.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from mnemo.archive import ArchiveStore
from mnemo.config import StoreConfig
from mnemo.embeddings import normalize
from mnemo.errors import ArchiveWriteFailed, ConcurrencyConflict, MissingEmbedding, ValidationFailed
from mnemo.scoring import compute_priority
from mnemo.sqlite_store import RecordStore
from mnemo.types import ArchiveEntry, ArchiveReason, ConsolidationState, MemoryRecord, utcnow
from mnemo.vector_index import VectorIndex

logger = logging.getLogger("mnemo.consolidation")


# ---------------------------------------------------------------------------
# Per-record mutual exclusion
# ---------------------------------------------------------------------------


class RecordLockManager:
    """Named locks, one per record id, created on demand and dropped when idle."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}  # id -> [lock, users]

    def _checkout(self, record_id: str) -> threading.Lock:
        with self._guard:
            slot = self._locks.setdefault(record_id, [threading.Lock(), 0])
            slot[1] += 1
            return slot[0]

    def _checkin(self, record_id: str) -> None:
        with self._guard:
            slot = self._locks.get(record_id)
            if slot is None:
                return
            slot[1] -= 1
            if slot[1] <= 0:
                del self._locks[record_id]

    def is_locked(self, record_id: str) -> bool:
        with self._guard:
            slot = self._locks.get(record_id)
            return slot is not None and slot[0].locked()

    @contextmanager
    def acquire(self, record_ids: Iterable[str], timeout: float):
        """Hold every lock in ``record_ids`` (acquired in increasing id order).

        Raises ConcurrencyConflict if any lock is not obtained within
        ``timeout`` seconds; locks already taken are released first.
        """
        ordered = sorted(set(record_ids))
        held: List[str] = []
        try:
            for record_id in ordered:
                lock = self._checkout(record_id)
                if not lock.acquire(timeout=timeout):
                    self._checkin(record_id)
                    raise ConcurrencyConflict(f"timed out waiting for lock on {record_id}")
                held.append(record_id)
            yield ordered
        finally:
            for record_id in reversed(held):
                with self._guard:
                    lock = self._locks[record_id][0]
                lock.release()
                self._checkin(record_id)


# ---------------------------------------------------------------------------
# Merge strategies
#
# Each takes the cluster (ordered by created_at, id) and returns
# (content, representative, verbatim). ``verbatim`` means content is exactly
# the representative's, so its vector can be reused as-is.
# ---------------------------------------------------------------------------

MergeResult = Tuple[str, MemoryRecord, bool]


def _longest_key(record: MemoryRecord):
    return (-len(record.content), -record.created_at.timestamp(), record.id)


def merge_longest(records: Sequence[MemoryRecord]) -> MergeResult:
    """Longest content wins; ties go to the most recent, then the smallest id."""
    rep = min(records, key=_longest_key)
    return rep.content, rep, True


def merge_most_recent(records: Sequence[MemoryRecord]) -> MergeResult:
    rep = min(records, key=lambda r: (-r.created_at.timestamp(), r.id))
    return rep.content, rep, True


def merge_concatenate(records: Sequence[MemoryRecord]) -> MergeResult:
    """Join distinct contents in creation order."""
    seen = set()
    parts = []
    for record in records:
        text = record.content.strip()
        if text and text not in seen:
            seen.add(text)
            parts.append(text)
    rep = min(records, key=_longest_key)
    if len(parts) == 1:
        return rep.content, rep, True
    return "\n\n".join(parts), rep, False


STRATEGIES: Dict[str, Callable[[Sequence[MemoryRecord]], MergeResult]] = {
    "longest": merge_longest,
    "most_recent": merge_most_recent,
    "concatenate": merge_concatenate,
}


def _dedupe(items: Iterable[Any]) -> List[Any]:
    out, seen = [], set()
    for item in items:
        key = json.dumps(item, sort_keys=True, default=str)
        if key not in seen:
            seen.add(key)
            out.append(item)
    return out


# ---------------------------------------------------------------------------
# Union-find
# ---------------------------------------------------------------------------


class _DisjointSet:
    def __init__(self):
        self._parent: Dict[str, str] = {}

    def find(self, x: str) -> str:
        self._parent.setdefault(x, x)
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[x] != root:
            self._parent[x], x = root, self._parent[x]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Smaller id becomes root so grouping is deterministic.
            if rb < ra:
                ra, rb = rb, ra
            self._parent[rb] = ra

    def groups(self) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        for x in list(self._parent):
            out.setdefault(self.find(x), []).append(x)
        return out


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Finds and merges clusters of near-duplicate records for one owner."""

    def __init__(
        self,
        store: RecordStore,
        index: VectorIndex,
        archive: ArchiveStore,
        config: StoreConfig,
        locks: Optional[RecordLockManager] = None,
    ):
        self.store = store
        self.index = index
        self.archive = archive
        self.config = config
        self.locks = locks or RecordLockManager()
        self.state = ConsolidationState.COMMITTED

    def _enter(self, state: ConsolidationState, detail: str = "") -> None:
        self.state = state
        logger.debug("consolidation -> %s %s", state.value, detail)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        owner: str,
        batch_size: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Consolidate one batch of ``owner``'s records. Returns a run report."""
        if not owner:
            raise ValueError("owner is required")
        batch_size = batch_size or self.config.batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        now = now or utcnow()
        report: Dict[str, Any] = {
            "clusters_merged": 0,
            "records_archived": 0,
            "clusters_skipped": 0,
            "conflicts": 0,
            "archive_failures": 0,
            "cancelled": False,
            "merged_ids": [],
        }

        self._enter(ConsolidationState.SCANNING, f"owner={owner}")
        batch = self.store.scan_for_consolidation(
            owner, batch_size, self.config.consolidation_cooldown_hours, now
        )
        if len(batch) < 2:
            self._enter(ConsolidationState.COMMITTED, "(nothing to do)")
            return report

        self._enter(ConsolidationState.CLUSTERING, f"batch={len(batch)}")
        clusters, evidence = self._cluster(owner, batch, now)

        for cluster in clusters:
            if cancel_event is not None and cancel_event.is_set():
                report["cancelled"] = True
                logger.info("Consolidation for %s cancelled with %d clusters left",
                            owner, len(clusters) - report["clusters_merged"] - report["clusters_skipped"])
                break
            member_ids = [r.id for r in cluster]
            try:
                merged = self._consolidate_cluster(owner, member_ids, evidence, now)
            except ValidationFailed as e:
                logger.warning("Skipping cluster %s: %s", member_ids, e)
                self.store.mark_consolidation_attempt(member_ids, now)
                report["clusters_skipped"] += 1
            except ConcurrencyConflict as e:
                logger.warning("Conflict on cluster %s, retrying next run: %s", member_ids, e)
                report["conflicts"] += 1
                report["clusters_skipped"] += 1
            except ArchiveWriteFailed as e:
                logger.error("Archive write failed for cluster %s: %s", member_ids, e)
                report["archive_failures"] += 1
                report["clusters_skipped"] += 1
            except Exception as e:
                logger.warning("Cluster %s aborted: %s", member_ids, e, exc_info=True)
                report["clusters_skipped"] += 1
            else:
                report["clusters_merged"] += 1
                report["records_archived"] += len(member_ids)
                report["merged_ids"].append(merged.id)

        if report["cancelled"]:
            self._enter(ConsolidationState.ABORTED, "(cancelled)")
        else:
            self.state = ConsolidationState.COMMITTED
        logger.info(
            "Consolidation for %s: %d clusters merged, %d records archived, %d skipped",
            owner, report["clusters_merged"], report["records_archived"], report["clusters_skipped"],
        )
        return report

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def _cluster(
        self, owner: str, batch: List[MemoryRecord], now: datetime
    ) -> Tuple[List[List[MemoryRecord]], Dict[Tuple[str, str], float]]:
        """Group transitively similar records into disjoint clusters of size >= 2."""
        threshold = self.config.consolidation_threshold
        fanout = self.config.cluster_neighbors + 1
        known: Dict[str, MemoryRecord] = {r.id: r for r in batch}
        rejected: set = set()
        dsu = _DisjointSet()
        evidence: Dict[Tuple[str, str], float] = {}

        for record in batch:
            hits = [
                (nid, sim) for nid, sim in self.index.search(record.embedding, fanout)
                if nid != record.id and sim >= threshold and nid not in rejected
            ]
            unknown = [nid for nid, _ in hits if nid not in known]
            if unknown:
                fetched = self.store.get_many(unknown, owner=owner, live_only=True, include_embedding=True)
                cooling = self.store.in_cooldown(list(fetched), self.config.consolidation_cooldown_hours, now)
                for nid in unknown:
                    if nid in fetched and nid not in cooling:
                        known[nid] = fetched[nid]
                    else:
                        rejected.add(nid)
            for nid, sim in hits:
                if nid in known:
                    dsu.union(record.id, nid)
                    evidence[tuple(sorted((record.id, nid)))] = sim

        clusters = []
        for members in dsu.groups().values():
            if len(members) < 2:
                continue
            records = sorted((known[m] for m in members), key=lambda r: (r.created_at, r.id))
            clusters.append(records)
        clusters.sort(key=lambda c: (c[0].created_at, c[0].id))
        logger.debug("Clustering found %d clusters in %d records", len(clusters), len(batch))
        return clusters, evidence

    # ------------------------------------------------------------------
    # Per-cluster pipeline
    # ------------------------------------------------------------------

    def _consolidate_cluster(
        self,
        owner: str,
        member_ids: List[str],
        evidence: Dict[Tuple[str, str], float],
        now: datetime,
    ) -> MemoryRecord:
        with self.locks.acquire(member_ids, self.config.lock_timeout):
            self._enter(ConsolidationState.MERGING, f"{member_ids}")
            fresh = self.store.get_many(member_ids, owner=owner, live_only=True, include_embedding=True)
            if len(fresh) != len(member_ids):
                raise ConcurrencyConflict(
                    f"{len(member_ids) - len(fresh)} sources changed since clustering"
                )
            members = sorted(fresh.values(), key=lambda r: (r.created_at, r.id))
            merged = self.merge(owner, members, evidence, now)
            self.validate(merged, owner, members)

            self._enter(ConsolidationState.ARCHIVING, merged.id)
            self.archive.append_many([
                ArchiveEntry(m, ArchiveReason.CONSOLIDATED, archived_at=now, replacement_id=merged.id)
                for m in members
            ])

            try:
                self.store.commit_consolidation(merged, member_ids, now)
            except Exception:
                self._enter(ConsolidationState.ABORTED, merged.id)
                self.archive.discard_replacement(merged.id, now)
                raise
            self._enter(ConsolidationState.COMMITTED, merged.id)

        self._sync_index(merged, member_ids)
        return merged

    def _sync_index(self, merged: MemoryRecord, source_ids: List[str]) -> None:
        """Mirror a committed merge into the index.

        The store is already authoritative here; a failed index update only
        delays search visibility until the next rebuild.
        """
        try:
            self.index.insert(merged.id, merged.embedding)
        except (RuntimeError, ValueError, MissingEmbedding) as e:
            logger.debug("Index insert of merged %s failed: %s", merged.id, e)
        for record_id in source_ids:
            self.index.remove(record_id)

    def merge(
        self,
        owner: str,
        members: List[MemoryRecord],
        evidence: Dict[Tuple[str, str], float],
        now: datetime,
    ) -> MemoryRecord:
        """Build the replacement record for ``members`` (ordered by created_at, id)."""
        strategy = self.config.merge_strategy
        content, rep, verbatim = STRATEGIES[strategy](members)

        if verbatim and rep.embedding is not None:
            embedding = list(rep.embedding)
        else:
            centroid = np.mean(np.asarray([m.embedding for m in members], dtype=np.float32), axis=0)
            embedding = normalize(centroid)

        metadata: Dict[str, Any] = {}
        for m in members:
            if m is not rep:
                metadata.update(m.metadata or {})
        metadata.update(rep.metadata or {})

        entities = [e for m in members for e in (m.entities or [])]
        relationships = [r for m in members for r in (m.relationships or [])]
        accessed = [m.last_accessed_at for m in members if m.last_accessed_at is not None]
        access_count = sum(m.access_count for m in members)
        sources = [m.id for m in members]

        ids = set(sources)
        sims = [sim for (a, b), sim in evidence.items() if a in ids and b in ids]
        if sims:
            evidence_text = f"min similarity {min(sims):.3f}, mean {sum(sims) / len(sims):.3f}"
        else:
            evidence_text = "no pairwise evidence"
        reason = (
            f"Merged {len(members)} near-duplicate memories ({evidence_text}, "
            f"threshold {self.config.consolidation_threshold:.2f}, strategy {strategy})"
        )

        return MemoryRecord(
            id=self.store.new_id(),
            owner=owner,
            content=content,
            kind=rep.kind,
            category=rep.category,
            embedding=embedding,
            metadata=metadata,
            importance=max(m.importance for m in members),
            created_at=now,
            updated_at=now,
            last_accessed_at=max(accessed) if accessed else None,
            access_count=access_count,
            priority_score=compute_priority(len(sources), access_count, members[0].created_at, now),
            decay_factor=max(m.decay_factor for m in members),
            decay_updated_at=now,
            consolidated_from=sources,
            consolidation_reason=reason,
            consolidation_date=now,
            last_consolidation=now,
            entities=_dedupe(entities) if entities else None,
            relationships=_dedupe(relationships) if relationships else None,
        )

    def validate(self, merged: MemoryRecord, owner: str, members: Sequence[MemoryRecord]) -> None:
        """Raise ValidationFailed for a merge result that must not be committed."""
        if not merged.content or not merged.content.strip():
            raise ValidationFailed("merged content is empty")
        if merged.owner != owner or any(m.owner != owner for m in members):
            raise ValidationFailed(f"owner mismatch in cluster for {owner}")
        if len(merged.content) > self.config.max_content_size:
            raise ValidationFailed(
                f"merged content is {len(merged.content)} chars, limit {self.config.max_content_size}"
            )
        if len(merged.consolidated_from) < 2:
            raise ValidationFailed("a consolidation needs at least two sources")
        if merged.embedding is None:
            raise ValidationFailed("merged record has no embedding")
