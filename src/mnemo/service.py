"""
mnemo Service -- the public surface of the memory store.

MemoryService wires the record store, HNSW index, archive, retrieval,
consolidation and backfill worker together around one explicit StoreConfig.
Every operation takes ``owner`` explicitly; there is no default owner.

Usage:
    with MemoryService(StoreConfig.from_env()) as svc:
        rid = svc.save("alice", "note", "ops", "deploy script fails on timeout")
        svc.flush()
        hits = svc.retrieve("alice", "timeout during deploy", k=5)
        report = svc.run_consolidation("alice")

Scheduling (when to consolidate, recompute scores, expire or collect garbage)
is left to the caller.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from mnemo.archive import ArchiveStore
from mnemo.backfill import EmbeddingBackfillWorker
from mnemo.config import StoreConfig
from mnemo.consolidation import ConsolidationEngine, RecordLockManager
from mnemo.embeddings import EmbeddingProvider, OnnxEmbeddingProvider, shutdown_executor
from mnemo.errors import ConcurrencyConflict, NotFound
from mnemo.retrieval import RetrievalEngine
from mnemo.scoring import compute_priority, recompute_decay
from mnemo.sqlite_store import RecordStore
from mnemo.types import ArchiveEntry, ArchiveReason, MemoryRecord, utcnow
from mnemo.vector_index import VectorIndex

logger = logging.getLogger("mnemo.service")

_BACKUPS_KEPT = 3


class MemoryService:
    """Semantic memory store for many owners backed by one SQLite file."""

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        provider: Optional[EmbeddingProvider] = None,
        start_worker: bool = True,
    ):
        self.config = config or StoreConfig.from_env()
        self.config.home.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.provider = provider or OnnxEmbeddingProvider(dimension=self.config.embedding_dim)
        if self.provider.dimension != self.config.embedding_dim:
            raise ValueError(
                f"provider dimension {self.provider.dimension} != embedding_dim {self.config.embedding_dim}"
            )

        self.store = RecordStore(self.config.db_path, self.config)
        self.archive_store = ArchiveStore(self.config.db_path, self.config)
        self.index = VectorIndex(
            dim=self.config.embedding_dim,
            m=self.config.hnsw_m,
            ef_construction=self.config.hnsw_ef_construction,
            ef_search=self.config.hnsw_ef_search,
            capacity=max(self.config.index_capacity, self.store.count()),
        )
        self.locks = RecordLockManager()
        self.retrieval = RetrievalEngine(self.store, self.index, self.provider, self.config)
        self.consolidation = ConsolidationEngine(
            self.store, self.index, self.archive_store, self.config, locks=self.locks
        )
        self.backfill = EmbeddingBackfillWorker(self.store, self.index, self.provider, self.config)
        self._closed = False

        self.rebuild_index()
        self.recover()
        if start_worker:
            self.backfill.start()
        self.backfill.sweep()

    def __enter__(self) -> "MemoryService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def save(
        self,
        owner: str,
        kind: Optional[str],
        category: Optional[str],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        importance: int = 5,
        entities: Optional[List[Any]] = None,
        relationships: Optional[List[Any]] = None,
    ) -> str:
        """Persist a new record and queue it for embedding. Returns its id.

        The record is durable when this returns; it becomes searchable once
        the backfill worker has embedded it.
        """
        if not owner:
            raise ValueError("owner is required")
        if not isinstance(content, str) or not content.strip():
            raise ValueError("content must be a non-empty string")
        if len(content) > self.config.max_content_size:
            raise ValueError(
                f"content is {len(content)} chars, limit is {self.config.max_content_size}"
            )
        if isinstance(importance, bool) or not isinstance(importance, int) or not 1 <= importance <= 10:
            raise ValueError(f"importance must be an integer 1-10, got {importance!r}")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError("metadata must be a dict")
        try:
            json.dumps([metadata, entities, relationships])
        except (TypeError, ValueError) as e:
            raise ValueError(f"metadata, entities and relationships must be JSON-serializable: {e}") from e

        now = utcnow()
        record = MemoryRecord(
            id=self.store.new_id(),
            owner=owner,
            kind=kind,
            category=category,
            content=content,
            metadata=metadata,
            importance=importance,
            created_at=now,
            decay_updated_at=now,
            entities=entities,
            relationships=relationships,
        )
        self.store.insert(record)
        self.backfill.enqueue(record.id)
        logger.debug("Saved %s for %s (%d chars)", record.id, owner, len(content))
        return record.id

    def get(self, record_id: str) -> MemoryRecord:
        """Fetch a record (live or archived) by id without touching its stats."""
        record = self.store.get(record_id)
        if record is None:
            raise NotFound(f"no record {record_id}")
        return record

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def retrieve(
        self,
        owner: str,
        query_text: str,
        k: int = 10,
        filters: Any = None,
        similarity_floor: Optional[float] = None,
    ) -> List[MemoryRecord]:
        return self.retrieval.retrieve(
            owner, query_text, k=k, filters=filters, similarity_floor=similarity_floor
        )

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    def run_consolidation(
        self,
        owner: str,
        batch_size: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Merge one batch of ``owner``'s near-duplicates; see ConsolidationEngine.run."""
        if self.config.backup_before_consolidation:
            self._backup_before_consolidation()
        return self.consolidation.run(owner, batch_size=batch_size, cancel_event=cancel_event)

    def _backup_before_consolidation(self) -> None:
        """Online copy of the database before a run (rotate to keep last 3)."""
        backups_dir = self.config.home / "backups"
        timestamp = utcnow().strftime("%Y%m%d-%H%M%S-%f")
        backup_path = backups_dir / f"pre-consolidate-{timestamp}.db"
        try:
            self.store.backup_to(backup_path)
            logger.info("Pre-consolidation backup: %s", backup_path)
            backups = sorted(backups_dir.glob("pre-consolidate-*.db"), reverse=True)
            for old in backups[_BACKUPS_KEPT:]:
                old.unlink()
        except (OSError, sqlite3.Error) as e:
            logger.warning("Auto-backup before consolidation failed: %s", e)

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def get_archived(self, original_id: str) -> ArchiveEntry:
        """Frozen copy of a removed record. Raises NotFound."""
        return self.archive_store.get(original_id)

    def list_archived(self, owner: str, since: Optional[datetime] = None) -> List[ArchiveEntry]:
        return self.archive_store.list(owner, since)

    def archive(self, record_id: str, reason: ArchiveReason = ArchiveReason.MANUAL) -> ArchiveEntry:
        """Move a live record to the archive. Raises NotFound if it is not live."""
        now = utcnow()
        with self.locks.acquire([record_id], self.config.lock_timeout):
            records = self.store.get_many([record_id], live_only=True, include_embedding=True)
            record = records.get(record_id)
            if record is None:
                raise NotFound(f"no live record {record_id}")
            entry = ArchiveEntry(record, reason, archived_at=now)
            entry_id = self.archive_store.append(entry)
            try:
                self.store.mark_archived(record_id, now)
            except Exception:
                # The record stays live, so its entry must not survive.
                self.archive_store.discard_entries([entry_id])
                raise
        self.index.remove(record_id)
        logger.debug("Archived %s (%s)", record_id, entry.archived_reason.value)
        return entry

    # ------------------------------------------------------------------
    # Maintenance passes
    # ------------------------------------------------------------------

    def recompute_scores(self, owner: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Apply time decay and refresh priority for every record of ``owner``.

        Decay runs from the later of last access and the previous pass, so
        calling this repeatedly never counts the same interval twice.
        """
        now = now or utcnow()
        updates = []
        for record in self.store.records_for_owner(owner):
            since = record.last_accessed_at or record.created_at
            if record.decay_updated_at is not None and record.decay_updated_at > since:
                since = record.decay_updated_at
            decay = recompute_decay(
                record.decay_factor, record.importance, since, now, self.config.decay_tiers
            )
            priority = compute_priority(
                len(record.consolidated_from), record.access_count, record.created_at, now
            )
            updates.append((record.id, decay, priority))
        written = self.store.write_scores(updates, now)
        logger.info("Recomputed scores for %d records (owner=%s)", written, owner or "*")
        return written

    def expire(self, owner: Optional[str] = None) -> int:
        """Archive live records whose decay fell below ``expiry_threshold``."""
        expired = 0
        for record_id in self.store.decayed_ids(self.config.expiry_threshold, owner=owner):
            try:
                self.archive(record_id, ArchiveReason.EXPIRED)
                expired += 1
            except (ConcurrencyConflict, NotFound) as e:
                logger.debug("Expiry skipped %s: %s", record_id, e)
        if expired:
            logger.info("Expired %d records (owner=%s)", expired, owner or "*")
        return expired

    def collect_garbage(self, owner: Optional[str] = None) -> int:
        """Delete archived rows below ``gc_low_water`` that have an archive entry."""
        candidates = self.store.decayed_ids(self.config.gc_low_water, owner=owner, archived=True)
        safe = self.archive_store.archived_ids(candidates)
        if len(safe) < len(candidates):
            logger.warning("GC kept %d archived rows with no archive entry", len(candidates) - len(safe))
        purged = self.store.purge([c for c in candidates if c in safe])
        if purged:
            logger.info("GC purged %d archived records", purged)
        return purged

    def recover(self) -> int:
        """Discard consolidation archive entries whose commit never happened.

        An entry is orphaned when its replacement record does not exist and
        its source is still live. Sources locked by a running consolidation
        are left alone.
        """
        orphans = []
        for entry_id, original_id, replacement_id in self.archive_store.pending_consolidations():
            if self.store.exists(replacement_id) or self.locks.is_locked(original_id):
                continue
            if self.store.live_ids([original_id]):
                orphans.append(entry_id)
        discarded = self.archive_store.discard_entries(orphans)
        if discarded:
            logger.info("Recovery discarded %d orphaned archive entries", discarded)
        return discarded

    def rebuild_index(self) -> int:
        """Reload the HNSW index from the durable embeddings table."""
        self.index.clear()
        count = self.index.insert_many(self.store.iter_live_embeddings())
        logger.info("Vector index rebuilt with %d embeddings", count)
        return count

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stats(self, owner: Optional[str] = None) -> Dict[str, Any]:
        return {
            "live": self.store.count(owner),
            "total": self.store.count(owner, live_only=False),
            "archived_entries": self.archive_store.count(owner),
            "pending_embeddings": len(self.store.pending_embedding_ids(owner)),
            "indexed": len(self.index),
            "backfill": dict(self.backfill.stats),
            "provider": self.provider.info(),
        }

    def flush(self) -> None:
        """Wait for queued embeddings and access-stat updates."""
        self.backfill.join()
        self.retrieval.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.backfill.stop()
        self.retrieval.close()
        self.store.close()
        self.archive_store.close()
        shutdown_executor()
