"""
mnemo SQLite Store -- durable keyed storage for memory records.

One ``memories`` table keyed by record id, plus a sqlite-vec ``memories_vec``
virtual table holding each record's embedding under the same row id. The
in-memory HNSW index is rebuilt from ``memories_vec`` at startup.

Records are never edited in place by consolidation: merged records are
inserted and their sources flagged ``archived`` in one transaction.

Usage:
    store = RecordStore(db_path, config)
    rowid = store.insert(record)
    record = store.get(record.id)
"""

import hashlib
import json
import logging
import sqlite3
import struct
import threading
import time as _time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from mnemo.config import StoreConfig
from mnemo.errors import ConcurrencyConflict
from mnemo.types import MemoryRecord, QueryFilters, iso_utc as _iso, parse_dt, utcnow

logger = logging.getLogger("mnemo.sqlite_store")

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# SQLite retry -- handles multi-process write contention on a shared db.
# WAL mode + busy_timeout handle most cases; under heavy contention the
# busy_timeout can still expire, so retry with exponential backoff.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds
_WAL_CHECKPOINT_INTERVAL = 10  # writes between PASSIVE checkpoints


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection with the pragmas every mnemo component uses."""
    from mnemo.crypto import secure_connect

    conn = secure_connect(db_path, timeout=30, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA cache_size=-16000")  # 16MB cache
    conn.execute("PRAGMA busy_timeout=30000")
    return conn


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: bytes, dim: int) -> List[float]:
    """Deserialize bytes to a float32 vector."""
    return list(struct.unpack(f"{dim}f", data))


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


_COLUMNS = (
    "node_id, owner, kind, category, content, metadata, importance, "
    "created_at, updated_at, last_accessed, access_count, priority_score, "
    "decay_factor, decay_updated_at, archived, consolidated_from, "
    "consolidation_reason, consolidation_date, last_consolidation, "
    "entities, relationships"
)


class RecordStore:
    """SQLite-backed record store with sqlite-vec for durable embeddings."""

    def __init__(self, db_path=None, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()
        self.db_path = Path(db_path) if db_path else self.config.db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.dim = self.config.embedding_dim

        self._lock = threading.RLock()
        self._wal_write_count = 0
        self._conn = self._connect()
        self._init_schema()

    @staticmethod
    def new_id() -> str:
        return f"mem-{uuid.uuid4().hex[:12]}"

    def _connect(self) -> sqlite3.Connection:
        conn = connect(self.db_path)
        import sqlite_vec

        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.OperationalError) as e:
            conn.close()
            raise RuntimeError(
                f"sqlite-vec could not be loaded into this Python's sqlite3: {e}"
            ) from e
        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        c = self._conn
        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id TEXT UNIQUE NOT NULL,
                owner TEXT NOT NULL,
                kind TEXT,
                category TEXT,
                content TEXT NOT NULL,
                metadata TEXT,
                importance INTEGER NOT NULL DEFAULT 5,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_accessed TEXT,
                access_count INTEGER NOT NULL DEFAULT 0,
                priority_score REAL NOT NULL DEFAULT 1.0,
                decay_factor REAL NOT NULL DEFAULT 1.0,
                decay_updated_at TEXT,
                archived INTEGER NOT NULL DEFAULT 0,
                has_embedding INTEGER NOT NULL DEFAULT 0,
                consolidated_from TEXT,
                consolidation_reason TEXT,
                consolidation_date TEXT,
                last_consolidation TEXT,
                entities TEXT,
                relationships TEXT,
                content_hash TEXT
            )
        """)
        for col in ("owner", "category", "kind", "created_at", "archived",
                    "last_consolidation", "decay_factor", "content_hash"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_memories_{col} ON memories({col})")
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_owner_live
            ON memories(owner, archived, has_embedding)
        """)

        c.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS memories_vec
            USING vec0(embedding float[{self.dim}] distance_metric=cosine)
        """)
        c.commit()

    # ------------------------------------------------------------------
    # Resilient commit -- retries on multi-process lock contention
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)
        self._maybe_wal_checkpoint()

    def _maybe_wal_checkpoint(self) -> None:
        """Run a PASSIVE WAL checkpoint every N writes to keep the WAL bounded."""
        self._wal_write_count += 1
        if self._wal_write_count >= _WAL_CHECKPOINT_INTERVAL:
            self._wal_write_count = 0
            try:
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)").fetchone()
            except sqlite3.OperationalError as e:
                logger.debug("WAL checkpoint failed (non-fatal): %s", e)

    def _run_sql(self, sql, params=()):
        return _retry_on_locked(self._conn.execute, sql, params)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_record(self, row: tuple) -> MemoryRecord:
        (node_id, owner, kind, category, content, metadata, importance,
         created_at, updated_at, last_accessed, access_count, priority_score,
         decay_factor, decay_updated_at, archived, consolidated_from,
         consolidation_reason, consolidation_date, last_consolidation,
         entities, relationships) = row
        return MemoryRecord(
            id=node_id,
            owner=owner,
            kind=kind,
            category=category,
            content=content,
            metadata=_loads(metadata) or {},
            importance=importance,
            created_at=parse_dt(created_at),
            updated_at=parse_dt(updated_at),
            last_accessed_at=parse_dt(last_accessed),
            access_count=access_count or 0,
            priority_score=priority_score,
            decay_factor=decay_factor,
            decay_updated_at=parse_dt(decay_updated_at),
            archived=bool(archived),
            consolidated_from=_loads(consolidated_from) or [],
            consolidation_reason=consolidation_reason,
            consolidation_date=parse_dt(consolidation_date),
            last_consolidation=parse_dt(last_consolidation),
            entities=_loads(entities),
            relationships=_loads(relationships),
        )

    def _load_embedding(self, rowid: int) -> Optional[List[float]]:
        row = self._conn.execute(
            "SELECT embedding FROM memories_vec WHERE rowid = ?", (rowid,)
        ).fetchone()
        return _deserialize_f32(row[0], self.dim) if row else None

    def _write_embedding(self, rowid: int, embedding: Sequence[float]) -> None:
        if len(embedding) != self.dim:
            raise ValueError(f"embedding has {len(embedding)} dims, store expects {self.dim}")
        self._conn.execute("DELETE FROM memories_vec WHERE rowid = ?", (rowid,))
        self._conn.execute(
            "INSERT INTO memories_vec (rowid, embedding) VALUES (?, ?)",
            (rowid, _serialize_f32(embedding)),
        )

    def _fetch(self, where: str, params: Sequence[Any], include_embedding: bool,
               suffix: str = "") -> List[MemoryRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id, {_COLUMNS} FROM memories WHERE {where} {suffix}", tuple(params)
            ).fetchall()
            records = []
            for row in rows:
                record = self._row_to_record(row[1:])
                if include_embedding:
                    record.embedding = self._load_embedding(row[0])
                records.append(record)
            return records

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert_row(self, record: MemoryRecord) -> int:
        cur = self._conn.execute(
            """INSERT INTO memories
               (node_id, owner, kind, category, content, metadata, importance,
                created_at, updated_at, last_accessed, access_count, priority_score,
                decay_factor, decay_updated_at, archived, has_embedding,
                consolidated_from, consolidation_reason, consolidation_date,
                last_consolidation, entities, relationships, content_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.owner,
                record.kind,
                record.category,
                record.content,
                json.dumps(record.metadata or {}),
                record.importance,
                _iso(record.created_at),
                _iso(record.updated_at),
                _iso(record.last_accessed_at),
                record.access_count,
                record.priority_score,
                record.decay_factor,
                _iso(record.decay_updated_at),
                int(record.archived),
                int(record.embedding is not None),
                json.dumps(record.consolidated_from) if record.consolidated_from else None,
                record.consolidation_reason,
                _iso(record.consolidation_date),
                _iso(record.last_consolidation),
                _dumps(record.entities),
                _dumps(record.relationships),
                hashlib.sha256(record.content.encode()).hexdigest(),
            ),
        )
        rowid = cur.lastrowid
        if record.embedding is not None:
            self._write_embedding(rowid, record.embedding)
        return rowid

    def insert(self, record: MemoryRecord) -> int:
        """Persist a new record (and its embedding, if any). Returns the row id."""
        with self._lock:
            try:
                rowid = self._insert_row(record)
                self._commit()
            except Exception:
                self._conn.rollback()
                raise
        return rowid

    def set_embedding(self, record_id: str, embedding: Sequence[float]) -> bool:
        """Store the embedding for an existing record. False if it no longer exists."""
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM memories WHERE node_id = ?", (record_id,)
            ).fetchone()
            if not row:
                return False
            try:
                self._write_embedding(row[0], embedding)
                self._conn.execute(
                    "UPDATE memories SET has_embedding = 1, updated_at = ? WHERE id = ?",
                    (_iso(utcnow()), row[0]),
                )
                self._commit()
            except Exception:
                self._conn.rollback()
                raise
        return True

    def touch_many(self, record_ids: Iterable[str], refresh: float, now: Optional[datetime] = None) -> int:
        """Apply retrieval side effects: bump access stats, refresh decay.

        Last write wins between concurrent hits; archived rows are left alone.
        """
        from mnemo.scoring import refresh_on_access

        ids = list(record_ids)
        if not ids:
            return 0
        now_iso = _iso(now or utcnow())
        placeholders = ",".join("?" * len(ids))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT node_id, decay_factor FROM memories "
                f"WHERE node_id IN ({placeholders}) AND archived = 0",
                ids,
            ).fetchall()
            self._conn.executemany(
                """UPDATE memories
                   SET access_count = access_count + 1, last_accessed = ?, decay_factor = ?
                   WHERE node_id = ?""",
                [(now_iso, refresh_on_access(decay, refresh), node_id) for node_id, decay in rows],
            )
            self._commit()
        return len(rows)

    def mark_consolidation_attempt(self, record_ids: Iterable[str], now: Optional[datetime] = None) -> None:
        """Start the cooldown window for records considered by a consolidation run."""
        ids = list(record_ids)
        if not ids:
            return
        now_iso = _iso(now or utcnow())
        with self._lock:
            self._conn.executemany(
                "UPDATE memories SET last_consolidation = ? WHERE node_id = ?",
                [(now_iso, rid) for rid in ids],
            )
            self._commit()

    def commit_consolidation(self, merged: MemoryRecord, source_ids: Sequence[str],
                             now: Optional[datetime] = None) -> int:
        """Insert ``merged`` and archive its sources in a single transaction.

        Raises ConcurrencyConflict (and changes nothing) if any source is no
        longer live.
        """
        now_iso = _iso(now or utcnow())
        placeholders = ",".join("?" * len(source_ids))
        with self._lock:
            try:
                live = self._conn.execute(
                    f"SELECT COUNT(*) FROM memories WHERE node_id IN ({placeholders}) AND archived = 0",
                    list(source_ids),
                ).fetchone()[0]
                if live != len(source_ids):
                    raise ConcurrencyConflict(
                        f"{len(source_ids) - live} of {len(source_ids)} sources are no longer live"
                    )
                rowid = self._insert_row(merged)
                self._conn.execute(
                    f"""UPDATE memories SET archived = 1, updated_at = ?, last_consolidation = ?
                        WHERE node_id IN ({placeholders})""",
                    [now_iso, now_iso, *source_ids],
                )
                self._commit()
            except Exception:
                self._conn.rollback()
                raise
        return rowid

    def mark_archived(self, record_id: str, now: Optional[datetime] = None) -> bool:
        """Flag a live record archived. False if missing or already archived."""
        with self._lock:
            cur = self._conn.execute(
                "UPDATE memories SET archived = 1, updated_at = ? WHERE node_id = ? AND archived = 0",
                (_iso(now or utcnow()), record_id),
            )
            self._commit()
            return cur.rowcount > 0

    def write_scores(self, updates: Sequence[Tuple[str, float, float]], now: Optional[datetime] = None) -> int:
        """Write (record_id, decay_factor, priority_score) triples together."""
        if not updates:
            return 0
        now_iso = _iso(now or utcnow())
        with self._lock:
            try:
                self._conn.executemany(
                    """UPDATE memories SET decay_factor = ?, priority_score = ?, decay_updated_at = ?
                       WHERE node_id = ?""",
                    [(decay, priority, now_iso, rid) for rid, decay, priority in updates],
                )
                self._commit()
            except Exception:
                self._conn.rollback()
                raise
        return len(updates)

    def purge(self, record_ids: Iterable[str]) -> int:
        """Physically delete archived rows and their embeddings."""
        ids = list(record_ids)
        if not ids:
            return 0
        removed = 0
        with self._lock:
            try:
                for record_id in ids:
                    row = self._conn.execute(
                        "SELECT id FROM memories WHERE node_id = ? AND archived = 1", (record_id,)
                    ).fetchone()
                    if not row:
                        continue
                    self._conn.execute("DELETE FROM memories_vec WHERE rowid = ?", (row[0],))
                    self._conn.execute("DELETE FROM memories WHERE id = ?", (row[0],))
                    removed += 1
                self._commit()
            except Exception:
                self._conn.rollback()
                raise
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: str, include_embedding: bool = False) -> Optional[MemoryRecord]:
        records = self._fetch("node_id = ?", (record_id,), include_embedding)
        return records[0] if records else None

    def get_many(
        self,
        record_ids: Sequence[str],
        owner: Optional[str] = None,
        live_only: bool = True,
        filters: Optional[QueryFilters] = None,
        include_embedding: bool = False,
    ) -> Dict[str, MemoryRecord]:
        """Fetch records by id, applying hard filters in SQL."""
        if not record_ids:
            return {}
        clauses = [f"node_id IN ({','.join('?' * len(record_ids))})"]
        params: List[Any] = list(record_ids)
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if live_only:
            clauses.append("archived = 0")
        if filters is not None:
            if filters.category is not None:
                clauses.append("category = ?")
                params.append(filters.category)
            if filters.kind is not None:
                clauses.append("kind = ?")
                params.append(filters.kind)
            if filters.created_after is not None:
                clauses.append("created_at >= ?")
                params.append(_iso(filters.created_after))
            if filters.created_before is not None:
                clauses.append("created_at < ?")
                params.append(_iso(filters.created_before))
        records = self._fetch(" AND ".join(clauses), params, include_embedding)
        return {r.id: r for r in records}

    def live_ids(self, record_ids: Sequence[str]) -> Set[str]:
        if not record_ids:
            return set()
        with self._lock:
            rows = self._conn.execute(
                f"SELECT node_id FROM memories WHERE archived = 0 "
                f"AND node_id IN ({','.join('?' * len(record_ids))})",
                list(record_ids),
            ).fetchall()
        return {r[0] for r in rows}

    def exists(self, record_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM memories WHERE node_id = ?", (record_id,)
            ).fetchone()
        return row is not None

    def count(self, owner: Optional[str] = None, live_only: bool = True) -> int:
        clauses, params = ["1 = 1"], []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if live_only:
            clauses.append("archived = 0")
        with self._lock:
            return self._conn.execute(
                f"SELECT COUNT(*) FROM memories WHERE {' AND '.join(clauses)}", params
            ).fetchone()[0]

    def pending_embedding_ids(self, owner: Optional[str] = None, limit: int = 1000) -> List[str]:
        """Live records still waiting for the embedding provider."""
        sql = "SELECT node_id FROM memories WHERE archived = 0 AND has_embedding = 0"
        params: List[Any] = []
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)
        with self._lock:
            return [r[0] for r in self._conn.execute(sql, params).fetchall()]

    def iter_live_embeddings(self) -> Iterator[Tuple[str, List[float]]]:
        """(record_id, embedding) for every live record that has one."""
        with self._lock:
            ids = dict(self._conn.execute(
                "SELECT id, node_id FROM memories WHERE archived = 0 AND has_embedding = 1"
            ).fetchall())
            vectors = self._conn.execute("SELECT rowid, embedding FROM memories_vec").fetchall()
        for rowid, blob in vectors:
            record_id = ids.get(rowid)
            if record_id is not None:
                yield record_id, _deserialize_f32(blob, self.dim)

    def scan_for_consolidation(self, owner: str, batch_size: int, cooldown_hours: float,
                               now: Optional[datetime] = None) -> List[MemoryRecord]:
        """A bounded batch of live, embedded records outside the cooldown window."""
        cutoff = _iso((now or utcnow()) - timedelta(hours=cooldown_hours))
        return self._fetch(
            "owner = ? AND archived = 0 AND has_embedding = 1 "
            "AND (last_consolidation IS NULL OR last_consolidation < ?)",
            (owner, cutoff, batch_size),
            include_embedding=True,
            suffix="ORDER BY created_at ASC, node_id ASC LIMIT ?",
        ) if batch_size > 0 else []

    def in_cooldown(self, record_ids: Sequence[str], cooldown_hours: float,
                    now: Optional[datetime] = None) -> Set[str]:
        if not record_ids:
            return set()
        cutoff = _iso((now or utcnow()) - timedelta(hours=cooldown_hours))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT node_id FROM memories WHERE last_consolidation >= ? "
                f"AND node_id IN ({','.join('?' * len(record_ids))})",
                [cutoff, *record_ids],
            ).fetchall()
        return {r[0] for r in rows}

    def records_for_owner(self, owner: Optional[str], live_only: bool = False) -> List[MemoryRecord]:
        clauses, params = ["1 = 1"], []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if live_only:
            clauses.append("archived = 0")
        return self._fetch(" AND ".join(clauses), params, include_embedding=False,
                           suffix="ORDER BY id")

    def decayed_ids(self, threshold: float, owner: Optional[str] = None,
                    archived: bool = False) -> List[str]:
        """Ids whose decay_factor is below ``threshold`` (live or archived)."""
        sql = "SELECT node_id FROM memories WHERE decay_factor < ? AND archived = ?"
        params: List[Any] = [threshold, int(archived)]
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)
        with self._lock:
            return [r[0] for r in self._conn.execute(sql + " ORDER BY id", params).fetchall()]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def backup_to(self, backup_path: Path) -> None:
        """Online backup of the whole database file."""
        from mnemo.crypto import secure_connect

        backup_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        dst = secure_connect(backup_path)
        try:
            with self._lock:
                self._conn.backup(dst)
        finally:
            dst.close()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            try:
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                logger.debug("Final WAL checkpoint failed: %s", e)
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Database close failed: %s", e)
