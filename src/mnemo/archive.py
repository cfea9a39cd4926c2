"""
mnemo Archive Store -- append-only frozen copies of removed records.

Every record that leaves the live store (consolidated, expired or archived by
hand) gets an entry here first. Entries carry a JSON snapshot of the record,
optionally Fernet-encrypted (see mnemo.crypto).

The table lives in the same database file as the records but is written
through its own connection and commits on its own, so an entry is durable
before the live store is touched.

Entries are never updated or deleted. The one exception is orphan recovery:
a consolidation entry whose replacement was never committed gets a
``discarded_at`` marker, which hides it from ``get`` and ``list``.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from mnemo.config import StoreConfig
from mnemo.errors import ArchiveWriteFailed, NotFound
from mnemo.sqlite_store import _retry_on_locked, connect
from mnemo.types import ArchiveEntry, ArchiveReason, MemoryRecord, iso_utc, parse_dt, utcnow

logger = logging.getLogger("mnemo.archive")


class ArchiveStore:
    """Append-only table of ArchiveEntry rows keyed by original record id."""

    def __init__(self, db_path=None, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()
        self.db_path = Path(db_path) if db_path else self.config.db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.encrypt = self.config.encrypt_archive
        self._lock = threading.Lock()
        self._conn = connect(self.db_path)
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS archive (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                original_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                archived_at TEXT NOT NULL,
                archived_reason TEXT NOT NULL,
                replacement_id TEXT,
                snapshot TEXT NOT NULL,
                discarded_at TEXT
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_archive_original ON archive(original_id)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_archive_owner_time ON archive(owner, archived_at)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_archive_replacement ON archive(replacement_id)")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Snapshot encoding
    # ------------------------------------------------------------------

    def _encode(self, record: MemoryRecord) -> str:
        payload = json.dumps(record.to_dict(include_embedding=True))
        if self.encrypt:
            from mnemo.crypto import seal

            return seal(payload, self.config.home)
        return payload

    def _decode(self, snapshot: str) -> MemoryRecord:
        from mnemo.crypto import unseal

        return MemoryRecord.from_dict(json.loads(unseal(snapshot, self.config.home)))

    def _row_to_entry(self, row: tuple) -> ArchiveEntry:
        archived_at, reason, replacement_id, snapshot = row
        return ArchiveEntry(
            record=self._decode(snapshot),
            archived_reason=ArchiveReason(reason),
            archived_at=parse_dt(archived_at),
            replacement_id=replacement_id,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, entry: ArchiveEntry) -> int:
        """Write one entry; returns its row id."""
        return self.append_many([entry])[0]

    def append_many(self, entries: Sequence[ArchiveEntry]) -> List[int]:
        """Durably write all ``entries`` in one transaction, or none of them.

        Returns the new row ids in order. Raises ArchiveWriteFailed on any failure.
        """
        if not entries:
            return []
        try:
            rows = [
                (
                    e.original_id,
                    e.owner,
                    iso_utc(e.archived_at),
                    e.archived_reason.value,
                    e.replacement_id,
                    self._encode(e.record),
                )
                for e in entries
            ]
        except (TypeError, ValueError, OSError) as e:
            raise ArchiveWriteFailed(f"could not serialize archive snapshot: {e}") from e

        with self._lock:
            try:
                entry_ids = [
                    self._conn.execute(
                        """INSERT INTO archive
                           (original_id, owner, archived_at, archived_reason, replacement_id, snapshot)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        row,
                    ).lastrowid
                    for row in rows
                ]
                _retry_on_locked(self._conn.commit)
            except sqlite3.Error as e:
                self._conn.rollback()
                logger.error("Archive write of %d entries failed: %s", len(rows), e)
                raise ArchiveWriteFailed(f"archive write failed: {e}") from e
        logger.debug("Archived %d entries", len(rows))
        return entry_ids

    def discard_replacement(self, replacement_id: str, now: Optional[datetime] = None) -> int:
        """Mark every entry pointing at ``replacement_id`` discarded.

        Used when a consolidation commit fails after its archive entries were
        written. Returns the number of entries marked.
        """
        return self._discard("replacement_id = ?", (replacement_id,), now)

    def discard_entries(self, entry_ids: Iterable[int], now: Optional[datetime] = None) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        return self._discard(f"id IN ({','.join('?' * len(ids))})", ids, now)

    def _discard(self, where: str, params, now: Optional[datetime]) -> int:
        with self._lock:
            try:
                cur = self._conn.execute(
                    f"UPDATE archive SET discarded_at = ? WHERE discarded_at IS NULL AND {where}",
                    [iso_utc(now or utcnow()), *params],
                )
                _retry_on_locked(self._conn.commit)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return cur.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, original_id: str) -> ArchiveEntry:
        """Latest live entry for ``original_id``. Raises NotFound."""
        with self._lock:
            row = self._conn.execute(
                """SELECT archived_at, archived_reason, replacement_id, snapshot FROM archive
                   WHERE original_id = ? AND discarded_at IS NULL
                   ORDER BY id DESC LIMIT 1""",
                (original_id,),
            ).fetchone()
        if row is None:
            raise NotFound(f"no archive entry for {original_id}")
        return self._row_to_entry(row)

    def list(self, owner: str, since: Optional[datetime] = None) -> List[ArchiveEntry]:
        """Live entries for ``owner``, oldest first, optionally from ``since`` on."""
        sql = ("SELECT archived_at, archived_reason, replacement_id, snapshot FROM archive "
               "WHERE owner = ? AND discarded_at IS NULL")
        params: list = [owner]
        if since is not None:
            sql += " AND archived_at >= ?"
            params.append(iso_utc(since))
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY archived_at ASC, id ASC", params).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def archived_ids(self, original_ids: Sequence[str]) -> Set[str]:
        """Which of ``original_ids`` have at least one live entry."""
        if not original_ids:
            return set()
        with self._lock:
            rows = self._conn.execute(
                f"SELECT DISTINCT original_id FROM archive WHERE discarded_at IS NULL "
                f"AND original_id IN ({','.join('?' * len(original_ids))})",
                list(original_ids),
            ).fetchall()
        return {r[0] for r in rows}

    def pending_consolidations(self) -> List[Tuple[int, str, str]]:
        """(entry id, original id, replacement id) for live consolidation entries."""
        with self._lock:
            return self._conn.execute(
                """SELECT id, original_id, replacement_id FROM archive
                   WHERE archived_reason = ? AND discarded_at IS NULL
                   AND replacement_id IS NOT NULL ORDER BY id""",
                (ArchiveReason.CONSOLIDATED.value,),
            ).fetchall()

    def count(self, owner: Optional[str] = None) -> int:
        sql, params = "SELECT COUNT(*) FROM archive WHERE discarded_at IS NULL", []
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)
        with self._lock:
            return self._conn.execute(sql, params).fetchone()[0]

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Archive close failed: %s", e)
