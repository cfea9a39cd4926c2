"""Tests for mnemo ArchiveStore: append-only snapshots of removed records."""
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import make_record, ts, unit
from mnemo.archive import ArchiveStore
from mnemo.errors import ArchiveWriteFailed, NotFound
from mnemo.types import ArchiveEntry, ArchiveReason


class TestAppendAndGet:
    def test_get_returns_frozen_copy(self, archive):
        rec = make_record(content="deploy script fails on timeout", embedding=unit(0),
                          metadata={"tags": ["ops"]}, importance=8)
        archive.append(ArchiveEntry(rec, ArchiveReason.MANUAL, archived_at=ts(3)))
        entry = archive.get(rec.id)
        assert entry.original_id == rec.id
        assert entry.content == "deploy script fails on timeout"
        assert entry.archived_reason is ArchiveReason.MANUAL
        assert entry.archived_at == ts(3)
        assert entry.record.metadata == {"tags": ["ops"]}
        assert entry.record.importance == 8
        assert entry.record.embedding == pytest.approx(unit(0))

    def test_missing_raises_not_found(self, archive):
        with pytest.raises(NotFound):
            archive.get("mem-nope")

    def test_not_found_is_key_error(self, archive):
        with pytest.raises(KeyError):
            archive.get("mem-nope")

    def test_latest_entry_wins(self, archive):
        rec = make_record(content="v1")
        archive.append(ArchiveEntry(rec, ArchiveReason.EXPIRED, archived_at=ts(1)))
        rec.content = "v2"
        archive.append(ArchiveEntry(rec, ArchiveReason.MANUAL, archived_at=ts(2)))
        assert archive.get(rec.id).content == "v2"

    def test_append_many_is_all_or_nothing(self, archive):
        a, b = make_record(), make_record()
        real_conn = archive._conn

        class _FailingConn:
            def executemany(self, *args, **kwargs):
                raise sqlite3.OperationalError("disk I/O error")

            def rollback(self):
                real_conn.rollback()

        with patch.object(archive, "_conn", _FailingConn()):
            with pytest.raises(ArchiveWriteFailed):
                archive.append_many([
                    ArchiveEntry(a, ArchiveReason.CONSOLIDATED),
                    ArchiveEntry(b, ArchiveReason.CONSOLIDATED),
                ])
        assert archive.count() == 0

    def test_survives_reopen(self, config):
        rec = make_record(content="keep forever")
        a1 = ArchiveStore(config.db_path, config)
        a1.append(ArchiveEntry(rec, ArchiveReason.EXPIRED))
        a1.close()
        a2 = ArchiveStore(config.db_path, config)
        try:
            assert a2.get(rec.id).content == "keep forever"
        finally:
            a2.close()


class TestList:
    def test_list_by_owner_and_since(self, archive):
        old = make_record(owner="alice", content="old")
        new = make_record(owner="alice", content="new")
        other = make_record(owner="bob", content="other")
        archive.append(ArchiveEntry(new, ArchiveReason.MANUAL, archived_at=ts(5)))
        archive.append(ArchiveEntry(old, ArchiveReason.MANUAL, archived_at=ts(1)))
        archive.append(ArchiveEntry(other, ArchiveReason.MANUAL, archived_at=ts(3)))
        assert [e.content for e in archive.list("alice")] == ["old", "new"]
        assert [e.content for e in archive.list("alice", since=ts(2))] == ["new"]
        assert archive.count("bob") == 1

    def test_since_in_other_timezone(self, archive):
        rec = make_record(owner="alice", content="noon")
        archive.append(ArchiveEntry(rec, ArchiveReason.MANUAL, archived_at=ts(1, 12)))
        plus5 = timezone(timedelta(hours=5))
        assert [e.content for e in archive.list("alice", since=datetime(2026, 1, 1, 16, tzinfo=plus5))] == ["noon"]
        assert archive.list("alice", since=datetime(2026, 1, 1, 18, tzinfo=plus5)) == []


class TestDiscard:
    def test_discarded_entries_are_hidden(self, archive):
        a, b = make_record(), make_record()
        archive.append_many([
            ArchiveEntry(a, ArchiveReason.CONSOLIDATED, replacement_id="mem-merged"),
            ArchiveEntry(b, ArchiveReason.CONSOLIDATED, replacement_id="mem-merged"),
        ])
        assert len(archive.pending_consolidations()) == 2
        assert archive.discard_replacement("mem-merged") == 2
        with pytest.raises(NotFound):
            archive.get(a.id)
        assert archive.pending_consolidations() == []
        assert archive.archived_ids([a.id, b.id]) == set()

    def test_archived_ids(self, archive):
        a, b = make_record(), make_record()
        archive.append(ArchiveEntry(a, ArchiveReason.EXPIRED))
        assert archive.archived_ids([a.id, b.id]) == {a.id}


class TestEncryption:
    def test_snapshot_encrypted_at_rest(self, tmp_mnemo_dir_encrypted):
        from mnemo.config import StoreConfig
        cfg = StoreConfig(home=tmp_mnemo_dir_encrypted, embedding_dim=32)
        assert cfg.encrypt_archive is True
        store = ArchiveStore(cfg.db_path, cfg)
        try:
            rec = make_record(content="super secret deploy key rotation")
            store.append(ArchiveEntry(rec, ArchiveReason.MANUAL))
            raw = store._conn.execute("SELECT snapshot FROM archive").fetchone()[0]
            assert raw.startswith("ENC:")
            assert "secret" not in raw
            assert store.get(rec.id).content == "super secret deploy key rotation"
        finally:
            store.close()
