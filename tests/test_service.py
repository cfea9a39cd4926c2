"""End-to-end tests for MemoryService: ingest, query, consolidate, archive."""
import sqlite3
import threading
from datetime import timedelta

import pytest

from conftest import FakeProvider, blend, unit
from mnemo import embeddings
from mnemo.errors import EmbeddingUnavailable, NotFound
from mnemo.service import MemoryService
from mnemo.types import ArchiveEntry, ArchiveReason

A_TEXT = "deploy script fails on timeout"
B_TEXT = "deployment script times out during release"
QUERY = "timeout during deploy"


@pytest.fixture
def provider():
    return FakeProvider(vectors={
        A_TEXT: unit(0),
        B_TEXT: blend(0, 1, 0.95),
        QUERY: unit(0),
    })


def _save(service, content, owner="alice", **kwargs):
    return service.save(owner, kwargs.pop("kind", "note"), kwargs.pop("category", None), content, **kwargs)


class TestSave:
    def test_save_then_retrieve(self, service):
        rid = _save(service, A_TEXT)
        assert rid.startswith("mem-")
        service.flush()
        hits = service.retrieve("alice", QUERY, k=3)
        assert [h.id for h in hits] == [rid]
        assert hits[0].content == A_TEXT

    def test_not_searchable_until_embedded(self, service):
        _save(service, A_TEXT)
        assert service.retrieve("alice", QUERY, k=3) == []
        assert service.stats("alice")["pending_embeddings"] == 1

    @pytest.mark.parametrize("kwargs", [
        {"content": ""},
        {"content": "   "},
        {"content": "ok", "importance": 0},
        {"content": "ok", "importance": 11},
        {"content": "ok", "importance": True},
        {"content": "ok", "importance": 5.5},
        {"content": "ok", "metadata": ["not", "a", "dict"]},
        {"content": "ok", "metadata": {"bad": object()}},
    ])
    def test_rejects_bad_input(self, service, kwargs):
        content = kwargs.pop("content")
        with pytest.raises(ValueError):
            _save(service, content, **kwargs)

    def test_rejects_missing_owner(self, service):
        with pytest.raises(ValueError):
            service.save("", "note", None, "content")

    def test_rejects_oversized_content(self, service, config):
        config.max_content_size = 10
        with pytest.raises(ValueError):
            _save(service, "x" * 11)

    def test_provider_down_on_ingest_is_deferred(self, service, provider):
        provider.down = True
        rid = _save(service, A_TEXT)
        service.flush()
        assert service.get(rid).content == A_TEXT
        provider.down = False
        service.backfill.sweep()
        service.flush()
        assert [h.id for h in service.retrieve("alice", QUERY, k=1)] == [rid]


class TestRetrieve:
    def test_k_larger_than_store(self, service):
        _save(service, A_TEXT)
        _save(service, "something unrelated entirely")
        service.flush()
        assert len(service.retrieve("alice", QUERY, k=5)) == 2

    def test_query_embedding_failure_surfaces(self, service, provider):
        _save(service, A_TEXT)
        service.flush()
        provider.down = True
        with pytest.raises(EmbeddingUnavailable):
            service.retrieve("alice", QUERY, k=1)

    def test_repeat_retrieve_same_order(self, service):
        for text in (A_TEXT, B_TEXT, "unrelated one", "unrelated two"):
            _save(service, text)
        service.flush()
        first = [r.id for r in service.retrieve("alice", QUERY, k=4)]
        service.flush()
        second = [r.id for r in service.retrieve("alice", QUERY, k=4)]
        assert first == second

    def test_access_updates_stats(self, service):
        rid = _save(service, A_TEXT)
        service.flush()
        service.retrieve("alice", QUERY, k=1)
        service.flush()
        assert service.get(rid).access_count == 1


class TestConsolidationScenario:
    def test_deploy_timeout_records_merge(self, service):
        a = _save(service, A_TEXT)
        b = _save(service, B_TEXT)
        service.flush()
        report = service.run_consolidation("alice")
        assert report["clusters_merged"] == 1
        assert report["records_archived"] == 2
        c = report["merged_ids"][0]
        assert service.get(c).consolidated_from == [a, b]

        hits = service.retrieve("alice", QUERY, k=5)
        assert [h.id for h in hits] == [c]

        assert service.get_archived(a).content == A_TEXT
        assert service.get_archived(b).content == B_TEXT
        assert service.get_archived(a).archived_reason is ArchiveReason.CONSOLIDATED

    def test_retrieval_during_consolidation(self, service):
        for i in range(10):
            _save(service, f"{A_TEXT} #{i}")
        service.provider.vectors.update(
            {f"{A_TEXT} #{i}": blend(0, i + 1, 0.97) for i in range(10)}
        )
        service.flush()
        errors, sizes = [], []

        def reader():
            try:
                for _ in range(20):
                    sizes.append(len(service.retrieve("alice", QUERY, k=3)))
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        report = service.run_consolidation("alice")
        for t in threads:
            t.join()
        assert errors == []
        assert all(s <= 3 for s in sizes)
        assert report["clusters_merged"] == 1
        live = service.retrieve("alice", QUERY, k=10)
        assert [h.id for h in live] == report["merged_ids"]

    def test_backup_rotation(self, service, config):
        config.backup_before_consolidation = True
        for _ in range(5):
            service.run_consolidation("alice")
        backups = list((config.home / "backups").glob("pre-consolidate-*.db"))
        assert len(backups) == 3


class TestArchiveLifecycle:
    def test_manual_archive(self, service):
        rid = _save(service, A_TEXT)
        service.flush()
        entry = service.archive(rid)
        assert entry.archived_reason is ArchiveReason.MANUAL
        assert service.retrieve("alice", QUERY, k=3) == []
        assert service.get_archived(rid).content == A_TEXT
        assert [e.original_id for e in service.list_archived("alice")] == [rid]

    def test_failed_mark_leaves_no_entry(self, service, monkeypatch):
        rid = _save(service, A_TEXT)
        service.flush()

        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(service.store, "mark_archived", fail)
        with pytest.raises(sqlite3.OperationalError):
            service.archive(rid)
        with pytest.raises(NotFound):
            service.get_archived(rid)
        assert not service.get(rid).archived
        assert rid in service.index

    def test_archive_unknown(self, service):
        with pytest.raises(NotFound):
            service.archive("mem-missing")

    def test_get_archived_unknown(self, service):
        with pytest.raises(NotFound):
            service.get_archived("mem-missing")

    def test_expire_then_gc_keeps_archive(self, service):
        rid = _save(service, A_TEXT)
        keep = _save(service, B_TEXT)
        service.flush()
        service.store.write_scores([(rid, 0.01, 1.0)])
        assert service.expire("alice") == 1
        assert service.get(rid).archived
        assert not service.get(keep).archived
        assert service.get_archived(rid).archived_reason is ArchiveReason.EXPIRED

        assert service.collect_garbage() == 1
        with pytest.raises(NotFound):
            service.get(rid)
        # No information loss: the archive copy outlives the row.
        assert service.get_archived(rid).content == A_TEXT

    def test_gc_never_deletes_without_archive_entry(self, service):
        rid = _save(service, A_TEXT)
        service.store.mark_archived(rid)
        service.store.write_scores([(rid, 0.01, 1.0)])
        assert service.collect_garbage() == 0
        assert service.get(rid).archived


class TestScores:
    def test_importance_slows_decay(self, service):
        high = _save(service, "critical fact", importance=9)
        low = _save(service, "passing remark", importance=2)
        later = service.get(high).created_at + timedelta(days=30)
        service.recompute_scores("alice", now=later)
        high_decay = service.get(high).decay_factor
        low_decay = service.get(low).decay_factor
        assert low_decay < high_decay < 1.0

    def test_repeated_passes_do_not_double_count(self, service):
        rid = _save(service, "a fact")
        start = service.get(rid).created_at
        service.recompute_scores(now=start + timedelta(days=10))
        service.recompute_scores(now=start + timedelta(days=10))
        service.recompute_scores(now=start + timedelta(days=20))
        stepped = service.get(rid).decay_factor

        other = _save(service, "another fact")
        o_start = service.get(other).created_at
        service.recompute_scores(now=o_start + timedelta(days=20))
        assert service.get(other).decay_factor == pytest.approx(stepped, rel=1e-6)

    def test_priority_written_with_decay(self, service):
        rid = _save(service, "a fact")
        start = service.get(rid).created_at
        service.recompute_scores(now=start + timedelta(days=1))
        rec = service.get(rid)
        assert rec.priority_score == pytest.approx(1.0)
        assert rec.decay_updated_at == start + timedelta(days=1)


class TestRecovery:
    def test_orphaned_entries_discarded_on_open(self, config, provider):
        svc = MemoryService(config, provider=provider, start_worker=False)
        a = _save(svc, A_TEXT)
        b = _save(svc, B_TEXT)
        svc.flush()
        # Simulate a crash after the archive write but before the commit.
        records = svc.store.get_many([a, b], include_embedding=True)
        svc.archive_store.append_many([
            ArchiveEntry(records[rid], ArchiveReason.CONSOLIDATED, replacement_id="mem-neverwritten")
            for rid in (a, b)
        ])
        svc.close()

        svc = MemoryService(config, provider=provider, start_worker=False)
        try:
            with pytest.raises(NotFound):
                svc.get_archived(a)
            assert not svc.get(a).archived
            # Sources are still live and get re-clustered.
            assert svc.run_consolidation("alice")["clusters_merged"] == 1
            assert svc.get_archived(a).content == A_TEXT
        finally:
            svc.close()

    def test_committed_consolidation_untouched(self, service):
        a = _save(service, A_TEXT)
        _save(service, B_TEXT)
        service.flush()
        service.run_consolidation("alice")
        assert service.recover() == 0
        assert service.get_archived(a).content == A_TEXT

    def test_index_rebuilt_on_reopen(self, config, provider):
        svc = MemoryService(config, provider=provider, start_worker=False)
        rid = _save(svc, A_TEXT)
        svc.flush()
        svc.close()
        svc = MemoryService(config, provider=provider, start_worker=False)
        try:
            assert rid in svc.index
            assert [h.id for h in svc.retrieve("alice", QUERY, k=1)] == [rid]
        finally:
            svc.close()


class TestLifecycle:
    def test_background_worker(self, config, provider):
        with MemoryService(config, provider=provider) as svc:
            assert svc.backfill.running
            rid = _save(svc, A_TEXT)
            svc.flush()
            assert rid in svc.index
        assert not svc.backfill.running

    def test_close_releases_embedding_pool(self, config, provider):
        svc = MemoryService(config, provider=provider, start_worker=False)
        _save(svc, A_TEXT)
        svc.flush()
        svc.retrieve("alice", QUERY, k=1)
        assert embeddings._EXECUTOR is not None
        svc.close()
        assert embeddings._EXECUTOR is None

        with MemoryService(config, provider=provider, start_worker=False) as again:
            assert len(again.retrieve("alice", QUERY, k=1)) == 1

    def test_dimension_mismatch_rejected(self, config):
        with pytest.raises(ValueError):
            MemoryService(config, provider=FakeProvider(dimension=8), start_worker=False)

    def test_stats(self, service):
        _save(service, A_TEXT)
        service.flush()
        stats = service.stats("alice")
        assert stats["live"] == 1
        assert stats["indexed"] == 1
        assert stats["pending_embeddings"] == 0
        assert stats["provider"]["dimension"] == 32
