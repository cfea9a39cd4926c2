"""Tests for mnemo EmbeddingBackfillWorker: async embedding fill."""
import pytest

from conftest import make_record, unit
from mnemo.backfill import EmbeddingBackfillWorker


@pytest.fixture
def worker(store, index, provider, config):
    w = EmbeddingBackfillWorker(store, index, provider, config)
    yield w
    w.stop()


def _pending(store, content="needs a vector", **kwargs):
    rec = make_record(content=content, **kwargs)
    store.insert(rec)
    return rec


class TestProcess:
    def test_embeds_and_indexes(self, worker, store, index, provider):
        provider.vectors["needs a vector"] = unit(4)
        rec = _pending(store)
        assert worker.process([rec.id]) == 1
        assert store.pending_embedding_ids() == []
        assert rec.id in index
        assert store.get(rec.id, include_embedding=True).embedding == pytest.approx(unit(4))
        assert worker.stats["embedded"] == 1

    def test_provider_down_leaves_pending(self, worker, store, index, provider):
        provider.down = True
        rec = _pending(store)
        assert worker.process([rec.id]) == 0
        assert store.pending_embedding_ids() == [rec.id]
        assert rec.id not in index
        assert worker.stats["deferred"] == 1

    def test_archived_and_missing_skipped(self, worker, store, index):
        rec = _pending(store)
        store.mark_archived(rec.id)
        assert worker.process([rec.id, "mem-gone"]) == 0
        assert rec.id not in index
        assert worker.stats["skipped"] == 2

    def test_duplicate_ids_embedded_once(self, worker, store, provider):
        rec = _pending(store)
        assert worker.process([rec.id, rec.id]) == 1
        assert provider.calls == 1


class TestQueue:
    def test_join_without_thread_drains_synchronously(self, worker, store, index):
        recs = [_pending(store, content=f"note {i}") for i in range(20)]
        for r in recs:
            worker.enqueue(r.id)
        worker.join()
        assert all(r.id in index for r in recs)

    def test_sweep_requeues_pending(self, worker, store, index, provider):
        provider.down = True
        rec = _pending(store)
        worker.enqueue(rec.id)
        worker.join()
        assert rec.id not in index
        provider.down = False
        assert worker.sweep() == 1
        worker.join()
        assert rec.id in index

    def test_background_thread(self, worker, store, index):
        worker.start()
        assert worker.running
        rec = _pending(store)
        worker.enqueue(rec.id)
        worker.join()
        assert rec.id in index
        worker.stop()
        assert not worker.running
