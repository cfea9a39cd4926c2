"""mnemo test configuration."""
import hashlib
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest

# Ensure mnemo package is importable without an install
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mnemo.embeddings import EmbeddingProvider  # noqa: E402
from mnemo.errors import EmbeddingUnavailable  # noqa: E402
from mnemo.types import MemoryRecord  # noqa: E402

DIM = 32


def unit(i: int, dim: int = DIM) -> list:
    """Basis vector e_i."""
    v = [0.0] * dim
    v[i] = 1.0
    return v


def blend(i: int, j: int, cos: float, dim: int = DIM) -> list:
    """Unit vector with cosine ``cos`` to e_i, leaning toward e_j."""
    v = [0.0] * dim
    v[i] = cos
    v[j] = float(np.sqrt(1.0 - cos * cos))
    return v


def make_record(owner="alice", content="a memory", embedding=None, **kwargs) -> MemoryRecord:
    from mnemo.sqlite_store import RecordStore

    return MemoryRecord(
        id=kwargs.pop("id", RecordStore.new_id()),
        owner=owner,
        content=content,
        embedding=embedding,
        **kwargs,
    )


def ts(day: int, hour: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, tzinfo=timezone.utc)


class FakeProvider(EmbeddingProvider):
    """Deterministic provider: known texts map to fixed vectors, anything
    else to a pseudo-random unit vector seeded from the text."""

    def __init__(self, vectors=None, dimension: int = DIM):
        super().__init__(dimension=dimension)
        self.vectors = dict(vectors or {})
        self.calls = 0
        self.down = False

    def _embed_many(self, texts):
        self.calls += 1
        if self.down:
            raise EmbeddingUnavailable("provider is down")
        return [self.vector_for(t) for t in texts]

    def vector_for(self, text: str) -> list:
        if text in self.vectors:
            return list(self.vectors[text])
        seed = int(hashlib.md5(text.encode()).hexdigest()[:8], 16)
        return np.random.default_rng(seed).normal(size=self.dimension).tolist()


@pytest.fixture
def tmp_mnemo_dir(tmp_path):
    """Create a temporary MNEMO_HOME for testing."""
    mnemo_dir = tmp_path / ".mnemo"
    mnemo_dir.mkdir()
    os.environ["MNEMO_HOME"] = str(mnemo_dir)
    # Default: disable encryption in tests for deterministic output
    old_encrypt = os.environ.get("MNEMO_ENCRYPT")
    os.environ["MNEMO_ENCRYPT"] = "0"
    yield mnemo_dir
    os.environ.pop("MNEMO_HOME", None)
    if old_encrypt is not None:
        os.environ["MNEMO_ENCRYPT"] = old_encrypt
    else:
        os.environ.pop("MNEMO_ENCRYPT", None)
    from mnemo.crypto import reset_crypto_state
    reset_crypto_state()


@pytest.fixture
def tmp_mnemo_dir_encrypted(tmp_path):
    """Create a temporary MNEMO_HOME with encryption enabled."""
    mnemo_dir = tmp_path / ".mnemo"
    mnemo_dir.mkdir()
    os.environ["MNEMO_HOME"] = str(mnemo_dir)
    os.environ["MNEMO_ENCRYPT"] = "1"
    from mnemo.crypto import reset_crypto_state
    reset_crypto_state()
    yield mnemo_dir
    os.environ.pop("MNEMO_HOME", None)
    os.environ.pop("MNEMO_ENCRYPT", None)
    reset_crypto_state()


@pytest.fixture
def config(tmp_mnemo_dir):
    from mnemo.config import StoreConfig
    return StoreConfig(
        home=tmp_mnemo_dir,
        embedding_dim=DIM,
        index_capacity=16,
        embed_timeout=5.0,
        lock_timeout=0.5,
        backup_before_consolidation=False,
        encrypt_archive=False,
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store(config):
    """Create a fresh RecordStore for testing."""
    from mnemo.sqlite_store import RecordStore
    s = RecordStore(config.db_path, config)
    yield s
    s.close()


@pytest.fixture
def archive(config):
    from mnemo.archive import ArchiveStore
    a = ArchiveStore(config.db_path, config)
    yield a
    a.close()


@pytest.fixture
def index():
    from mnemo.vector_index import VectorIndex
    return VectorIndex(dim=DIM, capacity=16)


@pytest.fixture
def service(config, provider):
    """MemoryService with no background thread: flush() embeds synchronously."""
    from mnemo.service import MemoryService
    svc = MemoryService(config, provider=provider, start_worker=False)
    yield svc
    svc.close()
