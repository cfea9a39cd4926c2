"""mnemo -- semantic memory store with decay scoring and safe consolidation.

::

    from mnemo import MemoryService, StoreConfig
    with MemoryService(StoreConfig.from_env()) as svc:
        rid = svc.save("alice", "note", "ops", "deploy script fails on timeout")
        svc.flush()
        hits = svc.retrieve("alice", "timeout during deploy", k=5)
"""

__version__ = "0.1.0"

from mnemo.config import StoreConfig
from mnemo.errors import (
    ArchiveWriteFailed,
    ConcurrencyConflict,
    EmbeddingUnavailable,
    MissingEmbedding,
    MnemoError,
    NotFound,
    ValidationFailed,
)
from mnemo.types import ArchiveEntry, ArchiveReason, ConsolidationState, MemoryRecord, QueryFilters
from mnemo.embeddings import EmbeddingProvider, OnnxEmbeddingProvider
from mnemo.service import MemoryService

__all__ = [
    "MemoryService",
    "StoreConfig",
    # Data model
    "MemoryRecord",
    "ArchiveEntry",
    "ArchiveReason",
    "ConsolidationState",
    "QueryFilters",
    # Embeddings
    "EmbeddingProvider",
    "OnnxEmbeddingProvider",
    # Errors
    "MnemoError",
    "MissingEmbedding",
    "EmbeddingUnavailable",
    "ValidationFailed",
    "ConcurrencyConflict",
    "ArchiveWriteFailed",
    "NotFound",
]
