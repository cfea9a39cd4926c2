"""
mnemo errors -- the failure taxonomy shared by every component.

Ingest and query errors propagate to the caller. Consolidation errors are
caught per cluster, logged, and counted in the run report; none of them are
fatal to the process or leave the store in a state that cannot be retried.
"""


class MnemoError(Exception):
    """Base class for all mnemo domain errors."""


class MissingEmbedding(MnemoError):
    """An index operation was attempted before the record had an embedding.

    Recoverable: the backfill sweep fills the vector and the insert is retried.
    """

    def __init__(self, record_id: str):
        super().__init__(f"record {record_id} has no embedding yet")
        self.record_id = record_id


class EmbeddingUnavailable(MnemoError):
    """The embedding provider failed or timed out."""


class ValidationFailed(MnemoError):
    """A merge candidate produced during consolidation is malformed."""


class ConcurrencyConflict(MnemoError):
    """Record locks could not be acquired, or sources changed under us.

    The affected cluster is retried on the next run, never within the same one.
    """


class ArchiveWriteFailed(MnemoError):
    """Archive entries could not be durably written.

    Fatal for the cluster being consolidated: no source is archived or removed.
    """


class NotFound(MnemoError, KeyError):
    """No record or archive entry exists for the requested id."""

    def __str__(self) -> str:
        return Exception.__str__(self)
