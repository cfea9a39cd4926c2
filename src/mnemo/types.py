"""
mnemo types -- records, archive entries and query filters.

MemoryRecord mirrors one row of the ``memories`` table. ArchiveEntry is a
frozen copy of a record taken at the moment it left the live store.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ArchiveReason(str, Enum):
    """Why a record was moved to the archive."""
    CONSOLIDATED = "consolidated"
    EXPIRED = "expired"
    MANUAL = "manual"


class ConsolidationState(str, Enum):
    """Per-run consolidation state machine."""
    SCANNING = "scanning"
    CLUSTERING = "clustering"
    MERGING = "merging"
    ARCHIVING = "archiving"
    COMMITTED = "committed"
    ABORTED = "aborted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime.

    Handles naive strings (no tz), Z-suffix, and +00:00 suffix.
    Returns None when *value* is falsy.
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of *value*; naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO text in UTC, so stored timestamps compare correctly as strings."""
    return as_utc(value).isoformat() if value is not None else None


class MemoryRecord:
    """One memory in the live store."""

    __slots__ = (
        "id",
        "owner",
        "kind",
        "category",
        "content",
        "embedding",
        "metadata",
        "importance",
        "created_at",
        "updated_at",
        "last_accessed_at",
        "access_count",
        "priority_score",
        "decay_factor",
        "decay_updated_at",
        "archived",
        "consolidated_from",
        "consolidation_reason",
        "consolidation_date",
        "last_consolidation",
        "entities",
        "relationships",
        "relevance",
    )

    def __init__(
        self,
        id: str,
        owner: str,
        content: str,
        kind: Optional[str] = None,
        category: Optional[str] = None,
        embedding: Optional[List[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        importance: int = 5,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        last_accessed_at: Optional[datetime] = None,
        access_count: int = 0,
        priority_score: float = 1.0,
        decay_factor: float = 1.0,
        decay_updated_at: Optional[datetime] = None,
        archived: bool = False,
        consolidated_from: Optional[List[str]] = None,
        consolidation_reason: Optional[str] = None,
        consolidation_date: Optional[datetime] = None,
        last_consolidation: Optional[datetime] = None,
        entities: Optional[List[Any]] = None,
        relationships: Optional[List[Any]] = None,
        relevance: float = 0.0,
    ):
        self.id = id
        self.owner = owner
        self.kind = kind
        self.category = category
        self.content = content
        self.embedding = embedding
        self.metadata = metadata or {}
        self.importance = importance
        self.created_at = created_at or utcnow()
        self.updated_at = updated_at or self.created_at
        self.last_accessed_at = last_accessed_at
        self.access_count = access_count
        self.priority_score = priority_score
        self.decay_factor = decay_factor
        self.decay_updated_at = decay_updated_at
        self.archived = archived
        self.consolidated_from = list(consolidated_from or [])
        self.consolidation_reason = consolidation_reason
        self.consolidation_date = consolidation_date
        self.last_consolidation = last_consolidation
        self.entities = entities
        self.relationships = relationships
        # Composite score from the last retrieval; never persisted.
        self.relevance = relevance

    @property
    def is_consolidated(self) -> bool:
        return bool(self.consolidated_from)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        """JSON-safe snapshot. Used for archive entries."""
        data = {
            "id": self.id,
            "owner": self.owner,
            "kind": self.kind,
            "category": self.category,
            "content": self.content,
            "metadata": self.metadata,
            "importance": self.importance,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
            "last_accessed_at": iso_utc(self.last_accessed_at),
            "access_count": self.access_count,
            "priority_score": self.priority_score,
            "decay_factor": self.decay_factor,
            "decay_updated_at": iso_utc(self.decay_updated_at),
            "archived": self.archived,
            "consolidated_from": list(self.consolidated_from),
            "consolidation_reason": self.consolidation_reason,
            "consolidation_date": iso_utc(self.consolidation_date),
            "last_consolidation": iso_utc(self.last_consolidation),
            "entities": self.entities,
            "relationships": self.relationships,
        }
        if include_embedding:
            data["embedding"] = list(self.embedding) if self.embedding is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryRecord":
        return cls(
            id=data["id"],
            owner=data["owner"],
            content=data["content"],
            kind=data.get("kind"),
            category=data.get("category"),
            embedding=data.get("embedding"),
            metadata=data.get("metadata"),
            importance=data.get("importance", 5),
            created_at=parse_dt(data.get("created_at")),
            updated_at=parse_dt(data.get("updated_at")),
            last_accessed_at=parse_dt(data.get("last_accessed_at")),
            access_count=data.get("access_count", 0),
            priority_score=data.get("priority_score", 1.0),
            decay_factor=data.get("decay_factor", 1.0),
            decay_updated_at=parse_dt(data.get("decay_updated_at")),
            archived=bool(data.get("archived", False)),
            consolidated_from=data.get("consolidated_from"),
            consolidation_reason=data.get("consolidation_reason"),
            consolidation_date=parse_dt(data.get("consolidation_date")),
            last_consolidation=parse_dt(data.get("last_consolidation")),
            entities=data.get("entities"),
            relationships=data.get("relationships"),
        )

    def __repr__(self) -> str:
        preview = self.content[:40].replace("\n", " ")
        return f"MemoryRecord(id={self.id!r}, owner={self.owner!r}, content={preview!r})"


class ArchiveEntry:
    """Frozen copy of a MemoryRecord at the moment of removal."""

    __slots__ = ("original_id", "owner", "record", "archived_at", "archived_reason", "replacement_id")

    def __init__(
        self,
        record: MemoryRecord,
        archived_reason: ArchiveReason,
        archived_at: Optional[datetime] = None,
        replacement_id: Optional[str] = None,
    ):
        self.original_id = record.id
        self.owner = record.owner
        self.record = record
        self.archived_at = archived_at or utcnow()
        self.archived_reason = ArchiveReason(archived_reason)
        # Set for consolidation: the merged record that replaces this one.
        self.replacement_id = replacement_id

    @property
    def content(self) -> str:
        return self.record.content

    def __repr__(self) -> str:
        return (
            f"ArchiveEntry(original_id={self.original_id!r}, "
            f"reason={self.archived_reason.value!r}, archived_at={self.archived_at.isoformat()!r})"
        )


class QueryFilters:
    """Optional hard filters for retrieval, applied against the record store."""

    __slots__ = ("category", "kind", "created_after", "created_before")

    def __init__(
        self,
        category: Optional[str] = None,
        kind: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ):
        self.category = category
        self.kind = kind
        self.created_after = created_after
        self.created_before = created_before

    @classmethod
    def coerce(cls, filters: Any) -> "QueryFilters":
        """Accept None, a QueryFilters, or a plain dict of the same keys."""
        if filters is None:
            return cls()
        if isinstance(filters, cls):
            return filters
        if isinstance(filters, dict):
            unknown = set(filters) - set(cls.__slots__)
            if unknown:
                raise ValueError(f"Unknown filter keys: {sorted(unknown)}")
            return cls(**filters)
        raise TypeError(f"filters must be a dict or QueryFilters, got {type(filters).__name__}")
