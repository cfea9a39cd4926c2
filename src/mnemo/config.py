"""
mnemo configuration -- one explicit settings object passed to every component.

Defaults can be overridden per field from ``MNEMO_*`` environment variables
via :meth:`StoreConfig.from_env`.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

# Importance-tiered decay rates: (minimum importance, lambda per day).
# Checked top-down; the first tier whose floor the importance reaches wins.
DEFAULT_DECAY_TIERS: Tuple[Tuple[int, float], ...] = (
    (8, 0.005),  # critical
    (6, 0.01),   # high
    (4, 0.02),   # medium
    (1, 0.04),   # low / info
)

MERGE_STRATEGIES = ("longest", "most_recent", "concatenate")


def mnemo_home() -> Path:
    """Resolve MNEMO_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("MNEMO_HOME", str(Path.home() / ".mnemo")))


class StoreConfig:
    """Tunables for retrieval, scoring, consolidation and the vector index."""

    # (attribute, env var, parser) for from_env()
    _ENV_FIELDS = (
        ("similarity_floor", "MNEMO_SIMILARITY_FLOOR", float),
        ("overfetch_factor", "MNEMO_OVERFETCH_FACTOR", int),
        ("access_refresh", "MNEMO_ACCESS_REFRESH", float),
        ("consolidation_threshold", "MNEMO_CONSOLIDATION_THRESHOLD", float),
        ("consolidation_cooldown_hours", "MNEMO_CONSOLIDATION_COOLDOWN_HOURS", float),
        ("batch_size", "MNEMO_BATCH_SIZE", int),
        ("cluster_neighbors", "MNEMO_CLUSTER_NEIGHBORS", int),
        ("lock_timeout", "MNEMO_LOCK_TIMEOUT", float),
        ("embedding_dim", "MNEMO_EMBEDDING_DIM", int),
        ("embed_timeout", "MNEMO_EMBED_TIMEOUT", float),
        ("max_content_size", "MNEMO_MAX_CONTENT_SIZE", int),
        ("hnsw_m", "MNEMO_HNSW_M", int),
        ("hnsw_ef_construction", "MNEMO_HNSW_EF_CONSTRUCTION", int),
        ("hnsw_ef_search", "MNEMO_HNSW_EF_SEARCH", int),
        ("index_capacity", "MNEMO_INDEX_CAPACITY", int),
        ("expiry_threshold", "MNEMO_EXPIRY_THRESHOLD", float),
        ("gc_low_water", "MNEMO_GC_LOW_WATER", float),
        ("priority_weight", "MNEMO_PRIORITY_WEIGHT", float),
        ("merge_strategy", "MNEMO_MERGE_STRATEGY", str),
    )

    def __init__(
        self,
        home: Optional[Path] = None,
        similarity_floor: float = 0.0,
        overfetch_factor: int = 4,
        decay_tiers: Tuple[Tuple[int, float], ...] = DEFAULT_DECAY_TIERS,
        access_refresh: float = 0.5,
        consolidation_threshold: float = 0.9,
        consolidation_cooldown_hours: float = 24.0,
        batch_size: int = 200,
        cluster_neighbors: int = 8,
        lock_timeout: float = 5.0,
        embedding_dim: int = 384,
        embed_timeout: float = 10.0,
        max_content_size: int = 1_000_000,
        hnsw_m: int = 16,
        hnsw_ef_construction: int = 64,
        hnsw_ef_search: int = 50,
        index_capacity: int = 1024,
        expiry_threshold: float = 0.05,
        gc_low_water: float = 0.1,
        priority_weight: float = 1.0,
        merge_strategy: str = "longest",
        backup_before_consolidation: bool = True,
        encrypt_archive: Optional[bool] = None,
    ):
        self.home = Path(home) if home is not None else mnemo_home()
        self.similarity_floor = similarity_floor
        self.overfetch_factor = overfetch_factor
        self.decay_tiers = tuple(sorted(decay_tiers, key=lambda t: t[0], reverse=True))
        self.access_refresh = access_refresh
        self.consolidation_threshold = consolidation_threshold
        self.consolidation_cooldown_hours = consolidation_cooldown_hours
        self.batch_size = batch_size
        self.cluster_neighbors = cluster_neighbors
        self.lock_timeout = lock_timeout
        self.embedding_dim = embedding_dim
        self.embed_timeout = embed_timeout
        self.max_content_size = max_content_size
        self.hnsw_m = hnsw_m
        self.hnsw_ef_construction = hnsw_ef_construction
        self.hnsw_ef_search = hnsw_ef_search
        self.index_capacity = index_capacity
        self.expiry_threshold = expiry_threshold
        self.gc_low_water = gc_low_water
        self.priority_weight = priority_weight
        self.merge_strategy = merge_strategy
        self.backup_before_consolidation = backup_before_consolidation
        if encrypt_archive is None:
            from mnemo.crypto import is_enabled

            encrypt_archive = is_enabled()
        self.encrypt_archive = encrypt_archive
        self.validate()

    @property
    def db_path(self) -> Path:
        return self.home / "mnemo.db"

    @classmethod
    def from_env(cls, **overrides: Any) -> "StoreConfig":
        """Build a config from MNEMO_* environment variables.

        Explicit keyword overrides win over the environment.
        """
        kwargs: Dict[str, Any] = {}
        for attr, env_var, parser in cls._ENV_FIELDS:
            raw = os.environ.get(env_var)
            if raw is None or raw.strip() == "":
                continue
            try:
                kwargs[attr] = parser(raw.strip())
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_var}: {raw!r}") from e
        backup = os.environ.get("MNEMO_BACKUP_BEFORE_CONSOLIDATION", "").strip().lower()
        if backup:
            kwargs["backup_before_consolidation"] = backup not in ("0", "false", "no")
        kwargs.update(overrides)
        return cls(**kwargs)

    def validate(self) -> None:
        """Raise ValueError on out-of-range settings."""
        if not 0.0 <= self.similarity_floor <= 1.0:
            raise ValueError(f"similarity_floor must be in [0, 1], got {self.similarity_floor}")
        if self.overfetch_factor < 1:
            raise ValueError(f"overfetch_factor must be >= 1, got {self.overfetch_factor}")
        if not 0.0 < self.consolidation_threshold <= 1.0:
            raise ValueError(f"consolidation_threshold must be in (0, 1], got {self.consolidation_threshold}")
        if not 0.0 <= self.access_refresh <= 1.0:
            raise ValueError(f"access_refresh must be in [0, 1], got {self.access_refresh}")
        if self.consolidation_cooldown_hours < 0:
            raise ValueError("consolidation_cooldown_hours must be >= 0")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.cluster_neighbors < 1:
            raise ValueError(f"cluster_neighbors must be >= 1, got {self.cluster_neighbors}")
        if self.embedding_dim < 1:
            raise ValueError(f"embedding_dim must be >= 1, got {self.embedding_dim}")
        if self.embed_timeout <= 0 or self.lock_timeout < 0:
            raise ValueError("embed_timeout must be > 0 and lock_timeout >= 0")
        if self.hnsw_m < 2 or self.hnsw_ef_construction < 1 or self.hnsw_ef_search < 1:
            raise ValueError("HNSW parameters out of range")
        if self.index_capacity < 1:
            raise ValueError(f"index_capacity must be >= 1, got {self.index_capacity}")
        if not 0.0 <= self.expiry_threshold <= 1.0 or not 0.0 <= self.gc_low_water <= 1.0:
            raise ValueError("expiry_threshold and gc_low_water must be in [0, 1]")
        if self.priority_weight < 0:
            raise ValueError(f"priority_weight must be >= 0, got {self.priority_weight}")
        if self.merge_strategy not in MERGE_STRATEGIES:
            raise ValueError(f"merge_strategy must be one of {MERGE_STRATEGIES}, got {self.merge_strategy!r}")
        if not self.decay_tiers:
            raise ValueError("decay_tiers must not be empty")
        for floor, rate in self.decay_tiers:
            if rate < 0:
                raise ValueError(f"decay rate for importance >= {floor} must be >= 0")
        if min(floor for floor, _ in self.decay_tiers) > 1:
            raise ValueError("decay_tiers must cover importance 1")
