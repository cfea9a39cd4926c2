"""
mnemo Scoring -- pure relevance and decay functions.

Composite score for one candidate::

    score = sim_term(similarity) * decay_factor * f(importance) * g(access_count, recency)

- f maps the 1-10 importance scale linearly onto [0.6, 1.5], neutral (1.0) at 5.
- g rewards use with diminishing returns: logarithmic in access_count plus an
  exponentially fading bonus for recent access.
- sim_term keeps a small baseline so a zero-similarity candidate still gets a
  non-zero score; callers apply their own similarity floor.

Decay is recomputed separately from query scoring::

    decay' = decay * exp(-lambda(importance) * elapsed_days)

with lambda smaller for more important records. Each access nudges decay
toward 1.0 by ``access_refresh`` of the remaining gap.
"""

import math
from datetime import datetime
from typing import Optional, Sequence, Tuple

SIMILARITY_BASELINE = 0.05
IMPORTANCE_STEP = 0.1  # multiplier change per importance point away from 5
ACCESS_COUNT_WEIGHT = 0.05
RECENCY_WEIGHT = 0.10
RECENCY_TAU_HOURS = 72.0

LINEAGE_WEIGHT = 0.1
FREQUENCY_WEIGHT = 0.1

_SECONDS_PER_DAY = 86400.0


def _elapsed_days(start: Optional[datetime], now: datetime) -> float:
    if start is None:
        return 0.0
    return max(0.0, (now - start).total_seconds() / _SECONDS_PER_DAY)


def importance_multiplier(importance: int) -> float:
    """f(importance): monotonic, 1.0 at importance 5."""
    importance = max(1, min(10, int(importance)))
    return 1.0 + (importance - 5) * IMPORTANCE_STEP


def access_multiplier(access_count: int, last_accessed_at: Optional[datetime], now: datetime) -> float:
    """g(access_count, recency): >= 1.0, grows slowly with use."""
    frequency = ACCESS_COUNT_WEIGHT * math.log1p(max(0, access_count))
    if last_accessed_at is None:
        recency = 0.0
    else:
        hours = _elapsed_days(last_accessed_at, now) * 24.0
        recency = RECENCY_WEIGHT * math.exp(-hours / RECENCY_TAU_HOURS)
    return 1.0 + frequency + recency


def similarity_term(similarity: float) -> float:
    """Map cosine similarity onto [SIMILARITY_BASELINE, 1]; negatives clamp to 0."""
    sim = max(0.0, min(1.0, similarity))
    return SIMILARITY_BASELINE + (1.0 - SIMILARITY_BASELINE) * sim


def score(
    similarity: float,
    importance: int,
    access_count: int,
    last_accessed_at: Optional[datetime],
    decay_factor: float,
    now: datetime,
) -> float:
    """Composite relevance score. Never short-circuits on zero similarity."""
    return (
        similarity_term(similarity)
        * max(0.0, min(1.0, decay_factor))
        * importance_multiplier(importance)
        * access_multiplier(access_count, last_accessed_at, now)
    )


def apply_priority(composite: float, priority_score: float, weight: float = 1.0) -> float:
    """Apply the cached priority multiplier after composite scoring.

    ``weight`` is an exponent: 0 disables the priority score, 1 applies it as-is.
    """
    if weight == 0 or priority_score <= 0:
        return composite
    return composite * (priority_score ** weight)


def decay_rate(importance: int, tiers: Sequence[Tuple[int, float]]) -> float:
    """Lambda per day for ``importance``; ``tiers`` is sorted by floor, descending."""
    for floor, rate in tiers:
        if importance >= floor:
            return rate
    return tiers[-1][1]


def recompute_decay(
    decay_factor: float,
    importance: int,
    since: Optional[datetime],
    now: datetime,
    tiers: Sequence[Tuple[int, float]],
) -> float:
    """Decay ``decay_factor`` over the time elapsed since ``since``.

    Non-increasing: with no elapsed time the factor is returned unchanged.
    """
    elapsed = _elapsed_days(since, now)
    decayed = decay_factor * math.exp(-decay_rate(importance, tiers) * elapsed)
    return max(0.0, min(1.0, decayed))


def refresh_on_access(decay_factor: float, refresh: float) -> float:
    """Nudge decay toward 1.0 on a retrieval hit; holds at 1.0 once there."""
    decay_factor = max(0.0, min(1.0, decay_factor))
    return min(1.0, decay_factor + (1.0 - decay_factor) * refresh)


def compute_priority(
    consolidated_count: int,
    access_count: int,
    created_at: datetime,
    now: datetime,
) -> float:
    """Cached priority multiplier from consolidation lineage and access rate."""
    age_days = max(1.0, _elapsed_days(created_at, now))
    lineage = LINEAGE_WEIGHT * math.log1p(max(0, consolidated_count))
    frequency = FREQUENCY_WEIGHT * math.log1p(max(0, access_count) / age_days)
    return 1.0 + lineage + frequency
