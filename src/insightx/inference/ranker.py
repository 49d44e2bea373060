"""Pattern ranking.

score = 0.3 * frequency + 0.3 * recency + 0.4 * impact, each term in [0, 1].
Sequential patterns are doubled (capped at 1.0): a workflow is the cheapest
insight to act on, one click reopens every tab.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

import structlog

from insightx.models import (
    AbandonmentPattern,
    Pattern,
    SequentialPattern,
    TemporalPattern,
    TopicPattern,
)

logger = structlog.get_logger()

FREQUENCY_WEIGHT = 0.3
RECENCY_WEIGHT = 0.3
IMPACT_WEIGHT = 0.4
RECENCY_DECAY_PER_DAY = 0.1
SEQUENTIAL_BOOST = 2.0
SECONDS_SAVED_PER_STEP = 10


def frequency_score(pattern: Pattern) -> float:
    if isinstance(pattern, SequentialPattern):
        return min(pattern.frequency / 5, 1.0)
    if isinstance(pattern, TopicPattern):
        return min(len(pattern.sessions) / 10, 1.0)
    if isinstance(pattern, TemporalPattern):
        return min(pattern.frequency / 10, 1.0)
    if isinstance(pattern, AbandonmentPattern):
        return 1.0 - pattern.completion_score
    return 0.0


def impact_score(pattern: Pattern) -> float:
    if isinstance(pattern, SequentialPattern):
        return min(len(pattern.steps) * SECONDS_SAVED_PER_STEP / 60, 1.0)
    if isinstance(pattern, TopicPattern):
        return min(pattern.total_time / 3_600_000, 1.0)
    if isinstance(pattern, AbandonmentPattern):
        return min(pattern.session.duration / 1_800_000, 0.5)
    if isinstance(pattern, TemporalPattern):
        return min(pattern.frequency / 20, 1.0)
    return 0.0


def recency_score(days_since: float) -> float:
    return 1.0 / (1 + max(0.0, days_since) * RECENCY_DECAY_PER_DAY)


def calculate_pattern_score(pattern: Pattern, now: Optional[datetime] = None) -> float:
    now = now or datetime.now(timezone.utc)
    # Occurrences after ``now`` (clock skew, backfilled data) count as fresh.
    days_since = max(0.0, (now - pattern.last_occurrence).total_seconds() / 86400)

    score = (
        FREQUENCY_WEIGHT * frequency_score(pattern)
        + RECENCY_WEIGHT * recency_score(days_since)
        + IMPACT_WEIGHT * impact_score(pattern)
    )
    if isinstance(pattern, SequentialPattern):
        score = min(score * SEQUENTIAL_BOOST, 1.0)
    return score


def rank_patterns(patterns: Sequence[Pattern], now: Optional[datetime] = None) -> list[Pattern]:
    """Score every pattern in place and return them best first."""
    now = now or datetime.now(timezone.utc)
    for p in patterns:
        p.score = calculate_pattern_score(p, now)
    ranked = sorted(patterns, key=lambda p: p.score, reverse=True)
    if ranked:
        logger.info("patterns_ranked", count=len(ranked), top_score=round(ranked[0].score, 3))
    return ranked
