"""Session segmenter — groups enriched activities into browsing sessions.

Two strategies:

1. Pre-segmented data. When every activity already carries a session id (the
   collector assigns them, synthetic data always has them) we trust it and
   group by id.
2. Semantic boundaries. Otherwise we walk consecutive activities and, for each
   pair where both pages were analyzed, ask the oracle whether the user switched
   context. Unanalyzed activities never open a new session on their own.
"""

from __future__ import annotations

import hashlib
from collections import Counter
from typing import Optional, Sequence

import structlog

from insightx.inference.oracle import SemanticOracle
from insightx.models import Activity, BrowsingSession, ContentAnalysis, EnrichedActivity

logger = structlog.get_logger()


def enrich_activities(
    activities: Sequence[Activity],
    analyses: Sequence[ContentAnalysis],
) -> list[EnrichedActivity]:
    """Join each navigational activity to the analysis that lists its id.

    Activities without a URL carry nothing the detectors can use and are
    dropped. Input order is preserved.
    """
    by_activity_id: dict[str, ContentAnalysis] = {}
    for analysis in analyses:
        for activity_id in analysis.activity_ids:
            by_activity_id[activity_id] = analysis

    enriched = [
        EnrichedActivity(activity=a, analysis=by_activity_id.get(a.id))
        for a in activities
        if a.data.url
    ]
    logger.info(
        "activities_enriched",
        total=len(enriched),
        analyzed=sum(1 for e in enriched if e.analysis is not None),
    )
    return enriched


def most_common(values: Sequence[str]) -> Optional[str]:
    """Statistical mode; ties go to the value seen first."""
    if not values:
        return None
    counts = Counter(values)
    best = max(counts.values())
    for v in values:
        if counts[v] == best:
            return v
    return None


def build_session(activities: list[EnrichedActivity], user_id: str) -> BrowsingSession:
    """Build a BrowsingSession from an ordered, non-empty list of activities."""
    start = activities[0].activity.timestamp
    end = activities[-1].activity.timestamp

    categories = [a.analysis.category for a in activities if a.analysis and a.analysis.category]

    # Keep the collector's id so tabs can be looked up by session later.
    # Deterministic fallback: same window always gets the same id.
    session_id = activities[0].activity.session_id
    if not session_id:
        session_key = f"{user_id}_{start.isoformat()}_{activities[0].activity.id}"
        session_id = "sess_" + hashlib.md5(session_key.encode()).hexdigest()[:12]

    return BrowsingSession(
        session_id=session_id,
        user_id=user_id,
        start_time=start,
        end_time=end,
        duration=(end - start).total_seconds() * 1000,
        activities=activities,
        primary_category=most_common(categories),
    )


def group_by_session_id(
    activities: Sequence[EnrichedActivity],
    user_id: str,
) -> list[BrowsingSession]:
    """One session per distinct session id, in order of first appearance."""
    groups: dict[str, list[EnrichedActivity]] = {}
    for ea in activities:
        groups.setdefault(ea.activity.session_id, []).append(ea)

    return [
        build_session(sorted(group, key=lambda ea: ea.activity.timestamp), user_id)
        for group in groups.values()
    ]


async def segment_sessions(
    activities: Sequence[EnrichedActivity],
    user_id: str,
    oracle: SemanticOracle,
) -> list[BrowsingSession]:
    """Segment activities (ascending by timestamp) into browsing sessions."""
    if not activities:
        return []

    if all(ea.activity.session_id for ea in activities):
        sessions = group_by_session_id(activities, user_id)
        logger.info("sessions_segmented", strategy="session_id", sessions=len(sessions))
        return sessions

    sessions: list[BrowsingSession] = []
    current: list[EnrichedActivity] = [activities[0]]

    for prev, curr in zip(activities[:-1], activities[1:]):
        if prev.analysis is not None and curr.analysis is not None:
            decision = await oracle.decide_session_boundary(prev.analysis, curr.analysis)
            if decision.is_new:
                sessions.append(build_session(current, user_id))
                current = [curr]
                logger.debug(
                    "session_boundary",
                    reason=decision.reason,
                    confidence=decision.confidence,
                )
                continue
        current.append(curr)

    sessions.append(build_session(current, user_id))

    logger.info(
        "sessions_segmented",
        strategy="semantic",
        total_activities=len(activities),
        sessions=len(sessions),
    )
    return sessions
