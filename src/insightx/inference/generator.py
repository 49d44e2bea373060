"""Insight generation — one user-facing, actionable insight per ranked pattern."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

import structlog

from insightx.models import (
    AbandonmentPattern,
    ActionType,
    InsightType,
    Pattern,
    ProactiveInsight,
    SequentialPattern,
    TemporalPattern,
    TopicPattern,
)

logger = structlog.get_logger()

DEFAULT_TOP_N = 20

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

# An abandoned-task intent containing any of these was guessed, not observed.
SUSPICIOUS_INTENT_TERMS = ("unknown", "no action", "did not navigate", "likely")


def insight_id(pattern: Pattern) -> str:
    return f"insight-{pattern.pattern_id}"


def _workflow_insight(p: SequentialPattern, user_id: str, now: datetime) -> ProactiveInsight:
    return ProactiveInsight(
        id=insight_id(p),
        user_id=user_id,
        type=InsightType.WORKFLOW,
        title=f"Detected workflow: {p.semantic_theme}",
        description=f"You've done this {p.frequency} times. Would you like me to create a quick action?",
        action_type=ActionType.OPEN_URLS,
        action_params={"urls": [s.url for s in p.steps]},
        patterns=[p],
        relevance_score=p.score,
        created_at=now,
    )


def _research_insight(p: TopicPattern, user_id: str, now: datetime) -> ProactiveInsight:
    action_params = {"category": p.main_category, "insights": p.key_insights}

    # Resume from the latest analyzed page of the latest session.
    latest = max(p.sessions, key=lambda s: s.end_time, default=None)
    if latest is not None:
        urls = [ea.url for ea in latest.activities if ea.analysis is not None and ea.url]
        if urls:
            action_params["lastUrl"] = urls[-1]

    return ProactiveInsight(
        id=insight_id(p),
        user_id=user_id,
        type=InsightType.RESEARCH,
        title=f"Research summary: {p.main_category}",
        description=p.semantic_summary,
        action_type=ActionType.RESUME_RESEARCH,
        action_params=action_params,
        patterns=[p],
        relevance_score=p.score,
        created_at=now,
        linked_session_ids=[s.session_id for s in p.sessions],
    )


def _abandoned_insight(p: AbandonmentPattern, user_id: str, now: datetime) -> Optional[ProactiveInsight]:
    intent = p.intent.lower()
    if any(term in intent for term in SUSPICIOUS_INTENT_TERMS):
        logger.info("abandoned_insight_suppressed", reason="suspicious_intent", intent=p.intent)
        return None

    last_url = p.session.activities[-1].url if p.session.activities else ""
    if not last_url:
        logger.info("abandoned_insight_suppressed", reason="no_url", session_id=p.session.session_id)
        return None

    session_id = p.session.session_id
    return ProactiveInsight(
        id=insight_id(p),
        user_id=user_id,
        type=InsightType.ABANDONED,
        title=f"Unfinished: {p.intent}",
        description=f"You were {p.progress_made}. {p.suggestions[0] if p.suggestions else 'Want to continue?'}",
        action_type=ActionType.RESUME_RESEARCH,
        action_params={"suggestions": p.suggestions, "lastUrl": last_url, "sessionId": session_id},
        patterns=[p],
        relevance_score=p.score,
        created_at=now,
        linked_session_ids=[session_id],
        completion_progress=p.completion_score,
    )


def _habit_insight(p: TemporalPattern, user_id: str, now: datetime) -> ProactiveInsight:
    return ProactiveInsight(
        id=insight_id(p),
        user_id=user_id,
        type=InsightType.HABIT,
        title=f"Habit detected: {p.domain}",
        description=f"You usually visit {p.domain} on {DAY_NAMES[p.day_of_week]} at {p.hour}:00",
        action_type=ActionType.REMIND,
        action_params={"domain": p.domain, "dayOfWeek": p.day_of_week, "hour": p.hour},
        patterns=[p],
        relevance_score=p.score,
        created_at=now,
    )


def insight_from_pattern(
    pattern: Pattern,
    user_id: str,
    now: Optional[datetime] = None,
) -> Optional[ProactiveInsight]:
    """Map one pattern to a pending insight, or None to suppress it."""
    now = now or datetime.now(timezone.utc)
    if isinstance(pattern, SequentialPattern):
        return _workflow_insight(pattern, user_id, now)
    if isinstance(pattern, TopicPattern):
        return _research_insight(pattern, user_id, now)
    if isinstance(pattern, AbandonmentPattern):
        return _abandoned_insight(pattern, user_id, now)
    if isinstance(pattern, TemporalPattern):
        return _habit_insight(pattern, user_id, now)
    return None


def generate_insights(
    ranked: Sequence[Pattern],
    user_id: str,
    top_n: int = DEFAULT_TOP_N,
    now: Optional[datetime] = None,
) -> list[ProactiveInsight]:
    """Generate insights for the top ``top_n`` ranked patterns."""
    now = now or datetime.now(timezone.utc)
    insights = []
    for pattern in ranked[:top_n]:
        insight = insight_from_pattern(pattern, user_id, now)
        if insight is not None:
            insights.append(insight)
    logger.info("insights_generated", user_id=user_id, patterns=min(len(ranked), top_n), insights=len(insights))
    return insights
