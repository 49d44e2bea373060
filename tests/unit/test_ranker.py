"""Tests for pattern scoring and ranking."""

from datetime import datetime, timedelta, timezone

import pytest

from insightx.inference.ranker import calculate_pattern_score, rank_patterns, recency_score
from insightx.models import (
    AbandonmentPattern,
    BrowsingSession,
    SequentialPattern,
    TemporalPattern,
    TopicPattern,
    WorkflowStep,
)

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def _topic(days_ago: float, sessions: int = 4, hours: float = 0.5) -> TopicPattern:
    last = NOW - timedelta(days=days_ago)
    return TopicPattern(
        pattern_id="topic-tech",
        main_category="tech",
        sessions=[BrowsingSession(session_id=f"s{i}", start_time=last, end_time=last) for i in range(sessions)],
        total_time=hours * 3_600_000,
        last_occurrence=last,
    )


def _sequential(days_ago: float, frequency: int = 2, steps: int = 2) -> SequentialPattern:
    return SequentialPattern(
        pattern_id="seq-x",
        steps=[WorkflowStep(category="dev") for _ in range(steps)],
        frequency=frequency,
        last_occurrence=NOW - timedelta(days=days_ago),
    )


def _abandoned(duration_seconds: float, completion: float = 0.3) -> AbandonmentPattern:
    return AbandonmentPattern(
        pattern_id="abandoned-s1",
        session=BrowsingSession(session_id="s1", start_time=NOW, end_time=NOW, duration=duration_seconds * 1000),
        completion_score=completion,
        last_occurrence=NOW,
    )


def test_score_strictly_decreasing_with_age():
    scores = [calculate_pattern_score(_topic(d), NOW) for d in (0, 1, 2, 7, 30, 365)]
    assert all(a > b for a, b in zip(scores, scores[1:]))


def test_topic_score_components():
    # frequency 4/10, recency 1.0, impact 0.5h
    assert calculate_pattern_score(_topic(0), NOW) == pytest.approx(0.3 * 0.4 + 0.3 * 1.0 + 0.4 * 0.5)


def test_recency_decay():
    # 10 days -> recency 1 / (1 + 1) = 0.5
    assert calculate_pattern_score(_topic(10), NOW) == pytest.approx(0.3 * 0.4 + 0.3 * 0.5 + 0.4 * 0.5)


def test_sequential_boost_doubles_and_caps():
    base = 0.3 * (2 / 5) + 0.3 * (1 / (1 + 3)) + 0.4 * (20 / 60)
    assert calculate_pattern_score(_sequential(30), NOW) == pytest.approx(2 * base)
    assert calculate_pattern_score(_sequential(0, frequency=5, steps=6), NOW) == 1.0


def test_abandonment_impact_capped_at_half():
    long_session = calculate_pattern_score(_abandoned(3 * 3600), NOW)
    assert long_session == pytest.approx(0.3 * 0.7 + 0.3 * 1.0 + 0.4 * 0.5)


def test_temporal_components():
    p = TemporalPattern(pattern_id="t", day_of_week=1, hour=9, domain="example.com", frequency=4, confidence=0.4, last_occurrence=NOW)
    assert calculate_pattern_score(p, NOW) == pytest.approx(0.3 * 0.4 + 0.3 * 1.0 + 0.4 * 0.2)


def test_rank_sorts_descending_and_sets_scores():
    old_topic = _topic(60)
    fresh_topic = _topic(0)
    workflow = _sequential(1)
    ranked = rank_patterns([old_topic, fresh_topic, workflow], NOW)
    assert ranked[0] is workflow
    assert ranked[1] is fresh_topic
    assert ranked[2] is old_topic
    assert all(p.score > 0 for p in ranked)


def test_future_occurrence_counts_as_fresh():
    """Clock skew or backfilled data must not push recency outside [0, 1]."""
    future = TemporalPattern(
        pattern_id="t",
        day_of_week=1,
        hour=9,
        domain="example.com",
        frequency=4,
        confidence=0.4,
        last_occurrence=NOW + timedelta(days=15),
    )
    assert calculate_pattern_score(future, NOW) == pytest.approx(0.3 * 0.4 + 0.3 * 1.0 + 0.4 * 0.2)
    assert calculate_pattern_score(_topic(-10), NOW) == calculate_pattern_score(_topic(0), NOW)
    assert recency_score(-10) == 1.0
    assert recency_score(-15) == 1.0
