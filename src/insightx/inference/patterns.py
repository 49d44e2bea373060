"""Pattern detection — the four mining strategies.

Sequential: the same short multi-step workflow, repeated across sessions.
Topic: one category researched over several sessions.
Abandonment: a session whose task the user did not finish.
Temporal: a site the user keeps coming back to at the same weekday and hour.

The detectors are independent. ``detect_all_patterns`` fans them out
concurrently; inside the topic and abandonment detectors the per-candidate
oracle calls fan out too, bounded by the candidate limits.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import tzinfo
from typing import Optional, Sequence
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

import structlog

from insightx.inference.oracle import CompletionAnalysis, SemanticOracle
from insightx.models import (
    AbandonmentPattern,
    BrowsingSession,
    EnrichedActivity,
    Pattern,
    SequentialPattern,
    TemporalPattern,
    TopicPattern,
    WorkflowStep,
)

logger = structlog.get_logger()

# ── Tunables ─────────────────────────────────────────────────

MIN_SEQUENCE_ACTIVITIES = 2
MAX_SEQUENCE_ACTIVITIES = 5
MIN_ANALYZED_STEPS = 2
SIMILARITY_THRESHOLD = 0.2
MIN_PATTERN_FREQUENCY = 2

CATEGORY_WEIGHT = 0.2
SUBCATEGORY_WEIGHT = 0.4
BRAND_WEIGHT = 0.4

MIN_TOPIC_SESSIONS = 2
MAX_TOPIC_CANDIDATES = 10

MIN_ABANDONMENT_DURATION_MS = 30_000
MAX_ABANDONMENT_CANDIDATES = 15
ABANDONMENT_THRESHOLD = 0.6

MIN_HABIT_OCCURRENCES = 3

STEP_SUMMARY_LENGTH = 100

# Phrases the completion analyzer emits when it has nothing useful to say.
GENERIC_ANALYSIS_TERMS = (
    "unknown",
    "analysis failed",
    "no reason provided",
    "n/a",
    "error",
    "unable to determine",
    "not clear",
    "unclear",
)
MIN_INTENT_LENGTH = 10


# ── Sequential ───────────────────────────────────────────────


def session_steps(session: BrowsingSession) -> list[WorkflowStep]:
    """The analyzed activities of a session as workflow steps, in order."""
    steps = []
    for ea in session.activities:
        a = ea.analysis
        if a is None:
            continue
        steps.append(WorkflowStep(
            category=a.category,
            subcategory=a.subcategory,
            brand=a.brand,
            page_description_summary=a.page_description[:STEP_SUMMARY_LENGTH],
            screenshot_description_summary=a.screenshot_description[:STEP_SUMMARY_LENGTH],
            url=a.url or ea.activity.data.url or "",
            title=a.raw_text.title or ea.activity.data.title or "",
        ))
    return steps


def compare_sequences(seq1: Sequence[WorkflowStep], seq2: Sequence[WorkflowStep]) -> float:
    """Position-by-position similarity in [0, 1].

    Sequences whose lengths differ by more than one step are unrelated.
    """
    if abs(len(seq1) - len(seq2)) > 1:
        return 0.0
    min_len = min(len(seq1), len(seq2))
    if min_len == 0:
        return 0.0

    score = 0.0
    for a, b in zip(seq1, seq2):
        if a.category == b.category:
            score += CATEGORY_WEIGHT
        if a.subcategory == b.subcategory:
            score += SUBCATEGORY_WEIGHT
        if a.brand == b.brand:
            score += BRAND_WEIGHT
    return score / min_len


def sequence_key(steps: Sequence[WorkflowStep]) -> str:
    """Canonical ``category:subcategory:brand|...`` key for a step sequence."""
    return "|".join(f"{s.category}:{s.subcategory}:{s.brand or 'none'}" for s in steps)


async def find_sequential_patterns(
    sessions: Sequence[BrowsingSession],
    oracle: SemanticOracle,
) -> list[SequentialPattern]:
    """Find short workflows that recur across sessions.

    Every pair of similar candidate sessions supports the pattern keyed by the
    first session's sequence; ``frequency`` counts supporting pairs. Themes are
    named only after merging is complete.
    """
    candidates = []
    for session in sessions:
        if not MIN_SEQUENCE_ACTIVITIES <= len(session.activities) <= MAX_SEQUENCE_ACTIVITIES:
            continue
        steps = session_steps(session)
        if len(steps) >= MIN_ANALYZED_STEPS:
            candidates.append((session, steps))

    if len(candidates) < 2:
        return []

    patterns: dict[str, SequentialPattern] = {}
    durations: dict[str, list[float]] = defaultdict(list)

    for i, (s1, seq1) in enumerate(candidates):
        for s2, seq2 in candidates[i + 1:]:
            if compare_sequences(seq1, seq2) <= SIMILARITY_THRESHOLD:
                continue

            key = sequence_key(seq1)
            pattern = patterns.get(key)
            if pattern is None:
                pattern = SequentialPattern(
                    pattern_id=f"seq-{key}",
                    steps=seq1,
                    frequency=0,
                    last_occurrence=s1.end_time,
                )
                patterns[key] = pattern

            pattern.frequency += 1
            pattern.last_occurrence = max(pattern.last_occurrence, s1.end_time, s2.end_time)
            for s in (s1, s2):
                if s.session_id not in pattern.session_ids:
                    pattern.session_ids.append(s.session_id)
                    durations[key].append(s.duration)

    frequent = [p for p in patterns.values() if p.frequency >= MIN_PATTERN_FREQUENCY]
    for key, p in patterns.items():
        d = durations[key]
        p.avg_duration = sum(d) / len(d) if d else 0.0

    themes = await asyncio.gather(*(oracle.name_workflow(p.steps, p.frequency) for p in frequent))
    for pattern, theme in zip(frequent, themes):
        pattern.semantic_theme = theme

    logger.info(
        "sequential_patterns_found",
        candidates=len(candidates),
        merged=len(patterns),
        frequent=len(frequent),
    )
    return frequent


# ── Topic ────────────────────────────────────────────────────


def _distinct(values) -> list[str]:
    seen: list[str] = []
    for v in values:
        if v and v not in seen:
            seen.append(v)
    return seen


async def find_topic_patterns(
    sessions: Sequence[BrowsingSession],
    oracle: SemanticOracle,
    max_topics: int = MAX_TOPIC_CANDIDATES,
) -> list[TopicPattern]:
    """Find categories the user keeps returning to across sessions."""
    by_category: dict[str, list[BrowsingSession]] = defaultdict(list)
    for session in sessions:
        if session.primary_category:
            by_category[session.primary_category].append(session)

    groups = [(c, group) for c, group in by_category.items() if len(group) >= MIN_TOPIC_SESSIONS]
    # Stable sort: equal session counts keep first-seen order.
    groups.sort(key=lambda item: len(item[1]), reverse=True)
    groups = groups[:max_topics]

    if not groups:
        return []

    pages_by_category = {c: [a for s in group for a in s.analyzed] for c, group in groups}
    summaries = await asyncio.gather(
        *(oracle.summarize_topic(c, pages_by_category[c]) for c, _ in groups)
    )

    patterns = []
    for (category, group), summary in zip(groups, summaries):
        pages = pages_by_category[category]
        patterns.append(TopicPattern(
            pattern_id=f"topic-{category}",
            main_category=category,
            subcategories=_distinct(p.subcategory for p in pages),
            brands=_distinct(p.brand for p in pages),
            semantic_summary=summary.summary,
            sessions=group,
            total_time=sum(s.duration for s in group),
            pages_seen=len(pages),
            key_insights=summary.insights,
            last_occurrence=max(s.end_time for s in group),
        ))

    logger.info("topic_patterns_found", categories=len(by_category), topics=len(patterns))
    return patterns


# ── Abandonment ──────────────────────────────────────────────


def is_analysis_meaningful(analysis: CompletionAnalysis) -> bool:
    """Reject completion analyses that degraded into boilerplate."""
    intent = analysis.intent.strip().lower()
    progress = analysis.progress.strip().lower()

    if any(term in intent or term in progress for term in GENERIC_ANALYSIS_TERMS):
        return False
    if not analysis.suggestions:
        return False
    return len(intent) > MIN_INTENT_LENGTH


def is_abandonment_candidate(session: BrowsingSession) -> bool:
    return (
        len(session.activities) >= 2
        and len(session.analyzed) >= 1
        and session.duration >= MIN_ABANDONMENT_DURATION_MS
    )


async def find_abandoned_tasks(
    sessions: Sequence[BrowsingSession],
    oracle: SemanticOracle,
    max_candidates: int = MAX_ABANDONMENT_CANDIDATES,
    threshold: float = ABANDONMENT_THRESHOLD,
) -> list[AbandonmentPattern]:
    """Find recent sessions whose task looks unfinished."""
    candidates = [s for s in sessions if is_abandonment_candidate(s)]
    candidates.sort(key=lambda s: s.end_time, reverse=True)
    candidates = candidates[:max_candidates]

    if not candidates:
        return []

    analyses = await asyncio.gather(*(oracle.analyze_completion(s) for s in candidates))

    patterns = []
    for session, analysis in zip(candidates, analyses):
        if analysis.completion_score >= threshold:
            continue
        if not is_analysis_meaningful(analysis):
            logger.debug("abandonment_filtered", session_id=session.session_id, intent=analysis.intent)
            continue
        patterns.append(AbandonmentPattern(
            pattern_id=f"abandoned-{session.session_id}",
            session=session,
            intent=analysis.intent,
            progress_made=analysis.progress,
            why_abandoned=analysis.reason,
            completion_score=analysis.completion_score,
            suggestions=analysis.suggestions,
            last_occurrence=session.end_time,
        ))

    logger.info("abandoned_tasks_found", candidates=len(candidates), abandoned=len(patterns))
    return patterns


# ── Temporal ─────────────────────────────────────────────────


def hostname(url: str) -> str:
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def find_temporal_patterns(
    activities: Sequence[EnrichedActivity],
    tz: tzinfo | str = "UTC",
) -> list[TemporalPattern]:
    """Bucket analyzed activities by (weekday, hour, domain) in ``tz``.

    ``day_of_week`` is 0=Sunday .. 6=Saturday.
    """
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    buckets: dict[tuple[int, int, str], list] = {}

    for ea in activities:
        if ea.analysis is None:
            continue
        domain = hostname(ea.analysis.url or ea.activity.data.url or "")
        if not domain:
            continue
        local = ea.activity.timestamp.astimezone(zone)
        key = ((local.weekday() + 1) % 7, local.hour, domain)
        bucket = buckets.setdefault(key, [0, ea.activity.timestamp])
        bucket[0] += 1
        bucket[1] = max(bucket[1], ea.activity.timestamp)

    patterns = [
        TemporalPattern(
            pattern_id=f"temporal-{day}-{hour}-{domain}",
            day_of_week=day,
            hour=hour,
            domain=domain,
            frequency=count,
            confidence=count / 10,
            last_occurrence=last,
        )
        for (day, hour, domain), (count, last) in buckets.items()
        if count >= MIN_HABIT_OCCURRENCES
    ]
    logger.info("temporal_patterns_found", buckets=len(buckets), habits=len(patterns))
    return patterns


# ── All detectors ────────────────────────────────────────────


async def detect_all_patterns(
    sessions: Sequence[BrowsingSession],
    activities: Sequence[EnrichedActivity],
    oracle: SemanticOracle,
    max_topics: int = MAX_TOPIC_CANDIDATES,
    max_abandonment_candidates: int = MAX_ABANDONMENT_CANDIDATES,
    abandonment_threshold: float = ABANDONMENT_THRESHOLD,
    tz: Optional[tzinfo | str] = None,
) -> list[Pattern]:
    """Run the four detectors concurrently and concatenate their results."""
    sequential, topics, abandoned, temporal = await asyncio.gather(
        find_sequential_patterns(sessions, oracle),
        find_topic_patterns(sessions, oracle, max_topics),
        find_abandoned_tasks(sessions, oracle, max_abandonment_candidates, abandonment_threshold),
        asyncio.to_thread(find_temporal_patterns, activities, tz or "UTC"),
    )
    patterns: list[Pattern] = [*sequential, *topics, *abandoned, *temporal]
    logger.info(
        "patterns_detected",
        sequential=len(sequential),
        topics=len(topics),
        abandoned=len(abandoned),
        temporal=len(temporal),
    )
    return patterns
