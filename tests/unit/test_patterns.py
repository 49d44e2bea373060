"""Tests for the four pattern detectors."""

import asyncio
from datetime import datetime, timedelta, timezone

from insightx.inference.oracle import CompletionAnalysis, SemanticOracle
from insightx.inference.patterns import (
    compare_sequences,
    detect_all_patterns,
    find_abandoned_tasks,
    find_sequential_patterns,
    find_temporal_patterns,
    find_topic_patterns,
    is_analysis_meaningful,
    sequence_key,
)
from insightx.models import (
    Activity,
    ActivityData,
    BrowsingSession,
    ContentAnalysis,
    EnrichedActivity,
    SequentialPattern,
    TemporalPattern,
    WorkflowStep,
)

T0 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)  # a Monday

DEV_STEPS = [("dev", "docs", "github", "https://github.com/org/repo"), ("dev", "qa", "stackoverflow", "https://stackoverflow.com/q/1")]


class StubOracle(SemanticOracle):
    def __init__(self, completion: CompletionAnalysis | None = None, theme: str = "Debugging with docs"):
        super().__init__()
        self.completion = completion or CompletionAnalysis(
            intent="Comparing wireless headphones for running",
            progress="Read two reviews",
            completion_score=0.3,
            suggestions=["Check the REI page again"],
        )
        self.theme = theme
        self.theme_calls = 0
        self.completion_calls = 0

    async def name_workflow(self, steps, frequency):
        self.theme_calls += 1
        return self.theme

    async def analyze_completion(self, session):
        self.completion_calls += 1
        return self.completion


def _make_session(
    session_id: str,
    steps=DEV_STEPS,
    start: datetime = T0,
    gap_seconds: int = 60,
    extra_unanalyzed: int = 0,
) -> BrowsingSession:
    activities = []
    for i, (category, subcategory, brand, url) in enumerate(steps):
        aid = f"{session_id}-a{i}"
        activities.append(EnrichedActivity(
            activity=Activity(id=aid, timestamp=start + timedelta(seconds=i * gap_seconds), session_id=session_id, data=ActivityData(url=url)),
            analysis=ContentAnalysis(
                analysis_id=f"an-{aid}",
                activity_ids=[aid],
                url=url,
                category=category,
                subcategory=subcategory,
                brand=brand,
                page_description=f"{subcategory} page",
            ),
        ))
    for j in range(extra_unanalyzed):
        aid = f"{session_id}-x{j}"
        activities.append(EnrichedActivity(
            activity=Activity(
                id=aid,
                timestamp=start + timedelta(seconds=(len(steps) + j) * gap_seconds),
                session_id=session_id,
                data=ActivityData(url=f"https://example.com/{aid}"),
            ),
        ))
    end = activities[-1].activity.timestamp
    return BrowsingSession(
        session_id=session_id,
        start_time=start,
        end_time=end,
        duration=(end - start).total_seconds() * 1000,
        activities=activities,
        primary_category=steps[0][0] if steps else None,
    )


def _step(category="dev", subcategory="docs", brand="github") -> WorkflowStep:
    return WorkflowStep(category=category, subcategory=subcategory, brand=brand)


# ── compare_sequences / sequence_key ─────────────────────────


def test_identical_sequences_score_one():
    seq = [_step(), _step("dev", "qa", "stackoverflow")]
    assert compare_sequences(seq, list(seq)) == 1.0


def test_length_difference_over_one_scores_zero():
    assert compare_sequences([_step()], [_step(), _step(), _step()]) == 0.0


def test_partial_match_weights():
    a = [_step("dev", "docs", "github"), _step("dev", "qa", "stackoverflow")]
    b = [_step("dev", "docs", "gitlab"), _step("news", "qa", "stackoverflow")]
    # position 0: category + subcategory = 0.6; position 1: subcategory + brand = 0.8
    assert abs(compare_sequences(a, b) - 0.7) < 1e-9


def test_sequence_key_marks_missing_brand():
    assert sequence_key([_step(brand=""), _step("dev", "qa", "so")]) == "dev:docs:none|dev:qa:so"


# ── Sequential ───────────────────────────────────────────────


def test_single_supporting_pair_is_discarded():
    sessions = [_make_session("s1"), _make_session("s2", start=T0 + timedelta(days=1))]
    assert asyncio.run(find_sequential_patterns(sessions, StubOracle())) == []


def test_frequency_counts_supporting_pairs():
    sessions = [_make_session(f"s{d}", start=T0 + timedelta(days=d)) for d in range(3)]
    oracle = StubOracle()
    patterns = asyncio.run(find_sequential_patterns(sessions, oracle))

    assert len(patterns) == 1
    p = patterns[0]
    assert p.frequency == 3
    assert p.pattern_id == "seq-dev:docs:github|dev:qa:stackoverflow"
    assert [s.url for s in p.steps] == [url for *_, url in DEV_STEPS]
    assert p.last_occurrence == sessions[2].end_time
    assert p.semantic_theme == "Debugging with docs"
    assert sorted(p.session_ids) == ["s0", "s1", "s2"]
    assert p.avg_duration == 60_000
    assert oracle.theme_calls == 1


def test_sessions_outside_length_bounds_ignored():
    long_steps = DEV_STEPS * 3  # six activities
    sessions = [_make_session(f"s{d}", steps=long_steps, start=T0 + timedelta(days=d)) for d in range(3)]
    assert asyncio.run(find_sequential_patterns(sessions, StubOracle())) == []


def test_sessions_need_two_analyzed_steps():
    sessions = [
        _make_session(f"s{d}", steps=DEV_STEPS[:1], start=T0 + timedelta(days=d), extra_unanalyzed=1)
        for d in range(3)
    ]
    assert asyncio.run(find_sequential_patterns(sessions, StubOracle())) == []


def test_theme_fallback_without_llm():
    sessions = [_make_session(f"s{d}", start=T0 + timedelta(days=d)) for d in range(3)]
    patterns = asyncio.run(find_sequential_patterns(sessions, SemanticOracle()))
    assert patterns[0].semantic_theme == "dev workflow"


# ── Topic ────────────────────────────────────────────────────


def test_topic_requires_two_sessions():
    sessions = [
        _make_session("s1"),
        _make_session("s2", start=T0 + timedelta(days=1)),
        _make_session("s3", steps=[("shopping", "shoes", "nike", "https://nike.com")]),
    ]
    topics = asyncio.run(find_topic_patterns(sessions, SemanticOracle()))
    assert len(topics) == 1
    t = topics[0]
    assert t.pattern_id == "topic-dev"
    assert t.main_category == "dev"
    assert t.subcategories == ["docs", "qa"]
    assert t.brands == ["github", "stackoverflow"]
    assert t.pages_seen == 4
    assert t.total_time == 120_000
    assert t.last_occurrence == sessions[1].end_time
    assert t.semantic_summary == "Researching dev"
    assert t.key_insights == []


def test_topics_limited_to_top_by_session_count():
    sessions = []
    for c, count in (("a", 2), ("b", 4), ("c", 3)):
        for i in range(count):
            sessions.append(_make_session(f"{c}{i}", steps=[(c, "x", "", f"https://{c}.com/{i}")]))
    topics = asyncio.run(find_topic_patterns(sessions, SemanticOracle(), max_topics=2))
    assert [t.main_category for t in topics] == ["b", "c"]


# ── Abandonment ──────────────────────────────────────────────


def test_meaningful_analysis_filter():
    good = CompletionAnalysis(intent="Comparing wireless headphones", progress="", suggestions=["Check REI"])
    assert is_analysis_meaningful(good)

    assert not is_analysis_meaningful(good.model_copy(update={"suggestions": []}))
    assert not is_analysis_meaningful(good.model_copy(update={"intent": "Shopping"}))
    assert not is_analysis_meaningful(good.model_copy(update={"intent": "Unknown intent here"}))
    assert not is_analysis_meaningful(good.model_copy(update={"progress": "Unclear what happened"}))
    assert not is_analysis_meaningful(good.model_copy(update={"progress": "N/A"}))


def test_abandoned_session_detected():
    session = _make_session("s1", steps=DEV_STEPS[:1], gap_seconds=45, extra_unanalyzed=1)
    oracle = StubOracle()
    patterns = asyncio.run(find_abandoned_tasks([session], oracle))
    assert len(patterns) == 1
    p = patterns[0]
    assert p.pattern_id == "abandoned-s1"
    assert p.intent == "Comparing wireless headphones for running"
    assert p.completion_score == 0.3
    assert p.last_occurrence == session.end_time


def test_abandonment_candidates_filtered():
    too_short = _make_session("short", gap_seconds=10)
    single = _make_session("single", steps=DEV_STEPS[:1])
    unanalyzed = _make_session("none", steps=[], extra_unanalyzed=3)
    oracle = StubOracle()
    patterns = asyncio.run(find_abandoned_tasks([too_short, single, unanalyzed], oracle))
    assert patterns == []
    assert oracle.completion_calls == 0


def test_completed_or_boilerplate_sessions_not_abandoned():
    session = _make_session("s1")
    done = StubOracle(CompletionAnalysis(intent="Reading the docs for a bug", completion_score=0.8, suggestions=["x"]))
    assert asyncio.run(find_abandoned_tasks([session], done)) == []

    fallback = StubOracle(CompletionAnalysis(intent="Unknown", progress="Unknown", reason="Analysis failed", completion_score=0.5))
    assert asyncio.run(find_abandoned_tasks([session], fallback)) == []


def test_abandonment_limited_to_most_recent():
    sessions = [_make_session(f"s{d}", start=T0 + timedelta(days=d)) for d in range(5)]
    oracle = StubOracle()
    patterns = asyncio.run(find_abandoned_tasks(sessions, oracle, max_candidates=2))
    assert oracle.completion_calls == 2
    assert [p.session.session_id for p in patterns] == ["s4", "s3"]


# ── Temporal ─────────────────────────────────────────────────


def _visit(ts: datetime, url: str = "https://example.com/feed", analyzed: bool = True) -> EnrichedActivity:
    aid = f"v-{ts.isoformat()}"
    return EnrichedActivity(
        activity=Activity(id=aid, timestamp=ts, data=ActivityData(url=url)),
        analysis=ContentAnalysis(analysis_id=f"an-{aid}", url=url, category="news") if analyzed else None,
    )


def test_three_mondays_make_a_habit():
    visits = [_visit(datetime(2024, 1, 1 + 7 * w, 9, 15, tzinfo=timezone.utc)) for w in range(3)]
    patterns = find_temporal_patterns(visits)
    assert len(patterns) == 1
    p = patterns[0]
    assert (p.day_of_week, p.hour, p.domain) == (1, 9, "example.com")
    assert p.frequency == 3
    assert p.confidence == 0.3
    assert p.pattern_id == "temporal-1-9-example.com"
    assert p.last_occurrence == datetime(2024, 1, 15, 9, 15, tzinfo=timezone.utc)


def test_habit_needs_three_analyzed_visits():
    visits = [_visit(datetime(2024, 1, 1 + 7 * w, 9, tzinfo=timezone.utc)) for w in range(2)]
    visits.append(_visit(datetime(2024, 1, 15, 9, tzinfo=timezone.utc), analyzed=False))
    assert find_temporal_patterns(visits) == []


def test_sunday_is_day_zero():
    visits = [_visit(datetime(2024, 1, 7 + 7 * w, 20, tzinfo=timezone.utc)) for w in range(3)]
    assert find_temporal_patterns(visits)[0].day_of_week == 0


def test_habit_buckets_use_timezone():
    # 02:00 UTC on a Tuesday is 21:00 Monday in New York (EST).
    visits = [_visit(datetime(2024, 1, 2 + 7 * w, 2, tzinfo=timezone.utc)) for w in range(3)]
    p = find_temporal_patterns(visits, "America/New_York")[0]
    assert (p.day_of_week, p.hour) == (1, 21)


def test_confidence_not_capped():
    visits = [_visit(datetime(2024, 1, 1 + 7 * w, 9, m, tzinfo=timezone.utc)) for w in range(3) for m in range(5)]
    assert find_temporal_patterns(visits)[0].confidence == 1.5


# ── All detectors ────────────────────────────────────────────


def test_detect_all_patterns_runs_every_detector():
    sessions = [_make_session(f"s{d}", start=T0 + timedelta(days=7 * d)) for d in range(3)]
    activities = [a for s in sessions for a in s.activities]
    patterns = asyncio.run(detect_all_patterns(sessions, activities, StubOracle()))
    kinds = sorted({p.type for p in patterns})
    assert kinds == ["abandoned", "research_topic", "sequential", "temporal"]
    assert sum(isinstance(p, SequentialPattern) for p in patterns) == 1
    assert sum(isinstance(p, TemporalPattern) for p in patterns) == 2  # github + stackoverflow hosts
