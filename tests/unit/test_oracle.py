"""Tests for the semantic oracle: strict decoding and per-call-site fallbacks.

No network: fake Anthropic/OpenAI-shaped clients return canned text.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from insightx.inference.oracle import (
    COMPLETION_FALLBACK,
    FALLBACK_CONFIDENCE,
    BoundaryDecision,
    CompletionAnalysis,
    RelatednessCheck,
    SemanticOracle,
    TopicSummary,
    decode_json,
)
from insightx.models import (
    Activity,
    ActivityData,
    BrowsingSession,
    ContentAnalysis,
    EnrichedActivity,
    WorkflowStep,
)

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


class _FakeAnthropicMessages:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(content=[SimpleNamespace(text=reply)])


class FakeAnthropic:
    def __init__(self, *replies):
        self.messages = _FakeAnthropicMessages(replies)


class _FakeOpenAICompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.replies.pop(0)))])


class FakeOpenAI:
    def __init__(self, *replies):
        self.chat = SimpleNamespace(completions=_FakeOpenAICompletions(replies))


def _make_analysis(category: str = "tech", subcategory: str = "docs", brand: str = "") -> ContentAnalysis:
    return ContentAnalysis(
        analysis_id=f"an-{category}-{subcategory}",
        url=f"https://{category}.example.com/{subcategory}",
        category=category,
        subcategory=subcategory,
        brand=brand,
        page_description=f"A {subcategory} page about {category}",
    )


def _make_session() -> BrowsingSession:
    activities = [
        EnrichedActivity(
            activity=Activity(id=f"a{i}", timestamp=T0 + timedelta(minutes=i), data=ActivityData(url=f"https://x.com/{i}")),
            analysis=_make_analysis(subcategory=f"page{i}"),
        )
        for i in range(2)
    ]
    return BrowsingSession(session_id="s1", start_time=T0, end_time=T0 + timedelta(minutes=1), duration=60_000, activities=activities)


# ── decode_json ──────────────────────────────────────────────


def test_decode_plain_json():
    result = decode_json('{"decision": "NEW", "reason": "topic change", "confidence": 0.9}', BoundaryDecision)
    assert result.ok
    assert result.value.is_new
    assert result.value.confidence == 0.9


def test_decode_fenced_json():
    text = '```json\n{"summary": "Comparing laptops", "insights": ["a", "b"]}\n```'
    result = decode_json(text, TopicSummary)
    assert result.ok
    assert result.value.summary == "Comparing laptops"


def test_decode_embedded_json():
    text = 'Sure! Here is my answer: {"isRelated": true, "reason": "same brand", "confidence": 0.8} Hope it helps.'
    result = decode_json(text, RelatednessCheck)
    assert result.ok
    assert result.value.is_related is True


def test_decode_failures_are_reported_not_raised():
    assert not decode_json("no json here", BoundaryDecision).ok
    assert not decode_json("[1, 2, 3]", BoundaryDecision).ok
    bad = decode_json('{"completionScore": "high"}', CompletionAnalysis)
    assert not bad.ok
    assert bad.error


def test_decode_normalizes_and_clamps():
    result = decode_json('{"decision": "new", "confidence": 1.7}', BoundaryDecision)
    assert result.value.decision == "NEW"
    assert result.value.confidence == 1.0

    result = decode_json('{"decision": "maybe"}', BoundaryDecision)
    assert result.value.decision == "SAME"


# ── Boundary ─────────────────────────────────────────────────


def test_boundary_uses_llm_decision():
    client = FakeAnthropic('{"decision": "NEW", "reason": "switched to shopping", "confidence": 0.85}')
    oracle = SemanticOracle(client)
    decision = asyncio.run(oracle.decide_session_boundary(_make_analysis("tech"), _make_analysis("tech")))
    assert decision.is_new
    assert decision.confidence == 0.85
    assert client.messages.calls[0]["model"] == oracle.model


def test_boundary_fallback_without_client():
    oracle = SemanticOracle()
    same = asyncio.run(oracle.decide_session_boundary(_make_analysis("tech"), _make_analysis("tech", "blog")))
    assert not same.is_new
    assert same.confidence == FALLBACK_CONFIDENCE

    new = asyncio.run(oracle.decide_session_boundary(_make_analysis("tech"), _make_analysis("shopping")))
    assert new.is_new
    assert new.confidence == FALLBACK_CONFIDENCE


def test_boundary_fallback_on_malformed_response():
    oracle = SemanticOracle(FakeAnthropic("I think it is the same session"))
    decision = asyncio.run(oracle.decide_session_boundary(_make_analysis("tech"), _make_analysis("news")))
    assert decision.is_new
    assert decision.confidence == FALLBACK_CONFIDENCE


def test_boundary_fallback_on_transport_error():
    oracle = SemanticOracle(FakeAnthropic(ConnectionError("offline")))
    decision = asyncio.run(oracle.decide_session_boundary(_make_analysis("tech"), _make_analysis("tech")))
    assert not decision.is_new


def test_openai_shaped_client_supported():
    client = FakeOpenAI('{"decision": "SAME", "reason": "same docs", "confidence": 0.7}')
    decision = asyncio.run(SemanticOracle(client, model="gpt-4o-mini").decide_session_boundary(
        _make_analysis(), _make_analysis()
    ))
    assert not decision.is_new
    assert decision.confidence == 0.7
    call = client.chat.completions.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["messages"][0]["role"] == "system"


# ── Themes, topics, completion, relatedness ──────────────────


def test_name_workflow_strips_quotes():
    oracle = SemanticOracle(FakeAnthropic('"Daily docs lookup"\n'))
    steps = [WorkflowStep(category="dev", subcategory="docs"), WorkflowStep(category="dev", subcategory="qa")]
    assert asyncio.run(oracle.name_workflow(steps, 3)) == "Daily docs lookup"


def test_name_workflow_fallback():
    steps = [WorkflowStep(category="dev", subcategory="docs")]
    assert asyncio.run(SemanticOracle().name_workflow(steps, 2)) == "dev workflow"


def test_summarize_topic_keeps_three_insights():
    reply = '{"summary": "Choosing a laptop", "insights": ["one", "two", "three", "four"]}'
    summary = asyncio.run(SemanticOracle(FakeAnthropic(reply)).summarize_topic("tech", [_make_analysis()]))
    assert summary.summary == "Choosing a laptop"
    assert summary.insights == ["one", "two", "three"]


def test_summarize_topic_fallback():
    summary = asyncio.run(SemanticOracle().summarize_topic("travel", [_make_analysis("travel")]))
    assert summary.summary == "Researching travel"
    assert summary.insights == []


def test_analyze_completion_parses_camel_case():
    reply = (
        '{"intent": "Comparing wireless headphones", "progress": "Read two reviews",'
        ' "reason": "Left before checkout", "completionScore": 0.3, "suggestions": ["Check REI"]}'
    )
    analysis = asyncio.run(SemanticOracle(FakeAnthropic(reply)).analyze_completion(_make_session()))
    assert analysis.completion_score == 0.3
    assert analysis.suggestions == ["Check REI"]


def test_analyze_completion_fallback():
    analysis = asyncio.run(SemanticOracle().analyze_completion(_make_session()))
    assert analysis == COMPLETION_FALLBACK
    assert analysis.completion_score == 0.5
    assert analysis.intent == "Unknown"


def test_check_relatedness_parsed_and_fallback():
    related = asyncio.run(SemanticOracle(FakeAnthropic('{"isRelated": true, "reason": "same", "confidence": 0.9}')).check_relatedness(
        "Buy headphones", [_make_analysis()], [_make_analysis()]
    ))
    assert related.is_related and related.confidence == 0.9

    fallback = asyncio.run(SemanticOracle().check_relatedness("Buy headphones", [_make_analysis()], [_make_analysis()]))
    assert fallback.is_related is False
