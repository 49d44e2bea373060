"""Semantic oracle — the LLM calls the mining engine relies on.

Five call sites, each with a fixed prompt, an expected JSON shape and a
documented fallback:

    decide_session_boundary  NEW/SAME between two analyzed pages
    name_workflow            3-5 word theme for a sequential pattern
    summarize_topic          research goal + key insights for a topic
    analyze_completion       did the session's task get finished?
    check_relatedness        is a new session continuing an abandoned task?

Responses go through ``decode_json``: strict decode against the site's schema,
or an explicit failure. A failed call never raises out of this module; the
caller always gets the site's fallback value instead.
"""

from __future__ import annotations

import json
import re
from typing import Any, Sequence, TypeVar

import structlog
from pydantic import BaseModel, ValidationError, field_validator

from insightx.models import BrowsingSession, CamelModel, ContentAnalysis, WorkflowStep

logger = structlog.get_logger()

DEFAULT_MODEL = "claude-haiku-4-5"
FALLBACK_CONFIDENCE = 0.3

_EMBEDDED_OBJECT = re.compile(r"\{[\s\S]*\}")

T = TypeVar("T", bound=BaseModel)


# ── Response schemas ─────────────────────────────────────────


def _clamp_unit(v: Any) -> float:
    try:
        value = float(v)
    except (TypeError, ValueError):
        raise ValueError(f"not a number: {v!r}")
    return min(max(value, 0.0), 1.0)


class BoundaryDecision(CamelModel):
    decision: str = "SAME"  # "NEW" | "SAME"
    reason: str = "No reason provided"
    confidence: float = 0.5

    @field_validator("decision", mode="before")
    @classmethod
    def _normalize_decision(cls, v: Any) -> str:
        return "NEW" if str(v).strip().upper() == "NEW" else "SAME"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return _clamp_unit(v)

    @property
    def is_new(self) -> bool:
        return self.decision == "NEW"


class TopicSummary(CamelModel):
    summary: str = "Summary unavailable"
    insights: list[str] = []


class CompletionAnalysis(CamelModel):
    intent: str = "Unknown intent"
    progress: str = ""
    reason: str = ""
    completion_score: float = 0.5
    suggestions: list[str] = []

    @field_validator("completion_score", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return _clamp_unit(v)


class RelatednessCheck(CamelModel):
    is_related: bool = False
    reason: str = ""
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return _clamp_unit(v)


COMPLETION_FALLBACK = CompletionAnalysis(
    intent="Unknown",
    progress="Unknown",
    reason="Analysis failed",
    completion_score=0.5,
    suggestions=[],
)


# ── Strict decode ────────────────────────────────────────────


class DecodeResult(BaseModel):
    ok: bool
    value: Any = None
    error: str = ""


def decode_json(text: str, schema: type[BaseModel]) -> DecodeResult:
    """Decode an LLM response into ``schema`` or report why it could not be.

    Accepts a bare JSON object, one wrapped in a markdown code fence, or one
    embedded in surrounding prose.
    """
    stripped = (text or "").strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[-1]
        stripped = stripped.rsplit("```", 1)[0].strip()

    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        match = _EMBEDDED_OBJECT.search(stripped)
        if not match:
            return DecodeResult(ok=False, error="no JSON object in response")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            return DecodeResult(ok=False, error=f"invalid JSON: {e}")

    if not isinstance(parsed, dict):
        return DecodeResult(ok=False, error=f"expected object, got {type(parsed).__name__}")
    try:
        return DecodeResult(ok=True, value=schema.model_validate(parsed))
    except ValidationError as e:
        return DecodeResult(ok=False, error=str(e))


# ── Prompts ──────────────────────────────────────────────────

BOUNDARY_SYSTEM_PROMPT = """You segment a user's browsing into sessions. Given the
previous and the current page, decide whether the user switched context.

Guidelines:
- Different top-level categories usually mean NEW (tech -> shopping).
- Different pages of the same brand or product mean SAME.
- Comparing products or reading on the same topic means SAME.
- A language switch often means NEW, unless the content is multilingual.
- Closely related subcategories mean SAME.

Respond in JSON only:
{"decision": "NEW" | "SAME", "reason": "one sentence", "confidence": 0.0}"""

THEME_SYSTEM_PROMPT = """You name recurring browsing workflows. Given the steps of a
workflow, answer with a short, memorable name of 3 to 5 words describing what
the user accomplishes (e.g. "Daily news catchup", "Weekly expense reporting").
Output only the name."""

TOPIC_SYSTEM_PROMPT = """You analyze what a user is researching. Given the pages they
visited within one category, state their research goal and the key findings.
Be specific and actionable.

Respond in JSON only:
{"summary": "one sentence research goal", "insights": ["finding 1", "finding 2", "finding 3"]}"""

COMPLETION_SYSTEM_PROMPT = """You judge whether a user finished the task behind a browsing
session. Infer:
1. intent: what they were trying to accomplish
2. progress: what they got done
3. reason: why the task looks completed or abandoned
4. completionScore: 0.0 = clearly abandoned, 1.0 = clearly completed
5. suggestions: if abandoned, 2-3 concrete ways to help them resume

Respond in JSON only:
{"intent": "string", "progress": "string", "reason": "string",
 "completionScore": 0.0, "suggestions": ["string"]}"""

RELATEDNESS_SYSTEM_PROMPT = """You decide whether a user resumed an abandoned task. Given
the abandoned task and a new browsing session, is the user continuing the same
goal? Consider the same product or service, the same brand or its competitors,
the same problem, or a logical continuation of the abandoned flow.

Respond in JSON only:
{"isRelated": true | false, "reason": "one sentence", "confidence": 0.0}"""


def _describe_page(a: ContentAnalysis, limit: int = 200) -> str:
    brand = a.brand or "N/A"
    return (
        f"- URL: {a.url}\n"
        f"- Title: {a.raw_text.title}\n"
        f"- Category: {a.category} / {a.subcategory}\n"
        f"- Brand: {brand}\n"
        f"- Page: {a.page_description[:limit]}\n"
        f"- Screenshot: {a.screenshot_description[:limit]}\n"
        f"- Language: {a.primary_language}"
    )


def _brief(a: ContentAnalysis, limit: int = 100) -> str:
    brand = f" ({a.brand})" if a.brand else ""
    return f"- {a.category}/{a.subcategory}{brand}\n  {a.page_description[:limit]}"


# ── Oracle ───────────────────────────────────────────────────


class SemanticOracle:
    """LLM-backed classifier/summarizer with per-call-site fallbacks.

    ``llm_client`` is an ``anthropic.AsyncAnthropic`` or an OpenAI-compatible
    async client. With no client every call degrades to its fallback, which
    keeps the pipeline usable offline.
    """

    def __init__(self, llm_client: Any = None, model: str = DEFAULT_MODEL) -> None:
        self.llm_client = llm_client
        self.model = model

    async def _complete(self, system: str, content: str, max_tokens: int = 500) -> str:
        if self.llm_client is None:
            raise RuntimeError("no LLM client configured")

        # Support both Anthropic and OpenAI interfaces
        if hasattr(self.llm_client, "messages"):
            response = await self.llm_client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
            return response.content[0].text

        response = await self.llm_client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": content},
            ],
        )
        return response.choices[0].message.content

    async def _structured(self, site: str, system: str, content: str, schema: type[T]) -> T | None:
        try:
            text = await self._complete(system, content)
        except Exception as e:
            logger.warning("oracle_call_failed", site=site, error=str(e))
            return None

        result = decode_json(text, schema)
        if not result.ok:
            logger.warning("oracle_decode_failed", site=site, error=result.error)
            return None
        return result.value

    async def decide_session_boundary(
        self, prev: ContentAnalysis, curr: ContentAnalysis
    ) -> BoundaryDecision:
        content = f"Previous page:\n{_describe_page(prev)}\n\nCurrent page:\n{_describe_page(curr)}"
        decision = await self._structured("boundary", BOUNDARY_SYSTEM_PROMPT, content, BoundaryDecision)
        if decision is not None:
            return decision
        return BoundaryDecision(
            decision="SAME" if prev.category == curr.category else "NEW",
            reason="Fallback: category comparison",
            confidence=FALLBACK_CONFIDENCE,
        )

    async def name_workflow(self, steps: Sequence[WorkflowStep], frequency: int) -> str:
        fallback = f"{steps[0].category} workflow" if steps else "Browsing workflow"
        lines = []
        for i, s in enumerate(steps, 1):
            brand = f" ({s.brand})" if s.brand else ""
            lines.append(f"{i}. {s.category}/{s.subcategory}{brand}\n   {s.page_description_summary}")
        content = "Steps:\n" + "\n".join(lines) + f"\n\nRepeated {frequency} times."

        try:
            text = await self._complete(THEME_SYSTEM_PROMPT, content, max_tokens=50)
        except Exception as e:
            logger.warning("oracle_call_failed", site="theme", error=str(e))
            return fallback

        theme = (text or "").strip().replace('"', "").replace("'", "")
        return theme or fallback

    async def summarize_topic(
        self, category: str, pages: Sequence[ContentAnalysis]
    ) -> TopicSummary:
        lines = [f"User has been researching: {category}", "", "Pages visited:"]
        for i, p in enumerate(pages[:10], 1):
            brand = f" - {p.brand}" if p.brand else ""
            lines.append(f"{i}. {p.subcategory}{brand}\n   {p.page_description[:150]}")
        if len(pages) > 10:
            lines.append(f"... and {len(pages) - 10} more pages")

        summary = await self._structured("topic", TOPIC_SYSTEM_PROMPT, "\n".join(lines), TopicSummary)
        if summary is not None:
            summary.insights = summary.insights[:3]
            return summary
        return TopicSummary(summary=f"Researching {category}", insights=[])

    async def analyze_completion(self, session: BrowsingSession) -> CompletionAnalysis:
        lines = ["Session timeline:"]
        i = 0
        for ea in session.activities:
            if ea.analysis is None:
                continue
            i += 1
            a = ea.analysis
            brand = f" ({a.brand})" if a.brand else ""
            lines.append(
                f"{i}. {a.category}/{a.subcategory}{brand}\n"
                f"   Page: {a.page_description[:150]}\n"
                f"   Time: {round(ea.activity.data.time_on_page / 1000)}s\n"
                f"   Exit: {ea.activity.data.exit_method or 'unknown'}"
            )
        lines.append(f"\nTotal duration: {round(session.duration / 60_000)} minutes")

        analysis = await self._structured(
            "completion", COMPLETION_SYSTEM_PROMPT, "\n".join(lines), CompletionAnalysis
        )
        if analysis is not None:
            return analysis
        return COMPLETION_FALLBACK.model_copy(deep=True)

    async def check_relatedness(
        self,
        intent: str,
        abandoned_pages: Sequence[ContentAnalysis],
        new_pages: Sequence[ContentAnalysis],
    ) -> RelatednessCheck:
        content = (
            f"Abandoned task:\nIntent: {intent}\nPages visited:\n"
            + "\n".join(_brief(a) for a in abandoned_pages[:3])
            + "\n\nNew browsing session:\nPages visited:\n"
            + "\n".join(_brief(a) for a in new_pages[:3])
        )
        check = await self._structured("relatedness", RELATEDNESS_SYSTEM_PROMPT, content, RelatednessCheck)
        return check if check is not None else RelatednessCheck()
