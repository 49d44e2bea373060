"""Core domain models for InsightX.

Everything the engine reads (activities, content analyses), derives (sessions,
patterns) or persists (insights, metadata, saved workflows, reminders).

Persisted documents are shared with the host browser, which writes camelCase
JSON. The models therefore accept and emit camelCase aliases while Python code
works with snake_case attributes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are read as UTC so every comparison is tz-aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Timestamp = Annotated[datetime, AfterValidator(_as_utc)]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class CamelModel(BaseModel):
    """Base model that reads and writes the host's camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ── Inputs (read-only, produced by the collector / content analyzer) ──────


class ActivityData(CamelModel):
    """Free-form event payload. Navigational events carry url + title."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    url: Optional[str] = None
    title: Optional[str] = None
    time_on_page: float = 0.0  # milliseconds
    exit_method: str = ""


class Activity(CamelModel):
    """A single recorded browser event."""

    id: str
    user_id: str = ""
    timestamp: Timestamp
    session_id: str = ""
    type: str = "page_visit"
    data: ActivityData = Field(default_factory=ActivityData)


class RawText(CamelModel):
    title: str = ""
    meta_description: str = ""
    full_text: str = ""


class ContentAnalysis(CamelModel):
    """AI-derived description of a visited page.

    One analysis may cover several activities (deduplicated page visits),
    linked through ``activity_ids``.
    """

    analysis_id: str
    activity_ids: list[str] = Field(default_factory=list)
    user_id: str = ""
    url: str = ""
    page_description: str = ""
    raw_text: RawText = Field(default_factory=RawText)
    screenshot_description: str = ""
    category: str = ""
    subcategory: str = ""
    brand: str = ""
    primary_language: str = ""
    languages: list[str] = Field(default_factory=list)

    @field_validator(
        "url", "page_description", "screenshot_description",
        "category", "subcategory", "brand", "primary_language",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("raw_text", mode="before")
    @classmethod
    def _wrap_plain_text(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, str):
            return {"full_text": v}
        return v


# ── Derived (recomputed every run) ────────────────────────────


class EnrichedActivity(CamelModel):
    """An activity joined to its content analysis, if one exists."""

    activity: Activity
    analysis: Optional[ContentAnalysis] = None

    @property
    def url(self) -> str:
        """Activity URL preferred over the analysis URL."""
        if self.activity.data.url:
            return self.activity.data.url
        return self.analysis.url if self.analysis else ""


class BrowsingSession(CamelModel):
    """A contiguous run of activities judged to be one browsing episode."""

    session_id: str
    user_id: str = ""
    start_time: Timestamp
    end_time: Timestamp
    duration: float = 0.0  # milliseconds
    activities: list[EnrichedActivity] = Field(default_factory=list)
    primary_category: Optional[str] = None

    @property
    def analyzed(self) -> list[ContentAnalysis]:
        return [a.analysis for a in self.activities if a.analysis is not None]


# ── Patterns ──────────────────────────────────────────────────


class WorkflowStep(CamelModel):
    category: str = ""
    subcategory: str = ""
    brand: str = ""
    page_description_summary: str = ""
    screenshot_description_summary: str = ""
    url: str = ""
    title: str = ""


class SequentialPattern(CamelModel):
    """A repeated multi-step workflow."""

    type: Literal["sequential"] = "sequential"
    pattern_id: str
    steps: list[WorkflowStep] = Field(default_factory=list)
    frequency: int = 0
    avg_duration: float = 0.0  # milliseconds
    last_occurrence: Timestamp
    semantic_theme: str = ""
    session_ids: list[str] = Field(default_factory=list)
    score: float = 0.0


class TopicPattern(CamelModel):
    """Sustained research on one category across several sessions."""

    type: Literal["research_topic"] = "research_topic"
    pattern_id: str
    main_category: str
    subcategories: list[str] = Field(default_factory=list)
    brands: list[str] = Field(default_factory=list)
    semantic_summary: str = ""
    sessions: list[BrowsingSession] = Field(default_factory=list)
    total_time: float = 0.0  # milliseconds
    pages_seen: int = 0
    key_insights: list[str] = Field(default_factory=list)
    last_occurrence: Timestamp
    score: float = 0.0


class AbandonmentPattern(CamelModel):
    """A session whose task looks unfinished."""

    type: Literal["abandoned"] = "abandoned"
    pattern_id: str
    session: BrowsingSession
    intent: str = ""
    progress_made: str = ""
    why_abandoned: str = ""
    completion_score: float = 0.5
    suggestions: list[str] = Field(default_factory=list)
    last_occurrence: Timestamp
    score: float = 0.0


class TemporalPattern(CamelModel):
    """A time-of-day habit. ``day_of_week`` is 0=Sunday .. 6=Saturday."""

    type: Literal["temporal"] = "temporal"
    pattern_id: str
    day_of_week: int
    hour: int
    domain: str
    frequency: int = 0
    confidence: float = 0.0  # frequency / 10, not capped
    last_occurrence: Timestamp
    score: float = 0.0


Pattern = Annotated[
    Union[SequentialPattern, TopicPattern, AbandonmentPattern, TemporalPattern],
    Field(discriminator="type"),
]


# ── Insights ──────────────────────────────────────────────────


class InsightType(str, Enum):
    WORKFLOW = "workflow"
    RESEARCH = "research"
    ABANDONED = "abandoned"
    HABIT = "habit"


class ActionType(str, Enum):
    OPEN_URLS = "open_urls"
    RESUME_RESEARCH = "resume_research"
    REMIND = "remind"
    CREATE_WORKFLOW = "create_workflow"


class InsightStatus(str, Enum):
    """Monotonic lifecycle: pending -> in_progress -> completed."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


STATUS_PRIORITY = {
    InsightStatus.PENDING: 1,
    InsightStatus.IN_PROGRESS: 2,
    InsightStatus.COMPLETED: 3,
}


class ProactiveInsight(CamelModel):
    """A user-facing, actionable surfacing of one pattern."""

    id: str
    user_id: str = ""
    type: InsightType
    title: str
    description: str = ""
    action_type: ActionType
    action_params: dict[str, Any] = Field(default_factory=dict)
    patterns: list[Pattern] = Field(default_factory=list)
    relevance_score: float = 0.0
    created_at: Timestamp
    status: InsightStatus = InsightStatus.PENDING
    last_resumed_at: Optional[Timestamp] = None
    completed_at: Optional[Timestamp] = None
    linked_session_ids: list[str] = Field(default_factory=list)
    completion_progress: Optional[float] = None
    opened_tab_urls: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_status(cls, data: Any) -> Any:
        """Fold the old actedUpon/actedUponAt pair into ``status``/``completedAt``."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        acted_upon = data.pop("actedUpon", None)
        acted_upon_at = data.pop("actedUponAt", None)
        if not data.get("status"):
            data["status"] = "completed" if acted_upon else "pending"
        if data["status"] == "completed" and acted_upon_at and not (data.get("completedAt") or data.get("completed_at")):
            data["completedAt"] = acted_upon_at
        for key in ("linkedSessionIds", "openedTabUrls", "linked_session_ids", "opened_tab_urls"):
            if data.get(key) is None:
                data.pop(key, None)
        return data

    @property
    def pattern(self) -> Optional[Pattern]:
        return self.patterns[0] if self.patterns else None

    @property
    def is_open(self) -> bool:
        return self.status != InsightStatus.COMPLETED


class GenerationMetadata(CamelModel):
    """Per-user bookkeeping that bounds incremental reprocessing."""

    user_id: str
    last_generation_timestamp: Timestamp = EPOCH
    last_activity_timestamp: Optional[Timestamp] = None
    total_insights_generated: int = 0
    total_insights_acted_upon: int = 0


# ── Saved workflows & reminders ──────────────────────────────


class SavedWorkflowStep(CamelModel):
    url: str
    title: str = ""
    category: str = ""
    subcategory: str = ""


class SavedWorkflow(CamelModel):
    """A user-promoted, replayable list of URLs."""

    id: str
    user_id: str
    name: str
    description: str = ""
    created_at: Timestamp
    created_from: str = ""
    steps: list[SavedWorkflowStep] = Field(default_factory=list)
    last_used: Optional[Timestamp] = None
    use_count: int = 0


class Reminder(CamelModel):
    """A reminder created from a habit insight."""

    id: str
    insight_id: str = ""
    user_id: str
    title: str
    description: str = ""
    action_params: dict[str, Any] = Field(default_factory=dict)
    created_at: Timestamp
    completed: bool = False
    completed_at: Optional[Timestamp] = None


class SessionTab(CamelModel):
    """A distinct URL visited in one of an insight's linked sessions."""

    url: str
    title: str = ""
    timestamp: Timestamp
    session_id: str = ""


class ActionResult(CamelModel):
    """Outcome of a user-triggered operation. Failures are returned, not raised."""

    success: bool
    message: str = ""
    error: str = ""
    completion_percentage: Optional[float] = None
    workflow: Optional[SavedWorkflow] = None
    tabs: list[SessionTab] = Field(default_factory=list)

    @classmethod
    def ok(cls, message: str = "", **kwargs: Any) -> ActionResult:
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, error: str, **kwargs: Any) -> ActionResult:
        return cls(success=False, error=error, **kwargs)
