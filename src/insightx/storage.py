"""Local JSON storage for InsightX data.

File-based, one directory per user, shared with the host browser:

    <data_dir>/users/user-data/<user_id>/
        raw-activity/YYYY-MM-DD.json       append-only activity partitions (read)
        content-analysis/YYYY-MM-DD.json   content analyses (read)
        insights.json                      list[ProactiveInsight]
        insights-metadata.json             GenerationMetadata
        saved-workflows.json               list[SavedWorkflow]
        reminders.json                     list[Reminder]

Every document is fully rewritten on save. Reads treat a missing or corrupt
file as "no data yet"; writes let OSError propagate so a lost mutation is
never silent.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import date
from pathlib import Path
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from insightx.models import (
    STATUS_PRIORITY,
    Activity,
    ContentAnalysis,
    GenerationMetadata,
    ProactiveInsight,
    Reminder,
    SavedWorkflow,
)

logger = structlog.get_logger()

DEFAULT_PARTITIONS = 30

M = TypeVar("M", bound=BaseModel)


def dedupe_insights(insights: Iterable[ProactiveInsight]) -> list[ProactiveInsight]:
    """Collapse insights by id, keeping the most progressed status.

    Ties keep the first record seen; order of first appearance is preserved.
    """
    by_id: dict[str, ProactiveInsight] = {}
    for insight in insights:
        existing = by_id.get(insight.id)
        if existing is None or STATUS_PRIORITY[insight.status] > STATUS_PRIORITY[existing.status]:
            by_id[insight.id] = insight
    return list(by_id.values())


class UserStore:
    """File-based storage for one user's insight engine state."""

    def __init__(self, data_dir: str | Path, user_id: str) -> None:
        self.user_id = user_id
        self.data_dir = Path(data_dir)
        self.user_dir = self.data_dir / "users" / "user-data" / user_id
        self.activity_dir = self.user_dir / "raw-activity"
        self.analysis_dir = self.user_dir / "content-analysis"
        self.insights_path = self.user_dir / "insights.json"
        self.metadata_path = self.user_dir / "insights-metadata.json"
        self.workflows_path = self.user_dir / "saved-workflows.json"
        self.reminders_path = self.user_dir / "reminders.json"

    # ── Activities & content analyses ─────────────────────────

    def load_activities(self, partitions: int = DEFAULT_PARTITIONS) -> list[Activity]:
        """Load the most recent partitions, sorted ascending by timestamp."""
        activities = self._load_partitions(self.activity_dir, Activity, partitions)
        activities.sort(key=lambda a: a.timestamp)
        return activities

    def load_content_analyses(self, partitions: int = DEFAULT_PARTITIONS) -> list[ContentAnalysis]:
        return self._load_partitions(self.analysis_dir, ContentAnalysis, partitions)

    def append_activities(self, activities: list[Activity], d: date) -> Path:
        """Append activities to a day's partition (the collector's write path)."""
        return self._append_partition(self.activity_dir, d, activities)

    def append_content_analyses(self, analyses: list[ContentAnalysis], d: date) -> Path:
        return self._append_partition(self.analysis_dir, d, analyses)

    # ── Insights ──────────────────────────────────────────────

    def load_insights(self) -> list[ProactiveInsight]:
        """Load insights, migrating legacy status fields and collapsing duplicate ids."""
        loaded = self._validate_all(self._load_json_list(self.insights_path), ProactiveInsight)
        deduplicated = dedupe_insights(loaded)
        if len(deduplicated) < len(loaded):
            logger.info(
                "insights_deduplicated_on_load",
                user_id=self.user_id,
                removed=len(loaded) - len(deduplicated),
            )
        return deduplicated

    def save_insights(self, insights: list[ProactiveInsight]) -> Path:
        deduplicated = dedupe_insights(insights)
        if len(deduplicated) < len(insights):
            logger.info(
                "insights_deduplicated_on_save",
                user_id=self.user_id,
                removed=len(insights) - len(deduplicated),
            )
        self._save_json(self.insights_path, [i.to_json_dict() for i in deduplicated])
        logger.info("insights_saved", user_id=self.user_id, count=len(deduplicated))
        return self.insights_path

    # ── Generation metadata ───────────────────────────────────

    def load_metadata(self) -> GenerationMetadata | None:
        raw = self._load_json(self.metadata_path)
        if not isinstance(raw, dict):
            return None
        try:
            return GenerationMetadata.model_validate(raw)
        except ValidationError as e:
            logger.warning("metadata_invalid", user_id=self.user_id, error=str(e))
            return None

    def save_metadata(self, metadata: GenerationMetadata) -> Path:
        self._save_json(self.metadata_path, metadata.to_json_dict())
        return self.metadata_path

    # ── Saved workflows ───────────────────────────────────────

    def load_workflows(self) -> list[SavedWorkflow]:
        return self._validate_all(self._load_json_list(self.workflows_path), SavedWorkflow)

    def save_workflows(self, workflows: list[SavedWorkflow]) -> Path:
        self._save_json(self.workflows_path, [w.to_json_dict() for w in workflows])
        logger.info("workflows_saved", user_id=self.user_id, count=len(workflows))
        return self.workflows_path

    # ── Reminders ─────────────────────────────────────────────

    def load_reminders(self) -> list[Reminder]:
        return self._validate_all(self._load_json_list(self.reminders_path), Reminder)

    def save_reminders(self, reminders: list[Reminder]) -> Path:
        self._save_json(self.reminders_path, [r.to_json_dict() for r in reminders])
        return self.reminders_path

    # ── Helpers ────────────────────────────────────────────────

    def _load_partitions(self, directory: Path, model: type[M], partitions: int) -> list[M]:
        if not directory.is_dir():
            return []
        files = sorted(directory.glob("*.json"), reverse=True)[:partitions]
        records: list[M] = []
        for path in files:
            raw = self._load_json(path)
            if not isinstance(raw, list):
                logger.warning("partition_not_a_list", path=str(path))
                continue
            records.extend(self._validate_all(raw, model))
        return records

    def _append_partition(self, directory: Path, d: date, records: list[Any]) -> Path:
        path = directory / f"{d.isoformat()}.json"
        existing = self._load_json_list(path)
        existing.extend(r.to_json_dict() for r in records)
        self._save_json(path, existing)
        return path

    def _validate_all(self, raw: list[dict[str, Any]], model: type[M]) -> list[M]:
        records: list[M] = []
        for item in raw:
            try:
                records.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning("record_skipped", model=model.__name__, error=str(e))
        return records

    def _load_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error("json_read_failed", path=str(path), error=str(e))
            return None

    def _load_json_list(self, path: Path) -> list[dict[str, Any]]:
        data = self._load_json(path)
        return data if isinstance(data, list) else []

    def _save_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, default=str))
