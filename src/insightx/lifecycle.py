"""Insight lifecycle manager — incremental runs, state machine, auto-completion.

One ``InsightsManager`` per user. It owns the only in-memory copy of that
user's insights, so the host must route every call for a user through the same
instance; persisted documents are rewritten whole on each mutation.

Status only moves forward:

    pending ──> in_progress ──> completed

    pending -> in_progress   the user resumed an abandoned task, or a new
                             session was judged to continue it
    -> completed             manual confirmation, enough reopened tabs,
                             or a linked session that looks finished
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

import structlog

from insightx.config import InsightXConfig
from insightx.inference.generator import generate_insights
from insightx.inference.oracle import SemanticOracle
from insightx.inference.patterns import detect_all_patterns, hostname
from insightx.inference.ranker import rank_patterns
from insightx.inference.segmenter import enrich_activities, segment_sessions
from insightx.models import (
    EPOCH,
    AbandonmentPattern,
    ActionResult,
    ActionType,
    BrowsingSession,
    GenerationMetadata,
    InsightStatus,
    InsightType,
    ProactiveInsight,
    Reminder,
    SessionTab,
)
from insightx.notifications import AUTO_COMPLETED, CONFIRMATION_REQUEST, REMINDER_SET, InsightNotifier
from insightx.scheduler import AsyncioScheduler, Scheduler, TaskRegistry
from insightx.storage import UserStore, dedupe_insights
from insightx.tabs import SystemBrowserTabs, TabController

logger = structlog.get_logger()


class InsightsManager:
    """Everything that happens to one user's insights after detection."""

    def __init__(
        self,
        user_id: str,
        store: UserStore,
        oracle: Optional[SemanticOracle] = None,
        tabs: Optional[TabController] = None,
        notifier: Optional[InsightNotifier] = None,
        scheduler: Optional[Scheduler] = None,
        config: Optional[InsightXConfig] = None,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.oracle = oracle or SemanticOracle()
        self.tabs = tabs or SystemBrowserTabs()
        self.notifier = notifier or InsightNotifier()
        self.scheduler = scheduler or AsyncioScheduler()
        self.config = config or InsightXConfig()
        self.tasks = TaskRegistry(self.scheduler)
        self._insights: Optional[list[ProactiveInsight]] = None

    @classmethod
    def from_config(cls, user_id: str, config: InsightXConfig) -> InsightsManager:
        """Wire a manager to the local data dir, the configured LLM and the system browser."""
        try:
            client = config.get_llm_client()
        except (RuntimeError, ValueError) as e:
            logger.warning("llm_client_unavailable", error=str(e))
            client = None
        return cls(
            user_id=user_id,
            store=UserStore(config.data_dir, user_id),
            oracle=SemanticOracle(client, model=config.llm_model),
            tabs=SystemBrowserTabs(),
            notifier=InsightNotifier(desktop=True),
            config=config,
        )

    def now(self) -> datetime:
        return self.scheduler.now()

    # ── Analysis ──────────────────────────────────────────────

    async def analyze(self) -> list[ProactiveInsight]:
        """Run the mining pipeline over activities newer than the last run.

        With nothing new, the persisted insights are returned untouched and no
        oracle call is made.
        """
        metadata = self.store.load_metadata()
        since = metadata.last_generation_timestamp if metadata else EPOCH

        all_activities = self.store.load_activities(self.config.activity_partitions)
        activities = [a for a in all_activities if a.timestamp > since]
        if not activities:
            logger.info("analysis_skipped", user_id=self.user_id, reason="no_new_activities")
            self._insights = self.store.load_insights()
            return self._insights

        logger.info("analysis_started", user_id=self.user_id, activities=len(activities), since=since.isoformat())

        analyses = self.store.load_content_analyses(self.config.activity_partitions)
        enriched = enrich_activities(activities, analyses)
        sessions = await segment_sessions(enriched, self.user_id, self.oracle)

        patterns = await detect_all_patterns(
            sessions,
            enriched,
            self.oracle,
            max_topics=self.config.max_topic_candidates,
            max_abandonment_candidates=self.config.max_abandonment_candidates,
            abandonment_threshold=self.config.abandonment_threshold,
            tz=self.config.habit_timezone,
        )
        now = self.now()
        ranked = rank_patterns(patterns, now)
        new_insights = generate_insights(ranked, self.user_id, self.config.top_n_insights, now)

        existing = await self._relink_sessions(self.store.load_insights(), sessions)
        active = [i for i in existing if i.status != InsightStatus.PENDING]

        insights = dedupe_insights([*new_insights, *active])
        self._insights = insights
        self.store.save_insights(insights)

        last_activity = all_activities[-1].timestamp
        self.store.save_metadata(GenerationMetadata(
            user_id=self.user_id,
            last_generation_timestamp=last_activity,
            last_activity_timestamp=last_activity,
            total_insights_generated=(metadata.total_insights_generated if metadata else 0) + len(new_insights),
            total_insights_acted_upon=sum(1 for i in insights if i.status == InsightStatus.COMPLETED),
        ))

        logger.info(
            "analysis_complete",
            user_id=self.user_id,
            sessions=len(sessions),
            patterns=len(patterns),
            new_insights=len(new_insights),
            kept=len(active),
        )
        return insights

    async def get_insights(self) -> list[ProactiveInsight]:
        """Current insights; analyzes only when nothing has been stored yet."""
        if self._insights is not None:
            return self._insights
        stored = self.store.load_insights()
        if stored:
            self._insights = stored
            return stored
        return await self.analyze()

    async def get_insight(self, insight_id: str) -> Optional[ProactiveInsight]:
        for insight in await self.get_insights():
            if insight.id == insight_id:
                return insight
        return None

    def _save(self) -> None:
        if self._insights is not None:
            self.store.save_insights(self._insights)

    # ── Session re-linking ────────────────────────────────────

    async def _relink_sessions(
        self,
        insights: list[ProactiveInsight],
        sessions: Sequence[BrowsingSession],
    ) -> list[ProactiveInsight]:
        """Attach new sessions to open abandoned tasks they continue."""
        now = self.now()
        window = timedelta(hours=self.config.relink_window_hours)

        for insight in insights:
            if insight.type != InsightType.ABANDONED or not insight.is_open:
                continue
            pattern = insight.pattern
            if not isinstance(pattern, AbandonmentPattern):
                continue
            if insight.status == InsightStatus.PENDING and now - pattern.last_occurrence >= window:
                continue

            for session in sessions:
                if not await self.is_session_related(session, pattern):
                    continue

                if session.session_id not in insight.linked_session_ids:
                    insight.linked_session_ids.append(session.session_id)
                if insight.status == InsightStatus.PENDING:
                    insight.status = InsightStatus.IN_PROGRESS
                insight.last_resumed_at = session.end_time

                analysis = await self.oracle.analyze_completion(session)
                insight.completion_progress = analysis.completion_score
                if analysis.completion_score >= self.config.completion_threshold:
                    insight.status = InsightStatus.COMPLETED
                    insight.completed_at = now
                    self.tasks.cancel(insight.id)

                logger.info(
                    "session_linked",
                    insight_id=insight.id,
                    session_id=session.session_id,
                    status=insight.status.value,
                    completion=analysis.completion_score,
                )
                break

        return insights

    async def is_session_related(self, session: BrowsingSession, pattern: AbandonmentPattern) -> bool:
        """Cheap overlap heuristics first; the oracle only confirms candidates."""
        abandoned = pattern.session.analyzed
        new = session.analyzed
        if not abandoned or not new:
            return False

        new_categories = {a.category for a in new}
        new_hosts = {hostname(a.url) for a in new} - {""}
        new_brands = {a.brand for a in new if a.brand}

        overlaps = (
            any(a.category in new_categories for a in abandoned)
            or any(hostname(a.url) in new_hosts for a in abandoned)
            or any(a.brand in new_brands for a in abandoned if a.brand)
        )
        if not overlaps:
            return False

        check = await self.oracle.check_relatedness(pattern.intent, abandoned, new)
        return check.is_related and check.confidence > self.config.relatedness_threshold

    # ── Manual transitions ────────────────────────────────────

    async def mark_in_progress(self, insight_id: str) -> ActionResult:
        insight = await self.get_insight(insight_id)
        if insight is None:
            return ActionResult.fail("Insight not found")
        if insight.status != InsightStatus.PENDING:
            return ActionResult.fail(f"Insight is already {insight.status.value}")

        insight.status = InsightStatus.IN_PROGRESS
        insight.last_resumed_at = self.now()
        self._save()
        logger.info("insight_in_progress", insight_id=insight_id)
        return ActionResult.ok("Insight marked as in progress")

    async def mark_completed(self, insight_id: str) -> ActionResult:
        insight = await self.get_insight(insight_id)
        if insight is None:
            return ActionResult.fail("Insight not found")
        if insight.status == InsightStatus.COMPLETED:
            return ActionResult.fail("This insight has already been completed")

        insight.status = InsightStatus.COMPLETED
        insight.completion_progress = 1.0
        insight.completed_at = self.now()
        self.tasks.cancel(insight_id)
        self._save()
        logger.info("insight_completed", insight_id=insight_id)
        return ActionResult.ok("Insight marked as completed")

    # ── Session tabs & auto-completion ────────────────────────

    def get_tabs_from_sessions(self, session_ids: Sequence[str]) -> list[SessionTab]:
        """Distinct page URLs visited in the given sessions, newest first."""
        wanted = set(session_ids)
        by_url: dict[str, SessionTab] = {}
        for a in self.store.load_activities(self.config.activity_partitions):
            if a.session_id not in wanted or a.type != "page_visit" or not a.data.url:
                continue
            seen = by_url.get(a.data.url)
            if seen is None or seen.timestamp < a.timestamp:
                by_url[a.data.url] = SessionTab(
                    url=a.data.url,
                    title=a.data.title or a.data.url,
                    timestamp=a.timestamp,
                    session_id=a.session_id,
                )
        return sorted(by_url.values(), key=lambda t: t.timestamp, reverse=True)

    async def get_insight_session_tabs(self, insight_id: str) -> ActionResult:
        insight = await self.get_insight(insight_id)
        if insight is None:
            return ActionResult.fail("Insight not found")
        if not insight.linked_session_ids:
            return ActionResult.fail("No sessions linked to this insight")
        tabs = self.get_tabs_from_sessions(insight.linked_session_ids)
        return ActionResult.ok(f"{len(tabs)} tabs", tabs=tabs)

    async def get_tab_completion_percentage(self, insight_id: str) -> float:
        """Share of the linked sessions' distinct URLs the user has reopened."""
        insight = await self.get_insight(insight_id)
        if insight is None or not insight.linked_session_ids:
            return 0.0
        total = len(self.get_tabs_from_sessions(insight.linked_session_ids))
        if total == 0:
            return 0.0
        return min(len(insight.opened_tab_urls) / total, 1.0)

    async def track_opened_tab(self, insight_id: str, url: str) -> bool:
        """Record a reopened URL; the first one starts the auto-completion check."""
        insight = await self.get_insight(insight_id)
        if insight is None:
            logger.warning("track_tab_unknown_insight", insight_id=insight_id)
            return False
        if url in insight.opened_tab_urls:
            return True

        insight.opened_tab_urls.append(url)
        self._save()

        if len(insight.opened_tab_urls) == 1 and insight.is_open:
            self.tasks.schedule(
                insight_id,
                self.config.auto_complete_delay_seconds,
                lambda: self._auto_complete(insight_id),
            )
        return True

    async def _auto_complete(self, insight_id: str) -> None:
        insight = await self.get_insight(insight_id)
        if insight is None or not insight.is_open:
            return

        percentage = await self.get_tab_completion_percentage(insight_id)
        payload = {"insightId": insight_id, "title": insight.title, "completionPercentage": percentage}

        if percentage > self.config.auto_complete_threshold:
            await self.mark_completed(insight_id)
            self.notifier.emit(AUTO_COMPLETED, payload)
        elif percentage > 0:
            self.notifier.emit(CONFIRMATION_REQUEST, payload)
        else:
            logger.debug("auto_completion_noop", insight_id=insight_id)

    def cancel_auto_completion(self, insight_id: str) -> bool:
        return self.tasks.cancel(insight_id)

    async def open_and_track_tab(self, insight_id: str, url: str) -> ActionResult:
        if await self.get_insight(insight_id) is None:
            return ActionResult.fail("Insight not found")
        tab = self.tabs.create_tab(url)
        self.tabs.switch_active_tab(tab.id)
        await self.track_opened_tab(insight_id, url)
        percentage = await self.get_tab_completion_percentage(insight_id)
        return ActionResult.ok("Tab opened and tracked", completion_percentage=percentage)

    # ── Triggers ──────────────────────────────────────────────

    async def check_realtime_triggers(
        self,
        current_url: str,
        now: Optional[datetime] = None,
    ) -> list[ProactiveInsight]:
        """Open insights worth surfacing for the page the user is on right now."""
        local = (now or self.now()).astimezone(ZoneInfo(self.config.habit_timezone))
        day_of_week = (local.weekday() + 1) % 7

        triggered = []
        for insight in await self.get_insights():
            if not insight.is_open:
                continue
            params = insight.action_params
            if insight.type == InsightType.WORKFLOW:
                urls = params.get("urls") or []
                host = hostname(urls[0]) if urls else ""
                fire = bool(host) and host in current_url
            elif insight.type == InsightType.HABIT:
                fire = params.get("dayOfWeek") == day_of_week and params.get("hour") == local.hour
            else:
                fire = True
            if fire:
                triggered.append(insight)
        return triggered

    # ── Insight actions ───────────────────────────────────────

    async def execute_insight_action(self, insight_id: str) -> ActionResult:
        insight = await self.get_insight(insight_id)
        if insight is None:
            return ActionResult.fail("Insight not found")
        if insight.status == InsightStatus.COMPLETED and insight.action_type != ActionType.REMIND:
            return ActionResult.fail("This insight has already been completed")

        if insight.action_type == ActionType.OPEN_URLS:
            urls = insight.action_params.get("urls") or []
            if not urls:
                return ActionResult.fail("No URLs to open")
            try:
                last_tab = None
                for url in urls:
                    last_tab = self.tabs.create_tab(url)
                self.tabs.switch_active_tab(last_tab.id)
            except Exception as e:
                logger.error("tab_open_failed", url=url, error=str(e))
                return ActionResult.fail("Failed to create tab")
            await self.mark_completed(insight_id)
            return ActionResult.ok(f"Opened {len(urls)} tabs")

        if insight.action_type == ActionType.RESUME_RESEARCH:
            last_url = insight.action_params.get("lastUrl")
            if not last_url:
                return ActionResult.fail("No URL available to resume")
            try:
                tab = self.tabs.create_tab(last_url)
                self.tabs.switch_active_tab(tab.id)
            except Exception as e:
                logger.error("tab_open_failed", url=last_url, error=str(e))
                return ActionResult.fail("Failed to create tab")

            # Abandoned tasks stay open; completion is detected from later browsing.
            if insight.type == InsightType.ABANDONED:
                await self.mark_in_progress(insight_id)
            else:
                await self.mark_completed(insight_id)
            return ActionResult.ok("Resumed where you left off")

        if insight.action_type == ActionType.REMIND:
            return self._set_reminder(insight)

        return ActionResult.ok("Action executed")

    # ── Reminders ─────────────────────────────────────────────

    def _set_reminder(self, insight: ProactiveInsight) -> ActionResult:
        reminders = self.store.load_reminders()
        key = tuple(insight.action_params.get(k) for k in ("domain", "dayOfWeek", "hour"))
        for r in reminders:
            if not r.completed and tuple(r.action_params.get(k) for k in ("domain", "dayOfWeek", "hour")) == key:
                return ActionResult.fail("A similar reminder already exists for this time and website")

        now = self.now()
        reminder = Reminder(
            id=f"reminder-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}",
            insight_id=insight.id,
            user_id=self.user_id,
            title=insight.title,
            description=insight.description,
            action_params=dict(insight.action_params),
            created_at=now,
        )
        reminders.append(reminder)
        self.store.save_reminders(reminders)
        self.notifier.emit(REMINDER_SET, {
            "insightId": insight.id,
            "title": reminder.title,
            "reminder": reminder.to_json_dict(),
        })
        logger.info("reminder_set", reminder_id=reminder.id, insight_id=insight.id)
        return ActionResult.ok("Reminder set successfully")

    def get_reminders(self) -> list[Reminder]:
        return self.store.load_reminders()

    def complete_reminder(self, reminder_id: str) -> ActionResult:
        reminders = self.store.load_reminders()
        for r in reminders:
            if r.id == reminder_id:
                r.completed = True
                r.completed_at = self.now()
                self.store.save_reminders(reminders)
                return ActionResult.ok("Reminder completed")
        return ActionResult.fail("Reminder not found")

    def delete_reminder(self, reminder_id: str) -> ActionResult:
        reminders = self.store.load_reminders()
        remaining = [r for r in reminders if r.id != reminder_id]
        if len(remaining) == len(reminders):
            return ActionResult.fail("Reminder not found")
        self.store.save_reminders(remaining)
        return ActionResult.ok("Reminder deleted")

    def execute_reminder(self, reminder_id: str) -> ActionResult:
        reminder = next((r for r in self.store.load_reminders() if r.id == reminder_id), None)
        if reminder is None:
            return ActionResult.fail("Reminder not found")
        domain = reminder.action_params.get("domain")
        if domain:
            tab = self.tabs.create_tab(f"https://{domain}")
            self.tabs.switch_active_tab(tab.id)
        self.complete_reminder(reminder_id)
        return ActionResult.ok("Reminder executed")
