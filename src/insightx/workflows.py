"""Saved workflows — detected sequential patterns promoted to one-click automations."""

from __future__ import annotations

import uuid
from typing import Optional, Sequence

import structlog

from insightx.lifecycle import InsightsManager
from insightx.models import (
    ActionResult,
    ActionType,
    InsightType,
    SavedWorkflow,
    SavedWorkflowStep,
    SequentialPattern,
)

logger = structlog.get_logger()

THEME_PREFIX = "Detected workflow: "


def workflow_exists(workflows: Sequence[SavedWorkflow], steps: Sequence[SavedWorkflowStep]) -> bool:
    """True if a saved workflow replays exactly the same URLs in the same order."""
    urls = [s.url for s in steps]
    return any([s.url for s in w.steps] == urls for w in workflows)


def _recency_key(w: SavedWorkflow) -> tuple:
    # Used workflows first (latest first), never-used last; then most used.
    used = w.last_used is not None
    return (not used, -(w.last_used.timestamp() if used else 0.0), -w.use_count)


class WorkflowAutomation:
    """Promote, list, replay, rename and delete a user's saved workflows."""

    def __init__(self, manager: InsightsManager) -> None:
        self.manager = manager
        self.store = manager.store

    async def save_workflow_as_agent(
        self,
        insight_id: str,
        custom_name: Optional[str] = None,
    ) -> ActionResult:
        insight = await self.manager.get_insight(insight_id)
        if insight is None:
            return ActionResult.fail("Insight not found")
        if insight.type != InsightType.WORKFLOW or insight.action_type != ActionType.OPEN_URLS:
            return ActionResult.fail("This insight is not a workflow")

        urls = insight.action_params.get("urls") or []
        if not urls:
            return ActionResult.fail("Workflow has no steps")

        pattern = insight.pattern
        pattern_steps = pattern.steps if isinstance(pattern, SequentialPattern) else []
        steps = []
        for i, url in enumerate(urls):
            step = pattern_steps[i] if i < len(pattern_steps) else None
            steps.append(SavedWorkflowStep(
                url=url or (step.url if step else ""),
                title=(step.title or step.page_description_summary or url) if step else url,
                category=step.category if step else "",
                subcategory=step.subcategory if step else "",
            ))

        workflows = self.store.load_workflows()
        if workflow_exists(workflows, steps):
            return ActionResult.fail("A workflow with these steps already exists")

        now = self.manager.now()
        workflow = SavedWorkflow(
            id=f"workflow-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}",
            user_id=self.manager.user_id,
            name=custom_name or insight.title.removeprefix(THEME_PREFIX),
            description=insight.description,
            created_at=now,
            created_from=insight_id,
            steps=steps,
        )
        workflows.append(workflow)
        self.store.save_workflows(workflows)

        logger.info("workflow_saved", workflow_id=workflow.id, steps=len(steps), insight_id=insight_id)
        return ActionResult.ok("Workflow saved", workflow=workflow)

    def get_saved_workflows(self) -> list[SavedWorkflow]:
        return sorted(self.store.load_workflows(), key=_recency_key)

    def execute_workflow(self, workflow_id: str) -> ActionResult:
        workflows = self.store.load_workflows()
        workflow = next((w for w in workflows if w.id == workflow_id), None)
        if workflow is None:
            return ActionResult.fail("Workflow not found")

        tabs = self.manager.tabs
        last_tab = None
        for step in workflow.steps:
            last_tab = tabs.create_tab(step.url)
        if last_tab is not None:
            tabs.switch_active_tab(last_tab.id)

        workflow.last_used = self.manager.now()
        workflow.use_count += 1
        self.store.save_workflows(workflows)

        logger.info("workflow_executed", workflow_id=workflow_id, use_count=workflow.use_count)
        return ActionResult.ok(f"Opened {len(workflow.steps)} tabs", workflow=workflow)

    def delete_workflow(self, workflow_id: str) -> ActionResult:
        workflows = self.store.load_workflows()
        remaining = [w for w in workflows if w.id != workflow_id]
        if len(remaining) == len(workflows):
            return ActionResult.fail("Workflow not found")
        self.store.save_workflows(remaining)
        return ActionResult.ok("Workflow deleted")

    def rename_workflow(self, workflow_id: str, new_name: str) -> ActionResult:
        workflows = self.store.load_workflows()
        workflow = next((w for w in workflows if w.id == workflow_id), None)
        if workflow is None:
            return ActionResult.fail("Workflow not found")
        workflow.name = new_name
        self.store.save_workflows(workflows)
        return ActionResult.ok("Workflow renamed", workflow=workflow)
