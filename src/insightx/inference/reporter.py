"""Plain-text reports for the CLI.

What did the engine notice, what can you do about it, and what have you
already dealt with.
"""

from __future__ import annotations

from typing import Sequence

from insightx.models import InsightStatus, ProactiveInsight, SavedWorkflow

STATUS_MARKERS = {
    InsightStatus.PENDING: "  ",
    InsightStatus.IN_PROGRESS: ">>",
    InsightStatus.COMPLETED: "ok",
}


def format_insights_report(insights: Sequence[ProactiveInsight], limit: int = 20) -> str:
    """Open insights by relevance, then a one-line tally of completed ones."""
    if not insights:
        return "No insights yet. Browse for a while, then run 'insightx analyze'."

    open_insights = sorted(
        (i for i in insights if i.is_open),
        key=lambda i: i.relevance_score,
        reverse=True,
    )
    completed = [i for i in insights if not i.is_open]

    lines = [
        f"{'='*60}",
        "  PROACTIVE INSIGHTS",
        f"{'='*60}",
        "",
        f"  Open: {len(open_insights)}   Completed: {len(completed)}",
        "",
    ]

    if open_insights:
        lines.append("  WHAT YOU CAN DO NOW (by relevance)")
        lines.append(f"  {'-'*54}")
        for n, i in enumerate(open_insights[:limit], 1):
            lines.append(f"  {n}. [{STATUS_MARKERS[i.status]}] {i.title}")
            lines.append(f"     {i.type.value} | {i.action_type.value} | score {i.relevance_score:.2f}")
            if i.description:
                lines.append(f"     {i.description[:80]}")
            if i.completion_progress is not None and i.status == InsightStatus.IN_PROGRESS:
                lines.append(f"     Progress: {i.completion_progress:.0%}")
            lines.append(f"     id: {i.id}")
            lines.append("")

    lines.extend([
        f"  {'='*54}",
        "  Run 'insightx act <id>' to act on an insight,",
        "  or 'insightx save-workflow <id>' to keep a workflow.",
        f"  {'='*54}",
    ])
    return "\n".join(lines)


def format_workflows_report(workflows: Sequence[SavedWorkflow]) -> str:
    if not workflows:
        return "No saved workflows. Promote one with 'insightx save-workflow <insight-id>'."

    lines = [
        f"{'='*60}",
        "  SAVED WORKFLOWS",
        f"{'='*60}",
        "",
    ]
    for n, w in enumerate(workflows, 1):
        last = w.last_used.strftime("%b %d %H:%M") if w.last_used else "never"
        lines.append(f"  {n}. {w.name}  ({len(w.steps)} steps, used {w.use_count}x, last {last})")
        for s in w.steps:
            lines.append(f"     - {s.url}")
        lines.append(f"     id: {w.id}")
        lines.append("")
    return "\n".join(lines)
