"""Notifications emitted by the insight lifecycle.

Events:
    insight_auto_completed                   enough tabs reopened, insight closed
    insight_completion_confirmation_request  some tabs reopened, ask the user
    reminder_set                             a habit reminder was stored

``InsightNotifier`` fans each event out to registered callbacks (the host UI)
and, when enabled, to a macOS desktop notification via ``osascript``.
"""

from __future__ import annotations

import platform
import subprocess
from collections import defaultdict
from typing import Any, Callable

import structlog

logger = structlog.get_logger()

AUTO_COMPLETED = "insight_auto_completed"
CONFIRMATION_REQUEST = "insight_completion_confirmation_request"
REMINDER_SET = "reminder_set"

Listener = Callable[[dict[str, Any]], None]


def notify(title: str, message: str, subtitle: str = "") -> None:
    """Fire a macOS native notification. No-op on other platforms."""
    if platform.system() != "Darwin":
        logger.info("notification_skipped", reason="not_macos", title=title)
        return

    def _esc(s: str) -> str:
        """Escape for embedding in an AppleScript double-quoted string."""
        return s.replace("\\", "\\\\").replace('"', '\\"')

    subtitle_clause = f' subtitle "{_esc(subtitle)}"' if subtitle else ""
    script = (
        f'display notification "{_esc(message)}"'
        f' with title "{_esc(title)}"'
        f"{subtitle_clause}"
    )

    try:
        subprocess.run(
            ["osascript", "-e", script],
            capture_output=True,
            timeout=5,
            check=False,
        )
        logger.debug("notification_sent", title=title)
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as e:
        logger.warning("notification_failed", error=str(e), title=title)


def _desktop_text(event: str, payload: dict[str, Any]) -> tuple[str, str] | None:
    title = payload.get("title", "")
    if event == AUTO_COMPLETED:
        return "InsightX: task completed", f"Marked done: {title}"
    if event == CONFIRMATION_REQUEST:
        pct = round(payload.get("completionPercentage", 0) * 100)
        return "InsightX: finished?", f"{title} ({pct}% of pages revisited)"
    if event == REMINDER_SET:
        return "InsightX: reminder set", title
    return None


class InsightNotifier:
    """Dispatch lifecycle events to listeners. A failing listener never blocks the rest."""

    def __init__(self, desktop: bool = False) -> None:
        self.desktop = desktop
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("insight_event", event_name=event, insight_id=payload.get("insightId"))
        for listener in self._listeners[event]:
            try:
                listener(payload)
            except Exception as e:
                logger.warning("listener_failed", event_name=event, error=str(e))

        if self.desktop:
            text = _desktop_text(event, payload)
            if text:
                notify(*text)
