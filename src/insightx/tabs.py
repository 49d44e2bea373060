"""Tab/window controller used when an insight or saved workflow is executed.

The host browser supplies its own controller. ``SystemBrowserTabs`` drives the
user's default browser for the CLI, where tabs cannot be switched once opened.
"""

from __future__ import annotations

import itertools
import webbrowser

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()


class TabHandle(BaseModel):
    id: str
    url: str


class TabController:
    """Contract: open a tab for a URL, bring a tab to the front."""

    def create_tab(self, url: str) -> TabHandle:
        raise NotImplementedError

    def switch_active_tab(self, tab_id: str) -> None:
        raise NotImplementedError


class SystemBrowserTabs(TabController):
    """Opens URLs in the system's default browser."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)

    def create_tab(self, url: str) -> TabHandle:
        opened = webbrowser.open_new_tab(url)
        if not opened:
            logger.warning("browser_open_failed", url=url)
        return TabHandle(id=f"tab-{next(self._ids)}", url=url)

    def switch_active_tab(self, tab_id: str) -> None:
        # The system browser focuses the newest tab on its own.
        logger.debug("tab_switch_skipped", tab_id=tab_id)
