"""Explicit per-session state threaded through every operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page

from ..constants import DEFAULT_SESSION
from .process import ChromeProcess
from .tabs import TabManager


@dataclass
class SessionContext:
    """Handles for one session.

    ``owned`` contexts were launched by this controller and hold the Chrome
    process; borrowed ones were joined by id or port and hold only a
    connection.
    """

    session_id: Optional[str]
    debug_port: int
    browser: Optional[Browser] = None
    page: Optional[Page] = None
    chrome: Optional[ChromeProcess] = None
    tabs: TabManager = field(default_factory=TabManager)
    session_dir: Optional[str] = None
    owned: bool = False

    @property
    def label(self) -> str:
        return self.session_id or DEFAULT_SESSION

    @property
    def chrome_pid(self) -> Optional[int]:
        return self.chrome.pid if self.chrome else None

    def browser_context(self) -> BrowserContext:
        if self.browser is None or not self.browser.contexts:
            raise RuntimeError("Browser has no open context")
        return self.browser.contexts[0]

    def live_pages(self) -> list[Page]:
        try:
            return list(self.browser_context().pages)
        except RuntimeError:
            return []

    def latest_page(self) -> Optional[Page]:
        pages = self.live_pages()
        return pages[-1] if pages else None

    def is_connected(self) -> bool:
        try:
            return self.browser is not None and self.browser.is_connected()
        except Exception:
            return False
