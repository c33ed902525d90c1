"""Tests for tab tracking and closed-target recovery."""
from __future__ import annotations

import pytest

from chrome_automation.session_manager.recovery import (
    RecoveringPage,
    is_target_closed,
    most_recent_page,
    with_page_recovery,
)
from chrome_automation.session_manager.tabs import TabManager

from .conftest import FakeBrowser

CLOSED = "Target page, context or browser has been closed"


class TestTabManager:
    """Tests for TabManager."""

    def test_register_is_idempotent(self):
        browser = FakeBrowser()
        page = browser.context.pages[0]
        tabs = TabManager()

        first = tabs.register_tab(page)
        second = tabs.register_tab(page)

        assert first == second
        assert len(tabs) == 1
        assert tabs.find_by_tab_id(first) is page

    def test_cleanup_drops_closed_pages(self):
        browser = FakeBrowser(page_count=3)
        tabs = TabManager()
        for page in browser.context.pages:
            tabs.register_tab(page)

        gone = browser.context.pages.pop(1)
        removed = tabs.cleanup(browser.context.pages)

        assert removed == 1
        assert tabs.get_tab_info(gone) is None
        assert len(tabs) == 2

    def test_unregister_unknown_page_is_noop(self):
        tabs = TabManager()
        tabs.unregister_tab(FakeBrowser().context.pages[0])
        assert len(tabs) == 0

    def test_initial_url_recorded(self):
        browser = FakeBrowser(page_count=0)
        page = browser.context.add_page(url="https://example.com/")
        tabs = TabManager()
        tabs.register_tab(page)
        assert tabs.get_tab_info(page).initial_url == "https://example.com/"


class TestWithPageRecovery:
    """Tests for retry-on-closed-target."""

    def test_markers(self):
        assert is_target_closed(RuntimeError(f"page.click: {CLOSED}"))
        assert not is_target_closed(RuntimeError("Timeout 5000ms exceeded"))

    async def test_retries_on_most_recent_page(self):
        browser = FakeBrowser(page_count=2)
        old, new = browser.context.pages
        calls = []
        substituted = []

        async def operation(page):
            calls.append(page)
            if page is old:
                raise RuntimeError(CLOSED)
            return "ok"

        result = await with_page_recovery(operation, old, browser, on_substitute=substituted.append)

        assert result == "ok"
        assert calls == [old, new]
        assert substituted == [new]

    async def test_other_errors_propagate(self):
        browser = FakeBrowser(page_count=2)

        async def operation(page):
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await with_page_recovery(operation, browser.context.pages[0], browser)

    async def test_no_replacement_reraises(self):
        browser = FakeBrowser(page_count=1)
        only = browser.context.pages[0]

        async def operation(page):
            raise RuntimeError(CLOSED)

        with pytest.raises(RuntimeError, match="has been closed"):
            await with_page_recovery(operation, only, browser)

    def test_most_recent_page_empty(self):
        assert most_recent_page(FakeBrowser(page_count=0)) is None


class TestRecoveringPage:
    """Tests for the page wrapper handed to scripts."""

    async def test_passes_through_attributes(self):
        browser = FakeBrowser()
        page = browser.context.pages[0]
        wrapped = RecoveringPage(page, browser)

        await wrapped.goto("https://example.com/")

        assert wrapped.url == "https://example.com/"
        assert wrapped.is_closed() is False
        assert wrapped.target is page

    async def test_adopts_substitute_page(self):
        browser = FakeBrowser(page_count=2)
        old, new = browser.context.pages

        async def broken_goto(url, **kwargs):
            raise RuntimeError(CLOSED)

        old.goto = broken_goto
        wrapped = RecoveringPage(old, browser)

        await wrapped.goto("https://example.com/")

        assert wrapped.target is new
        assert new.url == "https://example.com/"
        assert await wrapped.title() == "Title of https://example.com/"
