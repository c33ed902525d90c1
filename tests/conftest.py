"""Shared fixtures: in-memory stand-ins for Playwright handles and a tmp-dir controller.

Nothing here starts a real Chrome; controllers are wired to a fake connector
and a JSON registry under ``tmp_path``.
"""
from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from chrome_automation.models.session import SessionInfo
from chrome_automation.session_manager import controller as controller_module
from chrome_automation.session_manager.cdp import CdpConnection
from chrome_automation.session_manager.context import SessionContext
from chrome_automation.session_manager.controller import SessionController
from chrome_automation.session_manager.registry import JsonFileStore, SessionRegistry


# ============================================================================
# Fake Playwright handles
# ============================================================================


class FakeKeyboard:
    def __init__(self):
        self.events: list[tuple[str, str]] = []

    async def down(self, key: str):
        self.events.append(("down", key))

    async def up(self, key: str):
        self.events.append(("up", key))

    async def press(self, key: str):
        self.events.append(("press", key))


class FakePage:
    def __init__(self, context: Optional["FakeContext"] = None, url: str = "about:blank", title: str = ""):
        self.context = context
        self.url = url
        self._title = title
        self.closed = False
        self.keyboard = FakeKeyboard()
        self.evaluations: list[tuple[str, Any]] = []
        self.evaluate_result: Any = None

    async def title(self) -> str:
        return self._title

    def is_closed(self) -> bool:
        return self.closed

    async def close(self):
        self.closed = True
        if self.context is not None and self in self.context.pages:
            self.context.pages.remove(self)

    async def goto(self, url: str, **kwargs):
        self.url = url
        self._title = f"Title of {url}"

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[int] = None):
        return None

    async def evaluate(self, script: str, arg: Any = None):
        self.evaluations.append((script, arg))
        return self.evaluate_result


class FakeContext:
    def __init__(self):
        self.pages: list[FakePage] = []
        self.cookies_added: list[dict] = []

    async def new_page(self) -> FakePage:
        return self.add_page()

    def add_page(self, url: str = "about:blank", title: str = "") -> FakePage:
        page = FakePage(self, url=url, title=title)
        self.pages.append(page)
        return page

    async def add_cookies(self, cookies: list[dict]):
        self.cookies_added.extend(cookies)

    async def cookies(self) -> list[dict]:
        return list(self.cookies_added)


class FakeCdpSession:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser

    async def send(self, method: str, params: Optional[dict] = None):
        self.browser.cdp_commands.append(method)
        if method == "Browser.close":
            self.browser.connected = False
        return {}


class FakeBrowser:
    def __init__(self, page_count: int = 1):
        self.connected = True
        self.cdp_commands: list[str] = []
        self.context = FakeContext()
        self.contexts = [self.context]
        for _ in range(page_count):
            self.context.add_page()

    def is_connected(self) -> bool:
        return self.connected

    async def close(self):
        self.connected = False

    async def new_browser_cdp_session(self) -> FakeCdpSession:
        return FakeCdpSession(self)

    def on(self, event: str, callback):
        pass


class FakeConnector:
    """Hands out FakeBrowser connections; ``fail`` makes every connect raise."""

    def __init__(self, fail: Optional[BaseException] = None):
        self.fail = fail
        self.connected_ports: list[int] = []
        self.browsers: list[FakeBrowser] = []

    async def _open(self, port: int) -> CdpConnection:
        if self.fail is not None:
            raise self.fail
        browser = FakeBrowser()
        self.browsers.append(browser)
        self.connected_ports.append(port)
        return CdpConnection(browser=browser, page=browser.context.pages[0], port=port)

    async def connect(self, port: int, attempts: int = 3, retry_delay: float = 0, on_retry=None, label: str = ""):
        return await self._open(port)

    async def connect_once(self, port: int, label: str = ""):
        return await self._open(port)

    async def probe(self, port: int) -> bool:
        return True

    async def stop(self):
        pass


# ============================================================================
# Process fixtures
# ============================================================================


@pytest.fixture
def dead_pid() -> int:
    """Pid of a child that has already exited and been reaped."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


@pytest.fixture
def live_pid() -> int:
    return os.getpid()


# ============================================================================
# Registry / controller fixtures
# ============================================================================


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    path = tmp_path / "sessions"
    path.mkdir()
    return path


@pytest.fixture
def cdp_probe() -> AsyncMock:
    return AsyncMock(return_value=True)


@pytest.fixture
def registry(base_dir: Path, cdp_probe: AsyncMock) -> SessionRegistry:
    store = JsonFileStore(base_dir / "sessions-registry.json")
    return SessionRegistry(base_dir=base_dir, store=store, cdp_probe=cdp_probe)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def controller(registry: SessionRegistry, connector: FakeConnector, monkeypatch: pytest.MonkeyPatch) -> SessionController:
    monkeypatch.setattr(controller_module, "FILE_LOCK_RELEASE_DELAY", 0)
    monkeypatch.setattr(controller_module, "wait_for_cdp", AsyncMock(return_value=False))
    return SessionController(registry=registry, connector=connector)


@pytest.fixture
def make_entry(registry: SessionRegistry):
    """Register a session with its own directory under the registry base dir."""

    async def _make(session_id: str, pid: int, debug_port: int = 9300, chrome_pid: Optional[int] = None) -> SessionInfo:
        session_dir = registry.session_dir_for(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        (session_dir / "Preferences").write_text("{}")
        info = SessionInfo(
            pid=pid,
            debug_port=debug_port,
            session_dir=str(session_dir),
            chrome_process_pid=chrome_pid,
        )
        await registry.register(session_id, info)
        return info

    return _make


@pytest.fixture
def attached(controller: SessionController) -> SessionContext:
    """A current, connected context joined by port (no registry entry)."""
    browser = FakeBrowser()
    ctx = SessionContext(
        session_id="1700000000000-abc123",
        debug_port=9400,
        browser=browser,
        page=browser.context.pages[0],
    )
    controller.current = ctx
    return ctx
