"""Tests for the MCP tool bodies and the server registration."""
from __future__ import annotations

import json
import signal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from chrome_automation.constants import LITE_TOOLS
from chrome_automation.errors import InvalidArgumentError
from chrome_automation.tools import page_tools, script_tools, session_tools, storage_tools
from chrome_automation.tools.common import tool_errors
from chrome_automation.session_manager.scripts import ScriptRunner


class TestToolErrors:
    """Tests for the error-to-text decorator."""

    async def test_known_error_keeps_message(self):
        @tool_errors("demo")
        async def failing():
            raise InvalidArgumentError("bad input")

        assert await failing() == "Error: bad input"

    async def test_unexpected_error_is_summarized(self):
        @tool_errors("demo")
        async def failing():
            raise KeyError("x")

        assert await failing() == "Error: demo failed: 'x'"


class TestSessionTools:
    """Tests for session tool formatting."""

    async def test_no_session_for_page_tool(self, controller):
        result = await page_tools.navigate_to(controller, "https://example.com/")
        assert result.startswith("Error: navigate_to: No browser page available")

    async def test_launch_message(self, controller):
        controller.launch_browser = AsyncMock(return_value=type(
            "Launch", (), {"debug_port": 9555, "session_id": "1700000000000-abc123"}
        )())
        assert await session_tools.launch_browser(controller) == (
            "Browser launched successfully on port 9555 (Session: 1700000000000-abc123)"
        )

    async def test_list_sessions_empty(self, controller):
        assert await session_tools.list_sessions(controller) == "No active sessions found"

    async def test_list_sessions_uses_camel_case(self, controller, make_entry, live_pid):
        await make_entry("1-alive0", live_pid, debug_port=9440)
        sessions = json.loads(await session_tools.list_sessions(controller))
        assert sessions[0]["sessionId"] == "1-alive0"
        assert sessions[0]["debugPort"] == 9440
        assert sessions[0]["isCurrentSession"] is False

    async def test_get_tabs_json(self, controller, attached):
        tabs = json.loads(await session_tools.get_tabs(controller))
        assert tabs == [{"index": 0, "url": "about:blank", "title": "", "isCurrent": True, "tabId": None}]

    async def test_switch_message(self, controller, attached):
        attached.browser.context.add_page(url="https://example.com/")
        result = await session_tools.switch_to_tab(controller, target="latest")
        assert result == "Switched from about:blank to https://example.com/"

    async def test_close_unknown_session_is_error_text(self, controller):
        assert await session_tools.close_browser(controller, "1-nosuch") == "Error: Session 1-nosuch not found"


class TestPageTools:
    """Tests for page tools against an in-memory page."""

    async def test_navigate(self, controller, attached):
        assert await page_tools.navigate_to(controller, "https://example.com/") == "Navigated to https://example.com/"
        assert attached.page.url == "https://example.com/"

    async def test_navigate_rejects_bad_url(self, controller, attached):
        result = await page_tools.navigate_to(controller, "example.com")
        assert result.startswith('Error: navigate_to: Invalid URL format: "example.com"')

    async def test_navigate_rejects_bad_wait_until(self, controller, attached):
        result = await page_tools.navigate_to(controller, "https://example.com/", wait_until="idle")
        assert "Invalid waitUntil value" in result

    async def test_scroll(self, controller, attached):
        assert await page_tools.scroll(controller, "up", 200) == "Scrolled up by 200px"
        assert attached.page.evaluations[-1][1] == [0, -200]

    async def test_scroll_bad_direction(self, controller, attached):
        assert "Invalid direction" in await page_tools.scroll(controller, "sideways")

    async def test_press_key_with_modifiers(self, controller, attached):
        assert await page_tools.press_key(controller, "a", ["Control"]) == "Pressed Control+a"
        assert attached.page.keyboard.events == [("down", "Control"), ("press", "a"), ("up", "Control")]

    async def test_evaluate_formats_result(self, controller, attached):
        attached.page.evaluate_result = {"n": 1}
        assert json.loads(await page_tools.evaluate(controller, "return {n: 1}")) == {"n": 1}
        attached.page.evaluate_result = None
        assert await page_tools.evaluate(controller, "void 0") == "null"

    async def test_click_honours_index(self, controller, attached):
        elements = [MagicMock(), MagicMock()]
        for element in elements:
            element.is_visible = AsyncMock(return_value=True)
            element.click = AsyncMock()
        attached.page.query_selector_all = AsyncMock(return_value=elements)

        assert await page_tools.click(controller, ".item", index=1) == "Clicked on .item"
        elements[0].click.assert_not_awaited()
        elements[1].click.assert_awaited_once()

    async def test_click_defaults_to_first_visible(self, controller, attached):
        hidden, shown = MagicMock(), MagicMock()
        hidden.is_visible = AsyncMock(return_value=False)
        shown.is_visible = AsyncMock(return_value=True)
        hidden.click, shown.click = AsyncMock(), AsyncMock()
        attached.page.query_selector_all = AsyncMock(return_value=[hidden, shown])

        assert await page_tools.click(controller, ".item") == "Clicked on .item"
        hidden.click.assert_not_awaited()
        shown.click.assert_awaited_once()


class TestStorageParsing:
    """Tests for set_storage input shaping."""

    def test_cookie_string(self):
        cookies = storage_tools.parse_cookie_string("sid=abc; theme=dark; broken; empty=", "example.com")
        assert [(c["name"], c["value"], c["domain"]) for c in cookies] == [
            ("sid", "abc", "example.com"),
            ("theme", "dark", "example.com"),
        ]

    def test_normalize_defaults(self):
        [cookie] = storage_tools.normalize_cookies([{"name": "a", "value": "1"}], None)
        assert cookie["domain"] == "localhost"
        assert cookie["path"] == "/"
        assert cookie["sameSite"] == "Lax"

    def test_requires_some_input(self):
        with pytest.raises(InvalidArgumentError):
            storage_tools.resolve_storage_inputs(local_storage={"a": "1"})

    def test_file_values_take_precedence(self, tmp_path: Path):
        path = tmp_path / "storage.json"
        path.write_text(json.dumps({
            "cookies": [{"name": "sid", "value": "from-file"}],
            "localStorage": {"token": "t"},
            "domain": "example.com",
        }))
        cookies, local, session = storage_tools.resolve_storage_inputs(
            cookies=[{"name": "sid", "value": "from-arg"}], domain="other.test", file_path=str(path)
        )
        assert cookies[0]["value"] == "from-file"
        assert cookies[0]["domain"] == "example.com"
        assert local == {"token": "t"}
        assert session == {}

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(InvalidArgumentError, match="File not found"):
            storage_tools.load_storage_file(str(tmp_path / "none.json"))


class TestStorageTools:
    async def test_set_storage_on_background_tab(self, controller, attached):
        attached.browser.context.pages[0].evaluate_result = None
        result = json.loads(await storage_tools.set_storage(
            controller, cookie_string="sid=abc", domain="example.com", url="https://example.com/"
        ))
        assert result["backgroundTabUsed"] is True
        assert result["results"]["cookiesSet"] == 1
        assert attached.browser.context.cookies_added[0]["name"] == "sid"
        assert len(attached.browser.context.pages) == 1

    async def test_get_storage_report(self, controller, attached):
        attached.page.url = "https://example.com/account"
        attached.page.evaluate_result = {"localStorage": {"k": "v"}, "sessionStorage": {}}
        report = await storage_tools.get_storage(controller)
        assert "- **Domain**: example.com" in report
        assert "- **localStorage**: 1 items" in report


class TestScriptTools:
    async def test_background_record_omits_settled_fields(self, controller, attached, tmp_path: Path):
        script = tmp_path / "noop.py"
        script.write_text("async def run(browser, page, args):\n    return 'done'\n")
        runner = ScriptRunner(controller)

        record = json.loads(await script_tools.run_script_background(
            runner, script_path=str(script), project_folder=str(tmp_path / "out"), auto_close_browser=False
        ))
        await runner.drain()

        assert record["status"] == "started"
        assert "endTime" not in record
        assert "result" not in record
        assert record["autoCloseBrowser"] is False

    async def test_missing_source_is_error_text(self, controller, attached):
        result = await script_tools.run_script(ScriptRunner(controller))
        assert result == "Error: Either scriptPath or scriptUrl must be provided"


class TestServer:
    """Tests for tool registration and the signal policy."""

    async def test_all_tools_registered(self):
        from chrome_automation import server

        names = {tool.name for tool in await server.mcp.list_tools()}
        assert LITE_TOOLS <= names
        assert {"click", "wait_for", "switch_to_tab", "get_tabs", "evaluate"} <= names
        assert len(names) == 24

    def test_lite_mode_skips_registration(self, monkeypatch: pytest.MonkeyPatch):
        from chrome_automation import server

        monkeypatch.setattr(server, "MCP_LITE_MODE", True)

        async def tool_press_nothing():
            return ""

        assert server.tool("press_nothing")(tool_press_nothing) is tool_press_nothing

    def test_signal_policy(self, monkeypatch: pytest.MonkeyPatch):
        from chrome_automation import server

        installed = {}
        monkeypatch.setattr(server.signal, "signal", lambda sig, handler: installed.setdefault(sig, handler))

        server.install_signal_policy(ignore=False)
        assert installed == {}

        server.install_signal_policy(ignore=True)
        assert set(installed) == {signal.SIGINT, signal.SIGTERM}
