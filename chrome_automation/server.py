"""MCP Server entry point for the Chrome session control plane.

Exposes browser-automation tools over the Model Context Protocol:
- Sessions: launch_browser, connect_browser, list_sessions, close_browser,
  close_all_browsers, cleanup_sessions
- Tabs: get_tabs, switch_to_tab
- Page: navigate_to, click, type_text, read_text, get_elements, wait_for,
  press_key, screenshot, scroll, get_page_info, go_back, evaluate
- Scripts: run_script, run_script_background
- Storage: get_storage, set_storage

With MCP_LITE_MODE=true only the lite subset is registered. The server does
not exit on SIGINT/SIGTERM unless IGNORE_TERMINATION_SIGNALS=false; browsers
are reclaimed through the close tools or the smart closer.
"""

from __future__ import annotations

import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .config import IGNORE_TERMINATION_SIGNALS, LOG_LEVEL, MCP_LITE_MODE, ensure_dirs
from .constants import LITE_TOOLS
from .session_manager.controller import SessionController
from .session_manager.scripts import ScriptRunner
from .tools import page_tools, script_tools, session_tools, storage_tools

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("chrome-automation")

# Ensure data directories exist
ensure_dirs()


# ── Lifespan: one controller per server process ──────────────────────────────


_state: dict = {}


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Create the session controller and script runner for this server process."""
    controller = SessionController()
    _state["controller"] = controller
    _state["runner"] = ScriptRunner(controller)
    logger.info(f"Session controller ready (registry: {controller.registry.registry_file})")
    try:
        yield {}
    finally:
        await controller.shutdown(teardown_own=not IGNORE_TERMINATION_SIGNALS)
        _state.clear()
        logger.info("Session controller stopped.")


def _controller() -> SessionController:
    return _state["controller"]


def _runner() -> ScriptRunner:
    return _state["runner"]


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "chrome-automation",
    lifespan=lifespan,
    instructions=(
        "Chrome browser automation over CDP with multiple isolated sessions. "
        "Call launch_browser to start a dedicated Chrome, or connect_browser to join one. "
        "Page tools act on the current session unless session_id names another one. "
        "Use run_script_background for long jobs; its output file reports completion. "
        "Use list_sessions, close_browser, close_all_browsers and cleanup_sessions to manage sessions."
    ),
)


def tool(name: str):
    """Register under ``name`` unless lite mode leaves it out."""
    if MCP_LITE_MODE and name not in LITE_TOOLS:
        return lambda func: func
    return mcp.tool(name=name)


# ── Session Tools ────────────────────────────────────────────────────────────


@tool("launch_browser")
async def tool_launch_browser(debug_port: Optional[int] = None) -> str:
    """Launch a new Chrome with its own profile directory and debug port.

    The new session becomes the current one. Returns its session id.

    Args:
        debug_port: Remote debugging port; derived from the session id if omitted.
    """
    return await session_tools.launch_browser(_controller(), debug_port)


@tool("connect_browser")
async def tool_connect_browser(session_id: Optional[str] = None, debug_port: Optional[int] = None) -> str:
    """Connect to an existing browser and make it the current session.

    Args:
        session_id: Registered session to join (takes precedence).
        debug_port: Debug port of a running Chrome (default 9222).
    """
    return await session_tools.connect_browser(_controller(), session_id, debug_port)


@tool("list_sessions")
async def tool_list_sessions() -> str:
    """List live sessions. Stale registry entries are removed as a side effect."""
    return await session_tools.list_sessions(_controller())


@tool("close_browser")
async def tool_close_browser(session_id: Optional[str] = None) -> str:
    """Close a browser session, kill its Chrome process and delete its profile directory.

    Args:
        session_id: Session to close; the current session if omitted.
    """
    return await session_tools.close_browser(_controller(), session_id)


@tool("close_all_browsers")
async def tool_close_all_browsers(force: bool = False) -> str:
    """Close every registered session and reset the session registry.

    Args:
        force: Skip the graceful CDP close and kill Chrome immediately.
    """
    return await session_tools.close_all_browsers(_controller(), force)


@tool("cleanup_sessions")
async def tool_cleanup_sessions() -> str:
    """Remove inactive sessions and orphaned session directories. Live sessions are untouched."""
    return await session_tools.cleanup_sessions(_controller())


@tool("get_tabs")
async def tool_get_tabs(session_id: Optional[str] = None) -> str:
    """List open tabs with index, url, title and which one is current."""
    return await session_tools.get_tabs(_controller(), session_id)


@tool("switch_to_tab")
async def tool_switch_to_tab(
    index: int = 0,
    url: Optional[str] = None,
    target: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Make another tab the current page.

    Args:
        index: Tab index; -1 selects the latest tab.
        url: Switch to the first tab whose URL contains this text.
        target: "latest" or "first".
        session_id: Session to act on; the current session if omitted.
    """
    return await session_tools.switch_to_tab(_controller(), index, url, target, session_id)


# ── Page Tools ───────────────────────────────────────────────────────────────


@tool("navigate_to")
async def tool_navigate_to(url: str, wait_until: str = "load", session_id: Optional[str] = None) -> str:
    """Navigate the page to a URL.

    Args:
        url: Absolute URL, e.g. https://example.com.
        wait_until: "load", "domcontentloaded" or "networkidle".
        session_id: Session to act on; the current session if omitted.
    """
    return await page_tools.navigate_to(_controller(), url, wait_until, session_id)


@tool("click")
async def tool_click(
    selector: str,
    click_by_text: bool = False,
    timeout: int = 5000,
    force: bool = False,
    index: int = 0,
    session_id: Optional[str] = None,
) -> str:
    """Click an element by CSS selector, or by visible text.

    Args:
        selector: CSS selector, or the text to match when click_by_text is set.
        click_by_text: Match elements by their text instead of a selector.
        timeout: Click timeout in milliseconds.
        force: Skip actionability checks.
        index: Which match to click when several are found.
        session_id: Session to act on; the current session if omitted.
    """
    return await page_tools.click(_controller(), selector, click_by_text, timeout, force, index, session_id)


@tool("type_text")
async def tool_type_text(
    selector: str, text: str, clear: bool = True, delay: int = 50, session_id: Optional[str] = None
) -> str:
    """Type into an input element.

    Args:
        selector: CSS selector of the input.
        text: Text to type.
        clear: Clear the field first.
        delay: Delay between keystrokes in milliseconds.
        session_id: Session to act on; the current session if omitted.
    """
    return await page_tools.type_text(_controller(), selector, text, clear, delay, session_id)


@tool("read_text")
async def tool_read_text(
    selector: Optional[str] = None, all: bool = False, session_id: Optional[str] = None
) -> str:
    """Read visible text from the page or from matching elements.

    Args:
        selector: CSS selector; the whole page if omitted.
        all: Read every match instead of the first.
        session_id: Session to act on; the current session if omitted.
    """
    return await page_tools.read_text(_controller(), selector, all, session_id)


@tool("get_elements")
async def tool_get_elements(
    selector: str, attributes: Optional[list[str]] = None, session_id: Optional[str] = None
) -> str:
    """List matching elements with their tag, text and selected attributes."""
    return await page_tools.get_elements(_controller(), selector, attributes, session_id)


@tool("wait_for")
async def tool_wait_for(
    selector: str,
    state: str = "visible",
    timeout: int = 10000,
    switch_to_new_tab: bool = True,
    session_id: Optional[str] = None,
) -> str:
    """Wait for an element to reach a state, following newly opened tabs.

    Args:
        selector: CSS selector.
        state: "attached", "detached", "visible" or "hidden".
        timeout: Timeout in milliseconds.
        switch_to_new_tab: Switch to the latest tab if one was opened.
        session_id: Session to act on; the current session if omitted.
    """
    return await page_tools.wait_for(_controller(), selector, state, timeout, switch_to_new_tab, session_id)


@tool("press_key")
async def tool_press_key(
    key: str, modifiers: Optional[list[str]] = None, session_id: Optional[str] = None
) -> str:
    """Press a key, optionally with modifiers such as Control or Shift."""
    return await page_tools.press_key(_controller(), key, modifiers, session_id)


@tool("screenshot")
async def tool_screenshot(
    path: Optional[str] = None,
    full_page: bool = False,
    selector: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Save a screenshot of the page or one element to a PNG file and return its path."""
    return await page_tools.screenshot(_controller(), path, full_page, selector, session_id)


@tool("scroll")
async def tool_scroll(direction: str = "down", amount: int = 500, session_id: Optional[str] = None) -> str:
    """Scroll the page "up", "down", "left" or "right" by a number of pixels."""
    return await page_tools.scroll(_controller(), direction, amount, session_id)


@tool("get_page_info")
async def tool_get_page_info(session_id: Optional[str] = None) -> str:
    """Return title, URL, domain, viewport and document height of the page."""
    return await page_tools.get_page_info(_controller(), session_id)


@tool("go_back")
async def tool_go_back(session_id: Optional[str] = None) -> str:
    """Navigate back in history."""
    return await page_tools.go_back(_controller(), session_id)


@tool("evaluate")
async def tool_evaluate(code: str, session_id: Optional[str] = None) -> str:
    """Evaluate JavaScript in the page and return the result."""
    return await page_tools.evaluate(_controller(), code, session_id)


# ── Script Tools ─────────────────────────────────────────────────────────────


@tool("run_script")
async def tool_run_script(
    script_path: Optional[str] = None,
    script_url: Optional[str] = None,
    args: Optional[dict] = None,
    session_id: Optional[str] = None,
    create_new_tab: bool = False,
    auto_close_tab: bool = False,
) -> str:
    """Run a Python automation script and wait for its result.

    The script must define ``async def run(browser, page, args)``.

    Args:
        script_path: Local script file (exclusive with script_url).
        script_url: URL to fetch the script from.
        args: Passed to the script as ``args``.
        session_id: Session to act on; the current session if omitted.
        create_new_tab: Run the script in a new tab.
        auto_close_tab: Close that tab when the script finishes.
    """
    return await script_tools.run_script(
        _runner(), script_path, script_url, args, session_id, create_new_tab, auto_close_tab
    )


@tool("run_script_background")
async def tool_run_script_background(
    script_path: Optional[str] = None,
    script_url: Optional[str] = None,
    args: Optional[dict] = None,
    project_folder: Optional[str] = None,
    auto_close_browser: Optional[bool] = None,
    session_id: Optional[str] = None,
    create_new_tab: bool = False,
    auto_close_tab: bool = False,
) -> str:
    """Start a Python automation script in the background and return at once.

    Progress goes to the task's .log file and the final record to its .json
    output file. Unless auto_close_browser is false, the browser is closed
    once the output file is written.

    Args:
        script_path: Local script file (exclusive with script_url).
        script_url: URL to fetch the script from.
        args: Passed to the script as ``args``.
        project_folder: Output directory (default: a temp folder named after the session).
        auto_close_browser: Close the browser after the script settles (default true).
        session_id: Session to act on; the current session if omitted.
        create_new_tab: Run the script in a new tab.
        auto_close_tab: Close that tab when the script finishes.
    """
    return await script_tools.run_script_background(
        _runner(),
        script_path,
        script_url,
        args,
        project_folder,
        auto_close_browser,
        session_id,
        create_new_tab,
        auto_close_tab,
    )


# ── Storage Tools ────────────────────────────────────────────────────────────


@tool("get_storage")
async def tool_get_storage(session_id: Optional[str] = None) -> str:
    """Export cookies, localStorage and sessionStorage of the current page."""
    return await storage_tools.get_storage(_controller(), session_id)


@tool("set_storage")
async def tool_set_storage(
    cookies: Optional[list[dict]] = None,
    cookie_string: Optional[str] = None,
    local_storage: Optional[dict] = None,
    session_storage: Optional[dict] = None,
    domain: Optional[str] = None,
    file_path: Optional[str] = None,
    url: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Restore cookies and web storage, e.g. from a get_storage export.

    Args:
        cookies: Cookie objects (name, value, domain, path, ...).
        cookie_string: ``document.cookie`` style "a=1; b=2".
        local_storage: Key/value pairs for localStorage.
        session_storage: Key/value pairs for sessionStorage.
        domain: Default cookie domain.
        file_path: JSON file with any of the above keys; its values take precedence.
        url: Apply storage on a background tab opened at this URL.
        session_id: Session to act on; the current session if omitted.
    """
    return await storage_tools.set_storage(
        _controller(), cookies, cookie_string, local_storage, session_storage, domain, file_path, url, session_id
    )


# ── Entry Point ──────────────────────────────────────────────────────────────


def _ignore_signal(signum, frame):
    logger.warning(
        f"Received {signal.Signals(signum).name}; ignoring. "
        "Use close_browser or close_all_browsers to release browsers."
    )


def install_signal_policy(ignore: bool = IGNORE_TERMINATION_SIGNALS) -> None:
    if not ignore:
        return
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _ignore_signal)


def main():
    """Run the MCP server on STDIO transport."""
    install_signal_policy()
    logger.info(f"Starting Chrome automation MCP server{' (lite mode)' if MCP_LITE_MODE else ''}...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
