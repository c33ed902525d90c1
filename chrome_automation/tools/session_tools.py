"""MCP tools for launching, joining, listing and closing browser sessions."""

from __future__ import annotations

from typing import Optional

from ..session_manager.controller import SessionController
from .common import session_suffix, to_json, tool_errors


@tool_errors("launch_browser")
async def launch_browser(controller: SessionController, debug_port: Optional[int] = None) -> str:
    """Launch a dedicated Chrome and make it the current session.

    Args:
        controller: The server's session controller.
        debug_port: Remote debugging port; derived from the new session id if omitted.

    Returns:
        Confirmation naming the port and session id.
    """
    result = await controller.launch_browser(debug_port)
    return f"Browser launched successfully on port {result.debug_port} (Session: {result.session_id})"


@tool_errors("connect_browser")
async def connect_browser(
    controller: SessionController, session_id: Optional[str] = None, debug_port: Optional[int] = None
) -> str:
    ctx = await controller.connect_browser(session_id, debug_port)
    if ctx.session_id and session_id:
        return f"Connected to browser session {ctx.session_id} on port {ctx.debug_port}"
    return f"Connected to browser on port {ctx.debug_port}"


@tool_errors("list_sessions")
async def list_sessions(controller: SessionController) -> str:
    sessions = await controller.list_sessions()
    if not sessions:
        return "No active sessions found"
    return to_json([s.model_dump(by_alias=True) for s in sessions])


@tool_errors("close_browser")
async def close_browser(controller: SessionController, session_id: Optional[str] = None) -> str:
    return await controller.close_browser(session_id)


@tool_errors("close_all_browsers")
async def close_all_browsers(controller: SessionController, force: bool = False) -> str:
    return await controller.close_all_browsers(force)


@tool_errors("cleanup_sessions")
async def cleanup_sessions(controller: SessionController) -> str:
    return await controller.cleanup_sessions()


@tool_errors("get_tabs")
async def get_tabs(controller: SessionController, session_id: Optional[str] = None) -> str:
    async with controller.session(session_id, "get_tabs") as ctx:
        tabs = await controller.get_tabs(ctx)
    return to_json([tab.model_dump(by_alias=True) for tab in tabs])


@tool_errors("switch_to_tab")
async def switch_to_tab(
    controller: SessionController,
    index: int = 0,
    url: Optional[str] = None,
    target: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    async with controller.session(session_id, "switch_to_tab") as ctx:
        previous = ctx.page.url if ctx.page is not None else "none"
        tab = await controller.switch_to_tab(ctx, index=index, url=url, target=target)
    return f"Switched from {previous} to {tab.url}{session_suffix(session_id)}"
