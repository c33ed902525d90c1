"""MCP tools that run user automation scripts against a session."""

from __future__ import annotations

from typing import Optional

from ..session_manager.scripts import ScriptRunner
from .common import to_json, tool_errors


@tool_errors("run_script")
async def run_script(
    runner: ScriptRunner,
    script_path: Optional[str] = None,
    script_url: Optional[str] = None,
    args: Optional[dict] = None,
    session_id: Optional[str] = None,
    create_new_tab: bool = False,
    auto_close_tab: bool = False,
) -> str:
    """Run a script and wait for its result.

    Returns:
        The script's return value: strings verbatim, anything else as JSON.
    """
    return await runner.run_script(
        script_path=script_path,
        script_url=script_url,
        args=args,
        session_id=session_id,
        create_new_tab=create_new_tab,
        auto_close_tab=auto_close_tab,
    )


@tool_errors("run_script_background")
async def run_script_background(
    runner: ScriptRunner,
    script_path: Optional[str] = None,
    script_url: Optional[str] = None,
    args: Optional[dict] = None,
    project_folder: Optional[str] = None,
    auto_close_browser: Optional[bool] = None,
    session_id: Optional[str] = None,
    create_new_tab: bool = False,
    auto_close_tab: bool = False,
) -> str:
    """Start a script in the background and return its task record as JSON."""
    task = await runner.run_script_background(
        script_path=script_path,
        script_url=script_url,
        args=args,
        project_folder=project_folder,
        auto_close_browser=auto_close_browser,
        session_id=session_id,
        create_new_tab=create_new_tab,
        auto_close_tab=auto_close_tab,
    )
    record = task.to_record()
    for settled_only in ("endTime", "result", "error"):
        record.pop(settled_only, None)
    return to_json(record)
