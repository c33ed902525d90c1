"""User automation scripts: loading, binding and (background) execution.

A script is Python source defining::

    async def run(browser, page, args):
        ...

The source is loaded into a fresh module and ``run`` is the only entrypoint
the runner calls. Foreground runs return the serialized result; background
runs return a task record at once and settle it into an output file.
"""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import json
import logging
import os
import re
import sys
import tempfile
import traceback
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
import psutil

from ..config import SCRIPT_OUTPUT_DIR
from ..constants import SCRIPT_ENTRYPOINT, SCRIPT_MONITOR_INTERVAL, TASK_COMPLETED, TASK_FAILED
from ..errors import (
    BrowserAutomationError,
    BrowserDisconnectedError,
    InvalidArgumentError,
    ResourceUnavailableError,
    ScriptExecutionError,
    ScriptFetchError,
    ScriptNotFoundError,
)
from ..models.session import utc_now_iso
from ..models.task import BackgroundTask
from .closer import SmartCloser
from .context import SessionContext
from .controller import SessionController, is_foreign
from .ids import new_session_id, now_millis
from .recovery import RecoveringPage, is_target_closed
from .task_files import TaskLog, write_task_record
from .tabs import page_url

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

ScriptEntry = Callable[[Any, Any, dict], Awaitable[Any]]


# ── Loading ──────────────────────────────────────────────────────────────────


def validate_source_args(script_path: Optional[str], script_url: Optional[str]) -> None:
    if not script_path and not script_url:
        raise InvalidArgumentError("Either scriptPath or scriptUrl must be provided")
    if script_path and script_url:
        raise InvalidArgumentError("Cannot provide both scriptPath and scriptUrl. Use only one.")


async def load_script_source(script_path: Optional[str] = None, script_url: Optional[str] = None) -> str:
    validate_source_args(script_path, script_url)
    if script_path:
        logger.info(f"Reading script from local path: {script_path}")
        path = Path(script_path).expanduser()
        if not path.is_file():
            raise ScriptNotFoundError(f"Script file not found: {script_path}")
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ScriptNotFoundError(f"Cannot read script file {script_path}: {e}") from e

    logger.info(f"Fetching script from URL: {script_url}")
    try:
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            resp = await client.get(script_url)
    except httpx.HTTPError as e:
        raise ScriptFetchError(f"Failed to fetch script: {e}") from e
    if resp.status_code != 200:
        raise ScriptFetchError(f"Failed to fetch script: HTTP {resp.status_code}")
    return resp.text


def script_name_for(script_path: Optional[str], script_url: Optional[str]) -> str:
    if script_path:
        return Path(script_path).stem or "script"
    if script_url:
        last = script_url.rstrip("/").split("/")[-1]
        return last.split(".")[0] or "remote_script"
    return "script"


def compile_script(source: str, name: str = "script") -> ScriptEntry:
    """Load ``source`` as a fresh module and return its async ``run`` function."""
    module_name = "browser_script_" + re.sub(r"\W", "_", name)
    spec = importlib.util.spec_from_loader(module_name, loader=None, origin=f"<script {name}>")
    module = importlib.util.module_from_spec(spec)
    try:
        code = compile(source, f"<script {name}>", "exec")
        exec(code, module.__dict__)
    except SyntaxError as e:
        raise ScriptExecutionError(f"Script {name} has a syntax error: {e}") from e
    except Exception as e:
        raise ScriptExecutionError(f"Script {name} failed while loading: {e}") from e

    entry = getattr(module, SCRIPT_ENTRYPOINT, None)
    if entry is None or not inspect.iscoroutinefunction(entry):
        raise ScriptExecutionError(
            f"Script {name} must define 'async def {SCRIPT_ENTRYPOINT}(browser, page, args)'"
        )
    return entry


def serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, default=str)


def sanitize_output_dir(project_folder: Optional[str], session_id: str) -> Path:
    """Trim whitespace from the folder and from each of its path segments."""
    raw = (project_folder or SCRIPT_OUTPUT_DIR or os.path.join(tempfile.gettempdir(), session_id)).strip()
    segments = [segment.strip() for segment in raw.split(os.sep)]
    cleaned = os.sep.join(segment for segment in segments if segment)
    if raw.startswith(os.sep):
        cleaned = os.sep + cleaned
    if project_folder and cleaned != project_folder:
        logger.info(f"Sanitized output directory: {project_folder!r} -> {cleaned!r}")
    return Path(cleaned)


# ── Runner ───────────────────────────────────────────────────────────────────


class ScriptRunner:
    def __init__(self, controller: SessionController, closer: Optional[SmartCloser] = None):
        self.controller = controller
        self.closer = closer or SmartCloser(controller)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every background task, including its smart close."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _open_page(self, ctx: SessionContext, create_new_tab: bool) -> tuple[Any, bool]:
        if not create_new_tab:
            return ctx.page, False
        page = await ctx.browser_context().new_page()
        tab_id = ctx.tabs.register_tab(page)
        logger.info(f"Created new tab with ID: {tab_id}")
        return page, True

    async def _close_tab(self, ctx: SessionContext, page: Any) -> None:
        try:
            await page.close()
            logger.info("Auto-closed tab after script completion")
        finally:
            ctx.tabs.unregister_tab(page)

    async def run_script(
        self,
        script_path: Optional[str] = None,
        script_url: Optional[str] = None,
        args: Optional[dict] = None,
        session_id: Optional[str] = None,
        create_new_tab: bool = False,
        auto_close_tab: bool = False,
    ) -> str:
        validate_source_args(script_path, script_url)
        name = script_name_for(script_path, script_url)
        entry = compile_script(await load_script_source(script_path, script_url), name)

        async with self.controller.session(session_id, "run_script") as ctx:
            page, is_new_tab = await self._open_page(ctx, create_new_tab)
            try:
                result = await entry(ctx.browser, page, args or {})
            except Exception as e:
                logger.error(f"Script execution failed: {e}", exc_info=True)
                raise ScriptExecutionError(f"Script execution failed: {e}") from e
            finally:
                if is_new_tab and auto_close_tab:
                    try:
                        await self._close_tab(ctx, page)
                    except Exception as e:
                        logger.warning(f"Error closing tab: {e}")

        logger.info("Script executed successfully")
        return serialize_result(result)

    async def run_script_background(
        self,
        script_path: Optional[str] = None,
        script_url: Optional[str] = None,
        args: Optional[dict] = None,
        project_folder: Optional[str] = None,
        auto_close_browser: Optional[bool] = None,
        session_id: Optional[str] = None,
        create_new_tab: bool = False,
        auto_close_tab: bool = False,
    ) -> BackgroundTask:
        """Schedule a script and return its ``started`` task record immediately."""
        validate_source_args(script_path, script_url)

        if is_foreign(session_id) and session_id != self.controller.current_session_id:
            ctx = await self.controller.resolve_session(session_id)
        else:
            ctx = self.controller.current
            if ctx is None or not ctx.is_connected() or ctx.page is None:
                raise ResourceUnavailableError(
                    "run_script_background", "Use launch_browser or connect_browser first."
                )
        borrowed = ctx is not self.controller.current
        task_session_id = ctx.session_id or new_session_id()

        try:
            page, is_new_tab = await self._open_page(ctx, create_new_tab)
        except Exception:
            if borrowed:
                await _disconnect(ctx)
            raise

        close_browser = True if auto_close_browser is None else auto_close_browser
        if auto_close_browser is None and create_new_tab and auto_close_tab and session_id is not None:
            close_browser = False
            logger.info("Auto-disabled browser close (cross-session with createNewTab + autoCloseTab)")

        try:
            output_dir = sanitize_output_dir(project_folder, task_session_id)
            try:
                output_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise BrowserAutomationError(f"Failed to create output directory: {e}") from e

            name = script_name_for(script_path, script_url)
            timestamp = now_millis()
            stem = f"{name}_script_output_{timestamp}"
            task = BackgroundTask(
                session_id=task_session_id,
                script_name=name,
                script_source=script_path or script_url,
                start_time=utc_now_iso(),
                timestamp=timestamp,
                output_dir=str(output_dir),
                output_file=str(output_dir / f"{stem}.json"),
                log_file=str(output_dir / f"{stem}.log"),
                auto_close_browser=close_browser,
            )
            logger.info(f"Starting background script execution: {task.output_file}")

            try:
                entry = compile_script(await load_script_source(script_path, script_url), name)
            except BrowserAutomationError as e:
                write_task_record(task.model_copy(update={
                    "status": TASK_FAILED, "error": str(e), "end_time": utc_now_iso(),
                }))
                TaskLog(task.log_file).write(f"Error fetching script: {e}\n")
                raise
        except Exception:
            if is_new_tab and auto_close_tab:
                await _quiet(self._close_tab(ctx, page))
            if borrowed:
                await _disconnect(ctx)
            raise

        job = asyncio.create_task(self._execute(
            task, ctx, page, entry, args or {}, is_new_tab, auto_close_tab, borrowed,
        ))
        self._tasks.add(job)
        job.add_done_callback(self._tasks.discard)
        return task

    async def _execute(
        self,
        task: BackgroundTask,
        ctx: SessionContext,
        page: Any,
        entry: ScriptEntry,
        args: dict,
        is_new_tab: bool,
        auto_close_tab: bool,
        borrowed: bool,
    ) -> None:
        log = TaskLog(task.log_file)
        result, error = None, None
        try:
            result = await self._run_with_monitor(task, ctx, page, entry, args, log)
            log.write("\n")
            log.line("Script executed successfully")
        except Exception as e:
            error = str(e)
            logger.error(f"Script execution failed for session {task.session_id}: {e}")
            log.write("\n")
            log.line(f"Script execution failed: {e}")
            log.write("Stack trace:\n" + "".join(traceback.format_exception(e)))
            if ctx.is_connected():
                log.line("Browser is still connected after error")
            else:
                log.line("Browser is disconnected after error")

        settled = task.model_copy(update={
            "status": TASK_FAILED if error is not None else TASK_COMPLETED,
            "end_time": utc_now_iso(),
            "result": result,
            "error": error,
        })
        try:
            write_task_record(settled)
            logger.info(f"Background script completed. Output saved to: {task.output_file}")
            log.write("\n")
            log.line(f"Script execution completed. Output file generated: {task.output_file}")
        except OSError as e:
            logger.error(f"Could not write output file {task.output_file}: {e}")
            log.line(f"Could not write output file: {e}")

        if is_new_tab and auto_close_tab:
            try:
                await self._close_tab(ctx, page)
                log.line("Auto-closed tab after script completion")
            except Exception as e:
                log.line(f"Error closing tab: {e}")

        try:
            if task.auto_close_browser:
                await self.closer.run(task, log, browser=ctx.browser)
        finally:
            if borrowed:
                await _disconnect(ctx)

    async def _run_with_monitor(
        self, task: BackgroundTask, ctx: SessionContext, page: Any, entry: ScriptEntry, args: dict, log: TaskLog
    ) -> Any:
        log.line("Starting script execution")
        log.write(f"Script source: {task.script_source}\n")
        log.write(f"Session ID: {task.session_id}\n")
        log.write(f"Output directory: {task.output_dir}\n")
        log_system_info(log)
        log.write("=" * 51 + "\n")

        log.line("About to execute script function")
        if not ctx.is_connected():
            log.line("ERROR: Browser disconnected before execution")
            raise BrowserDisconnectedError("Browser disconnected before script execution")
        try:
            contexts = ctx.browser.contexts
        except Exception as e:
            log.line(f"ERROR: Browser disconnected before execution: {e}")
            raise BrowserDisconnectedError(f"Browser disconnected before script execution: {e}") from e
        log.line(f"Browser contexts before execution: {len(contexts)}")

        monitor = asyncio.create_task(monitor_browser(ctx, page, task.session_id, log))
        try:
            return await entry(ctx.browser, RecoveringPage(page, ctx.browser), args)
        except Exception as e:
            if is_target_closed(e):
                log.line("[CLOSE-EXTERNAL] CRITICAL: Page/browser closed during script execution")
                describe_pages(ctx, log)
            raise
        finally:
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)


# ── Diagnostics ──────────────────────────────────────────────────────────────


def log_system_info(log: TaskLog) -> None:
    try:
        chrome_count = sum(
            1 for proc in psutil.process_iter(["name"])
            if "chrome" in (proc.info.get("name") or "").lower()
        )
        memory = psutil.virtual_memory()
        log.line(f"System Chrome processes: {chrome_count}")
        log.line(f"System memory usage: {memory.used // (1024 * 1024)}/{memory.total // (1024 * 1024)}")
    except psutil.Error as e:
        log.line(f"[CLOSE-EXTERNAL] Could not get system info: {e}")


def describe_pages(ctx: SessionContext, log: TaskLog) -> None:
    """Record which pages survive in the browser, after a page or browser loss."""
    if not ctx.is_connected():
        log.line("[CLOSE-EXTERNAL] CONFIRMED: No contexts remain - complete external closure")
        return
    contexts = ctx.browser.contexts
    for index, context in enumerate(contexts):
        pages = context.pages
        log.line(f"[CLOSE-EXTERNAL] Context {index} has {len(pages)} pages")
        if not pages:
            log.line("[CLOSE-EXTERNAL] WARNING: All pages closed externally - possible anti-automation or security measure")
        for page_index, page in enumerate(pages):
            log.line(f"[CLOSE-EXTERNAL] Remaining page {page_index}: {page_url(page)}")


async def monitor_browser(
    ctx: SessionContext, page: Any, session_id: str, log: TaskLog, interval: float = SCRIPT_MONITOR_INTERVAL
) -> None:
    """Heartbeat while a background script runs; stops on the first browser loss."""
    while True:
        await asyncio.sleep(interval)
        if not ctx.is_connected():
            logger.warning(f"[CLOSE-EXTERNAL] Browser connection lost during script execution for session {session_id}")
            log.line("[CLOSE-EXTERNAL] Browser connection lost")
            return
        log.line(f"Monitor: Browser OK, {len(ctx.browser.contexts)} context(s)")
        if page.is_closed():
            logger.warning(f"[CLOSE-EXTERNAL] Page connection lost during script execution for session {session_id}")
            log.line("[CLOSE-EXTERNAL] Page connection lost")
            describe_pages(ctx, log)
        else:
            log.line(f"Monitor: Page OK, URL: {page_url(page)}")


async def _disconnect(ctx: SessionContext) -> None:
    if ctx.browser is not None:
        await _quiet(ctx.browser.close())


async def _quiet(awaitable: Awaitable) -> None:
    try:
        await awaitable
    except Exception as e:
        logger.debug(f"Ignoring cleanup error: {e}")
