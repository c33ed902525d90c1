"""Session orchestration: launch, join, fan-out, teardown and reclamation.

The controller keeps one *current* ``SessionContext`` (the session it launched
or last joined). Calls that name a different session id get a fresh borrowed
context for the duration of the call and never touch the current one.

Signal policy: the server does not exit on SIGINT/SIGTERM by default.
Browsers are reclaimed only through ``close_browser``, ``close_all_browsers``,
``cleanup_sessions`` or the smart closer that follows a background script.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from ..config import BASE_DEBUG_PORT, TERMINATION_GRACE_SECONDS
from ..constants import DEFAULT_SESSION, FILE_LOCK_RELEASE_DELAY
from ..errors import (
    BrowserAutomationError,
    ConnectionFailedError,
    InvalidArgumentError,
    ResourceUnavailableError,
    SessionNotFoundError,
    StaleSessionError,
)
from ..models.session import ActiveSession, CloseResult, LaunchResult, SessionInfo
from ..models.tab import TabSummary
from .cdp import CdpConnector, close_browser_gracefully
from .context import SessionContext
from .ids import new_session_id
from .ports import derive_port, reserve_port, rotate_port
from .process import ChromeProcess, Termination, kill_pid, terminate_pid, wait_for_cdp
from .registry import SessionRegistry, remove_dir_with_retries
from .tabs import page_url

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

GRACEFUL = "graceful"
FORCED = "forced"


def is_foreign(session_id: Optional[str]) -> bool:
    return bool(session_id) and session_id != DEFAULT_SESSION


class SessionController:
    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        connector: Optional[CdpConnector] = None,
        base_dir: Optional[Path] = None,
    ):
        self.connector = connector or CdpConnector()
        if registry is None:
            registry = SessionRegistry(base_dir=base_dir, cdp_probe=self.connector.probe)
        self.registry = registry
        self.current: Optional[SessionContext] = None
        self._teardown_locks: dict[str, asyncio.Lock] = {}
        # Session dirs created by an in-flight launch, not yet registered
        self._pending_dirs: set[str] = set()

    @property
    def current_session_id(self) -> Optional[str]:
        return self.current.session_id if self.current else None

    # ── Launch / connect ──────────────────────────────────────────────────

    async def launch_browser(self, debug_port: Optional[int] = None) -> LaunchResult:
        """Spawn a dedicated Chrome, connect to it and register the session.

        A failed connection restarts Chrome on a rotated port before the next
        attempt; the previous process is always terminated first.
        """
        session_id = new_session_id()
        session_dir = self.registry.session_dir_for(session_id)
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BrowserAutomationError(f"Cannot create session directory {session_dir}: {e}") from e
        self._pending_dirs.add(session_dir.name)

        port = debug_port or derive_port(session_id)
        logger.info(f"Launching session {session_id} on port {port} (dir: {session_dir})")

        state: dict = {"chrome": None, "port": port}

        async def restart_on_new_port(attempt: int, error: BaseException) -> int:
            previous: ChromeProcess = state["chrome"]
            new_port = rotate_port(state["port"], attempt)
            logger.warning(
                f"[CLOSE-RESTART] Terminating previous Chrome process PID: {previous.pid} "
                f"(retry attempt {attempt}), retrying with port {new_port}"
            )
            await previous.terminate(TERMINATION_GRACE_SECONDS)
            state["port"] = new_port
            state["chrome"] = await self._start_chrome(new_port, session_dir)
            return new_port

        launched = False
        connection = None
        try:
            await self._presweep()
            state["chrome"] = await self._start_chrome(port, session_dir)
            connection = await self.connector.connect(port, on_retry=restart_on_new_port, label=session_id)

            chrome = state["chrome"]
            ctx = SessionContext(
                session_id=session_id,
                debug_port=connection.port,
                browser=connection.browser,
                page=connection.page,
                chrome=chrome,
                session_dir=str(session_dir),
                owned=True,
            )
            info = SessionInfo(
                pid=os.getpid(),
                debug_port=connection.port,
                session_dir=str(session_dir),
                chrome_process_pid=chrome.pid,
            )
            try:
                await self.registry.register(session_id, info)
            except Exception as e:
                # The browser is usable even if other controllers cannot see it
                logger.error(f"Failed to register session {session_id}: {e}", exc_info=True)
            launched = True
        finally:
            if not launched:
                # Runs on cancellation as well
                await asyncio.shield(self._abandon_launch(session_id, state["chrome"], connection, session_dir))
            self._pending_dirs.discard(session_dir.name)

        if self.current is not None:
            if self.current.owned:
                logger.info(f"Session {self.current.session_id} stays registered; {session_id} is now current")
            else:
                await self._release_current_handles()
        self.current = ctx
        logger.info(f"Browser launched and connected: session {session_id}, port {connection.port}")
        return LaunchResult(
            session_id=session_id,
            debug_port=connection.port,
            chrome_process_pid=chrome.pid,
            session_dir=str(session_dir),
        )

    async def _abandon_launch(
        self, session_id: str, chrome: Optional[ChromeProcess], connection: Any, session_dir: Path
    ) -> None:
        logger.warning(f"Launch of session {session_id} did not complete; cleaning up")
        if connection is not None:
            try:
                await connection.browser.close()
            except Exception as e:
                logger.debug(f"Ignoring error while dropping connection for {session_id}: {e}")
        if chrome is not None:
            await chrome.terminate(TERMINATION_GRACE_SECONDS)
        try:
            await self.registry.unregister(session_id)
        except Exception as e:
            logger.warning(f"Could not unregister abandoned session {session_id}: {e}")
        await remove_dir_with_retries(session_dir)

    async def _presweep(self) -> None:
        try:
            result = await self.registry.sweep(deep=False)
            if result.removed:
                logger.info(f"Auto-cleaned {len(result.removed)} inactive sessions before launch")
        except Exception as e:
            logger.warning(f"Auto-cleanup before launch failed: {e}")

    async def _start_chrome(self, port: int, session_dir: Path) -> ChromeProcess:
        await reserve_port(port)
        chrome = ChromeProcess(port, str(session_dir))
        try:
            chrome.spawn()
        except OSError as e:
            raise BrowserAutomationError(f"Failed to start Chrome ({chrome.chrome_path}): {e}") from e
        try:
            ready = await chrome.wait_until_ready()
        except BaseException:
            await asyncio.shield(chrome.terminate(TERMINATION_GRACE_SECONDS))
            raise
        if not ready:
            logger.warning(f"Chrome on port {port} did not report ready; attempting connection anyway")
        return chrome

    async def connect_browser(self, session_id: Optional[str] = None, debug_port: Optional[int] = None) -> SessionContext:
        """Join an existing browser by session id or by raw debug port."""
        if is_foreign(session_id):
            ctx = await self.resolve_session(session_id)
        else:
            port = debug_port or BASE_DEBUG_PORT
            connection = await self.connector.connect(port, label=f"port {port}")
            ctx = SessionContext(
                session_id=await self._session_for_port(port),
                debug_port=port,
                browser=connection.browser,
                page=connection.page,
            )
        await self._release_current_handles()
        self.current = ctx
        logger.info(f"Connected to browser session {ctx.label} on port {ctx.debug_port}")
        return ctx

    async def _session_for_port(self, port: int) -> Optional[str]:
        for session_id, info in (await self.registry.list()).items():
            if info.debug_port == port:
                return session_id
        return None

    async def resolve_session(self, session_id: str) -> SessionContext:
        """Fresh borrowed context for a registered session. No process is spawned."""
        info = await self.registry.get(session_id)
        if info is None:
            raise SessionNotFoundError(session_id)
        if not await self.registry.probe(session_id, info, deep=False):
            await self.registry.reap(session_id, info)
            raise StaleSessionError(session_id, "its processes are no longer running")
        try:
            connection = await self.connector.connect(info.debug_port, label=f"session {session_id}")
        except ConnectionFailedError as e:
            raise StaleSessionError(session_id, str(e)) from e
        return SessionContext(
            session_id=session_id,
            debug_port=info.debug_port,
            browser=connection.browser,
            page=connection.page,
            session_dir=info.session_dir,
        )

    @contextlib.asynccontextmanager
    async def session(self, session_id: Optional[str], operation: str) -> AsyncIterator[SessionContext]:
        """Yield the context a tool call should act on.

        A foreign session id is resolved to a borrowed context that is
        disconnected again when the call finishes.
        """
        if is_foreign(session_id) and session_id != self.current_session_id:
            ctx = await self.resolve_session(session_id)
            try:
                yield ctx
            finally:
                await self._disconnect(ctx)
            return

        ctx = self.current
        if ctx is None or not ctx.is_connected():
            raise ResourceUnavailableError(operation)
        if ctx.page is None or ctx.page.is_closed():
            ctx.page = ctx.latest_page()
            if ctx.page is None:
                raise ResourceUnavailableError(operation, "All tabs are closed; launch or connect again.")
        yield ctx

    async def _disconnect(self, ctx: SessionContext) -> None:
        if ctx.browser is None:
            return
        try:
            await ctx.browser.close()
        except Exception as e:
            logger.debug(f"Ignoring error while disconnecting from {ctx.label}: {e}")

    async def _release_current_handles(self) -> None:
        """Drop the current connection without touching its Chrome process."""
        if self.current is None:
            return
        if not self.current.owned:
            await self._disconnect(self.current)
        self.current.tabs.clear()
        self.current = None

    # ── Teardown ──────────────────────────────────────────────────────────

    async def teardown_session(self, session_id: Optional[str], mode: str = GRACEFUL, tag: str = "[CLOSE-MANUAL]") -> CloseResult:
        """Close one session's browser and process, unregister it, delete its dir.

        Idempotent: a second call for the same session finds nothing left and
        returns an all-false result. ``session_id=None`` targets the current
        context when it was joined by port and has no registry entry.
        """
        if mode not in (GRACEFUL, FORCED):
            raise InvalidArgumentError(f"Unknown teardown mode: {mode}")
        key = session_id or DEFAULT_SESSION
        lock = self._teardown_locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                return await self._teardown(session_id, mode, tag)
            finally:
                self._teardown_locks.pop(key, None)

    async def _teardown(self, session_id: Optional[str], mode: str, tag: str) -> CloseResult:
        result = CloseResult(session_id=session_id)
        info = await self.registry.get(session_id) if session_id else None
        ctx = self.current if self.current and self.current.session_id == session_id else None
        if info is None and ctx is None:
            logger.info(f"{tag} Session {session_id} already closed")
            return result

        port = ctx.debug_port if ctx else info.debug_port
        chrome_pid = (ctx.chrome_pid if ctx else None) or (info.chrome_process_pid if info else None)
        logger.info(f"{tag} Closing session {session_id or 'unknown'} ({mode}) on port {port}, Chrome PID {chrome_pid}")

        if mode == GRACEFUL:
            result.browser_closed = await self._close_over_cdp(ctx, port, tag)
            if result.browser_closed:
                await asyncio.sleep(FILE_LOCK_RELEASE_DELAY)
        elif ctx is not None:
            await self._disconnect(ctx)

        if ctx is not None and ctx.chrome is not None:
            termination = await (ctx.chrome.terminate(TERMINATION_GRACE_SECONDS) if mode == GRACEFUL else ctx.chrome.kill())
        elif chrome_pid:
            termination = await (terminate_pid(chrome_pid, TERMINATION_GRACE_SECONDS) if mode == GRACEFUL else kill_pid(chrome_pid))
        else:
            termination = Termination.NOT_RUNNING
        result.process_closed = termination in (Termination.NOT_RUNNING, Termination.TERMINATED)
        result.forced = mode == FORCED or termination == Termination.KILLED
        if termination == Termination.FAILED:
            logger.warning(f"{tag} Could not signal Chrome process {chrome_pid}")
        else:
            logger.info(f"{tag} Chrome process {chrome_pid}: {termination.value}")

        if session_id:
            result.unregistered = await self.registry.unregister(session_id) is not None
        session_dir = (info.session_dir if info else None) or (ctx.session_dir if ctx else None)
        result.dir_deleted = await remove_dir_with_retries(session_dir)

        if ctx is not None:
            ctx.tabs.clear()
            self.current = None
        return result

    async def _close_over_cdp(self, ctx: Optional[SessionContext], port: int, tag: str) -> bool:
        if ctx is not None and ctx.is_connected():
            return await close_browser_gracefully(ctx.browser)
        if not await wait_for_cdp(port, timeout=1.0):
            logger.info(f"{tag} Debug port {port} not answering; skipping graceful close")
            return False
        try:
            connection = await self.connector.connect_once(port, label=f"close port {port}")
        except Exception as e:
            logger.warning(f"{tag} Could not connect for graceful close on port {port}: {e}")
            return False
        return await close_browser_gracefully(connection.browser)

    async def close_browser(self, session_id: Optional[str] = None) -> str:
        logger.info(f"[CLOSE-MANUAL] close_browser called (sessionId={session_id})")
        if is_foreign(session_id) and session_id != self.current_session_id:
            if await self.registry.get(session_id) is None:
                raise SessionNotFoundError(session_id)
            result = await self.teardown_session(session_id, GRACEFUL, "[CLOSE-MANUAL]")
            if result.dir_deleted:
                return f"Session {session_id} closed and directory cleaned successfully"
            return f"Session {session_id} closed; session directory could not be fully removed"

        if self.current is None:
            return "No active browser session to close"
        result = await self.teardown_session(self.current.session_id, GRACEFUL, "[CLOSE-MANUAL]")
        return result.status

    async def close_all_browsers(self, force: bool = False) -> str:
        mode = FORCED if force else GRACEFUL
        logger.info(f"[CLOSE-BATCH] {'FORCE' if force else 'Gracefully'} closing all browser sessions")
        entries = await self.registry.list()
        closed, failed = 0, 0
        for session_id in entries:
            try:
                await self.teardown_session(session_id, mode, "[CLOSE-BATCH]")
                closed += 1
            except Exception as e:
                failed += 1
                logger.error(f"[CLOSE-BATCH] Failed to close session {session_id}: {e}", exc_info=True)

        # Every entry seen above has been accounted for
        await self.registry.clear()
        if self.current is not None:
            await self._release_current_handles()

        if not entries:
            return "No active sessions found"
        message = f"Closed {closed} active sessions"
        if failed:
            message += f", {failed} failed"
        logger.info(f"[CLOSE-BATCH] {message}")
        return message

    # ── Reclamation ───────────────────────────────────────────────────────

    async def list_sessions(self) -> list[ActiveSession]:
        sweep = await self.registry.sweep(deep=True)
        return [
            ActiveSession.from_info(session_id, info, self.current_session_id)
            for session_id, info in sweep.active.items()
        ]

    async def cleanup_sessions(self) -> str:
        sweep = await self.registry.sweep(deep=True)
        orphans = [d for d in await self.registry.orphaned_dirs() if d.name not in self._pending_dirs]
        orphans_deleted = 0
        for orphan in orphans:
            logger.info(f"Removing orphaned session directory: {orphan}")
            if await remove_dir_with_retries(orphan, attempts=1):
                orphans_deleted += 1

        if not sweep.removed and not orphans_deleted:
            return "No inactive sessions or orphaned directories found"
        return (
            f"Cleanup completed: {len(sweep.removed)} inactive sessions removed, "
            f"{orphans_deleted} orphaned directories cleaned, "
            f"{sweep.dirs_deleted + orphans_deleted} total directories cleaned"
        )

    # ── Tabs ──────────────────────────────────────────────────────────────

    async def get_tabs(self, ctx: SessionContext) -> list[TabSummary]:
        pages = ctx.live_pages()
        ctx.tabs.cleanup(pages)
        summaries = []
        for index, page in enumerate(pages):
            try:
                title = await page.title()
            except Exception:
                title = ""
            info = ctx.tabs.get_tab_info(page)
            summaries.append(TabSummary(
                index=index,
                url=page_url(page),
                title=title,
                is_current=page is ctx.page,
                tab_id=info.tab_id if info else None,
            ))
        return summaries

    async def switch_to_tab(
        self,
        ctx: SessionContext,
        index: int = 0,
        url: Optional[str] = None,
        target: Optional[str] = None,
    ) -> TabSummary:
        """Point ``ctx.page`` at another tab.

        A url fragment wins over an index; ``target`` ("latest"/"first") and
        ``index=-1`` select by position.
        """
        pages = ctx.live_pages()
        if not pages:
            raise ResourceUnavailableError("switch_to_tab", "No pages available.")
        if target not in (None, "latest", "first"):
            raise InvalidArgumentError(f"switch_to_tab: target must be 'latest' or 'first', got '{target}'")

        if target == "latest" or index == -1:
            index = len(pages) - 1
        elif target == "first":
            index = 0

        if url:
            matches = [page for page in pages if url in page_url(page)]
            if not matches:
                raise InvalidArgumentError(f"No tab found containing URL: {url}")
            chosen = matches[0]
        else:
            if not 0 <= index < len(pages):
                raise InvalidArgumentError(f"Tab index {index} out of range. Available tabs: {len(pages)}")
            chosen = pages[index]

        ctx.page = chosen
        tab_id = ctx.tabs.register_tab(chosen)
        try:
            await chosen.wait_for_load_state("domcontentloaded", timeout=5000)
        except Exception:
            logger.info("Page didn't finish loading within 5s, continuing anyway")
        return TabSummary(
            index=pages.index(chosen),
            url=page_url(chosen),
            title=await chosen.title(),
            is_current=True,
            tab_id=tab_id,
        )

    # ── Shutdown ──────────────────────────────────────────────────────────

    async def shutdown(self, teardown_own: bool = False) -> None:
        """Release this process's handles; Chrome keeps running unless ``teardown_own``."""
        if self.current is not None:
            if teardown_own and self.current.owned:
                await self.teardown_session(self.current.session_id, GRACEFUL, "[CLOSE-EXTERNAL]")
            else:
                if self.current.owned:
                    await self._disconnect(self.current)
                await self._release_current_handles()
        await self.connector.stop()
