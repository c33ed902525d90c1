"""Smart browser closer: reclaim a session once its background task has settled.

The monitor polls for a settled output file and tears the session down when
it appears or when the wait times out, whichever comes first.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING, Any, Optional

from ..config import SMART_CLOSE_INTERVAL, SMART_CLOSE_TIMEOUT
from ..constants import SMART_CLOSE_REPORT_EVERY
from ..models.session import CloseResult
from ..models.task import BackgroundTask
from .cdp import close_browser_gracefully
from .ids import now_millis
from .task_files import TaskLog, read_task_record

if TYPE_CHECKING:
    from .controller import SessionController

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

OUTPUT_FILE_GENERATED = "output_file_generated"
TIMEOUT_REACHED = "timeout_reached"


class SmartCloser:
    def __init__(
        self,
        controller: "SessionController",
        timeout: float = SMART_CLOSE_TIMEOUT,
        interval: float = SMART_CLOSE_INTERVAL,
        report_every: float = SMART_CLOSE_REPORT_EVERY,
    ):
        self.controller = controller
        self.timeout = timeout
        self.interval = interval
        self.report_every = report_every

    async def watch(self, task: BackgroundTask, log: TaskLog) -> str:
        """Wait for a settled output file. Returns why the wait ended."""
        log.line("[SMART-CLOSE] Starting intelligent browser closer monitor")
        log.line(f"[SMART-CLOSE] Waiting for valid output file: {task.output_file}")
        log.line(f"[SMART-CLOSE] Max wait time: {self.timeout:g}s, Check interval: {self.interval:g}s")

        elapsed = 0.0
        next_report = self.report_every
        while True:
            await asyncio.sleep(self.interval)
            elapsed += self.interval

            record = read_task_record(task.output_file)
            if record is not None:
                log.line(f"[SMART-CLOSE] Valid output file detected after {elapsed:g}s")
                log.line(f"[SMART-CLOSE] Output status: {record.status}")
                return OUTPUT_FILE_GENERATED

            if elapsed >= self.timeout:
                log.line(f"[SMART-CLOSE] Timeout reached ({self.timeout:g}s), forcing browser closure")
                return TIMEOUT_REACHED

            if elapsed >= next_report:
                log.line(f"[SMART-CLOSE] Still waiting... Elapsed: {elapsed:g}s/{self.timeout:g}s")
                next_report += self.report_every

    async def close(self, task: BackgroundTask, log: TaskLog, reason: str, browser: Optional[Any] = None) -> CloseResult:
        """Tear the task's session down through the shared teardown path."""
        log.write("\n")
        log.line("=== SMART BROWSER CLOSE ===")
        log.line(f"[SMART-CLOSE] Reason: {reason}")
        log.line(f"[SMART-CLOSE] Session: {task.session_id}")
        log.line(f"[SMART-CLOSE] Total runtime: {now_millis() - task.timestamp}ms")

        result = CloseResult(session_id=task.session_id)
        try:
            result = await self.controller.teardown_session(task.session_id, "graceful", "[SMART-CLOSE]")
            if not result.unregistered and browser is not None and browser.is_connected():
                # Joined by port only: nothing registered, but the connection can still close Chrome
                result.browser_closed = await close_browser_gracefully(browser)
        except Exception as e:
            logger.error(f"[SMART-CLOSE] Error closing session {task.session_id}: {e}", exc_info=True)
            log.line(f"[SMART-CLOSE] Error during browser close: {e}")

        success = result.browser_closed or result.process_closed or result.unregistered
        log.line(f"[SMART-CLOSE] Browser closure completed. Success: {str(success).lower()}")
        log.line("=== END SMART CLOSE ===")
        logger.info(f"[SMART-CLOSE] Session {task.session_id} closed ({reason})")
        return result

    async def run(self, task: BackgroundTask, log: TaskLog, browser: Optional[Any] = None) -> CloseResult:
        reason = await self.watch(task, log)
        return await self.close(task, log, reason, browser=browser)
