"""Chrome process supervision: spawn, readiness probe, graceful-then-forced kill.

Every termination helper here is idempotent: asking to stop a pid that is
already gone reports ``NOT_RUNNING`` instead of raising.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import shutil
import subprocess
import sys
import time
from typing import Optional

import httpx
import psutil

from ..config import (
    ACCEPT_LANGUAGE,
    BROWSER_HEADLESS,
    BROWSER_LOCALE,
    CHROME_PATH,
    CHROME_READY_TIMEOUT,
    TERMINATION_GRACE_SECONDS,
)
from ..constants import (
    CDP_URL_TEMPLATE,
    CDP_VERSION_PATH,
    CHROME_DEFAULT_BINARY,
    CHROME_FIXED_FLAGS,
    CHROME_PATHS,
    READY_POLL_INTERVAL,
)

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class ProcessState(str, enum.Enum):
    NOT_STARTED = "not_started"
    SPAWNING = "spawning"
    RUNNING = "running"
    TERMINATING = "terminating"  # SIGTERM sent, grace window running
    KILLING = "killing"  # SIGKILL sent
    DEAD = "dead"


class Termination(str, enum.Enum):
    NOT_RUNNING = "not_running"
    TERMINATED = "terminated"  # exited within the grace window
    KILLED = "killed"  # needed SIGKILL
    FAILED = "failed"  # no permission to signal


# ── Chrome command line ──────────────────────────────────────────────────────


def find_chrome_path() -> str:
    """Resolve the Chrome executable for this platform."""
    if CHROME_PATH:
        return CHROME_PATH
    if sys.platform in CHROME_PATHS:
        return CHROME_PATHS[sys.platform]
    for candidate in ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser"):
        found = shutil.which(candidate)
        if found:
            return found
    return CHROME_DEFAULT_BINARY


def build_chrome_args(
    debug_port: int,
    user_data_dir: str,
    locale: str = BROWSER_LOCALE,
    accept_language: str = ACCEPT_LANGUAGE,
    headless: bool = BROWSER_HEADLESS,
) -> list[str]:
    args = [
        f"--remote-debugging-port={debug_port}",
        f"--user-data-dir={user_data_dir}",
        *CHROME_FIXED_FLAGS,
        f"--lang={locale}",
        f"--accept-lang={accept_language}",
        f"--force-lang={locale}",
    ]
    if headless:
        args.append("--headless=new")
    return args


# ── pid-level helpers ────────────────────────────────────────────────────────


def pid_alive(pid: Optional[int]) -> bool:
    """Non-destructive existence probe; zombies count as dead."""
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


async def terminate_pid(pid: Optional[int], grace: float = TERMINATION_GRACE_SECONDS) -> Termination:
    """SIGTERM, wait up to ``grace`` seconds, then SIGKILL."""
    if not pid_alive(pid):
        return Termination.NOT_RUNNING

    try:
        proc = psutil.Process(pid)
        proc.terminate()
        logger.info(f"Sent SIGTERM to process {pid}")
    except psutil.NoSuchProcess:
        return Termination.NOT_RUNNING
    except psutil.AccessDenied as e:
        logger.warning(f"Not permitted to terminate process {pid}: {e}")
        return Termination.FAILED

    try:
        await asyncio.to_thread(proc.wait, grace)
        logger.info(f"Process {pid} exited")
        return Termination.TERMINATED
    except psutil.TimeoutExpired:
        pass
    except psutil.NoSuchProcess:
        return Termination.TERMINATED

    return await kill_pid(pid)


async def kill_pid(pid: Optional[int]) -> Termination:
    """Immediate SIGKILL, reaping the process if it is our child."""
    if not pid_alive(pid):
        return Termination.NOT_RUNNING
    try:
        proc = psutil.Process(pid)
        proc.kill()
        logger.info(f"Force killed process {pid}")
    except psutil.NoSuchProcess:
        return Termination.NOT_RUNNING
    except psutil.AccessDenied as e:
        logger.warning(f"Not permitted to kill process {pid}: {e}")
        return Termination.FAILED
    try:
        await asyncio.to_thread(proc.wait, 1.0)
    except (psutil.TimeoutExpired, psutil.NoSuchProcess):
        pass
    return Termination.KILLED


async def wait_for_cdp(port: int, timeout: float = CHROME_READY_TIMEOUT, process: Optional["ChromeProcess"] = None) -> bool:
    """Poll the DevTools HTTP endpoint until it answers.

    Returns False on timeout, or early if ``process`` exits while waiting.
    """
    url = CDP_URL_TEMPLATE.format(port=port) + CDP_VERSION_PATH
    deadline = time.monotonic() + timeout
    async with httpx.AsyncClient(timeout=2.0) as client:
        while time.monotonic() < deadline:
            if process is not None and not process.is_running:
                logger.warning(f"Chrome exited before port {port} became ready")
                return False
            try:
                resp = await client.get(url)
                if resp.status_code == 200:
                    browser = resp.json().get("Browser", "unknown")
                    logger.info(f"Chrome ready on port {port}: {browser}")
                    return True
            except (httpx.HTTPError, ValueError):
                pass
            await asyncio.sleep(READY_POLL_INTERVAL)
    logger.warning(f"Chrome on port {port} not ready after {timeout}s")
    return False


# ── ChromeProcess ────────────────────────────────────────────────────────────


class ChromeProcess:
    """Owns one spawned Chrome process and its lifecycle state."""

    def __init__(self, debug_port: int, user_data_dir: str, chrome_path: Optional[str] = None):
        self.debug_port = debug_port
        self.user_data_dir = user_data_dir
        self.chrome_path = chrome_path or find_chrome_path()
        self.state = ProcessState.NOT_STARTED
        self._popen: Optional[subprocess.Popen] = None

    @property
    def pid(self) -> Optional[int]:
        return self._popen.pid if self._popen else None

    @property
    def is_running(self) -> bool:
        return self._popen is not None and self._popen.poll() is None

    def spawn(self) -> int:
        """Start Chrome with stdio discarded. Returns the pid."""
        if self.state not in (ProcessState.NOT_STARTED, ProcessState.DEAD):
            raise RuntimeError(f"Chrome process already {self.state.value}")

        args = build_chrome_args(self.debug_port, self.user_data_dir)
        logger.info(f"Starting Chrome: {self.chrome_path} {' '.join(args)}")
        self.state = ProcessState.SPAWNING
        try:
            self._popen = subprocess.Popen(
                [self.chrome_path, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError:
            self.state = ProcessState.DEAD
            raise
        self.state = ProcessState.RUNNING
        logger.info(f"Chrome spawned with PID {self._popen.pid} on port {self.debug_port}")
        return self._popen.pid

    async def wait_until_ready(self, timeout: float = CHROME_READY_TIMEOUT) -> bool:
        """Launch only returns once Chrome is presumed ready; this is the presumption."""
        ready = await wait_for_cdp(self.debug_port, timeout=timeout, process=self)
        if not self.is_running and self.state != ProcessState.DEAD:
            self.state = ProcessState.DEAD
        return ready

    async def terminate(self, grace: float = TERMINATION_GRACE_SECONDS) -> Termination:
        """Graceful SIGTERM, escalating to SIGKILL after ``grace`` seconds."""
        if self._popen is None or not self.is_running:
            self.state = ProcessState.DEAD
            return Termination.NOT_RUNNING

        pid = self._popen.pid
        self.state = ProcessState.TERMINATING
        try:
            self._popen.terminate()
        except ProcessLookupError:
            self.state = ProcessState.DEAD
            return Termination.NOT_RUNNING
        logger.info(f"Sent SIGTERM to Chrome process {pid}")

        try:
            await asyncio.to_thread(self._popen.wait, grace)
            self.state = ProcessState.DEAD
            logger.info(f"Chrome process {pid} exited gracefully")
            return Termination.TERMINATED
        except subprocess.TimeoutExpired:
            pass

        self.state = ProcessState.KILLING
        try:
            self._popen.kill()
        except ProcessLookupError:
            pass
        await asyncio.to_thread(self._popen.wait)
        self.state = ProcessState.DEAD
        logger.info(f"Force killed Chrome process {pid}")
        return Termination.KILLED

    async def kill(self) -> Termination:
        if self._popen is None or not self.is_running:
            self.state = ProcessState.DEAD
            return Termination.NOT_RUNNING
        self.state = ProcessState.KILLING
        try:
            self._popen.kill()
        except ProcessLookupError:
            pass
        await asyncio.to_thread(self._popen.wait)
        self.state = ProcessState.DEAD
        return Termination.KILLED

    def __repr__(self) -> str:
        return f"<ChromeProcess pid={self.pid} port={self.debug_port} state={self.state.value}>"
