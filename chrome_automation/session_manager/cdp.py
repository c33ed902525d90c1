"""CDP connections to launched or pre-existing Chrome instances.

A connection only counts once a trivial page evaluation succeeds: a CDP
socket can accept while the target behind it is unusable. Disconnect
observers only log; reconnection is always caller-initiated.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright

from ..constants import CDP_URL_TEMPLATE, CONNECT_ATTEMPTS, CONNECT_RETRY_DELAY
from ..errors import ConnectionFailedError

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# Called between attempts with (attempt, error); returns the port to try next.
RetryHook = Callable[[int, BaseException], Awaitable[int]]


@dataclass
class CdpConnection:
    browser: Browser
    page: Page
    port: int


def cdp_url(port: int) -> str:
    return CDP_URL_TEMPLATE.format(port=port)


class CdpConnector:
    """Owns this process's Playwright driver and opens CDP connections through it."""

    def __init__(self):
        self._playwright: Optional[Playwright] = None
        self._lock = asyncio.Lock()

    async def playwright(self) -> Playwright:
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
        return self._playwright

    async def connect_once(self, port: int, label: str = "") -> CdpConnection:
        pw = await self.playwright()
        browser = await pw.chromium.connect_over_cdp(cdp_url(port))
        description = label or f"port {port}"
        browser.on("disconnected", lambda _: logger.warning(f"Browser connection lost ({description})"))
        try:
            context = browser.contexts[0] if browser.contexts else await browser.new_context()
            page = context.pages[0] if context.pages else await context.new_page()
            await page.evaluate("() => document.readyState")
        except Exception:
            await _quiet_disconnect(browser)
            raise
        return CdpConnection(browser=browser, page=page, port=port)

    async def connect(
        self,
        port: int,
        attempts: int = CONNECT_ATTEMPTS,
        retry_delay: float = CONNECT_RETRY_DELAY,
        on_retry: Optional[RetryHook] = None,
        label: str = "",
    ) -> CdpConnection:
        """Connect with bounded retries.

        Without ``on_retry`` a failed attempt just waits ``retry_delay``; with it,
        the hook decides the next port (the launch path restarts Chrome there).
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                logger.info(f"Connection attempt {attempt}/{attempts} to port {port}")
                connection = await self.connect_once(port, label=label)
                logger.info(f"Connected to browser on port {port}")
                return connection
            except Exception as e:
                last_error = e
                logger.warning(f"Connection attempt {attempt} failed: {e}")
                if attempt < attempts:
                    if on_retry is not None:
                        port = await on_retry(attempt, e)
                    else:
                        await asyncio.sleep(retry_delay)

        logger.error("All connection attempts failed")
        raise ConnectionFailedError(port, attempts, last_error)

    async def probe(self, port: int) -> bool:
        """Open a real CDP connection and immediately drop it."""
        pw = await self.playwright()
        try:
            browser = await pw.chromium.connect_over_cdp(cdp_url(port), timeout=5000)
        except Exception as e:
            logger.info(f"Debug port {port} not responsive: {e}")
            return False
        await _quiet_disconnect(browser)
        return True

    async def stop(self) -> None:
        async with self._lock:
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.warning(f"Error stopping Playwright: {e}")
                self._playwright = None


async def close_browser_gracefully(browser: Browser) -> bool:
    """Ask Chrome itself to exit via ``Browser.close``, then drop the connection."""
    closed = False
    try:
        session = await browser.new_browser_cdp_session()
        await session.send("Browser.close")
        closed = True
    except Exception as e:
        logger.info(f"Browser.close over CDP failed: {e}")
    await _quiet_disconnect(browser)
    return closed


async def _quiet_disconnect(browser: Browser) -> None:
    try:
        await browser.close()
    except Exception as e:
        logger.debug(f"Ignoring error while disconnecting: {e}")
