"""MCP tools acting on the current (or a named session's) page.

Each tool is a thin wrapper over the Playwright page API. Failures carry a
remediation hint, usually "scroll first" for elements outside the viewport.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import NAVIGATION_TIMEOUT
from ..constants import SCROLL_DIRECTIONS, WAIT_UNTIL_OPTIONS
from ..errors import BrowserAutomationError, InvalidArgumentError
from ..session_manager.controller import SessionController
from .common import session_suffix, to_json, tool_errors

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

SCROLL_HINT = "Try using the 'scroll' tool to scroll down and bring the element into view."
DEFAULT_ATTRIBUTES = ["id", "class", "href", "src", "alt", "title"]

# Runs the snippet as a function body first, then as an expression
EVALUATE_WRAPPER = """(code) => {
  try {
    return new Function(code)();
  } catch (e) {
    try {
      return new Function("return (" + code + ")")();
    } catch (e2) {
      return new Function("return (function() { " + code + " })()")();
    }
  }
}"""


def validate_url(url: Optional[str]) -> str:
    if not url:
        raise InvalidArgumentError(
            "navigate_to: Missing required parameter 'url'. Please provide a valid URL to navigate to."
        )
    parsed = urlparse(url)
    if not parsed.scheme or not (parsed.netloc or parsed.scheme in ("about", "data", "file")):
        raise InvalidArgumentError(
            f'navigate_to: Invalid URL format: "{url}". '
            'Please provide a valid URL (e.g., "https://example.com").'
        )
    return url


def navigation_hint(error: Exception, wait_until: str) -> str:
    message = str(error)
    if isinstance(error, PlaywrightTimeoutError) or "Timeout" in message:
        if wait_until == "networkidle":
            suggestion = (
                'Try using "load" instead of "networkidle" - many modern pages have continuous '
                "network activity (WebSocket, polling, analytics) that prevents networkidle from being reached."
            )
        elif wait_until == "load":
            suggestion = (
                'The page may be loading very slowly. You can try "domcontentloaded" for faster navigation '
                "(though it may miss some resources)."
            )
        else:
            suggestion = 'The page may be loading slowly. Try "load" for a more reliable wait condition.'
        return f"Navigation timeout after {NAVIGATION_TIMEOUT // 1000} seconds (waitUntil: {wait_until}). {suggestion}"
    if "net::ERR" in message:
        return f"Network error: {message}. Check your internet connection or verify the URL is accessible."
    if "Navigation failed" in message:
        return f"Navigation failed: {message}. The page may have redirected or encountered an error."
    return f"Error type: {type(error).__name__}, Message: {message}."


@tool_errors("navigate_to")
async def navigate_to(
    controller: SessionController, url: str, wait_until: str = "load", session_id: Optional[str] = None
) -> str:
    validate_url(url)
    if wait_until not in WAIT_UNTIL_OPTIONS:
        raise InvalidArgumentError(
            f'navigate_to: Invalid waitUntil value: "{wait_until}". '
            f"Valid options are: {', '.join(WAIT_UNTIL_OPTIONS)}."
        )

    async with controller.session(session_id, "navigate_to") as ctx:
        logger.info(f'navigate_to: Navigating to "{url}" (Session: {ctx.label}, waitUntil: {wait_until})')
        started = time.monotonic()
        try:
            await ctx.page.goto(url, wait_until=wait_until, timeout=NAVIGATION_TIMEOUT)
        except Exception as e:
            raise BrowserAutomationError(
                f'navigate_to: Failed to navigate to "{url}". {navigation_hint(e, wait_until)} Session: {ctx.label}.'
            ) from e
        logger.info(f'navigate_to: Navigated to "{url}" in {int((time.monotonic() - started) * 1000)}ms')
    return f"Navigated to {url}{session_suffix(session_id)}"


@tool_errors("click")
async def click(
    controller: SessionController,
    selector: str,
    click_by_text: bool = False,
    timeout: int = 5000,
    force: bool = False,
    index: int = 0,
    session_id: Optional[str] = None,
) -> str:
    async with controller.session(session_id, "click") as ctx:
        page = ctx.page
        try:
            if click_by_text:
                elements = await page.get_by_text(selector).all()
                if not elements:
                    raise BrowserAutomationError(
                        f"No elements found with text: {selector}. Try scrolling down using the 'scroll' tool "
                        "to find more content, or use a more specific selector."
                    )
                await elements[min(index, len(elements) - 1)].click(timeout=timeout, force=force)
            else:
                elements = await page.query_selector_all(selector)
                if not elements:
                    logger.info("Element not found, trying to scroll down to find it")
                    await page.evaluate("() => window.scrollBy(0, 500)")
                    await asyncio.sleep(1.0)
                    elements = await page.query_selector_all(selector)
                    if not elements:
                        raise BrowserAutomationError(
                            f"No elements found for selector: {selector}. Tried scrolling down but element still "
                            "not found. Use the 'scroll' tool to scroll more, or check if the selector is correct."
                        )
                if index:
                    await elements[min(index, len(elements) - 1)].click(timeout=timeout, force=force)
                elif not await _click_first_visible(elements, force):
                    logger.info(f"No visible element found, force clicking element at index {index}")
                    await elements[min(index, len(elements) - 1)].click(force=True)
        except Exception as e:
            try:
                await page.locator(selector).first.click(force=True, timeout=2000)
            except Exception:
                raise BrowserAutomationError(
                    f"Failed to click {selector}: {e}. The element might not be visible or might be below the "
                    "current view. Try using the 'scroll' tool to bring the element into view, use a more "
                    "specific selector, or set force to true."
                ) from e
            return f"Clicked on {selector} (forced)"
    return f"Clicked on {selector}"


async def _click_first_visible(elements: list, force: bool) -> bool:
    for element in elements[:10]:
        try:
            if await element.is_visible():
                await element.click(timeout=1000, force=force)
                return True
        except Exception:
            continue
    return False


@tool_errors("type_text")
async def type_text(
    controller: SessionController,
    selector: str,
    text: str,
    clear: bool = True,
    delay: int = 50,
    session_id: Optional[str] = None,
) -> str:
    async with controller.session(session_id, "type_text") as ctx:
        element = await ctx.page.query_selector(selector)
        if element is None:
            raise BrowserAutomationError(f"Input element not found: {selector}. {SCROLL_HINT}")
        if clear:
            await element.fill("")
        await element.type(text, delay=delay)
    return f'Typed "{text}" into {selector}'


@tool_errors("read_text")
async def read_text(
    controller: SessionController, selector: Optional[str] = None, all: bool = False, session_id: Optional[str] = None
) -> str:
    async with controller.session(session_id, "read_text") as ctx:
        page = ctx.page
        if not selector:
            text = await page.evaluate("() => document.body.innerText")
        elif all:
            texts = await page.eval_on_selector_all(
                selector, "els => els.map(el => el.innerText || el.textContent)"
            )
            text = "\n---\n".join(t or "" for t in texts)
        else:
            element = await page.query_selector(selector)
            if element is None:
                raise BrowserAutomationError(f"Element not found: {selector}. {SCROLL_HINT}")
            text = await element.evaluate("el => el.innerText || el.textContent")
    return text or "No text found"


@tool_errors("get_elements")
async def get_elements(
    controller: SessionController,
    selector: str,
    attributes: Optional[list[str]] = None,
    session_id: Optional[str] = None,
) -> str:
    async with controller.session(session_id, "get_elements") as ctx:
        elements = await ctx.page.eval_on_selector_all(
            selector,
            """(els, attrs) => els.map(el => {
                const result = { tagName: el.tagName.toLowerCase(), text: el.innerText || el.textContent };
                attrs.forEach(attr => { if (el.hasAttribute(attr)) result[attr] = el.getAttribute(attr); });
                return result;
            })""",
            attributes or DEFAULT_ATTRIBUTES,
        )
    return to_json(elements)


@tool_errors("wait_for")
async def wait_for(
    controller: SessionController,
    selector: str,
    state: str = "visible",
    timeout: int = 10000,
    switch_to_new_tab: bool = True,
    session_id: Optional[str] = None,
) -> str:
    """Wait for an element, following a newly opened tab when there is one."""
    async with controller.session(session_id, "wait_for") as ctx:
        if switch_to_new_tab and await _follow_latest_tab(ctx):
            logger.info(f"Found new tab, switched to latest tab ({ctx.page.url})")
        try:
            await ctx.page.wait_for_selector(selector, state=state, timeout=timeout)
            return f"Element {selector} is now {state}"
        except PlaywrightTimeoutError as e:
            if switch_to_new_tab and await _follow_latest_tab(ctx):
                logger.info(f"Switching to latest tab after timeout ({ctx.page.url})")
                await ctx.page.wait_for_selector(selector, state=state, timeout=min(timeout, 5000))
                return f"Element {selector} is now {state} (found in new tab)"
            raise BrowserAutomationError(
                f"{e} The element '{selector}' was not found within {timeout}ms. The element might be below "
                "the current viewport. Try using the 'scroll' tool to scroll down and bring the element into "
                "view, then retry the wait_for operation."
            ) from e


async def _follow_latest_tab(ctx) -> bool:
    pages = ctx.live_pages()
    if len(pages) < 2 or pages[-1] is ctx.page:
        return False
    ctx.page = pages[-1]
    ctx.tabs.register_tab(ctx.page)
    try:
        await ctx.page.wait_for_load_state("domcontentloaded", timeout=5000)
    except PlaywrightTimeoutError:
        logger.info("New page didn't finish loading within 5s, continuing anyway")
    return True


@tool_errors("press_key")
async def press_key(
    controller: SessionController, key: str, modifiers: Optional[list[str]] = None, session_id: Optional[str] = None
) -> str:
    modifiers = modifiers or []
    async with controller.session(session_id, "press_key") as ctx:
        keyboard = ctx.page.keyboard
        for modifier in modifiers:
            await keyboard.down(modifier)
        try:
            await keyboard.press(key)
        finally:
            for modifier in reversed(modifiers):
                await keyboard.up(modifier)
    combo = "+".join([*modifiers, key])
    return f"Pressed {combo}"


@tool_errors("screenshot")
async def screenshot(
    controller: SessionController,
    path: Optional[str] = None,
    full_page: bool = False,
    selector: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Save a PNG screenshot to ``path`` (default: a timestamped file in the working directory)."""
    if path:
        target = Path(path).expanduser()
    else:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
        target = Path.cwd() / f"screenshot-{stamp}.png"
    target.parent.mkdir(parents=True, exist_ok=True)

    async with controller.session(session_id, "screenshot") as ctx:
        if selector:
            element = await ctx.page.query_selector(selector)
            if element is None:
                raise BrowserAutomationError(f"Element not found for screenshot: {selector}. {SCROLL_HINT}")
            await element.screenshot(path=str(target))
        else:
            await ctx.page.screenshot(path=str(target), full_page=full_page)
    return f"Screenshot saved to {target}"


@tool_errors("scroll")
async def scroll(
    controller: SessionController, direction: str = "down", amount: int = 500, session_id: Optional[str] = None
) -> str:
    if direction not in SCROLL_DIRECTIONS:
        raise InvalidArgumentError(
            f"scroll: Invalid direction '{direction}'. Valid options are: {', '.join(SCROLL_DIRECTIONS)}."
        )
    dx, dy = SCROLL_DIRECTIONS[direction]
    async with controller.session(session_id, "scroll") as ctx:
        await ctx.page.evaluate("([x, y]) => window.scrollBy(x, y)", [dx * amount, dy * amount])
    return f"Scrolled {direction} by {amount}px"


@tool_errors("get_page_info")
async def get_page_info(controller: SessionController, session_id: Optional[str] = None) -> str:
    async with controller.session(session_id, "get_page_info") as ctx:
        info = await ctx.page.evaluate(
            """() => ({
                title: document.title,
                url: window.location.href,
                domain: window.location.hostname,
                viewport: { width: window.innerWidth, height: window.innerHeight },
                documentHeight: document.documentElement.scrollHeight,
            })"""
        )
    return to_json(info)


@tool_errors("go_back")
async def go_back(controller: SessionController, session_id: Optional[str] = None) -> str:
    async with controller.session(session_id, "go_back") as ctx:
        try:
            await ctx.page.go_back()
        except Exception as e:
            raise BrowserAutomationError(
                f"Failed to go back: {e}. There might be no previous page in history."
            ) from e
        return f"Navigated back to: {ctx.page.url}"


@tool_errors("evaluate")
async def evaluate(controller: SessionController, code: str, session_id: Optional[str] = None) -> str:
    async with controller.session(session_id, "evaluate") as ctx:
        try:
            result = await ctx.page.evaluate(EVALUATE_WRAPPER, code)
        except Exception as e:
            raise BrowserAutomationError(f"Evaluation failed: {e}") from e
    if result is None:
        return "null"
    if isinstance(result, str):
        return result
    return to_json(result)
