"""Retry-with-resubstitution for page operations that hit a closed target."""

from __future__ import annotations

import logging
import sys
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..constants import TARGET_CLOSED_MARKERS

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

T = TypeVar("T")


def is_target_closed(error: BaseException) -> bool:
    message = str(error)
    return any(marker in message for marker in TARGET_CLOSED_MARKERS)


def most_recent_page(browser: Any) -> Optional[Any]:
    """Last page of the first browser context, or None if nothing is open."""
    try:
        contexts = browser.contexts
        if contexts and contexts[0].pages:
            return contexts[0].pages[-1]
    except Exception as e:
        logger.warning(f"Could not enumerate pages for recovery: {e}")
    return None


async def with_page_recovery(
    operation: Callable[[Any], Awaitable[T]],
    page: Any,
    browser: Any,
    on_substitute: Optional[Callable[[Any], None]] = None,
) -> T:
    """Run ``operation(page)``; on a target-closed error retry once on the newest page.

    The original error is re-raised when there is no other page to use.
    """
    try:
        return await operation(page)
    except Exception as e:
        if not is_target_closed(e):
            raise
        replacement = most_recent_page(browser)
        if replacement is None or replacement is page:
            raise
        logger.warning("[Script] Page context lost, retrying operation on the most recent page")
        if on_substitute is not None:
            on_substitute(replacement)
        return await operation(replacement)


class RecoveringPage:
    """Page wrapper handed to background scripts.

    Coroutine methods are routed through ``with_page_recovery``; once a
    substitute page is adopted it is used for every later call. Anything that
    is not a coroutine method is passed through from the current page.
    """

    def __init__(self, page: Any, browser: Any):
        self._page = page
        self._browser = browser

    @property
    def target(self) -> Any:
        return self._page

    def _adopt(self, page: Any) -> None:
        self._page = page

    def __getattr__(self, name: str) -> Any:
        value = getattr(self._page, name)
        if not callable(value):
            return value

        def call(*args, **kwargs):
            result = getattr(self._page, name)(*args, **kwargs)
            if not hasattr(result, "__await__"):
                return result
            return self._recover(name, result, args, kwargs)

        return call

    async def _recover(self, name: str, first_attempt: Awaitable, args: tuple, kwargs: dict) -> Any:
        started = {"used": False}

        async def operation(page: Any) -> Any:
            if not started["used"]:
                started["used"] = True
                return await first_attempt
            return await getattr(page, name)(*args, **kwargs)

        return await with_page_recovery(operation, self._page, self._browser, on_substitute=self._adopt)
