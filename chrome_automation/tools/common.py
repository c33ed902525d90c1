"""Shared plumbing for MCP tool bodies."""

from __future__ import annotations

import functools
import json
import logging
import sys
from typing import Any, Awaitable, Callable

from ..errors import BrowserAutomationError

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def tool_errors(operation: str) -> Callable[[Callable[..., Awaitable[str]]], Callable[..., Awaitable[str]]]:
    """Turn failures into ``Error: ...`` text instead of raising into the transport.

    Known errors carry their own message; anything else is logged with its
    traceback and summarized.
    """

    def decorator(func: Callable[..., Awaitable[str]]) -> Callable[..., Awaitable[str]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> str:
            try:
                return await func(*args, **kwargs)
            except BrowserAutomationError as e:
                logger.error(f"{operation}: {e}")
                return f"Error: {e}"
            except Exception as e:
                logger.error(f"{operation} failed: {e}", exc_info=True)
                return f"Error: {operation} failed: {e}"

        return wrapper

    return decorator


def to_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def session_suffix(session_id: str | None) -> str:
    return f" (Session: {session_id})" if session_id else ""
