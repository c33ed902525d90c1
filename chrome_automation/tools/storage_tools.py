"""MCP tools to export and restore cookies and web storage."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from ..errors import BrowserAutomationError, InvalidArgumentError
from ..models.session import utc_now_iso
from ..session_manager.controller import SessionController
from .common import to_json, tool_errors

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

COOKIE_FIELDS = ("name", "value", "domain", "path", "expires", "httpOnly", "secure", "sameSite")

READ_STORAGE = """() => {
  const dump = (store) => {
    const out = {};
    for (let i = 0; i < store.length; i++) {
      const key = store.key(i);
      if (key) out[key] = store.getItem(key);
    }
    return out;
  };
  const result = { localStorage: {}, sessionStorage: {} };
  try { result.localStorage = dump(window.localStorage); } catch (e) { result.localStorageError = e.message; }
  try { result.sessionStorage = dump(window.sessionStorage); } catch (e) { result.sessionStorageError = e.message; }
  return result;
}"""

WRITE_STORAGE = """({ localData, sessionData }) => {
  const results = { localStorage: 0, sessionStorage: 0 };
  for (const [key, value] of Object.entries(localData || {})) {
    try { window.localStorage.setItem(key, value); results.localStorage++; } catch (e) {}
  }
  for (const [key, value] of Object.entries(sessionData || {})) {
    try { window.sessionStorage.setItem(key, value); results.sessionStorage++; } catch (e) {}
  }
  return results;
}"""


# ── Input shaping ────────────────────────────────────────────────────────────


def parse_cookie_string(cookie_string: str, domain: Optional[str]) -> list[dict]:
    """``document.cookie`` format (``a=1; b=2``) to Playwright cookie dicts."""
    cookies = []
    for pair in cookie_string.split(";"):
        name, sep, value = pair.strip().partition("=")
        if sep and name.strip() and value.strip():
            cookies.append({
                "name": name.strip(),
                "value": value.strip(),
                "domain": domain or "localhost",
                "path": "/",
            })
    return cookies


def normalize_cookies(cookies: list[dict], domain: Optional[str]) -> list[dict]:
    return [
        {
            "name": cookie["name"],
            "value": cookie["value"],
            "domain": cookie.get("domain") or domain or "localhost",
            "path": cookie.get("path") or "/",
            "httpOnly": bool(cookie.get("httpOnly", False)),
            "secure": bool(cookie.get("secure", False)),
            "sameSite": cookie.get("sameSite") or "Lax",
        }
        for cookie in cookies
    ]


def load_storage_file(file_path: str) -> dict:
    path = Path(file_path).expanduser()
    if not path.exists():
        raise InvalidArgumentError(f"File not found: {file_path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidArgumentError(f"Failed to read or parse file: {file_path}, {e}") from e
    if not isinstance(data, dict):
        raise InvalidArgumentError(f"Storage file must contain a JSON object: {file_path}")
    return data


def resolve_storage_inputs(
    cookies: Optional[list[dict]] = None,
    cookie_string: Optional[str] = None,
    local_storage: Optional[dict] = None,
    session_storage: Optional[dict] = None,
    domain: Optional[str] = None,
    file_path: Optional[str] = None,
) -> tuple[list[dict], dict, dict]:
    """Merge file contents over arguments and return (cookies, localStorage, sessionStorage)."""
    if not file_path and not cookies and not cookie_string:
        raise InvalidArgumentError("You must provide at least one of file_path, cookies, or cookie_string.")

    data = load_storage_file(file_path) if file_path else {}
    cookie_string = data.get("cookieString") or cookie_string
    cookies = data.get("cookies") or cookies
    domain = data.get("domain") or domain

    if cookie_string:
        to_set = parse_cookie_string(cookie_string, domain)
    elif isinstance(cookies, list):
        to_set = normalize_cookies(cookies, domain)
    else:
        to_set = []
    return to_set, data.get("localStorage") or local_storage or {}, data.get("sessionStorage") or session_storage or {}


def format_storage_report(storage: dict) -> str:
    return (
        "# Storage Data Retrieved\n"
        "## Summary\n"
        f"- **URL**: {storage['url']}\n"
        f"- **Domain**: {storage['domain']}\n"
        f"- **Cookies**: {len(storage['cookies'])} items\n"
        f"- **localStorage**: {len(storage['localStorage'])} items\n"
        f"- **sessionStorage**: {len(storage['sessionStorage'])} items\n"
        f"- **Retrieved**: {storage['timestamp']}\n"
        "## Full Storage Data\n"
        f"```json\n{to_json(storage)}\n```\n"
        "## Usage\n"
        "Pass this data to `set_storage` to restore authentication state: the `cookies` array as "
        "`cookies`, `localStorage` as `local_storage`, `sessionStorage` as `session_storage`, and "
        "`domain` as the default cookie domain."
    )


# ── Tools ────────────────────────────────────────────────────────────────────


@tool_errors("get_storage")
async def get_storage(controller: SessionController, session_id: Optional[str] = None) -> str:
    async with controller.session(session_id, "get_storage") as ctx:
        page = ctx.page
        storage: dict[str, Any] = {
            "url": page.url,
            "domain": urlparse(page.url).hostname or "",
            "timestamp": utc_now_iso(),
            "cookies": [],
            "localStorage": {},
            "sessionStorage": {},
        }
        try:
            storage["cookies"] = [
                {field: cookie.get(field) for field in COOKIE_FIELDS}
                for cookie in await page.context.cookies()
            ]
        except Exception as e:
            storage["cookieError"] = str(e)
        try:
            storage.update(await page.evaluate(READ_STORAGE))
        except Exception as e:
            storage["storageError"] = str(e)
    logger.info(
        f"Retrieved {len(storage['cookies'])} cookies, {len(storage['localStorage'])} localStorage "
        f"and {len(storage['sessionStorage'])} sessionStorage items"
    )
    return format_storage_report(storage)


@tool_errors("set_storage")
async def set_storage(
    controller: SessionController,
    cookies: Optional[list[dict]] = None,
    cookie_string: Optional[str] = None,
    local_storage: Optional[dict] = None,
    session_storage: Optional[dict] = None,
    domain: Optional[str] = None,
    file_path: Optional[str] = None,
    url: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Apply cookies and web storage; with ``url``, on a background tab opened at that origin."""
    to_set, local_data, session_data = resolve_storage_inputs(
        cookies, cookie_string, local_storage, session_storage, domain, file_path
    )

    async with controller.session(session_id, "set_storage") as ctx:
        context = ctx.browser_context()
        page = ctx.page
        background = None
        if url:
            background = await context.new_page()
            try:
                await background.goto(url, wait_until="domcontentloaded", timeout=30000)
            except Exception as e:
                await background.close()
                raise BrowserAutomationError(f"Failed to navigate to URL: {url}, {e}") from e
            page = background

        try:
            results = {"cookiesSet": 0, "localStorageSet": 0, "sessionStorageSet": 0}
            if to_set:
                await context.add_cookies(to_set)
                results["cookiesSet"] = len(to_set)
            if local_data or session_data:
                written = await page.evaluate(WRITE_STORAGE, {"localData": local_data, "sessionData": session_data})
                results["localStorageSet"] = written["localStorage"]
                results["sessionStorageSet"] = written["sessionStorage"]
        finally:
            if background is not None:
                await background.close()
        label = ctx.label

    report = {
        "message": f"Successfully set storage data for session {label}",
        "sessionId": label,
        "backgroundTabUsed": bool(url),
        "results": results,
        "cookieDetails": [{"name": c["name"], "domain": c["domain"]} for c in to_set],
    }
    if url:
        report["url"] = url
    return to_json(report)
