"""Logical tab ids for live pages within one session."""

from __future__ import annotations

import logging
import sys
import weakref
from typing import Any, Iterable, Optional

from ..models.tab import TabInfo
from .ids import new_tab_id, now_millis

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def page_guid(page: Any) -> Optional[str]:
    """Playwright's internal page guid, when the handle exposes one."""
    impl = getattr(page, "_impl_obj", page)
    guid = getattr(impl, "_guid", None)
    return guid if isinstance(guid, str) and guid else None


def page_url(page: Any) -> str:
    try:
        return page.url
    except Exception:
        return ""


class TabManager:
    """Annotates pages the browser context already owns.

    Keys are held weakly: a page that is gone from the browser and from every
    caller drops out on its own, and ``cleanup`` reconciles the rest against an
    authoritative page list.
    """

    def __init__(self):
        self._tabs: weakref.WeakKeyDictionary[Any, TabInfo] = weakref.WeakKeyDictionary()

    def __len__(self) -> int:
        return len(self._tabs)

    def register_tab(self, page: Any) -> str:
        existing = self._tabs.get(page)
        if existing is not None:
            return existing.tab_id
        info = TabInfo(
            tab_id=page_guid(page) or new_tab_id(),
            created_at=now_millis(),
            initial_url=page_url(page),
        )
        self._tabs[page] = info
        logger.info(f"[TabManager] Registered tab: {info.tab_id}")
        return info.tab_id

    def get_tab_info(self, page: Any) -> Optional[TabInfo]:
        return self._tabs.get(page)

    def unregister_tab(self, page: Any) -> None:
        info = self._tabs.pop(page, None)
        if info is not None:
            logger.info(f"[TabManager] Unregistered tab: {info.tab_id}")

    def find_by_tab_id(self, tab_id: str) -> Optional[Any]:
        for page, info in list(self._tabs.items()):
            if info.tab_id == tab_id:
                return page
        return None

    def cleanup(self, current_pages: Iterable[Any]) -> int:
        """Drop entries whose page is no longer in ``current_pages``."""
        live = {id(page) for page in current_pages}
        stale = [(page, info) for page, info in list(self._tabs.items()) if id(page) not in live]
        for page, info in stale:
            logger.info(f"[TabManager] Cleaning up closed tab: {info.tab_id}")
            self._tabs.pop(page, None)
        return len(stale)

    def clear(self) -> None:
        logger.info(f"[TabManager] Clearing {len(self._tabs)} registered tabs")
        self._tabs.clear()
