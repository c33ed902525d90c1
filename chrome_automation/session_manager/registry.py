"""Persistent session registry shared by every controller process.

The default store is a single JSON object keyed by session id. Each mutation
reads the whole file, changes one key and writes the whole file back, with no
locking and no atomic rename: two controllers writing at once can lose one
another's update (last writer wins). Callers that need isolation can select
the SQLite store instead; the JSON format on disk is unchanged either way.

Liveness checks are self-healing: any entry found inactive has its session
directory deleted and its key dropped as a side effect of the check.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

from pydantic import ValidationError

from ..config import REGISTRY_BACKEND, REGISTRY_DB_NAME, REGISTRY_FILE_NAME, get_session_base_dir
from ..constants import DIR_DELETE_ATTEMPTS, SESSION_DIR_PREFIX
from ..models.session import SessionInfo, SweepResult
from .process import pid_alive, wait_for_cdp

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

CdpProbe = Callable[[int], Awaitable[bool]]


class RegistryStore(Protocol):
    async def load(self) -> dict[str, SessionInfo]: ...

    async def get(self, session_id: str) -> Optional[SessionInfo]: ...

    async def put(self, session_id: str, info: SessionInfo) -> None: ...

    async def delete(self, session_id: str) -> Optional[SessionInfo]: ...

    async def replace_all(self, entries: dict[str, SessionInfo]) -> None: ...

    async def compare_and_swap(
        self, session_id: str, expected: Optional[SessionInfo], new: Optional[SessionInfo]
    ) -> bool: ...


# ── JSON file store ──────────────────────────────────────────────────────────


class JsonFileStore:
    """Read-modify-write over one JSON file. Lenient: last writer wins."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_raw(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
            data = json.loads(text) if text.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Session registry {self.path} unreadable, treating as empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Session registry {self.path} is not a JSON object, treating as empty")
            return {}
        return data

    def _write_raw(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    @staticmethod
    def _parse(raw: dict) -> dict[str, SessionInfo]:
        entries = {}
        for session_id, value in raw.items():
            try:
                entries[session_id] = SessionInfo.model_validate(value)
            except ValidationError as e:
                logger.warning(f"Skipping malformed registry entry {session_id}: {e.error_count()} error(s)")
        return entries

    async def load(self) -> dict[str, SessionInfo]:
        return self._parse(self._read_raw())

    async def get(self, session_id: str) -> Optional[SessionInfo]:
        return (await self.load()).get(session_id)

    async def put(self, session_id: str, info: SessionInfo) -> None:
        raw = self._read_raw()
        raw[session_id] = info.to_registry()
        self._write_raw(raw)

    async def delete(self, session_id: str) -> Optional[SessionInfo]:
        raw = self._read_raw()
        removed = raw.pop(session_id, None)
        if removed is None:
            return None
        self._write_raw(raw)
        return self._parse({session_id: removed}).get(session_id)

    async def replace_all(self, entries: dict[str, SessionInfo]) -> None:
        self._write_raw({sid: info.to_registry() for sid, info in entries.items()})

    async def compare_and_swap(
        self, session_id: str, expected: Optional[SessionInfo], new: Optional[SessionInfo]
    ) -> bool:
        # Same read-modify-write window as every other mutation here
        raw = self._read_raw()
        current = self._parse({session_id: raw[session_id]}).get(session_id) if session_id in raw else None
        if current != expected:
            return False
        if new is None:
            raw.pop(session_id, None)
        else:
            raw[session_id] = new.to_registry()
        self._write_raw(raw)
        return True


def create_store(base_dir: Optional[Path] = None, backend: str = REGISTRY_BACKEND) -> RegistryStore:
    base_dir = Path(base_dir or get_session_base_dir())
    if backend == "sqlite":
        from ..database.repository import SqliteSessionStore

        return SqliteSessionStore(base_dir / REGISTRY_DB_NAME, mirror=JsonFileStore(base_dir / REGISTRY_FILE_NAME))
    return JsonFileStore(base_dir / REGISTRY_FILE_NAME)


# ── Directory cleanup ────────────────────────────────────────────────────────


async def remove_dir_with_retries(path: Optional[str | Path], attempts: int = DIR_DELETE_ATTEMPTS) -> bool:
    """Delete a session directory, retrying while the browser releases file handles.

    Never raises: a directory that refuses to go away is logged and left behind.
    """
    if not path:
        return True
    target = Path(path)
    for attempt in range(1, attempts + 1):
        if not target.exists():
            logger.info(f"Session directory already removed: {target}")
            return True
        try:
            shutil.rmtree(target)
            logger.info(f"Session directory deleted: {target}")
            return True
        except OSError as e:
            logger.warning(f"Failed to delete session directory (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                await asyncio.sleep(1.0 * attempt)
    logger.warning(f"Could not delete session directory after {attempts} attempts: {target}")
    return False


# ── Registry ─────────────────────────────────────────────────────────────────


class SessionRegistry:
    """Session id -> SessionInfo, backed by a ``RegistryStore``."""

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        store: Optional[RegistryStore] = None,
        cdp_probe: Optional[CdpProbe] = None,
    ):
        self.base_dir = Path(base_dir or get_session_base_dir())
        self.store = store or create_store(self.base_dir)
        self._cdp_probe = cdp_probe

    @property
    def registry_file(self) -> Path:
        return self.base_dir / REGISTRY_FILE_NAME

    def session_dir_for(self, session_id: str) -> Path:
        return self.base_dir / f"{SESSION_DIR_PREFIX}{session_id}"

    async def register(self, session_id: str, info: SessionInfo) -> None:
        await self.store.put(session_id, info)
        logger.info(f"Session registered: {session_id}")

    async def unregister(self, session_id: str) -> Optional[SessionInfo]:
        removed = await self.store.delete(session_id)
        if removed is not None:
            logger.info(f"Session unregistered from registry: {session_id}")
        return removed

    async def get(self, session_id: str) -> Optional[SessionInfo]:
        return await self.store.get(session_id)

    async def list(self) -> dict[str, SessionInfo]:
        return await self.store.load()

    async def update(self, session_id: str, **changes) -> Optional[SessionInfo]:
        """Patch ``chrome_process_pid``/``debug_port`` on an existing entry."""
        current = await self.store.get(session_id)
        if current is None:
            return None
        updated = current.model_copy(update=changes)
        if not await self.store.compare_and_swap(session_id, current, updated):
            logger.warning(f"Registry entry {session_id} changed concurrently; writing anyway")
            await self.store.put(session_id, updated)
        return updated

    async def clear(self) -> None:
        """Unconditionally truncate the registry to an empty object."""
        await self.store.replace_all({})
        logger.info("Sessions registry cleared")

    # ── Liveness ──

    async def probe(self, session_id: str, info: SessionInfo, deep: bool = True) -> bool:
        """Owner pid alive, Chrome pid alive, and (deep) the CDP port answers."""
        if not pid_alive(info.pid):
            logger.info(f"Session {session_id} is inactive: owner process {info.pid} not running")
            return False
        if info.chrome_process_pid and not pid_alive(info.chrome_process_pid):
            logger.info(f"Session {session_id} is inactive: Chrome process {info.chrome_process_pid} not running")
            return False
        if not deep:
            return True
        probe = self._cdp_probe or _http_probe
        try:
            if await probe(info.debug_port):
                return True
        except Exception as e:
            logger.info(f"Session {session_id} debug port {info.debug_port} not responsive: {e}")
            return False
        logger.info(f"Session {session_id} debug port {info.debug_port} not responsive")
        return False

    async def reap(self, session_id: str, info: SessionInfo) -> bool:
        """Drop a stale entry and delete its directory. Returns whether the dir went away."""
        await self.store.delete(session_id)
        deleted = await remove_dir_with_retries(info.session_dir, attempts=1)
        logger.info(f"Reaped inactive session {session_id}")
        return deleted

    async def is_active(self, session_id: str, deep: bool = True) -> bool:
        info = await self.store.get(session_id)
        if info is None:
            return False
        if await self.probe(session_id, info, deep=deep):
            return True
        await self.reap(session_id, info)
        return False

    async def sweep(self, deep: bool = True) -> SweepResult:
        """Probe every entry; reap the inactive ones, keep the rest."""
        result = SweepResult()
        entries = await self.store.load()
        for session_id, info in entries.items():
            if await self.probe(session_id, info, deep=deep):
                result.active[session_id] = info
                continue
            existed = bool(info.session_dir) and Path(info.session_dir).exists()
            if await self.reap(session_id, info) and existed:
                result.dirs_deleted += 1
            result.removed.append(session_id)
        if result.removed:
            logger.info(f"Cleaned up {len(result.removed)} inactive sessions, {len(result.active)} remain")
        return result

    async def orphaned_dirs(self) -> list[Path]:
        """Sub-directories of the base dir that no registry entry points at."""
        if not self.base_dir.exists():
            return []
        registered = {Path(info.session_dir).name for info in (await self.store.load()).values() if info.session_dir}
        return sorted(
            child for child in self.base_dir.iterdir()
            if child.is_dir() and child.name not in registered
        )


async def _http_probe(port: int) -> bool:
    return await wait_for_cdp(port, timeout=1.0)
