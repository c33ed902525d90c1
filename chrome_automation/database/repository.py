"""Async SQLite registry store.

Every mutation runs inside a ``BEGIN IMMEDIATE`` transaction, so concurrent
controllers serialize on the database lock instead of overwriting each other.
After each write the full table is mirrored to the JSON registry file so tools
reading the file see the usual format.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import aiosqlite

from ..models.session import SessionInfo
from .models import initialize_db

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

_COLUMNS = "session_id, pid, debug_port, session_dir, created_at, chrome_process_pid"


class SqliteSessionStore:
    """Registry store with transactional read-modify-write."""

    def __init__(self, db_path: Path, mirror=None):
        self.db_path = Path(db_path)
        self._mirror = mirror

    async def _connect(self) -> aiosqlite.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self.db_path), timeout=10.0, isolation_level=None)
        await initialize_db(db)
        return db

    @staticmethod
    def _row_to_info(row: tuple) -> tuple[str, SessionInfo]:
        session_id, pid, debug_port, session_dir, created_at, chrome_pid = row
        return session_id, SessionInfo(
            pid=pid,
            debug_port=debug_port,
            session_dir=session_dir,
            created_at=created_at,
            chrome_process_pid=chrome_pid,
        )

    @staticmethod
    def _info_params(session_id: str, info: SessionInfo) -> tuple:
        return (
            session_id, info.pid, info.debug_port, info.session_dir,
            info.created_at, info.chrome_process_pid,
        )

    async def _select_all(self, db: aiosqlite.Connection) -> dict[str, SessionInfo]:
        async with db.execute(f"SELECT {_COLUMNS} FROM sessions ORDER BY created_at") as cursor:
            rows = await cursor.fetchall()
        return dict(self._row_to_info(tuple(row)) for row in rows)

    async def _select_one(self, db: aiosqlite.Connection, session_id: str) -> Optional[SessionInfo]:
        async with db.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE session_id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_info(tuple(row))[1] if row else None

    async def _sync_mirror(self, db: aiosqlite.Connection) -> None:
        if self._mirror is not None:
            await self._mirror.replace_all(await self._select_all(db))

    async def load(self) -> dict[str, SessionInfo]:
        db = await self._connect()
        try:
            return await self._select_all(db)
        finally:
            await db.close()

    async def get(self, session_id: str) -> Optional[SessionInfo]:
        db = await self._connect()
        try:
            return await self._select_one(db, session_id)
        finally:
            await db.close()

    async def put(self, session_id: str, info: SessionInfo) -> None:
        db = await self._connect()
        try:
            await db.execute("BEGIN IMMEDIATE")
            await db.execute(
                f"INSERT OR REPLACE INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                self._info_params(session_id, info),
            )
            await db.execute("COMMIT")
            await self._sync_mirror(db)
        finally:
            await db.close()

    async def delete(self, session_id: str) -> Optional[SessionInfo]:
        db = await self._connect()
        try:
            await db.execute("BEGIN IMMEDIATE")
            existing = await self._select_one(db, session_id)
            if existing is not None:
                await db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            await db.execute("COMMIT")
            if existing is not None:
                await self._sync_mirror(db)
            return existing
        finally:
            await db.close()

    async def replace_all(self, entries: dict[str, SessionInfo]) -> None:
        db = await self._connect()
        try:
            await db.execute("BEGIN IMMEDIATE")
            await db.execute("DELETE FROM sessions")
            await db.executemany(
                f"INSERT INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                [self._info_params(sid, info) for sid, info in entries.items()],
            )
            await db.execute("COMMIT")
            await self._sync_mirror(db)
        finally:
            await db.close()

    async def compare_and_swap(
        self, session_id: str, expected: Optional[SessionInfo], new: Optional[SessionInfo]
    ) -> bool:
        db = await self._connect()
        try:
            await db.execute("BEGIN IMMEDIATE")
            current = await self._select_one(db, session_id)
            if current != expected:
                await db.execute("ROLLBACK")
                return False
            if new is None:
                await db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            else:
                await db.execute(
                    f"INSERT OR REPLACE INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    self._info_params(session_id, new),
                )
            await db.execute("COMMIT")
            await self._sync_mirror(db)
            return True
        finally:
            await db.close()
