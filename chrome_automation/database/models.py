"""SQLite schema for the strict session registry store."""

from __future__ import annotations

import aiosqlite

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    pid INTEGER NOT NULL,
    debug_port INTEGER NOT NULL,
    session_dir TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    chrome_process_pid INTEGER
);

CREATE INDEX IF NOT EXISTS idx_sessions_port ON sessions(debug_port);
"""


async def initialize_db(db: aiosqlite.Connection):
    """Create tables and indexes if they don't exist."""
    await db.executescript(SCHEMA)
    await db.commit()
