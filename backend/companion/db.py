from __future__ import annotations

from pathlib import Path

import aiosqlite

from companion.config import settings

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    content TEXT NOT NULL,
    importance INTEGER NOT NULL CHECK (importance BETWEEN 1 AND 10),
    last_accessed INTEGER NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_category ON memories(category);
CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    datetime INTEGER NOT NULL,
    remind_before INTEGER,
    recurring TEXT,
    category TEXT NOT NULL DEFAULT 'life',
    completed INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_schedules_datetime ON schedules(datetime);
CREATE TABLE IF NOT EXISTS agent_tool_audit_log (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    tool_call_id TEXT NOT NULL UNIQUE,
    tool_name TEXT NOT NULL,
    source TEXT NOT NULL,
    args_json TEXT,
    result_json TEXT,
    status TEXT NOT NULL DEFAULT 'started',
    error TEXT,
    requires_confirmation INTEGER NOT NULL DEFAULT 0,
    started_at INTEGER NOT NULL,
    completed_at INTEGER,
    duration_ms INTEGER
);
CREATE INDEX IF NOT EXISTS idx_audit_started_at ON agent_tool_audit_log(started_at);
"""


def _resolve(db_path: Path | str | None) -> Path:
    return Path(db_path) if db_path is not None else settings.DB_PATH


async def init_db(db_path: Path | str | None = None) -> None:
    path = _resolve(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA foreign_keys=ON")
        await db.executescript(_CREATE_TABLES)
        await db.commit()


async def get_db(db_path: Path | str | None = None) -> aiosqlite.Connection:
    db = await aiosqlite.connect(_resolve(db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    return db
