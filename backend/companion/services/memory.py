from __future__ import annotations

import asyncio
from pathlib import Path

from companion.agent.state import now_ms
from companion.db import get_db
from companion.models.memory import MemoryCategory, MemoryEntry, check_importance


class MemoryStore:
    """Long-term memory rows shared by agents and tools.

    Read-modify-write operations hold ``self._lock`` so concurrent
    access-count updates are never lost.
    """

    def __init__(self, db_path: Path | str | None = None):
        self._db_path = db_path
        self._lock = asyncio.Lock()

    async def save(self, category: MemoryCategory | str, content: str, importance: int = 5) -> MemoryEntry:
        entry = MemoryEntry(
            category=MemoryCategory(category),
            content=content.strip(),
            importance=check_importance(importance),
        )
        if not entry.content:
            raise ValueError("memory content must not be empty")

        db = await get_db(self._db_path)
        try:
            await db.execute(
                """INSERT INTO memories (id, category, content, importance, last_accessed, access_count, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (entry.id, entry.category.value, entry.content, entry.importance,
                 entry.last_accessed, entry.access_count, entry.created_at),
            )
            await db.commit()
        finally:
            await db.close()
        return entry

    async def _fetch(self, db, memory_id: str) -> MemoryEntry | None:
        cursor = await db.execute("SELECT * FROM memories WHERE id = ?", (memory_id,))
        row = await cursor.fetchone()
        return MemoryEntry.from_row(row) if row else None

    async def get(self, memory_id: str) -> MemoryEntry | None:
        """Fetch a memory and record the access."""
        async with self._lock:
            db = await get_db(self._db_path)
            try:
                entry = await self._fetch(db, memory_id)
                if entry is None:
                    return None
                entry.access_count += 1
                entry.last_accessed = now_ms()
                await db.execute(
                    "UPDATE memories SET access_count = ?, last_accessed = ? WHERE id = ?",
                    (entry.access_count, entry.last_accessed, entry.id),
                )
                await db.commit()
                return entry
            finally:
                await db.close()

    async def increment_access(self, memory_id: str) -> int | None:
        """Bump the access counter. Returns the new count, or None if missing."""
        entry = await self.get(memory_id)
        return entry.access_count if entry else None

    async def search(
        self,
        category: MemoryCategory | str | None = None,
        keyword: str | None = None,
        min_importance: int | None = None,
        limit: int = 10,
    ) -> list[MemoryEntry]:
        clauses: list[str] = []
        params: list = []
        if category is not None:
            clauses.append("category = ?")
            params.append(MemoryCategory(category).value)
        if keyword:
            clauses.append("LOWER(content) LIKE ?")
            params.append(f"%{keyword.lower()}%")
        if min_importance is not None:
            clauses.append("importance >= ?")
            params.append(min_importance)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, limit))

        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(
                f"SELECT * FROM memories {where} "
                "ORDER BY importance DESC, access_count DESC, created_at DESC LIMIT ?",
                params,
            )
            rows = await cursor.fetchall()
            return [MemoryEntry.from_row(r) for r in rows]
        finally:
            await db.close()

    async def delete(self, memory_id: str) -> bool:
        async with self._lock:
            db = await get_db(self._db_path)
            try:
                cursor = await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
                await db.commit()
                return cursor.rowcount > 0
            finally:
                await db.close()
