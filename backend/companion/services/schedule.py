from __future__ import annotations

import asyncio
from pathlib import Path

from companion.agent.state import now_ms
from companion.db import get_db
from companion.models.schedule import (
    Recurrence,
    ScheduleCategory,
    ScheduleEntry,
    next_occurrence,
)

DEFAULT_CONFLICT_WINDOW_MINUTES = 30


class ScheduleStore:
    def __init__(self, db_path: Path | str | None = None):
        self._db_path = db_path
        self._lock = asyncio.Lock()

    async def create(
        self,
        title: str,
        datetime: int,
        description: str = "",
        remind_before: int | None = None,
        recurring: Recurrence | str | None = None,
        category: ScheduleCategory | str = ScheduleCategory.LIFE,
    ) -> ScheduleEntry:
        if not title or not title.strip():
            raise ValueError("schedule title must not be empty")
        if remind_before is not None and remind_before < 0:
            raise ValueError("remind_before must not be negative")
        entry = ScheduleEntry(
            title=title.strip(),
            datetime=int(datetime),
            description=description,
            remind_before=remind_before,
            recurring=Recurrence(recurring) if recurring else None,
            category=ScheduleCategory(category),
        )
        db = await get_db(self._db_path)
        try:
            await db.execute(
                """INSERT INTO schedules (id, title, description, datetime, remind_before, recurring,
                                          category, completed, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (entry.id, entry.title, entry.description, entry.datetime, entry.remind_before,
                 entry.recurring.value if entry.recurring else None, entry.category.value,
                 int(entry.completed), entry.created_at, entry.updated_at),
            )
            await db.commit()
        finally:
            await db.close()
        return entry

    async def get(self, schedule_id: str) -> ScheduleEntry | None:
        db = await get_db(self._db_path)
        try:
            cursor = await db.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,))
            row = await cursor.fetchone()
            return ScheduleEntry.from_row(row) if row else None
        finally:
            await db.close()

    async def list(
        self,
        upcoming_only: bool = False,
        category: ScheduleCategory | str | None = None,
        now: int | None = None,
    ) -> list[ScheduleEntry]:
        clauses: list[str] = []
        params: list = []
        if upcoming_only:
            clauses.append("completed = 0 AND datetime >= ?")
            params.append(now if now is not None else now_ms())
        if category is not None:
            clauses.append("category = ?")
            params.append(ScheduleCategory(category).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(f"SELECT * FROM schedules {where} ORDER BY datetime ASC", params)
            rows = await cursor.fetchall()
            return [ScheduleEntry.from_row(r) for r in rows]
        finally:
            await db.close()

    async def complete(self, schedule_id: str) -> ScheduleEntry | None:
        """Mark an entry done. Recurring entries roll forward to their next occurrence."""
        async with self._lock:
            entry = await self.get(schedule_id)
            if entry is None:
                return None
            if entry.recurring is not None:
                entry.datetime = next_occurrence(entry.datetime, entry.recurring)
            else:
                entry.completed = True
            entry.updated_at = now_ms()

            db = await get_db(self._db_path)
            try:
                await db.execute(
                    "UPDATE schedules SET datetime = ?, completed = ?, updated_at = ? WHERE id = ?",
                    (entry.datetime, int(entry.completed), entry.updated_at, entry.id),
                )
                await db.commit()
            finally:
                await db.close()
            return entry

    async def delete(self, schedule_id: str) -> bool:
        async with self._lock:
            db = await get_db(self._db_path)
            try:
                cursor = await db.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
                await db.commit()
                return cursor.rowcount > 0
            finally:
                await db.close()

    async def due_reminders(self, now: int | None = None) -> list[ScheduleEntry]:
        """Open entries whose reminder time has passed."""
        now = now if now is not None else now_ms()
        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(
                """SELECT * FROM schedules
                   WHERE completed = 0 AND datetime - COALESCE(remind_before, 0) * 60000 <= ?
                   ORDER BY datetime ASC""",
                (now,),
            )
            rows = await cursor.fetchall()
            return [ScheduleEntry.from_row(r) for r in rows]
        finally:
            await db.close()

    async def find_conflicts(
        self,
        datetime: int,
        window_minutes: int = DEFAULT_CONFLICT_WINDOW_MINUTES,
        exclude_id: str | None = None,
    ) -> list[ScheduleEntry]:
        window = window_minutes * 60_000
        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(
                """SELECT * FROM schedules
                   WHERE completed = 0 AND datetime BETWEEN ? AND ? AND id != ?
                   ORDER BY datetime ASC""",
                (datetime - window, datetime + window, exclude_id or ""),
            )
            rows = await cursor.fetchall()
            return [ScheduleEntry.from_row(r) for r in rows]
        finally:
            await db.close()
