"""SQLite-backed stores: memories, schedules, and the audit log."""

from __future__ import annotations

import asyncio

import pytest

from companion.agent.audit import (
    AuditLogEntry,
    AuditSource,
    AuditStatus,
    InMemoryAuditStore,
    SqliteAuditStore,
)
from companion.db import init_db
from companion.models.schedule import Recurrence, next_occurrence
from companion.services.memory import MemoryStore
from companion.services.schedule import ScheduleStore

HOUR = 3_600_000


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "companion.db"
    asyncio.run(init_db(path))
    return path


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------


def test_memory_search_orders_by_importance_then_access(db_path):
    store = MemoryStore(db_path)

    async def run():
        tea = await store.save("preference", "Likes green tea", 5)
        coffee = await store.save("preference", "Likes black coffee", 5)
        await store.save("goal", "Run a marathon", 9)
        await store.get(coffee.id)
        return tea, coffee, await store.search(), await store.search(category="preference", keyword="TEA")

    tea, coffee, everything, teas = asyncio.run(run())
    assert [m.content for m in everything] == ["Run a marathon", "Likes black coffee", "Likes green tea"]
    assert [m.id for m in teas] == [tea.id]


def test_memory_get_records_access(db_path):
    store = MemoryStore(db_path)

    async def run():
        entry = await store.save("habit", "Walks after lunch", 3)
        await store.get(entry.id)
        await store.increment_access(entry.id)
        return entry, await store.get(entry.id)

    entry, fetched = asyncio.run(run())
    assert fetched.access_count == 3
    assert fetched.last_accessed >= entry.last_accessed


def test_concurrent_access_increments_are_not_lost(db_path):
    store = MemoryStore(db_path)

    async def run():
        entry = await store.save("other", "Counter", 5)
        await asyncio.gather(*(store.increment_access(entry.id) for _ in range(20)))
        return (await store.search(keyword="counter"))[0]

    assert asyncio.run(run()).access_count == 20


def test_memory_importance_must_be_in_range(db_path):
    store = MemoryStore(db_path)
    for bad in (0, 11, "7"):
        with pytest.raises(ValueError):
            asyncio.run(store.save("other", "x", bad))


def test_memory_delete(db_path):
    store = MemoryStore(db_path)

    async def run():
        entry = await store.save("event", "Birthday party", 6)
        return await store.delete(entry.id), await store.delete(entry.id), await store.get(entry.id)

    assert asyncio.run(run()) == (True, False, None)


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def test_schedule_due_reminders_respect_remind_before(db_path):
    store = ScheduleStore(db_path)
    now = 100 * HOUR

    async def run():
        soon = await store.create("Dentist", now + 20 * 60_000, remind_before=30)
        await store.create("Later", now + 5 * HOUR, remind_before=30)
        overdue = await store.create("Overdue", now - HOUR)
        done = await store.create("Done", now - HOUR)
        await store.complete(done.id)
        return soon, overdue, await store.due_reminders(now)

    soon, overdue, due = asyncio.run(run())
    assert [e.id for e in due] == [overdue.id, soon.id]


def test_schedule_complete_rolls_recurring_entries_forward(db_path):
    store = ScheduleStore(db_path)

    async def run():
        daily = await store.create("Stretch", 10 * HOUR, recurring="daily", category="health")
        once = await store.create("Call mom", 10 * HOUR)
        return daily, await store.complete(daily.id), await store.complete(once.id), await store.complete("missing")

    daily, rolled, completed, missing = asyncio.run(run())
    assert rolled.datetime == daily.datetime + 24 * HOUR
    assert not rolled.completed
    assert completed.completed
    assert missing is None


def test_schedule_list_filters(db_path):
    store = ScheduleStore(db_path)
    now = 50 * HOUR

    async def run():
        await store.create("Past", now - HOUR, category="work")
        await store.create("Standup", now + HOUR, category="work")
        await store.create("Gym", now + 2 * HOUR, category="health")
        upcoming = await store.list(upcoming_only=True, now=now)
        work = await store.list(category="work")
        return upcoming, work

    upcoming, work = asyncio.run(run())
    assert [e.title for e in upcoming] == ["Standup", "Gym"]
    assert [e.title for e in work] == ["Past", "Standup"]


def test_schedule_conflicts_within_window(db_path):
    store = ScheduleStore(db_path)

    async def run():
        meeting = await store.create("Meeting", 10 * HOUR)
        await store.create("Lunch", 12 * HOUR)
        near = await store.find_conflicts(10 * HOUR + 15 * 60_000)
        itself = await store.find_conflicts(meeting.datetime, exclude_id=meeting.id)
        return meeting, near, itself

    meeting, near, itself = asyncio.run(run())
    assert [e.id for e in near] == [meeting.id]
    assert itself == []


def test_monthly_recurrence_clamps_to_month_end():
    jan_31 = 1706659200000  # 2024-01-31T00:00:00Z
    feb_29 = 1709164800000  # 2024-02-29T00:00:00Z
    assert next_occurrence(jan_31, Recurrence.MONTHLY) == feb_29


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def test_sqlite_audit_finalizes_once_and_lists_newest_first(db_path):
    store = SqliteAuditStore(db_path)

    def entry(n):
        return AuditLogEntry(
            id=f"id{n}", run_id="run", tool_call_id=f"call{n}", tool_name="web_search",
            source=AuditSource.CHAT, args_json='{"query": "cats"}', requires_confirmation=False,
            started_at=n,
        )

    async def run():
        for n in (1, 2, 3):
            await store.insert_started(entry(n))
        first = await store.finalize("call2", AuditStatus.SUCCEEDED, result_json="[]", completed_at=10, duration_ms=8)
        again = await store.finalize("call2", AuditStatus.FAILED, error="late", completed_at=11, duration_ms=9)
        listed = await store.list(2)
        got = await store.get("call2")
        await store.clear()
        return first, again, listed, got, await store.list()

    first, again, listed, got, cleared = asyncio.run(run())
    assert first and not again
    assert [e.tool_call_id for e in listed] == ["call3", "call2"]
    assert got.status is AuditStatus.SUCCEEDED and got.error is None and got.duration_ms == 8
    assert cleared == []


@pytest.mark.parametrize("kind", ["sqlite", "memory"])
def test_audit_stores_ignore_duplicate_call_ids(db_path, kind):
    store = SqliteAuditStore(db_path) if kind == "sqlite" else InMemoryAuditStore()
    entry = AuditLogEntry(
        id="a", run_id="r", tool_call_id="same", tool_name="t", source=AuditSource.OTHER,
        args_json=None, requires_confirmation=False, started_at=1,
    )

    async def run():
        first = await store.insert_started(entry)
        await store.finalize("same", AuditStatus.SUCCEEDED, result_json='"ok"', completed_at=5, duration_ms=4)
        second = await store.insert_started(AuditLogEntry(**{**entry.__dict__, "id": "b", "started_at": 9}))
        return first, second, await store.list()

    first, second, entries = asyncio.run(run())
    assert first is True
    assert second is False
    assert len(entries) == 1
    assert entries[0].id == "a"
    assert entries[0].status is AuditStatus.SUCCEEDED
    assert entries[0].result_json == '"ok"'
