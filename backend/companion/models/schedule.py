from __future__ import annotations

import calendar
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from companion.agent.state import now_ms


class Recurrence(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleCategory(str, enum.Enum):
    WORK = "work"
    LIFE = "life"
    HEALTH = "health"


def next_occurrence(when_ms: int, recurring: Recurrence) -> int:
    """Epoch-ms timestamp of the next occurrence after *when_ms*."""
    when = datetime.fromtimestamp(when_ms / 1000, tz=timezone.utc)
    if recurring is Recurrence.DAILY:
        nxt = when + timedelta(days=1)
    elif recurring is Recurrence.WEEKLY:
        nxt = when + timedelta(weeks=1)
    else:
        year = when.year + (1 if when.month == 12 else 0)
        month = 1 if when.month == 12 else when.month + 1
        day = min(when.day, calendar.monthrange(year, month)[1])
        nxt = when.replace(year=year, month=month, day=day)
    return int(nxt.timestamp() * 1000)


@dataclass
class ScheduleEntry:
    title: str
    datetime: int  # epoch ms
    description: str = ""
    remind_before: int | None = None  # minutes
    recurring: Recurrence | None = None
    category: ScheduleCategory = ScheduleCategory.LIFE
    completed: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def remind_at(self) -> int:
        return self.datetime - (self.remind_before or 0) * 60_000

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "datetime": self.datetime,
            "remind_before": self.remind_before,
            "recurring": self.recurring.value if self.recurring else None,
            "category": self.category.value,
            "completed": self.completed,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> ScheduleEntry:
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            datetime=row["datetime"],
            remind_before=row["remind_before"],
            recurring=Recurrence(row["recurring"]) if row["recurring"] else None,
            category=ScheduleCategory(row["category"]),
            completed=bool(row["completed"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
