from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field

from companion.agent.state import now_ms


class MemoryCategory(str, enum.Enum):
    PREFERENCE = "preference"
    EVENT = "event"
    HABIT = "habit"
    RELATIONSHIP = "relationship"
    GOAL = "goal"
    OTHER = "other"


MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 10


def check_importance(importance: int) -> int:
    if not isinstance(importance, int) or isinstance(importance, bool):
        raise ValueError(f"importance must be an integer, got {importance!r}")
    if not MIN_IMPORTANCE <= importance <= MAX_IMPORTANCE:
        raise ValueError(f"importance must be between {MIN_IMPORTANCE} and {MAX_IMPORTANCE}, got {importance}")
    return importance


@dataclass
class MemoryEntry:
    category: MemoryCategory
    content: str
    importance: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    last_accessed: int = field(default_factory=now_ms)
    access_count: int = 0
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category.value,
            "content": self.content,
            "importance": self.importance,
            "last_accessed": self.last_accessed,
            "access_count": self.access_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row) -> MemoryEntry:
        return cls(
            id=row["id"],
            category=MemoryCategory(row["category"]),
            content=row["content"],
            importance=row["importance"],
            last_accessed=row["last_accessed"],
            access_count=row["access_count"],
            created_at=row["created_at"],
        )
