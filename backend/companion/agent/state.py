from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Mapping, Union

from companion.config import settings


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ── Enums ───────────────────────────────────────────────────────


class Priority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class TriggerType(str, enum.Enum):
    SCHEDULE = "schedule"
    CONDITION = "condition"
    USER_MESSAGE = "user_message"
    EVENT = "event"


class AgentStatus(str, enum.Enum):
    UNREGISTERED = "unregistered"
    INITIALIZING = "initializing"
    IDLE = "idle"
    EXECUTING = "executing"
    DISABLED = "disabled"
    ERROR = "error"


class ActionType(str, enum.Enum):
    NOTIFICATION = "notification"
    SCHEDULE_TASK = "schedule_task"
    UPDATE_MEMORY = "update_memory"
    UPDATE_EMOTION = "update_emotion"
    TRIGGER_AGENT = "trigger_agent"
    OPEN_URL = "open_url"
    PLAY_AUDIO = "play_audio"
    CELEBRATE = "celebrate"


# ── Trigger declarations ────────────────────────────────────────


@dataclass(frozen=True)
class ScheduleConfig:
    interval_seconds: float


@dataclass(frozen=True)
class ConditionConfig:
    expression: str
    check_interval_ms: int
    cooldown_ms: int = 0


@dataclass(frozen=True)
class UserMessageConfig:
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class EventConfig:
    event_name: str
    filter: Mapping[str, Any] | None = None


TriggerConfig = Union[ScheduleConfig, ConditionConfig, UserMessageConfig, EventConfig]


@dataclass(frozen=True)
class Trigger:
    id: str
    type: TriggerType
    config: TriggerConfig
    enabled: bool = True
    description: str = ""

    @classmethod
    def schedule(cls, id: str, interval_seconds: float, description: str = "") -> Trigger:
        return cls(id, TriggerType.SCHEDULE, ScheduleConfig(interval_seconds), description=description)

    @classmethod
    def condition(
        cls,
        id: str,
        expression: str,
        check_interval_ms: int,
        cooldown_ms: int = 0,
        description: str = "",
    ) -> Trigger:
        return cls(
            id,
            TriggerType.CONDITION,
            ConditionConfig(expression, check_interval_ms, cooldown_ms),
            description=description,
        )

    @classmethod
    def user_message(cls, id: str, keywords: list[str] | tuple[str, ...], description: str = "") -> Trigger:
        return cls(id, TriggerType.USER_MESSAGE, UserMessageConfig(tuple(keywords)), description=description)

    @classmethod
    def event(
        cls,
        id: str,
        event_name: str,
        filter: Mapping[str, Any] | None = None,
        description: str = "",
    ) -> Trigger:
        return cls(id, TriggerType.EVENT, EventConfig(event_name, filter), description=description)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": getattr(self.type, "value", self.type),
            "config": asdict(self.config) if is_dataclass(self.config) else self.config,
            "enabled": self.enabled,
            "description": self.description,
        }


# ── Agent identity and limits ───────────────────────────────────


@dataclass(frozen=True)
class AgentMetadata:
    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    category: str = "utility"
    priority: Priority = Priority.NORMAL
    is_system: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["priority"] = self.priority.value
        return data


@dataclass
class AgentConfig:
    enabled: bool = True
    tools: list[str] = field(default_factory=list)  # global tool allow-list, empty = all
    max_steps: int = field(default_factory=lambda: settings.DEFAULT_AGENT_MAX_STEPS)
    timeout_ms: int = field(default_factory=lambda: settings.DEFAULT_AGENT_TIMEOUT_MS)
    settings: dict[str, Any] = field(default_factory=dict)


# ── Dispatch snapshot and result ────────────────────────────────


@dataclass(frozen=True)
class EmotionSample:
    emotion: str
    intensity: float
    timestamp: int


@dataclass(frozen=True)
class AgentContext:
    """Per-dispatch snapshot handed to ``should_trigger`` and ``on_execute``."""

    trigger_id: str
    trigger_source: str  # TriggerType value or "direct"
    timestamp: int
    user_message: str | None = None
    pet_status: Mapping[str, Any] = field(default_factory=dict)
    recent_emotions: tuple[EmotionSample, ...] = ()
    recent_messages: tuple[Mapping[str, str], ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentAction:
    type: ActionType
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentResult:
    success: bool
    message: str | None = None
    error: str | None = None
    emotion: str | None = None
    should_speak: bool = False
    animation: str | None = None
    actions: tuple[AgentAction, ...] = ()
    data: Mapping[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None

    @classmethod
    def ok(cls, message: str | None = None, **kwargs: Any) -> AgentResult:
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, error: str, **kwargs: Any) -> AgentResult:
        return cls(success=False, error=error, **kwargs)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "emotion": self.emotion,
            "should_speak": self.should_speak,
            "animation": self.animation,
            "actions": [{"type": a.type.value, "payload": dict(a.payload)} for a in self.actions],
            "data": dict(self.data),
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class ExecutionRecord:
    id: str
    agent_id: str
    agent_name: str
    trigger_id: str
    trigger_source: str
    started_at: int
    completed_at: int
    duration_ms: int
    success: bool
    message: str | None = None
    error: str | None = None
    timed_out: bool = False

    def to_dict(self) -> dict:
        return asdict(self)
