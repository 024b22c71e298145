"""TriggerManager: decides which (agent, trigger) pairs could fire for a stimulus.

The manager never calls agent code itself. Its clock only hands timestamps to
an ``on_tick`` callback (the dispatcher enqueues a tick stimulus), and
condition predicates are resolved through an evaluator supplied by whoever
calls :meth:`TriggerManager.collect_due`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from companion.agent.constants import DEFAULT_TICK_INTERVAL_SECONDS
from companion.agent.errors import TriggerConfigError
from companion.agent.state import (
    ConditionConfig,
    EventConfig,
    ScheduleConfig,
    Trigger,
    TriggerType,
    UserMessageConfig,
    now_ms,
)

logger = logging.getLogger(__name__)

ConditionEvaluator = Callable[[str, Trigger], Awaitable[bool]]
"""``evaluate(agent_id, trigger) -> bool`` for condition triggers."""

_CONFIG_TYPES = {
    TriggerType.SCHEDULE: ScheduleConfig,
    TriggerType.CONDITION: ConditionConfig,
    TriggerType.USER_MESSAGE: UserMessageConfig,
    TriggerType.EVENT: EventConfig,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_trigger(agent_id: str, trigger: Trigger) -> None:
    """Raise TriggerConfigError if *trigger* can never fire correctly."""

    def bad(reason: str) -> TriggerConfigError:
        return TriggerConfigError(agent_id, getattr(trigger, "id", "?"), reason)

    if not isinstance(trigger.id, str) or not trigger.id:
        raise bad("trigger id must be a non-empty string")
    if not isinstance(trigger.type, TriggerType):
        raise bad(f"unknown trigger type {trigger.type!r}")
    expected = _CONFIG_TYPES[trigger.type]
    config = trigger.config
    if not isinstance(config, expected):
        raise bad(f"{trigger.type.value} trigger needs a {expected.__name__}")

    if isinstance(config, ScheduleConfig):
        if not _is_number(config.interval_seconds) or config.interval_seconds <= 0:
            raise bad(f"interval_seconds must be positive, got {config.interval_seconds!r}")
    elif isinstance(config, ConditionConfig):
        if not isinstance(config.expression, str) or not config.expression.strip():
            raise bad("expression must be a non-empty string")
        if not _is_number(config.check_interval_ms) or config.check_interval_ms <= 0:
            raise bad(f"check_interval_ms must be positive, got {config.check_interval_ms!r}")
        if not _is_number(config.cooldown_ms) or config.cooldown_ms < 0:
            raise bad(f"cooldown_ms must not be negative, got {config.cooldown_ms!r}")
    elif isinstance(config, UserMessageConfig):
        keywords = config.keywords
        if isinstance(keywords, str) or not keywords:
            raise bad("keywords must be a non-empty collection of strings")
        if not all(isinstance(k, str) and k.strip() for k in keywords):
            raise bad("keywords must be non-empty strings")
    elif isinstance(config, EventConfig):
        if not isinstance(config.event_name, str) or not config.event_name:
            raise bad("event_name must be a non-empty string")
        if config.filter is not None and not isinstance(config.filter, Mapping):
            raise bad("filter must be a mapping")


@dataclass(frozen=True)
class TriggerMatch:
    agent_id: str
    trigger_id: str
    trigger_type: TriggerType | None  # None for direct dispatch
    order: int  # registration sequence, used for tie-breaking
    fired_at: int
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class TriggerState:
    agent_id: str
    trigger: Trigger
    order: int
    armed_at: int
    valid: bool = True
    error: str | None = None
    enabled: bool = True
    last_fired_at: int | None = None
    last_checked_at: int | None = None
    fire_count: int = 0

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "trigger": self.trigger.to_dict(),
            "valid": self.valid,
            "error": self.error,
            "enabled": self.enabled,
            "last_fired_at": self.last_fired_at,
            "last_checked_at": self.last_checked_at,
            "fire_count": self.fire_count,
        }


class TriggerManager:
    def __init__(
        self,
        clock: Callable[[], int] = now_ms,
        tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS,
    ):
        self._clock = clock
        self._tick_interval = tick_interval
        self._states: dict[tuple[str, str], TriggerState] = {}
        self._sequence = itertools.count()
        self._clock_task: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_trigger(self, agent_id: str, trigger: Trigger) -> TriggerState | None:
        key = (agent_id, trigger.id)
        if key in self._states:
            logger.warning("Trigger %s/%s already registered, ignoring duplicate", agent_id, trigger.id)
            return None
        state = TriggerState(
            agent_id=agent_id,
            trigger=trigger,
            order=next(self._sequence),
            armed_at=self._clock(),
            enabled=trigger.enabled,
        )
        try:
            validate_trigger(agent_id, trigger)
        except TriggerConfigError as e:
            logger.warning("%s; it will never fire", e)
            state.valid = False
            state.error = e.reason
        self._states[key] = state
        return state

    def register_agent_triggers(self, agent_id: str, triggers: list[Trigger]) -> None:
        for trigger in triggers:
            self.register_trigger(agent_id, trigger)

    def unregister_trigger(self, agent_id: str, trigger_id: str) -> bool:
        return self._states.pop((agent_id, trigger_id), None) is not None

    def unregister_agent_triggers(self, agent_id: str) -> int:
        keys = [k for k in self._states if k[0] == agent_id]
        for key in keys:
            del self._states[key]
        return len(keys)

    def set_trigger_enabled(self, agent_id: str, trigger_id: str, enabled: bool) -> bool:
        state = self._states.get((agent_id, trigger_id))
        if state is None:
            return False
        state.enabled = enabled
        return True

    def get_state(self, agent_id: str, trigger_id: str) -> TriggerState | None:
        return self._states.get((agent_id, trigger_id))

    def states(self, agent_id: str | None = None) -> list[TriggerState]:
        items = sorted(self._states.values(), key=lambda s: s.order)
        if agent_id is None:
            return items
        return [s for s in items if s.agent_id == agent_id]

    def _active(self, trigger_type: TriggerType) -> list[TriggerState]:
        return [
            s
            for s in self.states()
            if s.valid and s.enabled and s.trigger.type is trigger_type
        ]

    def _fire(self, state: TriggerState, now: int, payload: Mapping[str, Any] | None = None) -> TriggerMatch:
        state.last_fired_at = now
        state.fire_count += 1
        return TriggerMatch(
            agent_id=state.agent_id,
            trigger_id=state.trigger.id,
            trigger_type=state.trigger.type,
            order=state.order,
            fired_at=now,
            payload=dict(payload or {}),
        )

    # ------------------------------------------------------------------
    # Stimulus matching
    # ------------------------------------------------------------------

    def match_user_message_triggers(
        self, text: str, context: Mapping[str, Any] | None = None
    ) -> list[TriggerMatch]:
        """Every (agent, trigger) whose keywords occur in *text*, case-insensitively."""
        if not text:
            return []
        lowered = text.lower()
        now = self._clock()
        matches = []
        for state in self._active(TriggerType.USER_MESSAGE):
            keywords = state.trigger.config.keywords
            hit = next((k for k in keywords if k.lower() in lowered), None)
            if hit is not None:
                matches.append(self._fire(state, now, {"keyword": hit, **dict(context or {})}))
        return matches

    def emit_event(self, name: str, payload: Mapping[str, Any] | None = None) -> list[TriggerMatch]:
        """Every event trigger listening for *name* whose filter is a subset of *payload*."""
        payload = payload or {}
        now = self._clock()
        matches = []
        for state in self._active(TriggerType.EVENT):
            config = state.trigger.config
            if config.event_name != name:
                continue
            if config.filter and any(
                k not in payload or payload[k] != v for k, v in config.filter.items()
            ):
                continue
            matches.append(self._fire(state, now, payload))
        return matches

    async def collect_due(self, now: int, evaluate: ConditionEvaluator) -> list[TriggerMatch]:
        """Schedule and condition triggers that fire at *now*.

        A schedule slot is consumed here, before any agent gate runs.
        """
        matches = []
        for state in self._active(TriggerType.SCHEDULE):
            interval_ms = state.trigger.config.interval_seconds * 1000
            since = state.last_fired_at if state.last_fired_at is not None else state.armed_at
            if now - since >= interval_ms:
                matches.append(self._fire(state, now))

        for state in self._active(TriggerType.CONDITION):
            config = state.trigger.config
            since = state.last_checked_at if state.last_checked_at is not None else state.armed_at
            if now - since < config.check_interval_ms:
                continue
            state.last_checked_at = now
            if state.last_fired_at is not None and now - state.last_fired_at < config.cooldown_ms:
                continue
            try:
                holds = await evaluate(state.agent_id, state.trigger)
            except Exception:
                logger.exception(
                    "Condition %r for %s/%s failed to evaluate",
                    config.expression,
                    state.agent_id,
                    state.trigger.id,
                )
                continue
            if holds:
                matches.append(self._fire(state, now))
        return matches

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self, on_tick: Callable[[int], None]) -> None:
        """Start the clock. ``on_tick(now)`` must only enqueue work."""
        if self._running:
            return
        self._running = True
        now = self._clock()
        for state in self._states.values():
            if state.last_fired_at is None:
                state.armed_at = now
        self._clock_task = asyncio.create_task(self._run_clock(on_tick))

    async def _run_clock(self, on_tick: Callable[[int], None]) -> None:
        while self._running:
            await asyncio.sleep(self._tick_interval)
            if not self._running:
                break
            try:
                on_tick(self._clock())
            except Exception:
                logger.exception("Tick handler failed")

    async def stop(self) -> None:
        self._running = False
        task, self._clock_task = self._clock_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def stats(self) -> dict:
        states = list(self._states.values())
        by_type: dict[str, int] = {}
        for s in states:
            kind = getattr(s.trigger.type, "value", str(s.trigger.type))
            by_type[kind] = by_type.get(kind, 0) + 1
        return {
            "total": len(states),
            "active": sum(1 for s in states if s.valid and s.enabled),
            "invalid": sum(1 for s in states if not s.valid),
            "by_type": by_type,
            "running": self._running,
        }
