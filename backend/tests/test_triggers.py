"""Trigger manager: schedule cadence, condition cooldown, keyword and event matching."""

from __future__ import annotations

import asyncio
import random

from companion.agent.state import ScheduleConfig, Trigger, TriggerType
from companion.agent.triggers import TriggerManager, validate_trigger
from companion.agent.errors import TriggerConfigError


class FakeClock:
    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now


async def _always(agent_id, trigger) -> bool:
    return True


# ---------------------------------------------------------------------------
# Schedule triggers
# ---------------------------------------------------------------------------


def test_schedule_trigger_fires_once_per_interval():
    clock = FakeClock()
    manager = TriggerManager(clock=clock)
    manager.register_trigger("a", Trigger.schedule("every-10s", 10))

    async def run():
        fired = []
        for now in range(0, 100_001, 1000):
            clock.now = now
            fired.extend(m.fired_at for m in await manager.collect_due(now, _always))
        return fired

    fired = asyncio.run(run())
    assert fired == [10_000 * i for i in range(1, 11)]
    assert manager.get_state("a", "every-10s").fire_count == 10


def test_schedule_trigger_with_coarse_ticks_never_double_fires():
    clock = FakeClock()
    manager = TriggerManager(clock=clock)
    manager.register_trigger("a", Trigger.schedule("t", 5))

    async def run():
        # A late tick fires once, not once per missed interval.
        return await manager.collect_due(60_000, _always)

    assert len(asyncio.run(run())) == 1


def test_disabled_trigger_does_not_fire():
    manager = TriggerManager(clock=FakeClock())
    manager.register_trigger("a", Trigger.schedule("t", 1))
    assert manager.set_trigger_enabled("a", "t", False)

    matches = asyncio.run(manager.collect_due(10_000, _always))
    assert matches == []


# ---------------------------------------------------------------------------
# Condition triggers
# ---------------------------------------------------------------------------


def test_condition_trigger_respects_check_interval_and_cooldown():
    rng = random.Random(1234)
    clock = FakeClock()
    manager = TriggerManager(clock=clock)
    manager.register_trigger(
        "a", Trigger.condition("c", "busy", check_interval_ms=1000, cooldown_ms=5000)
    )
    evaluated: list[int] = []

    async def evaluate(agent_id, trigger):
        evaluated.append(clock.now)
        return rng.random() < 0.7

    async def run():
        fired = []
        for _ in range(500):
            clock.now += rng.randint(100, 3000)
            fired.extend(m.fired_at for m in await manager.collect_due(clock.now, evaluate))
        return fired

    fired = asyncio.run(run())
    assert len(fired) > 10
    assert all(b - a >= 5000 for a, b in zip(fired, fired[1:]))
    assert all(b - a >= 1000 for a, b in zip(evaluated, evaluated[1:]))


def test_condition_not_evaluated_during_cooldown():
    clock = FakeClock()
    manager = TriggerManager(clock=clock)
    manager.register_trigger("a", Trigger.condition("c", "x", check_interval_ms=1000, cooldown_ms=10_000))
    calls = []

    async def evaluate(agent_id, trigger):
        calls.append(clock.now)
        return True

    async def run():
        for now in (1000, 2000, 3000, 11_000):
            clock.now = now
            await manager.collect_due(now, evaluate)

    asyncio.run(run())
    assert calls == [1000, 11_000]


def test_failing_condition_evaluator_is_isolated():
    manager = TriggerManager(clock=FakeClock())
    manager.register_trigger("a", Trigger.condition("boom", "x", check_interval_ms=10))
    manager.register_trigger("b", Trigger.schedule("s", 1))

    async def evaluate(agent_id, trigger):
        raise RuntimeError("broken predicate")

    matches = asyncio.run(manager.collect_due(5000, evaluate))
    assert [(m.agent_id, m.trigger_id) for m in matches] == [("b", "s")]


# ---------------------------------------------------------------------------
# Malformed triggers
# ---------------------------------------------------------------------------


def test_malformed_triggers_are_marked_invalid_and_never_fire():
    manager = TriggerManager(clock=FakeClock())
    manager.register_trigger("a", Trigger.schedule("zero", 0))
    manager.register_trigger("a", Trigger("wrong-config", TriggerType.EVENT, ScheduleConfig(5)))
    manager.register_trigger("a", Trigger.user_message("no-words", []))
    manager.register_trigger("a", Trigger.condition("no-interval", "x", check_interval_ms=0))

    for trigger_id in ("zero", "wrong-config", "no-words", "no-interval"):
        state = manager.get_state("a", trigger_id)
        assert state is not None and not state.valid and state.error

    async def run():
        due = await manager.collect_due(10**9, _always)
        return due, manager.emit_event("anything"), manager.match_user_message_triggers("hello")

    assert asyncio.run(run()) == ([], [], [])
    assert manager.stats()["invalid"] == 4


def test_validate_trigger_raises_config_error():
    try:
        validate_trigger("a", Trigger.schedule("neg", -1))
    except TriggerConfigError as e:
        assert e.trigger_id == "neg"
        assert "interval_seconds" in e.reason
    else:
        raise AssertionError("expected TriggerConfigError")


def test_duplicate_trigger_registration_is_ignored():
    manager = TriggerManager(clock=FakeClock())
    assert manager.register_trigger("a", Trigger.schedule("t", 1)) is not None
    assert manager.register_trigger("a", Trigger.schedule("t", 99)) is None
    assert manager.get_state("a", "t").trigger.config.interval_seconds == 1
    # Same trigger id under another agent is a different trigger.
    assert manager.register_trigger("b", Trigger.schedule("t", 1)) is not None


# ---------------------------------------------------------------------------
# User messages and events
# ---------------------------------------------------------------------------


def test_user_message_matching_is_case_insensitive_substring():
    manager = TriggerManager(clock=FakeClock(42))
    manager.register_trigger("health", Trigger.user_message("kw", ["Water", "喝水"]))
    manager.register_trigger("other", Trigger.user_message("kw", ["weather"]))

    matches = manager.match_user_message_triggers("I should drink more WATER today", {"channel": "chat"})
    assert [m.agent_id for m in matches] == ["health"]
    assert matches[0].payload == {"keyword": "Water", "channel": "chat"}
    assert matches[0].fired_at == 42

    assert [m.agent_id for m in manager.match_user_message_triggers("我想喝水")] == ["health"]
    assert manager.match_user_message_triggers("") == []


def test_event_filter_must_be_subset_of_payload():
    manager = TriggerManager(clock=FakeClock())
    manager.register_trigger("a", Trigger.event("any-focus", "focus_changed"))
    manager.register_trigger("b", Trigger.event("high-only", "focus_changed", filter={"level": "high"}))
    manager.register_trigger("c", Trigger.event("other", "battery_low"))

    low = manager.emit_event("focus_changed", {"level": "low"})
    high = manager.emit_event("focus_changed", {"level": "high", "app": "editor"})
    missing = manager.emit_event("focus_changed", {})

    assert [m.agent_id for m in low] == ["a"]
    assert [m.agent_id for m in high] == ["a", "b"]
    assert high[1].payload == {"level": "high", "app": "editor"}
    assert [m.agent_id for m in missing] == ["a"]


def test_unregister_agent_triggers():
    manager = TriggerManager(clock=FakeClock())
    manager.register_agent_triggers("a", [Trigger.schedule("s", 1), Trigger.event("e", "x")])
    manager.register_trigger("b", Trigger.event("e", "x"))

    assert manager.unregister_agent_triggers("a") == 2
    assert [m.agent_id for m in manager.emit_event("x")] == ["b"]


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


def test_clock_ticks_until_stopped():
    manager = TriggerManager(tick_interval=0.01)
    ticks: list[int] = []

    async def run():
        manager.start(ticks.append)
        await asyncio.sleep(0.1)
        await manager.stop()
        seen = len(ticks)
        await asyncio.sleep(0.05)
        return seen

    seen = asyncio.run(run())
    assert seen > 0
    assert len(ticks) == seen
    assert not manager.running
