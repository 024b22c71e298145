"""Agent dispatcher: ordering, isolation, timeouts, actions, and the queue."""

from __future__ import annotations

import asyncio

from companion.agent.audit import InMemoryAuditStore
from companion.agent.base import BaseAgent
from companion.agent.dispatcher import AgentDispatcher, Stimulus
from companion.agent.errors import DuplicateAgentError
from companion.agent.gateway import ToolGateway
from companion.agent.state import (
    ActionType,
    AgentAction,
    AgentConfig,
    AgentContext,
    AgentMetadata,
    AgentResult,
    AgentStatus,
    Priority,
    Trigger,
)
from companion.agent.tool_registry import ToolContext, ToolRegistry, define_tool
from companion.agent.triggers import TriggerManager
from companion.bus import EventBus, Topic
from companion.notifications import NotificationCenter


class FakeClock:
    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now


class RecordingAgent(BaseAgent):
    """Answers every stimulus; behaviour is configured per instance."""

    def __init__(
        self,
        agent_id: str,
        priority: Priority = Priority.NORMAL,
        triggers: list[Trigger] | None = None,
        result: AgentResult | None = None,
        accept: bool = True,
        fail: bool = False,
        delay: float = 0.0,
        timeout_ms: int = 1000,
        log: list | None = None,
    ):
        self.metadata = AgentMetadata(id=agent_id, name=agent_id.title(), priority=priority)
        super().__init__(AgentConfig(timeout_ms=timeout_ms))
        self.triggers = list(triggers or [])
        self.result = result or AgentResult.ok()
        self.accept = accept
        self.fail = fail
        self.delay = delay
        self.log = log if log is not None else []
        self.contexts: list[AgentContext] = []
        self.init_count = 0
        self.cleaned_up = False

    async def on_initialize(self) -> None:
        self.init_count += 1

    async def should_trigger(self, context: AgentContext) -> bool:
        return self.accept

    async def on_execute(self, context: AgentContext) -> AgentResult:
        self.contexts.append(context)
        self.log.append(self.metadata.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.metadata.id} exploded")
        return self.result

    async def cleanup(self) -> None:
        self.cleaned_up = True


def make_dispatcher(clock=None, bus=None, queue_size=100, tools=None):
    clock = clock or FakeClock()
    bus = bus or EventBus()
    return AgentDispatcher(
        TriggerManager(clock=clock),
        ToolGateway(InMemoryAuditStore(), clock=clock),
        tools or ToolRegistry(),
        bus=bus,
        notifications=NotificationCenter(bus),
        clock=clock,
        queue_size=queue_size,
    )


def water(agent_id):
    return [Trigger.user_message(f"{agent_id}-kw", ["喝水"])]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def test_priority_then_registration_order():
    log = []
    dispatcher = make_dispatcher()
    dispatcher.register_agent(RecordingAgent("a", Priority.NORMAL, water("a"), log=log))
    dispatcher.register_agent(RecordingAgent("b", Priority.HIGH, water("b"), log=log))
    dispatcher.register_agent(RecordingAgent("c", Priority.NORMAL, water("c"), log=log))

    outcomes = asyncio.run(dispatcher.dispatch_user_message("我要喝水"))
    assert log == ["b", "a", "c"]
    assert [o.agent_id for o in outcomes] == ["b", "a", "c"]
    assert all(o.result.success for o in outcomes)


def test_registration_priority_overrides_metadata():
    log = []
    dispatcher = make_dispatcher()
    dispatcher.register_agent(RecordingAgent("a", Priority.HIGH, water("a"), log=log), priority="low")
    dispatcher.register_agent(RecordingAgent("b", Priority.NORMAL, water("b"), log=log))

    asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert log == ["b", "a"]


def test_should_trigger_gates_execution():
    dispatcher = make_dispatcher()
    shy = RecordingAgent("shy", triggers=water("shy"), accept=False)
    dispatcher.register_agent(shy)

    outcomes = asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert outcomes == []
    assert shy.contexts == []


def test_disabled_agent_is_skipped():
    dispatcher = make_dispatcher()
    agent = RecordingAgent("a", triggers=water("a"))
    dispatcher.register_agent(agent, enabled=False)

    assert asyncio.run(dispatcher.dispatch_user_message("喝水")) == []
    dispatcher.set_enabled("a", True)
    assert len(asyncio.run(dispatcher.dispatch_user_message("喝水"))) == 1


def test_context_carries_message_and_trigger_payload():
    dispatcher = make_dispatcher(clock=FakeClock(500))
    agent = RecordingAgent("a", triggers=water("a"))
    dispatcher.register_agent(agent)

    asyncio.run(dispatcher.dispatch_user_message("该喝水了", {"channel": "chat"}))
    ctx = agent.contexts[0]
    assert ctx.trigger_id == "a-kw"
    assert ctx.trigger_source == "user_message"
    assert ctx.user_message == "该喝水了"
    assert ctx.timestamp == 500
    assert ctx.metadata["keyword"] == "喝水"
    assert ctx.metadata["channel"] == "chat"


# ---------------------------------------------------------------------------
# Isolation and timeouts
# ---------------------------------------------------------------------------


def test_failing_agent_does_not_affect_others():
    dispatcher = make_dispatcher()
    dispatcher.register_agent(RecordingAgent("bad", Priority.HIGH, water("bad"), fail=True))
    dispatcher.register_agent(RecordingAgent("good", Priority.NORMAL, water("good")))

    outcomes = asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert [(o.agent_id, o.result.success) for o in outcomes] == [("bad", False), ("good", True)]
    assert "exploded" in outcomes[0].result.error
    assert dispatcher.get_agent("bad").error_count == 1


def test_timeout_yields_failed_result_and_retry_mark():
    dispatcher = make_dispatcher()
    slow = RecordingAgent("slow", triggers=water("slow"), delay=1.0, timeout_ms=20)
    dispatcher.register_agent(slow)

    outcomes = asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert outcomes[0].result.success is False
    assert outcomes[0].result.error == "timeout"
    assert dispatcher.get_agent("slow").retry_pending
    assert dispatcher.execution_history()[0].timed_out

    slow.delay = 0
    asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert slow.contexts[-1].metadata.get("retry") is True
    assert not dispatcher.get_agent("slow").retry_pending


def test_duplicate_registration_raises():
    dispatcher = make_dispatcher()
    dispatcher.register_agent(RecordingAgent("a"))
    try:
        dispatcher.register_agent(RecordingAgent("a"))
    except DuplicateAgentError as e:
        assert e.agent_id == "a"
    else:
        raise AssertionError("expected DuplicateAgentError")


# ---------------------------------------------------------------------------
# Schedule ticks and events
# ---------------------------------------------------------------------------


def test_tick_runs_due_schedule_triggers_once():
    clock = FakeClock()
    dispatcher = make_dispatcher(clock=clock)
    agent = RecordingAgent("a", triggers=[Trigger.schedule("every-minute", 60)])
    dispatcher.register_agent(agent)

    async def run():
        for now in (30_000, 60_000, 61_000, 120_000):
            clock.now = now
            await dispatcher.dispatch(Stimulus.tick(now))

    asyncio.run(run())
    assert [c.timestamp for c in agent.contexts] == [60_000, 120_000]
    assert agent.contexts[0].trigger_source == "schedule"


def test_event_stimulus_reaches_listening_agents():
    dispatcher = make_dispatcher()
    agent = RecordingAgent("a", triggers=[Trigger.event("on-focus", "focus_changed", filter={"on": True})])
    dispatcher.register_agent(agent)

    assert asyncio.run(dispatcher.emit_event("focus_changed", {"on": False})) == []
    outcomes = asyncio.run(dispatcher.emit_event("focus_changed", {"on": True, "app": "editor"}))
    assert len(outcomes) == 1
    assert agent.contexts[0].metadata["event_name"] == "focus_changed"
    assert agent.contexts[0].metadata["app"] == "editor"


def test_execute_agent_bypasses_triggers():
    dispatcher = make_dispatcher()
    agent = RecordingAgent("a", result=AgentResult.ok("done"))
    dispatcher.register_agent(agent)

    result = asyncio.run(dispatcher.execute_agent("a", {"why": "button"}))
    assert result.message == "done"
    assert agent.contexts[0].trigger_source == "direct"
    assert agent.contexts[0].metadata["why"] == "button"
    assert asyncio.run(dispatcher.execute_agent("missing")) is None


# ---------------------------------------------------------------------------
# Delivery and actions
# ---------------------------------------------------------------------------


def test_results_are_published_and_messages_notified():
    bus = EventBus()
    published = {"results": [], "notes": [], "sounds": [], "parties": []}
    bus.subscribe(Topic.AGENT_RESULT, published["results"].append)
    bus.subscribe(Topic.NOTIFICATION, published["notes"].append)
    bus.subscribe(Topic.PLAY_SOUND, published["sounds"].append)
    bus.subscribe(Topic.CELEBRATE, published["parties"].append)

    dispatcher = make_dispatcher(bus=bus)
    result = AgentResult.ok(
        "Nice work!",
        should_speak=True,
        actions=(
            AgentAction(ActionType.PLAY_AUDIO, {"sound": "ding"}),
            AgentAction(ActionType.CELEBRATE, {"level": 2}),
            AgentAction(ActionType.NOTIFICATION, {"title": "Hey", "body": "extra", "type": "toast"}),
        ),
    )
    dispatcher.register_agent(RecordingAgent("a", triggers=water("a"), result=result))

    asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert published["results"][0]["agent_id"] == "a"
    assert [n["type"] for n in published["notes"]] == ["voice", "toast"]
    assert published["notes"][0]["body"] == "Nice work!"
    assert published["sounds"] == [{"agent_id": "a", "sound": "ding"}]
    assert published["parties"] == [{"agent_id": "a", "level": 2}]


def test_trigger_agent_action_runs_target():
    dispatcher = make_dispatcher()
    caller = RecordingAgent(
        "caller",
        triggers=water("caller"),
        result=AgentResult.ok(actions=(AgentAction(ActionType.TRIGGER_AGENT, {"agent_id": "helper"}),)),
    )
    helper = RecordingAgent("helper")
    dispatcher.register_agent(caller)
    dispatcher.register_agent(helper)

    asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert len(helper.contexts) == 1
    assert helper.contexts[0].metadata["triggered_by"] == "caller"


def test_agents_call_private_and_allowed_global_tools():
    @define_tool(name="shout", description="Upper-case text", parameters={"text": {"type": "string", "required": True}})
    async def shout(args: dict, ctx: ToolContext) -> str:
        return args["text"].upper()

    @define_tool(name="secret", description="Not for everyone")
    async def secret(args: dict, ctx: ToolContext) -> str:
        return "classified"

    class ToolUser(RecordingAgent):
        async def on_initialize(self) -> None:
            @define_tool(name="mine", description="Private tool")
            async def mine(args: dict, ctx: ToolContext) -> str:
                return "private"

            self.register_tool(mine)

        async def on_execute(self, context: AgentContext) -> AgentResult:
            loud = await self.call_tool("shout", {"text": "hi"})
            own = await self.call_tool("mine")
            try:
                await self.call_tool("secret")
            except Exception as e:
                denied = type(e).__name__
            return AgentResult.ok(data={"loud": loud.data, "own": own.data, "denied": denied})

    dispatcher = make_dispatcher(tools=ToolRegistry([shout, secret]))
    agent = ToolUser("user", triggers=water("user"))
    agent.config.tools = ["shout"]
    dispatcher.register_agent(agent)

    outcomes = asyncio.run(dispatcher.dispatch_user_message("喝水"))
    assert dict(outcomes[0].result.data) == {"loud": "HI", "own": "private", "denied": "ToolNotPermitted"}


# ---------------------------------------------------------------------------
# Queue and lifecycle
# ---------------------------------------------------------------------------


def test_full_queue_drops_oldest_stimulus():
    dispatcher = make_dispatcher(queue_size=2)
    agent = RecordingAgent("a", triggers=water("a"))
    dispatcher.register_agent(agent)

    async def run():
        first = dispatcher.submit(Stimulus.user_message("喝水 1"))
        second = dispatcher.submit(Stimulus.user_message("喝水 2"))
        third = dispatcher.submit(Stimulus.user_message("喝水 3"))
        assert first.done() and first.result() == []
        await dispatcher.dispatch(Stimulus.user_message("喝水 4"))
        return second, third

    second, third = asyncio.run(run())
    assert [c.user_message for c in agent.contexts] == ["喝水 3", "喝水 4"]
    assert second.done() and second.result() == []
    assert dispatcher.stats()["dropped_stimuli"] == 2


def test_start_initializes_once_and_stop_cleans_up():
    dispatcher = make_dispatcher()
    agent = RecordingAgent("a", triggers=water("a"))
    dispatcher.register_agent(agent)

    async def run():
        await dispatcher.start()
        await dispatcher.start()
        outcomes = await dispatcher.dispatch_user_message("喝水")
        await dispatcher.stop()
        return outcomes

    outcomes = asyncio.run(run())
    assert len(outcomes) == 1
    assert agent.init_count == 1
    assert agent.cleaned_up
    assert not dispatcher.running


def test_stop_cancels_in_flight_dispatch():
    dispatcher = make_dispatcher()
    agent = RecordingAgent("slow", triggers=water("slow"), delay=5, timeout_ms=10_000)
    dispatcher.register_agent(agent)

    async def run():
        await dispatcher.start()
        pending = asyncio.ensure_future(dispatcher.dispatch_user_message("喝水"))
        await asyncio.sleep(0.1)
        assert agent.contexts
        await dispatcher.stop()
        try:
            await asyncio.wait_for(pending, 1)
        except asyncio.CancelledError:
            return "cancelled"
        except asyncio.TimeoutError:
            return "hung"
        return "finished"

    assert asyncio.run(run()) == "cancelled"
    assert agent.cleaned_up


def test_failed_initialization_disables_agent():
    class Broken(RecordingAgent):
        async def on_initialize(self) -> None:
            raise RuntimeError("no config")

    dispatcher = make_dispatcher()
    dispatcher.register_agent(Broken("broken", triggers=water("broken")))

    outcomes = asyncio.run(dispatcher.dispatch_user_message("喝水"))
    record = dispatcher.get_agent("broken")
    assert outcomes == []
    assert record.status is AgentStatus.ERROR
    assert not record.enabled


def test_history_and_stats():
    dispatcher = make_dispatcher()
    dispatcher.register_agent(RecordingAgent("ok", triggers=water("ok")))
    dispatcher.register_agent(RecordingAgent("bad", triggers=water("bad"), fail=True))

    asyncio.run(dispatcher.dispatch_user_message("喝水"))
    history = dispatcher.execution_history()
    assert [h.agent_id for h in history] == ["bad", "ok"]
    assert len(dispatcher.execution_history(1)) == 1

    stats = dispatcher.stats()
    assert stats["agents"] == 2
    assert stats["total_executions"] == 2
    assert stats["success_rate"] == 0.5


def test_unregister_agent_removes_triggers():
    dispatcher = make_dispatcher()
    agent = RecordingAgent("a", triggers=water("a"))
    dispatcher.register_agent(agent)

    assert asyncio.run(dispatcher.unregister_agent("a"))
    assert asyncio.run(dispatcher.dispatch_user_message("喝水")) == []
    assert dispatcher.get_agent("a") is None
    assert not asyncio.run(dispatcher.unregister_agent("a"))
