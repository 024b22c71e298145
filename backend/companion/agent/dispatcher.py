"""AgentDispatcher: owns the agent registry and processes stimuli one at a time.

Stimuli (clock ticks, user messages, named events, direct requests) go into a
single bounded queue. For each stimulus the dispatcher asks the
TriggerManager for candidate (agent, trigger) pairs, gates them with
``should_trigger``, orders them by priority then declaration order, and runs
them sequentially, each under its own timeout.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping

from companion.agent.base import Agent, AgentToolbox
from companion.agent.constants import (
    DEFAULT_DISPATCH_QUEUE_SIZE,
    DEFAULT_EXECUTION_HISTORY_SIZE,
)
from companion.agent.errors import AgentTimeout, DuplicateAgentError
from companion.agent.audit import AuditSource
from companion.agent.gateway import ToolGateway
from companion.agent.state import (
    ActionType,
    AgentContext,
    AgentResult,
    AgentStatus,
    EmotionSample,
    ExecutionRecord,
    Priority,
    Trigger,
    TriggerType,
    now_ms,
)
from companion.agent.tool_registry import ToolRegistry
from companion.agent.triggers import TriggerManager, TriggerMatch
from companion.bus import EventBus, Topic
from companion.notifications import Notification, NotificationCenter, NotificationType

logger = logging.getLogger(__name__)

DIRECT_SOURCE = "direct"


class StimulusKind(str, enum.Enum):
    TICK = "tick"
    USER_MESSAGE = "user_message"
    EVENT = "event"
    DIRECT = "direct"


@dataclass(frozen=True)
class Stimulus:
    kind: StimulusKind
    timestamp: int
    text: str | None = None
    event_name: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    agent_id: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def tick(cls, now: int) -> Stimulus:
        return cls(StimulusKind.TICK, now)

    @classmethod
    def user_message(cls, text: str, context: Mapping[str, Any] | None = None, now: int | None = None) -> Stimulus:
        return cls(StimulusKind.USER_MESSAGE, now if now is not None else now_ms(), text=text, context=dict(context or {}))

    @classmethod
    def event(cls, name: str, payload: Mapping[str, Any] | None = None, now: int | None = None) -> Stimulus:
        return cls(StimulusKind.EVENT, now if now is not None else now_ms(), event_name=name, payload=dict(payload or {}))

    @classmethod
    def direct(cls, agent_id: str, context: Mapping[str, Any] | None = None, now: int | None = None) -> Stimulus:
        return cls(StimulusKind.DIRECT, now if now is not None else now_ms(), agent_id=agent_id, context=dict(context or {}))


@dataclass(frozen=True)
class DispatchOutcome:
    agent_id: str
    trigger_id: str
    result: AgentResult

    def to_dict(self) -> dict:
        return {"agent_id": self.agent_id, "trigger_id": self.trigger_id, "result": self.result.to_dict()}


@dataclass
class RegisteredAgent:
    agent: Agent
    priority: Priority
    enabled: bool
    tags: tuple[str, ...]
    order: int
    toolbox: AgentToolbox
    status: AgentStatus = AgentStatus.UNREGISTERED
    initialized: bool = False
    retry_pending: bool = False
    execution_count: int = 0
    error_count: int = 0
    last_executed_at: int | None = None

    @property
    def id(self) -> str:
        return self.agent.metadata.id

    def to_dict(self) -> dict:
        return {
            "metadata": self.agent.metadata.to_dict(),
            "priority": self.priority.value,
            "enabled": self.enabled,
            "tags": list(self.tags),
            "status": self.status.value,
            "triggers": [t.to_dict() for t in self.agent.triggers],
            "execution_count": self.execution_count,
            "error_count": self.error_count,
            "last_executed_at": self.last_executed_at,
            "retry_pending": self.retry_pending,
        }


@dataclass
class _QueueItem:
    stimulus: Stimulus
    future: asyncio.Future


StateProvider = Callable[[], Mapping[str, Any]]
"""Returns live ``pet_status``, ``recent_emotions`` and ``recent_messages``."""


class AgentDispatcher:
    def __init__(
        self,
        trigger_manager: TriggerManager,
        gateway: ToolGateway,
        global_tools: ToolRegistry,
        *,
        bus: EventBus | None = None,
        notifications: NotificationCenter | None = None,
        state_provider: StateProvider | None = None,
        clock: Callable[[], int] = now_ms,
        queue_size: int = DEFAULT_DISPATCH_QUEUE_SIZE,
        history_size: int = DEFAULT_EXECUTION_HISTORY_SIZE,
    ):
        self.triggers = trigger_manager
        self.gateway = gateway
        self.global_tools = global_tools
        self.bus = bus
        self.notifications = notifications
        self._state_provider = state_provider
        self._clock = clock
        self._queue_size = queue_size

        self._agents: dict[str, RegisteredAgent] = {}
        self._next_order = 0
        self._queue: deque[_QueueItem] = deque()
        self._wakeup = asyncio.Event()
        self._process_lock = asyncio.Lock()
        self._worker: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._running = False
        self._stopping = False
        self._history: deque[ExecutionRecord] = deque(maxlen=history_size)
        self._dropped = 0

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_agent(
        self,
        agent: Agent,
        priority: Priority | str | None = None,
        enabled: bool | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        agent_id = agent.metadata.id
        if agent_id in self._agents:
            raise DuplicateAgentError(agent_id)

        enabled = agent.config.enabled if enabled is None else enabled
        record = RegisteredAgent(
            agent=agent,
            priority=Priority(priority) if priority is not None else agent.metadata.priority,
            enabled=enabled,
            tags=tuple(tags),
            order=self._next_order,
            toolbox=AgentToolbox(
                agent_id,
                agent.tools,
                self.global_tools,
                self.gateway,
                allowed=agent.config.tools,
                max_steps=agent.config.max_steps,
            ),
        )
        self._next_order += 1
        self._agents[agent_id] = record
        agent.attach(record.toolbox)
        self.triggers.register_agent_triggers(agent_id, agent.triggers)
        logger.info("Registered agent %s (priority=%s, enabled=%s)", agent_id, record.priority.value, enabled)

        if self._running:
            task = asyncio.create_task(self._initialize(record))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def unregister_agent(self, agent_id: str) -> bool:
        record = self._agents.pop(agent_id, None)
        if record is None:
            return False
        self.triggers.unregister_agent_triggers(agent_id)
        await self._cleanup(record)
        record.status = AgentStatus.UNREGISTERED
        return True

    def set_enabled(self, agent_id: str, enabled: bool) -> bool:
        record = self._agents.get(agent_id)
        if record is None:
            return False
        record.enabled = enabled
        if enabled and record.status is AgentStatus.DISABLED:
            record.status = AgentStatus.IDLE if record.initialized else AgentStatus.UNREGISTERED
        elif not enabled and record.status in (AgentStatus.IDLE, AgentStatus.UNREGISTERED):
            record.status = AgentStatus.DISABLED
        self._publish_status(record)
        return True

    def get_agent(self, agent_id: str) -> RegisteredAgent | None:
        return self._agents.get(agent_id)

    def registered_agents(self) -> list[RegisteredAgent]:
        return sorted(self._agents.values(), key=lambda r: r.order)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopping = False
        for record in self.registered_agents():
            await self._initialize(record)
        self._worker = asyncio.create_task(self._run_worker())
        self.triggers.start(self._on_tick)
        logger.info("Dispatcher started with %d agents", len(self._agents))

    async def stop(self) -> None:
        if not self._running:
            return
        self._stopping = True
        self._running = False
        await self.triggers.stop()

        for task in list(self._background):
            task.cancel()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        while self._queue:
            self._queue.popleft().future.cancel()

        for record in self.registered_agents():
            await self._cleanup(record)
        logger.info("Dispatcher stopped")

    async def _initialize(self, record: RegisteredAgent) -> None:
        if record.initialized:
            return
        record.status = AgentStatus.INITIALIZING
        try:
            await record.agent.on_initialize()
        except Exception:
            logger.exception("Agent %s failed to initialize; disabling it", record.id)
            record.status = AgentStatus.ERROR
            record.enabled = False
            self._publish_status(record)
            return
        record.initialized = True
        record.status = AgentStatus.IDLE if record.enabled else AgentStatus.DISABLED
        self._publish_status(record)

    async def _cleanup(self, record: RegisteredAgent) -> None:
        if not record.initialized:
            return
        try:
            await record.agent.cleanup()
        except Exception:
            logger.exception("Agent %s cleanup failed", record.id)
        record.initialized = False

    # ------------------------------------------------------------------
    # Stimulus ingestion
    # ------------------------------------------------------------------

    def submit(self, stimulus: Stimulus) -> asyncio.Future:
        """Enqueue *stimulus*. The future resolves to its DispatchOutcomes."""
        future = asyncio.get_running_loop().create_future()
        if self._stopping:
            future.cancel()
            return future
        if len(self._queue) >= self._queue_size:
            dropped = self._queue.popleft()
            self._dropped += 1
            logger.warning(
                "Dispatch queue full (%d), dropping oldest %s stimulus",
                self._queue_size,
                dropped.stimulus.kind.value,
            )
            if not dropped.future.done():
                dropped.future.set_result([])
        self._queue.append(_QueueItem(stimulus, future))
        self._wakeup.set()
        return future

    async def dispatch(self, stimulus: Stimulus) -> list[DispatchOutcome]:
        future = self.submit(stimulus)
        if self._worker is None:
            await self._drain()
        return await future

    async def dispatch_user_message(
        self, text: str, context: Mapping[str, Any] | None = None
    ) -> list[DispatchOutcome]:
        return await self.dispatch(Stimulus.user_message(text, context, now=self._clock()))

    async def emit_event(self, name: str, payload: Mapping[str, Any] | None = None) -> list[DispatchOutcome]:
        return await self.dispatch(Stimulus.event(name, payload, now=self._clock()))

    async def execute_agent(
        self, agent_id: str, context: Mapping[str, Any] | None = None
    ) -> AgentResult | None:
        """Run one agent directly, bypassing triggers but still gated and timed."""
        if agent_id not in self._agents:
            return None
        outcomes = await self.dispatch(Stimulus.direct(agent_id, context, now=self._clock()))
        return outcomes[0].result if outcomes else None

    def _on_tick(self, now: int) -> None:
        # Coalesce: one pending tick is enough.
        if any(item.stimulus.kind is StimulusKind.TICK for item in self._queue):
            return
        self.submit(Stimulus.tick(now))

    async def _run_worker(self) -> None:
        while True:
            while not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
            await self._run_item(self._queue.popleft())

    async def _drain(self) -> None:
        while self._queue:
            await self._run_item(self._queue.popleft())

    async def _run_item(self, item: _QueueItem) -> None:
        if item.future.done():
            return
        try:
            async with self._process_lock:
                outcomes = await self.process(item.stimulus)
        except asyncio.CancelledError:
            # stop() interrupted this stimulus; release its waiter.
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            logger.exception("Failed to process %s stimulus", item.stimulus.kind.value)
            if not item.future.done():
                item.future.set_exception(e)
            return
        if not item.future.done():
            item.future.set_result(outcomes)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, stimulus: Stimulus) -> list[DispatchOutcome]:
        """Match, gate, order, and execute candidates for one stimulus."""
        now = stimulus.timestamp
        matches = await self._collect(stimulus, now)

        candidates: list[tuple[RegisteredAgent, TriggerMatch, AgentContext]] = []
        for match in matches:
            record = self._agents.get(match.agent_id)
            if record is None or not record.enabled:
                continue
            if not record.initialized:
                await self._initialize(record)
                if not record.initialized:
                    continue
            context = self._build_context(stimulus, match, record)
            try:
                accepted = await record.agent.should_trigger(context)
            except Exception:
                logger.exception("should_trigger failed for %s", record.id)
                continue
            if accepted:
                candidates.append((record, match, context))

        candidates.sort(key=lambda c: (c[0].priority.rank, c[0].order, c[1].order))

        outcomes = []
        for record, match, context in candidates:
            result = await self._execute(record, context)
            outcomes.append(DispatchOutcome(record.id, match.trigger_id, result))
            await self._deliver(record, result)
        return outcomes

    async def _collect(self, stimulus: Stimulus, now: int) -> list[TriggerMatch]:
        if stimulus.kind is StimulusKind.TICK:
            return await self.triggers.collect_due(now, self._evaluate_condition)
        if stimulus.kind is StimulusKind.USER_MESSAGE:
            return self.triggers.match_user_message_triggers(stimulus.text or "", stimulus.context)
        if stimulus.kind is StimulusKind.EVENT:
            return self.triggers.emit_event(stimulus.event_name or "", stimulus.payload)
        record = self._agents.get(stimulus.agent_id or "")
        if record is None:
            logger.warning("Direct stimulus for unknown agent %s", stimulus.agent_id)
            return []
        return [
            TriggerMatch(
                agent_id=record.id,
                trigger_id=DIRECT_SOURCE,
                trigger_type=None,
                order=-1,
                fired_at=now,
                payload=stimulus.context,
            )
        ]

    async def _evaluate_condition(self, agent_id: str, trigger: Trigger) -> bool:
        record = self._agents.get(agent_id)
        if record is None or not record.enabled:
            return False
        if not record.initialized:
            await self._initialize(record)
            if not record.initialized:
                return False
        context = AgentContext(
            trigger_id=trigger.id,
            trigger_source=TriggerType.CONDITION.value,
            timestamp=self._clock(),
            **self._live_state(),
        )
        return bool(await record.agent.evaluate_condition(trigger.config.expression, context))

    def _live_state(self) -> dict:
        if self._state_provider is None:
            return {}
        try:
            state = dict(self._state_provider())
        except Exception:
            logger.exception("State provider failed")
            return {}
        emotions = tuple(
            e if isinstance(e, EmotionSample) else EmotionSample(**e)
            for e in state.get("recent_emotions", ())
        )
        return {
            "pet_status": dict(state.get("pet_status", {})),
            "recent_emotions": emotions,
            "recent_messages": tuple(state.get("recent_messages", ())),
        }

    def _build_context(self, stimulus: Stimulus, match: TriggerMatch, record: RegisteredAgent) -> AgentContext:
        source = match.trigger_type.value if match.trigger_type is not None else DIRECT_SOURCE
        metadata: dict[str, Any] = {"stimulus": stimulus.kind.value}
        if stimulus.kind is StimulusKind.EVENT:
            metadata["event_name"] = stimulus.event_name
            metadata["event_payload"] = dict(stimulus.payload)
        metadata.update(match.payload)
        if record.retry_pending:
            metadata["retry"] = True
        return AgentContext(
            trigger_id=match.trigger_id,
            trigger_source=source,
            timestamp=stimulus.timestamp,
            user_message=stimulus.text,
            metadata=metadata,
            **self._live_state(),
        )

    async def _execute(self, record: RegisteredAgent, context: AgentContext) -> AgentResult:
        agent = record.agent
        timeout_ms = agent.config.timeout_ms
        started_at = self._clock()
        record.status = AgentStatus.EXECUTING
        record.toolbox.begin_run(uuid.uuid4().hex)
        timed_out = False
        try:
            result = await asyncio.wait_for(agent.on_execute(context), timeout_ms / 1000)
            if not isinstance(result, AgentResult):
                result = AgentResult.fail(f"agent returned {type(result).__name__}, not AgentResult")
            record.retry_pending = False
        except asyncio.TimeoutError:
            logger.warning("%s", AgentTimeout(record.id, timeout_ms))
            result = AgentResult.fail("timeout")
            record.retry_pending = True
            timed_out = True
        except Exception as e:
            logger.exception("Agent %s failed", record.id)
            result = AgentResult.fail(f"{type(e).__name__}: {e}")
        finally:
            if record.status is AgentStatus.EXECUTING:
                record.status = AgentStatus.IDLE if record.enabled else AgentStatus.DISABLED

        completed_at = self._clock()
        duration = max(0, completed_at - started_at)
        result = replace(result, duration_ms=duration)
        record.execution_count += 1
        record.last_executed_at = completed_at
        if not result.success:
            record.error_count += 1
        self._history.append(
            ExecutionRecord(
                id=uuid.uuid4().hex,
                agent_id=record.id,
                agent_name=agent.metadata.name,
                trigger_id=context.trigger_id,
                trigger_source=context.trigger_source,
                started_at=started_at,
                completed_at=completed_at,
                duration_ms=duration,
                success=result.success,
                message=result.message,
                error=result.error,
                timed_out=timed_out,
            )
        )
        return result

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, record: RegisteredAgent, result: AgentResult) -> None:
        if self.bus is not None:
            await self.bus.publish(
                Topic.AGENT_RESULT,
                {"agent_id": record.id, "agent_name": record.agent.metadata.name, "result": result.to_dict()},
            )
        if result.success and result.message and self.notifications is not None:
            await self.notifications.send(
                Notification(
                    type=NotificationType.VOICE if result.should_speak else NotificationType.BUBBLE,
                    title=record.agent.metadata.name,
                    body=result.message,
                )
            )
        for action in result.actions:
            try:
                await self._apply_action(record, action.type, dict(action.payload))
            except Exception:
                logger.exception("Action %s from %s failed", action.type.value, record.id)

    async def _apply_action(self, record: RegisteredAgent, kind: ActionType, payload: dict) -> None:
        if kind is ActionType.TRIGGER_AGENT:
            target = payload.get("agent_id")
            if not target or target not in self._agents:
                logger.warning("Agent %s asked to trigger unknown agent %r", record.id, target)
                return
            context = {"triggered_by": record.id, **dict(payload.get("context") or {})}
            self.submit(Stimulus.direct(target, context, now=self._clock()))
        elif kind is ActionType.NOTIFICATION:
            if self.notifications is not None:
                await self.notifications.send(Notification.from_payload(payload))
        elif kind is ActionType.PLAY_AUDIO:
            await self._publish(Topic.PLAY_SOUND, {"agent_id": record.id, **payload})
        elif kind is ActionType.CELEBRATE:
            await self._publish(Topic.CELEBRATE, {"agent_id": record.id, **payload})
        elif kind is ActionType.OPEN_URL:
            tool = self.global_tools.get("open_url")
            if tool is not None:
                await self.gateway.execute(tool, payload, source=AuditSource.SCHEDULER)
        else:
            await self._publish(Topic.AGENT_ACTION, {"agent_id": record.id, "type": kind.value, "payload": payload})

    async def _publish(self, topic: Topic, payload: dict) -> None:
        if self.bus is not None:
            await self.bus.publish(topic, payload)

    def _publish_status(self, record: RegisteredAgent) -> None:
        if self.bus is None or not self.bus.subscriber_count(Topic.AGENT_STATUS):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no running loop
        task = loop.create_task(
            self.bus.publish(
                Topic.AGENT_STATUS,
                {"agent_id": record.id, "status": record.status.value, "enabled": record.enabled},
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def execution_history(self, limit: int | None = None) -> list[ExecutionRecord]:
        """Newest first."""
        items = list(reversed(self._history))
        return items if limit is None else items[: max(0, limit)]

    def stats(self) -> dict:
        history = list(self._history)
        successes = sum(1 for r in history if r.success)
        return {
            "agents": len(self._agents),
            "enabled_agents": sum(1 for r in self._agents.values() if r.enabled),
            "queue_size": len(self._queue),
            "dropped_stimuli": self._dropped,
            "total_executions": len(history),
            "success_rate": successes / len(history) if history else 1.0,
            "running": self._running,
            "triggers": self.triggers.stats(),
        }
