"""Companion: the explicitly constructed owner of the agent system.

One instance is built per process by the application entry point and passed to
whoever needs it; nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import httpx

from companion.agent.agents import HealthButlerAgent
from companion.agent.audit import AuditSource, AuditStore, SqliteAuditStore
from companion.agent.base import Agent
from companion.agent.dispatcher import AgentDispatcher, StateProvider
from companion.agent.gateway import ConfirmHandler, ToolGateway
from companion.agent.llm import ChatProvider, OpenAIChatProvider
from companion.agent.prompts import CHAT_SYSTEM_PROMPT
from companion.agent.runtime import LLMRuntime, RuntimeConfig
from companion.agent.state import Priority, now_ms
from companion.agent.tools import create_builtin_tools, create_memory_tools, create_schedule_tools
from companion.agent.triggers import TriggerManager
from companion.bus import EventBus
from companion.config import Settings, settings as default_settings
from companion.notifications import NotificationCenter
from companion.services.memory import MemoryStore
from companion.services.schedule import ScheduleStore

logger = logging.getLogger(__name__)


class Companion:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_path: Path | str | None = None,
        audit_store: AuditStore | None = None,
        provider: ChatProvider | None = None,
        clock: Callable[[], int] = now_ms,
        user_files_dir: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        state_provider: StateProvider | None = None,
    ):
        self.settings = settings or default_settings
        db_path = db_path if db_path is not None else self.settings.DB_PATH

        self.bus = EventBus()
        self.notifications = NotificationCenter(self.bus)
        self.memories = MemoryStore(db_path)
        self.schedules = ScheduleStore(db_path)
        if audit_store is None and self.settings.AUDIT_ENABLED:
            audit_store = SqliteAuditStore(db_path)
        self.audit_store = audit_store

        self.gateway = ToolGateway(audit_store, clock=clock)
        self.tools = create_builtin_tools(
            user_files_dir or self.settings.DATA_DIR / "user_files",
            transport=transport,
        )
        self.triggers = TriggerManager(clock=clock, tick_interval=self.settings.TICK_INTERVAL_SECONDS)
        self.dispatcher = AgentDispatcher(
            self.triggers,
            self.gateway,
            self.tools,
            bus=self.bus,
            notifications=self.notifications,
            state_provider=state_provider,
            clock=clock,
            queue_size=self.settings.DISPATCH_QUEUE_SIZE,
            history_size=self.settings.EXECUTION_HISTORY_SIZE,
        )
        self._provider = provider

    @property
    def provider(self) -> ChatProvider | None:
        if self._provider is None and self.settings.OPENROUTER_API_KEY:
            self._provider = OpenAIChatProvider(
                api_key=self.settings.OPENROUTER_API_KEY,
                base_url=self.settings.OPENROUTER_BASE_URL,
                model=self.settings.OPENROUTER_MODEL,
                temperature=self.settings.LLM_TEMPERATURE,
            )
        return self._provider

    def register_agent(
        self, agent: Agent, priority: Priority | str | None = None, enabled: bool | None = None, tags=()
    ) -> None:
        self.dispatcher.register_agent(agent, priority=priority, enabled=enabled, tags=tags)

    def register_default_agents(self) -> None:
        self.register_agent(HealthButlerAgent(self.notifications), tags=("health",))

    def chat_runtime(
        self,
        confirm: ConfirmHandler | None = None,
        system_prompt: str | None = CHAT_SYSTEM_PROMPT,
    ) -> LLMRuntime | None:
        """A fresh runtime for one chat session, or None if no model is configured."""
        provider = self.provider
        if provider is None:
            return None
        runtime = LLMRuntime(
            provider,
            self.gateway,
            self.tools,
            RuntimeConfig(
                system_prompt=system_prompt,
                max_steps=self.settings.RUNTIME_MAX_STEPS,
                source=AuditSource.CHAT,
            ),
            confirm=confirm,
        )
        for tool in create_memory_tools(self.memories) + create_schedule_tools(self.schedules):
            runtime.add_tool(tool)
        return runtime

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()
        close = getattr(self._provider, "close", None)
        if close is not None:
            await close()
