"""The Agent contract and a thin convenience base class.

The dispatcher only depends on :class:`Agent`, a structural protocol. Concrete
agents usually subclass :class:`BaseAgent`, which supplies the private tool
scope and ``call_tool`` plumbing so they only implement ``on_execute``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol, runtime_checkable

from companion.agent.audit import AuditSource
from companion.agent.errors import ToolNotFound, ToolNotPermitted
from companion.agent.gateway import ToolGateway, ToolResult, ToolStatus
from companion.agent.state import AgentConfig, AgentContext, AgentMetadata, AgentResult, Trigger
from companion.agent.tool_registry import Tool, ToolRegistry

logger = logging.getLogger(__name__)


@runtime_checkable
class Agent(Protocol):
    metadata: AgentMetadata
    config: AgentConfig
    triggers: list[Trigger]
    tools: ToolRegistry  # agent-scoped tools, invisible to other agents

    def attach(self, toolbox: AgentToolbox) -> None: ...

    async def on_initialize(self) -> None: ...

    async def should_trigger(self, context: AgentContext) -> bool: ...

    async def on_execute(self, context: AgentContext) -> AgentResult: ...

    async def evaluate_condition(self, expression: str, context: AgentContext) -> bool: ...

    async def cleanup(self) -> None: ...


class AgentToolbox:
    """Resolves and invokes tools on behalf of one agent.

    Lookup order is the agent's own tools, then the global set. The agent's
    ``config.tools`` allow-list (when non-empty) restricts which global tools
    it may use; ``config.max_steps`` caps tool calls per execution.
    """

    def __init__(
        self,
        agent_id: str,
        local_tools: ToolRegistry,
        global_tools: ToolRegistry,
        gateway: ToolGateway,
        allowed: list[str] | None = None,
        max_steps: int | None = None,
    ):
        self.agent_id = agent_id
        self._local = local_tools
        self._global = global_tools
        self._gateway = gateway
        self._allowed = set(allowed or [])
        self._max_steps = max_steps
        self._run_id: str | None = None
        self._abort: asyncio.Event | None = None
        self._steps = 0

    def begin_run(self, run_id: str, abort: asyncio.Event | None = None) -> None:
        self._run_id = run_id
        self._abort = abort
        self._steps = 0

    def resolve(self, name: str) -> Tool:
        tool = self._local.get(name)
        if tool is not None:
            return tool
        tool = self._global.get(name)
        if tool is None:
            raise ToolNotFound(name)
        if self._allowed and name not in self._allowed:
            raise ToolNotPermitted(self.agent_id, name)
        return tool

    async def call(self, name: str, args: dict[str, Any] | None = None) -> ToolResult:
        tool = self.resolve(name)
        self._steps += 1
        if self._max_steps is not None and self._steps > self._max_steps:
            logger.warning("Agent %s exceeded its step limit (%s)", self.agent_id, self._max_steps)
            return ToolResult(
                status=ToolStatus.FAILED,
                tool_name=name,
                tool_call_id="",
                error=f"step limit of {self._max_steps} reached",
            )
        return await self._gateway.execute(
            tool,
            args or {},
            run_id=self._run_id,
            source=AuditSource.SCHEDULER,
            abort=self._abort,
        )


class BaseAgent(ABC):
    """Convenience base for agents.

    Subclasses set ``metadata`` and ``default_triggers`` as class attributes
    and implement ``on_execute``. ``on_initialize`` is the place to register
    agent-scoped tools with ``register_tool``.
    """

    metadata: AgentMetadata
    default_triggers: tuple[Trigger, ...] = ()

    def __init__(self, config: AgentConfig | None = None):
        self.config = config or AgentConfig()
        self.triggers: list[Trigger] = list(self.default_triggers)
        self.tools = ToolRegistry()
        self._toolbox: AgentToolbox | None = None

    @property
    def id(self) -> str:
        return self.metadata.id

    def attach(self, toolbox: AgentToolbox) -> None:
        self._toolbox = toolbox

    def register_tool(self, tool: Tool) -> None:
        self.tools.register(tool)

    async def call_tool(self, name: str, args: dict[str, Any] | None = None) -> ToolResult:
        if self._toolbox is None:
            raise RuntimeError(f"Agent '{self.id}' is not attached to a dispatcher")
        return await self._toolbox.call(name, args)

    async def on_initialize(self) -> None:
        return None

    async def should_trigger(self, context: AgentContext) -> bool:
        return True

    @abstractmethod
    async def on_execute(self, context: AgentContext) -> AgentResult:
        ...

    async def evaluate_condition(self, expression: str, context: AgentContext) -> bool:
        """Resolve a condition trigger's predicate name. Unknown names are false."""
        return False

    async def cleanup(self) -> None:
        return None
