from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolParameter:
    type: str
    description: str = ""
    enum: tuple[str, ...] | None = None
    required: bool = False
    default: Any = None

    def to_schema(self) -> dict:
        schema: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema


@dataclass
class ToolContext:
    """Per-call context handed to tool bodies.

    ``abort`` is set by the caller when the call should stop. Network tools
    wrap their awaits in :meth:`guard` so they stop as soon as it is set.
    """

    abort: asyncio.Event = field(default_factory=asyncio.Event)
    on_progress: Callable[[str], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self.abort.is_set()

    def progress(self, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(message)

    def raise_if_cancelled(self) -> None:
        if self.abort.is_set():
            raise asyncio.CancelledError()

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await *awaitable*, raising CancelledError once the abort signal is set."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        aborted = asyncio.ensure_future(self.abort.wait())
        try:
            done, _ = await asyncio.wait(
                {work, aborted}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            aborted.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise asyncio.CancelledError()


ToolHandler = Callable[[dict, ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: Mapping[str, ToolParameter]
    handler: ToolHandler
    requires_confirmation: bool = False

    def required_parameters(self) -> list[str]:
        return [name for name, p in self.parameters.items() if p.required]

    def schema(self) -> dict:
        """Parameter contract shared by the model provider and confirmation UI."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {
                    name: p.to_schema() for name, p in self.parameters.items()
                },
                "required": self.required_parameters(),
            },
        }

    def openai_schema(self) -> dict:
        schema = self.schema()
        return {
            "type": "function",
            "function": {
                "name": schema["name"],
                "description": schema["description"],
                "parameters": schema["parameters"],
            },
        }

    def with_defaults(self, args: Mapping[str, Any]) -> dict:
        merged = dict(args)
        for name, p in self.parameters.items():
            if name not in merged and p.default is not None:
                merged[name] = p.default
        return merged

    async def execute(self, args: Mapping[str, Any], ctx: ToolContext) -> Any:
        return await self.handler(self.with_defaults(args), ctx)


def _as_parameter(definition: ToolParameter | Mapping[str, Any]) -> ToolParameter:
    if isinstance(definition, ToolParameter):
        return definition
    enum = definition.get("enum")
    return ToolParameter(
        type=definition.get("type", "string"),
        description=definition.get("description", ""),
        enum=tuple(enum) if enum else None,
        required=bool(definition.get("required", False)),
        default=definition.get("default"),
    )


def define_tool(
    name: str,
    description: str,
    parameters: Mapping[str, ToolParameter | Mapping[str, Any]] | None = None,
    requires_confirmation: bool = False,
) -> Callable[[ToolHandler], Tool]:
    """Decorator turning an async ``handler(args, ctx)`` into a :class:`Tool`.

    Parameters may be given as plain dicts::

        @define_tool("get_weather", "Look up the weather", {
            "city": {"type": "string", "description": "City name", "required": True},
        })
        async def get_weather(args, ctx): ...
    """

    def decorator(handler: ToolHandler) -> Tool:
        return Tool(
            name=name,
            description=description,
            parameters={k: _as_parameter(v) for k, v in (parameters or {}).items()},
            handler=handler,
            requires_confirmation=requires_confirmation,
        )

    return decorator


class ToolRegistry:
    """Registry of tools. Each tool is a capability an agent or the LLM can call."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %s already registered, replacing it", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def tools(self, allowed: Iterable[str] | None = None) -> list[Tool]:
        if allowed is None:
            return list(self._tools.values())
        allowed = set(allowed)
        return [t for t in self._tools.values() if t.name in allowed]

    def openai_schemas(self, allowed: Iterable[str] | None = None) -> list[dict]:
        """Return tools in OpenAI function-calling format."""
        return [t.openai_schema() for t in self.tools(allowed)]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
