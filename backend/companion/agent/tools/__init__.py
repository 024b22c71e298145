"""Built-in tools available to every agent and to the LLM runtime."""

from pathlib import Path

import httpx

from companion.agent.tool_registry import ToolRegistry
from companion.agent.tools.file_tools import register_file_tools
from companion.agent.tools.memory_tools import create_memory_tools
from companion.agent.tools.notify_tools import create_notify_tool
from companion.agent.tools.schedule_tools import create_schedule_tools
from companion.agent.tools.system_tools import register_system_tools
from companion.agent.tools.web_tools import SearchBackend, register_web_tools


def create_builtin_tools(
    user_files_dir: Path | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    search: SearchBackend | None = None,
) -> ToolRegistry:
    registry = ToolRegistry()
    register_web_tools(registry, transport=transport, search=search)
    register_system_tools(registry)
    register_file_tools(registry, base_dir=user_files_dir)
    return registry


__all__ = [
    "create_builtin_tools",
    "create_memory_tools",
    "create_notify_tool",
    "create_schedule_tools",
]
