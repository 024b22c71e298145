"""Exception hierarchy for the agent core."""

from __future__ import annotations


class CompanionError(Exception):
    """Base class for every error raised by the agent system."""


class ToolValidationError(CompanionError):
    def __init__(self, tool_name: str, missing: list[str] | None = None, message: str | None = None):
        self.tool_name = tool_name
        self.missing = list(missing or [])
        if message is None:
            message = (
                f"Missing required parameter(s) for '{tool_name}': "
                + ", ".join(self.missing)
            )
        super().__init__(message)


class ToolNotFound(CompanionError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool '{name}' not found")


class ToolNotPermitted(CompanionError):
    def __init__(self, agent_id: str, name: str):
        self.agent_id = agent_id
        self.name = name
        super().__init__(f"Agent '{agent_id}' is not allowed to use tool '{name}'")


class ConfirmationRejected(CompanionError):
    def __init__(self, tool_name: str, reason: str = "rejected by user"):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"{tool_name}: {reason}")


class AgentTimeout(CompanionError):
    def __init__(self, agent_id: str, timeout_ms: int):
        self.agent_id = agent_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Agent '{agent_id}' timed out after {timeout_ms}ms")


class ProviderError(CompanionError):
    """The model provider failed to produce a response."""


class DuplicateAgentError(CompanionError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' is already registered")


class TriggerConfigError(CompanionError):
    def __init__(self, agent_id: str, trigger_id: str, reason: str):
        self.agent_id = agent_id
        self.trigger_id = trigger_id
        self.reason = reason
        super().__init__(f"Trigger '{agent_id}/{trigger_id}' is malformed: {reason}")
