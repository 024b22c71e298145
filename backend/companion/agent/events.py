"""RuntimeEvent: the event type streamed by the LLM runtime."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class RuntimeEvent:
    """Events yielded by the LLM tool-calling loop to the chat layer.

    Known types:
        status: run state change: data={"status": str, "run_id": str, "step": int, "message"?: str}
        text: streamed text chunk: data={"content": str}
        tool_call: about to execute: data={"tool": str, "tool_call_id": str, "arguments": dict | str}
        tool_result: execution done: data={"tool": str, "tool_call_id": str, "status": str,
                     "result": Any, "error": str | None}
    """

    type: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "data": self.data}
