"""LLMRuntime: step-bounded tool-calling conversation loop.

State machine per run::

    thinking -> (executing <-> thinking)* -> done | error | cancelled

Each step streams one model response. Text chunks are yielded as they arrive;
tool calls requested in the step run concurrently through the ToolGateway
(confirmation and audit included) and their results are fed back to the
model in the next step.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Iterable

from companion.agent.audit import AuditSource
from companion.agent.constants import DEFAULT_RUNTIME_MAX_STEPS, TOOL_RESULT_EVENT_MAX_CHARS
from companion.agent.errors import ProviderError
from companion.agent.events import RuntimeEvent
from companion.agent.gateway import ConfirmHandler, ToolGateway, ToolResult
from companion.agent.llm import ChatProvider
from companion.agent.tool_registry import Tool, ToolRegistry

logger = logging.getLogger(__name__)


class RunStatus(str, enum.Enum):
    THINKING = "thinking"
    EXECUTING = "executing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.DONE, RunStatus.ERROR, RunStatus.CANCELLED})


@dataclass
class RuntimeConfig:
    system_prompt: str | None = None
    max_steps: int = DEFAULT_RUNTIME_MAX_STEPS
    source: AuditSource = AuditSource.CHAT
    allowed_tools: list[str] | None = None  # None: every registered tool
    tool_timeout_s: float | None = None


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    content: str = ""
    error: str | None = None
    steps: int = 0
    events: list[RuntimeEvent] = field(default_factory=list)
    tool_calls: list[dict] = field(default_factory=list)


def _preview(value: Any) -> Any:
    if isinstance(value, str) and len(value) > TOOL_RESULT_EVENT_MAX_CHARS:
        return value[:TOOL_RESULT_EVENT_MAX_CHARS] + f"... ({len(value)} chars)"
    return value


async def _until_aborted(stream: AsyncIterator[Any], abort: asyncio.Event) -> AsyncGenerator[Any, None]:
    """Re-yield *stream* until it ends or *abort* is set, then close it."""
    iterator = stream.__aiter__()
    aborted = asyncio.ensure_future(abort.wait())
    try:
        while True:
            nxt = asyncio.ensure_future(iterator.__anext__())
            try:
                done, _ = await asyncio.wait({nxt, aborted}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                nxt.cancel()
                raise
            if nxt not in done:
                nxt.cancel()
                try:
                    await nxt
                except (asyncio.CancelledError, StopAsyncIteration):
                    pass
                return
            try:
                chunk = nxt.result()
            except StopAsyncIteration:
                return
            yield chunk
    finally:
        aborted.cancel()
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


class LLMRuntime:
    def __init__(
        self,
        provider: ChatProvider,
        gateway: ToolGateway,
        registry: ToolRegistry | None = None,
        config: RuntimeConfig | None = None,
        confirm: ConfirmHandler | None = None,
    ):
        self.provider = provider
        self.gateway = gateway
        self.config = config or RuntimeConfig()
        self._confirm = confirm
        # Own copy so add_tool/remove_tool never touch the shared registry.
        self._tools = ToolRegistry(registry.tools() if registry is not None else [])
        self._abort: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Tool set
    # ------------------------------------------------------------------

    def add_tool(self, tool: Tool) -> None:
        self._tools.register(tool)

    def remove_tool(self, name: str) -> bool:
        return self._tools.unregister(name)

    def tools(self) -> list[Tool]:
        return self._tools.tools()

    def permitted_tools(self, enabled_tools: Iterable[str] | None = None) -> list[Tool]:
        """Caller-enabled tools intersected with the globally allowed set."""
        tools = self._tools.tools(self.config.allowed_tools)
        if enabled_tools is not None:
            enabled = set(enabled_tools)
            tools = [t for t in tools if t.name in enabled]
        return tools

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._abort is not None

    def abort(self) -> bool:
        if self._abort is None:
            return False
        self._abort.set()
        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(
        self,
        messages: list[dict],
        enabled_tools: Iterable[str] | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncGenerator[RuntimeEvent, None]:
        """Execute one run. Yields RuntimeEvents; the last one is a terminal status."""
        if self._abort is not None:
            raise RuntimeError("A run is already in progress on this runtime")
        abort = abort or asyncio.Event()
        self._abort = abort
        run_id = uuid.uuid4().hex
        step = 0

        def status(value: RunStatus, **extra: Any) -> RuntimeEvent:
            return RuntimeEvent(type="status", data={"status": value.value, "run_id": run_id, "step": step, **extra})

        try:
            permitted = {t.name: t for t in self.permitted_tools(enabled_tools)}
            schemas = [t.openai_schema() for t in permitted.values()]
            history: list[dict] = []
            if self.config.system_prompt:
                history.append({"role": "system", "content": self.config.system_prompt})
            history.extend(messages)

            while step < self.config.max_steps:
                step += 1
                if abort.is_set():
                    yield status(RunStatus.CANCELLED)
                    return
                yield status(RunStatus.THINKING)

                # --- LLM call ---
                text_parts: list[str] = []
                tool_calls_acc: dict[int, dict] = {}
                try:
                    stream = self.provider.stream(history, tools=schemas or None)
                    async for chunk in _until_aborted(stream, abort):
                        delta = chunk.choices[0].delta if chunk.choices else None
                        if delta is None:
                            continue

                        if delta.content:
                            text_parts.append(delta.content)
                            yield RuntimeEvent(type="text", data={"content": delta.content})

                        if delta.tool_calls:
                            for tc in delta.tool_calls:
                                idx = tc.index
                                if idx not in tool_calls_acc:
                                    tool_calls_acc[idx] = {
                                        "id": tc.id or "",
                                        "type": "function",
                                        "function": {"name": "", "arguments": ""},
                                    }
                                if tc.id:
                                    tool_calls_acc[idx]["id"] = tc.id
                                if tc.function:
                                    if tc.function.name:
                                        tool_calls_acc[idx]["function"]["name"] += tc.function.name
                                    if tc.function.arguments:
                                        tool_calls_acc[idx]["function"]["arguments"] += tc.function.arguments
                except ProviderError as e:
                    if abort.is_set():
                        yield status(RunStatus.CANCELLED)
                        return
                    logger.warning("Run %s: provider error: %s", run_id, e)
                    yield status(RunStatus.ERROR, message=str(e))
                    return
                except Exception as e:
                    if abort.is_set():
                        yield status(RunStatus.CANCELLED)
                        return
                    logger.exception("Run %s: model stream failed", run_id)
                    yield status(RunStatus.ERROR, message=f"{type(e).__name__}: {e}")
                    return

                if abort.is_set():
                    yield status(RunStatus.CANCELLED)
                    return

                full_text = "".join(text_parts)
                if not tool_calls_acc:
                    history.append({"role": "assistant", "content": full_text})
                    yield status(RunStatus.DONE)
                    return

                # --- Tool execution ---
                calls = [tool_calls_acc[i] for i in sorted(tool_calls_acc)]
                for i, tc in enumerate(calls):
                    if not tc["id"]:
                        tc["id"] = f"call_{step}_{i}"
                history.append(
                    {
                        "role": "assistant",
                        "tool_calls": calls,
                        **({"content": full_text} if full_text else {}),
                    }
                )

                yield status(RunStatus.EXECUTING)
                for tc in calls:
                    yield RuntimeEvent(
                        type="tool_call",
                        data={
                            "tool": tc["function"]["name"],
                            "tool_call_id": tc["id"],
                            "arguments": self._decode_arguments(tc["function"]["arguments"]),
                        },
                    )

                results = await asyncio.gather(
                    *(self._invoke(tc, permitted, run_id, step) for tc in calls)
                )
                for tc, result in zip(calls, results):
                    history.append(
                        {"role": "tool", "tool_call_id": tc["id"], "content": result.to_model_content()}
                    )
                    yield RuntimeEvent(
                        type="tool_result",
                        data={
                            "tool": result.tool_name,
                            "tool_call_id": tc["id"],
                            "status": result.status.value,
                            "result": _preview(result.data),
                            "error": result.error,
                        },
                    )

                if abort.is_set():
                    yield status(RunStatus.CANCELLED)
                    return

            yield status(RunStatus.DONE, message=f"Step limit of {self.config.max_steps} reached")
        finally:
            self._abort = None

    @staticmethod
    def _decode_arguments(raw: str) -> Any:
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            return raw

    async def _invoke(self, tc: dict, permitted: dict[str, Tool], run_id: str, step: int) -> ToolResult:
        name = tc["function"]["name"]
        raw_args = tc["function"]["arguments"]
        # Model call ids are not unique across steps with every provider.
        audit_id = f"{run_id}:{step}:{tc['id']}"
        source = self.config.source

        tool = permitted.get(name)
        if tool is None:
            return await self.gateway.record_failure(
                name, raw_args, f"Tool '{name}' is not available",
                run_id=run_id, tool_call_id=audit_id, source=source,
            )
        try:
            args = json.loads(raw_args) if raw_args else {}
        except json.JSONDecodeError as je:
            return await self.gateway.record_failure(
                name, raw_args, f"Invalid JSON in tool arguments: {je}",
                run_id=run_id, tool_call_id=audit_id, source=source,
            )
        if not isinstance(args, dict):
            return await self.gateway.record_failure(
                name, raw_args, "Tool arguments must be a JSON object",
                run_id=run_id, tool_call_id=audit_id, source=source,
            )
        return await self.gateway.execute(
            tool,
            args,
            run_id=run_id,
            tool_call_id=audit_id,
            source=source,
            # Dispatched calls run to completion even if the run is aborted.
            abort=asyncio.Event(),
            confirm=self._confirm,
            timeout_s=self.config.tool_timeout_s,
        )

    async def run_to_completion(
        self,
        messages: list[dict],
        enabled_tools: Iterable[str] | None = None,
        abort: asyncio.Event | None = None,
    ) -> RunResult:
        result = RunResult(run_id="", status=RunStatus.THINKING)
        text: list[str] = []
        pending: dict[str, dict] = {}
        async for event in self.run(messages, enabled_tools, abort):
            result.events.append(event)
            if event.type == "text":
                text.append(event.data["content"])
            elif event.type == "tool_call":
                call = {
                    "tool": event.data["tool"],
                    "tool_call_id": event.data["tool_call_id"],
                    "arguments": event.data["arguments"],
                }
                pending[call["tool_call_id"]] = call
                result.tool_calls.append(call)
            elif event.type == "tool_result":
                call = pending.get(event.data["tool_call_id"])
                if call is not None:
                    call.update(status=event.data["status"], result=event.data["result"], error=event.data["error"])
            elif event.type == "status":
                result.run_id = event.data["run_id"]
                result.status = RunStatus(event.data["status"])
                result.steps = event.data["step"]
                if result.status is RunStatus.ERROR:
                    result.error = event.data.get("message")
        result.content = "".join(text)
        return result
