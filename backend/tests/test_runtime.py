"""LLM runtime driven by a scripted fake provider."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

from companion.agent.audit import AuditSource, AuditStatus, InMemoryAuditStore
from companion.agent.errors import ProviderError
from companion.agent.gateway import ToolGateway
from companion.agent.runtime import LLMRuntime, RunStatus, RuntimeConfig
from companion.agent.tool_registry import ToolContext, ToolRegistry, define_tool


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def text_chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=None))])


def tool_chunk(index, call_id=None, name=None, arguments=None):
    call = SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None, tool_calls=[call]))])


class FakeProvider:
    """Plays back one scripted response per step."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests: list[dict] = []

    async def stream(self, messages, tools=None):
        self.requests.append({"messages": [dict(m) for m in messages], "tools": tools})
        step = self.steps.pop(0) if self.steps else [text_chunk("(no more script)")]
        for item in step:
            if isinstance(item, Exception):
                raise item
            if item == "hang":
                await asyncio.sleep(10)
            yield item


def make_registry(calls=None, confirm_needed=False):
    calls = calls if calls is not None else []

    @define_tool(
        name="echo",
        description="Echo text back",
        parameters={"text": {"type": "string", "description": "Text", "required": True}},
        requires_confirmation=confirm_needed,
    )
    async def echo(args: dict, ctx: ToolContext) -> str:
        calls.append(args["text"])
        return f"echo: {args['text']}"

    return ToolRegistry([echo])


def run(runtime, messages=None, **kwargs):
    return asyncio.run(runtime.run_to_completion(messages or [{"role": "user", "content": "hi"}], **kwargs))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def test_plain_text_reply():
    provider = FakeProvider([text_chunk("Hello"), text_chunk(" there")])
    runtime = LLMRuntime(provider, ToolGateway(), config=RuntimeConfig(system_prompt="Be nice"))

    result = run(runtime)
    assert result.status is RunStatus.DONE
    assert result.content == "Hello there"
    assert result.steps == 1
    statuses = [e.data["status"] for e in result.events if e.type == "status"]
    assert statuses == ["thinking", "done"]
    assert provider.requests[0]["messages"][0] == {"role": "system", "content": "Be nice"}
    assert provider.requests[0]["tools"] is None


def test_tool_call_round_trip_is_audited():
    calls = []
    store = InMemoryAuditStore()
    provider = FakeProvider(
        [tool_chunk(0, "call_1", "echo", '{"te'), tool_chunk(0, arguments='xt": "ping"}')],
        [text_chunk("Done!")],
    )
    runtime = LLMRuntime(provider, ToolGateway(store), make_registry(calls))

    result = run(runtime)
    assert result.status is RunStatus.DONE
    assert result.content == "Done!"
    assert calls == ["ping"]
    assert result.tool_calls == [
        {
            "tool": "echo",
            "tool_call_id": "call_1",
            "arguments": {"text": "ping"},
            "status": "succeeded",
            "result": "echo: ping",
            "error": None,
        }
    ]
    statuses = [e.data["status"] for e in result.events if e.type == "status"]
    assert statuses == ["thinking", "executing", "thinking", "done"]

    second = provider.requests[1]["messages"]
    assert second[-2]["tool_calls"][0]["function"]["name"] == "echo"
    assert second[-1]["role"] == "tool"
    assert json.loads(second[-1]["content"]) == {"success": True, "data": "echo: ping"}

    entries = asyncio.run(store.list())
    assert len(entries) == 1
    assert entries[0].status is AuditStatus.SUCCEEDED
    assert entries[0].source is AuditSource.CHAT
    assert entries[0].tool_call_id.endswith(":1:call_1")


def test_step_limit_bounds_tool_loops():
    looping = [tool_chunk(0, "call_x", "echo", '{"text": "again"}')]
    provider = FakeProvider(*[looping] * 10)
    calls = []
    runtime = LLMRuntime(provider, ToolGateway(), make_registry(calls), RuntimeConfig(max_steps=3))

    result = run(runtime)
    assert result.status is RunStatus.DONE
    assert len(provider.requests) == 3
    assert calls == ["again"] * 3
    assert "Step limit of 3" in result.events[-1].data["message"]


def test_invalid_json_arguments_are_fed_back_as_error():
    store = InMemoryAuditStore()
    calls = []
    provider = FakeProvider(
        [tool_chunk(0, "call_1", "echo", "{not json")],
        [text_chunk("Sorry")],
    )
    runtime = LLMRuntime(provider, ToolGateway(store), make_registry(calls))

    result = run(runtime)
    assert result.status is RunStatus.DONE
    assert calls == []
    assert result.tool_calls[0]["status"] == "failed"
    assert "Invalid JSON" in result.tool_calls[0]["error"]
    fed_back = json.loads(provider.requests[1]["messages"][-1]["content"])
    assert fed_back["success"] is False
    assert asyncio.run(store.list())[0].status is AuditStatus.FAILED


def test_unknown_or_disabled_tool_is_not_executed():
    calls = []
    provider = FakeProvider([tool_chunk(0, "call_1", "echo", '{"text": "x"}')], [text_chunk("ok")])
    runtime = LLMRuntime(provider, ToolGateway(), make_registry(calls))

    result = run(runtime, enabled_tools=[])
    assert calls == []
    assert result.tool_calls[0]["status"] == "failed"
    assert "not available" in result.tool_calls[0]["error"]
    assert provider.requests[0]["tools"] is None


def test_allowed_tools_restrict_schemas():
    runtime = LLMRuntime(FakeProvider(), ToolGateway(), make_registry(), RuntimeConfig(allowed_tools=["other"]))
    assert runtime.permitted_tools() == []
    runtime.config.allowed_tools = None
    assert [t.name for t in runtime.permitted_tools(["echo"])] == ["echo"]


def test_confirmation_rejection_reaches_model():
    async def deny(request):
        return False

    calls = []
    provider = FakeProvider([tool_chunk(0, "call_1", "echo", '{"text": "x"}')], [text_chunk("Understood")])
    runtime = LLMRuntime(provider, ToolGateway(), make_registry(calls, confirm_needed=True), confirm=deny)

    result = run(runtime)
    assert calls == []
    assert result.tool_calls[0]["status"] == "rejected"
    assert result.content == "Understood"


def test_provider_error_ends_run_with_error_status():
    provider = FakeProvider([text_chunk("partial"), ProviderError("upstream 503")])
    result = run(LLMRuntime(provider, ToolGateway()))
    assert result.status is RunStatus.ERROR
    assert "upstream 503" in result.error


def test_abort_cancels_streaming_run():
    provider = FakeProvider([text_chunk("thinking..."), "hang"])
    runtime = LLMRuntime(provider, ToolGateway())

    async def go():
        abort = asyncio.Event()
        task = asyncio.create_task(runtime.run_to_completion([{"role": "user", "content": "hi"}], abort=abort))
        await asyncio.sleep(0.05)
        assert runtime.is_running
        assert runtime.abort()
        return await asyncio.wait_for(task, 1)

    result = asyncio.run(go())
    assert result.status is RunStatus.CANCELLED
    assert result.content == "thinking..."
    assert not runtime.is_running
    assert not runtime.abort()


def test_abort_lets_dispatched_tool_call_finish():
    finished = []
    store = InMemoryAuditStore()

    @define_tool(name="slow", description="Slow lookup")
    async def slow(args: dict, ctx: ToolContext) -> str:
        await ctx.guard(asyncio.sleep(0.3))
        finished.append(True)
        return "looked up"

    provider = FakeProvider([tool_chunk(0, "call_1", "slow", "{}")], [text_chunk("never sent")])
    runtime = LLMRuntime(provider, ToolGateway(store), ToolRegistry([slow]))

    async def go():
        task = asyncio.create_task(runtime.run_to_completion([{"role": "user", "content": "hi"}]))
        await asyncio.sleep(0.05)
        assert runtime.abort()
        return await asyncio.wait_for(task, 2)

    result = asyncio.run(go())
    assert result.status is RunStatus.CANCELLED
    assert finished == [True]
    assert result.tool_calls[0]["status"] == "succeeded"
    assert result.tool_calls[0]["result"] == "looked up"
    assert len(provider.requests) == 1
    entries = asyncio.run(store.list())
    assert [(e.status, e.error) for e in entries] == [(AuditStatus.SUCCEEDED, None)]


def test_concurrent_runs_are_refused():
    provider = FakeProvider(["hang"])
    runtime = LLMRuntime(provider, ToolGateway())

    async def go():
        first = asyncio.create_task(runtime.run_to_completion([]))
        await asyncio.sleep(0.01)
        try:
            await runtime.run_to_completion([])
        except RuntimeError:
            refused = True
        else:
            refused = False
        runtime.abort()
        await first
        return refused

    assert asyncio.run(go())


def test_runtime_tool_set_is_private():
    shared = make_registry()
    runtime = LLMRuntime(FakeProvider(), ToolGateway(), shared)
    assert runtime.remove_tool("echo")
    assert [t.name for t in runtime.tools()] == []
    assert "echo" in shared
