from __future__ import annotations

import asyncio
import json
import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from companion.agent.gateway import ConfirmationRequest
from companion.agent.runtime import LLMRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


async def _send(ws: WebSocket, msg_type: str, data: dict | None = None):
    await ws.send_text(json.dumps({"type": msg_type, **(data or {})}, default=str))


@router.websocket("/ws/chat")
async def chat_ws(ws: WebSocket):
    await ws.accept()

    pending_confirms: dict[str, asyncio.Future] = {}

    async def confirm(request: ConfirmationRequest) -> bool:
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        pending_confirms[request_id] = future
        try:
            await _send(ws, "confirm_request", {"id": request_id, **request.to_dict()})
            return await future
        finally:
            pending_confirms.pop(request_id, None)

    def reject_pending() -> None:
        for future in pending_confirms.values():
            if not future.done():
                future.set_result(False)

    runtime: LLMRuntime | None = ws.app.state.companion.chat_runtime(confirm=confirm)
    if runtime is None:
        await _send(ws, "error", {"message": "No language model configured (set OPENROUTER_API_KEY)"})
        await ws.close()
        return

    history: list[dict] = []
    agent_task: asyncio.Task | None = None

    async def run_turn(user_message: str):
        history.append({"role": "user", "content": user_message})
        reply: list[str] = []
        try:
            async for event in runtime.run(history):
                if event.type == "text":
                    reply.append(event.data["content"])
                await _send(ws, event.type, event.data)
        except Exception:
            logger.exception("Chat run failed")
            await _send(ws, "error", {"message": "Chat run failed"})
        finally:
            if reply:
                history.append({"role": "assistant", "content": "".join(reply)})

    async def stop_turn():
        runtime.abort()
        reject_pending()
        if agent_task and not agent_task.done():
            await agent_task

    try:
        while True:
            raw = await ws.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await _send(ws, "error", {"message": "Messages must be JSON"})
                continue

            msg_type = payload.get("type", "message")

            if msg_type == "confirm_response":
                future = pending_confirms.get(payload.get("id", ""))
                if future is not None and not future.done():
                    future.set_result(bool(payload.get("approved")))
                continue

            # Handle stop request
            if msg_type == "stop":
                await stop_turn()
                continue

            user_message = payload.get("message", "")
            if not user_message:
                continue

            # Finish any existing run before starting a new one
            await stop_turn()
            agent_task = asyncio.create_task(run_turn(user_message))

    except WebSocketDisconnect:
        runtime.abort()
        reject_pending()
        if agent_task and not agent_task.done():
            agent_task.cancel()
