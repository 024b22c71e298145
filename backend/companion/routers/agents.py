from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from companion.agent.core import Companion

router = APIRouter(prefix="/agents", tags=["agents"])


class EnabledRequest(BaseModel):
    enabled: bool


class MessageRequest(BaseModel):
    message: str
    context: dict[str, Any] = {}


class EventRequest(BaseModel):
    payload: dict[str, Any] = {}


def _companion(request: Request) -> Companion:
    return request.app.state.companion


@router.get("")
async def list_agents(request: Request):
    return [r.to_dict() for r in _companion(request).dispatcher.registered_agents()]


@router.get("/history")
async def execution_history(request: Request, limit: int = 50):
    return [r.to_dict() for r in _companion(request).dispatcher.execution_history(limit)]


@router.post("/message")
async def dispatch_message(body: MessageRequest, request: Request):
    if not body.message.strip():
        raise HTTPException(400, "Message is empty")
    outcomes = await _companion(request).dispatcher.dispatch_user_message(body.message, body.context)
    return [o.to_dict() for o in outcomes]


@router.post("/events/{name}")
async def emit_event(name: str, request: Request, body: EventRequest | None = None):
    outcomes = await _companion(request).dispatcher.emit_event(name, body.payload if body else {})
    return [o.to_dict() for o in outcomes]


@router.post("/{agent_id}/enabled")
async def set_enabled(agent_id: str, body: EnabledRequest, request: Request):
    dispatcher = _companion(request).dispatcher
    if not dispatcher.set_enabled(agent_id, body.enabled):
        raise HTTPException(404, "Agent not found")
    return dispatcher.get_agent(agent_id).to_dict()
