from fastapi import APIRouter, HTTPException, Request

from companion.agent.constants import AUDIT_LIST_MAX_LIMIT

router = APIRouter(prefix="/audit", tags=["audit"])


def _store(request: Request):
    store = request.app.state.companion.audit_store
    if store is None:
        raise HTTPException(404, "Audit log is disabled")
    return store


@router.get("")
async def list_audit(request: Request, limit: int = 50):
    if not 1 <= limit <= AUDIT_LIST_MAX_LIMIT:
        raise HTTPException(400, f"limit must be between 1 and {AUDIT_LIST_MAX_LIMIT}")
    entries = await _store(request).list(limit)
    return [e.to_dict() for e in entries]


@router.delete("")
async def clear_audit(request: Request):
    await _store(request).clear()
    return {"ok": True}
