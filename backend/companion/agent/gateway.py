"""ToolGateway: the single path through which agents and the LLM runtime call tools.

Order of operations for one call:

    1. validate required parameters
    2. write the audit ``started`` row
    3. ask for confirmation (tool flag or forced high-risk list), one at a time
    4. run the tool body with a cancellation signal
    5. finalize the audit row exactly once

The gateway never raises on tool failure; every outcome is a ToolResult.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from companion.agent.audit import (
    AuditLogEntry,
    AuditSource,
    AuditStatus,
    AuditStore,
    audit_json,
    format_args_for_confirmation,
)
from companion.agent.constants import CANCELLED_ERROR, FORCED_CONFIRMATION_TOOLS
from companion.agent.errors import ConfirmationRejected, ToolValidationError
from companion.agent.state import now_ms
from companion.agent.tool_registry import Tool, ToolContext

logger = logging.getLogger(__name__)


class ToolStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ToolResult:
    status: ToolStatus
    tool_name: str
    tool_call_id: str
    data: Any = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status is ToolStatus.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "tool": self.tool_name,
            "tool_call_id": self.tool_call_id,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    def to_model_content(self) -> str:
        """Serialized result fed back to the language model."""
        payload: dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
        else:
            payload["status"] = self.status.value
            payload["error"] = self.error
        return json.dumps(payload, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class ConfirmationRequest:
    tool_name: str
    description: str
    args_preview: str
    tool_call_id: str

    @property
    def prompt(self) -> str:
        return (
            f"Allow the companion to run '{self.tool_name}'?\n"
            f"{self.description}\n\nArguments:\n{self.args_preview}"
        )

    def to_dict(self) -> dict:
        return {
            "tool": self.tool_name,
            "description": self.description,
            "args_preview": self.args_preview,
            "tool_call_id": self.tool_call_id,
            "prompt": self.prompt,
        }


ConfirmHandler = Callable[[ConfirmationRequest], Awaitable[bool]]


def needs_confirmation(tool: Tool) -> bool:
    return tool.requires_confirmation or tool.name in FORCED_CONFIRMATION_TOOLS


def missing_required(tool: Tool, args: Any) -> list[str]:
    if not isinstance(args, dict):
        return tool.required_parameters()
    return [name for name in tool.required_parameters() if args.get(name) is None]


class ToolGateway:
    """Validates, confirms, executes, and audits tool calls."""

    def __init__(
        self,
        audit_store: AuditStore | None = None,
        confirm: ConfirmHandler | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.audit_store = audit_store
        self._confirm = confirm
        self._clock = clock
        self._confirm_lock = asyncio.Lock()

    def set_confirm_handler(self, confirm: ConfirmHandler | None) -> None:
        self._confirm = confirm

    async def execute(
        self,
        tool: Tool,
        args: dict | None,
        *,
        run_id: str | None = None,
        tool_call_id: str | None = None,
        source: AuditSource = AuditSource.OTHER,
        abort: asyncio.Event | None = None,
        on_progress: Callable[[str], None] | None = None,
        confirm: ConfirmHandler | None = None,
        timeout_s: float | None = None,
    ) -> ToolResult:
        args = {} if args is None else args
        run_id = run_id or uuid.uuid4().hex
        tool_call_id = tool_call_id or uuid.uuid4().hex
        gated = needs_confirmation(tool)
        missing = missing_required(tool, args)

        started_at = self._clock()
        await self._audit_start(
            AuditLogEntry(
                id=uuid.uuid4().hex,
                run_id=run_id,
                tool_call_id=tool_call_id,
                tool_name=tool.name,
                source=source,
                args_json=audit_json(args),
                requires_confirmation=gated,
                started_at=started_at,
            )
        )

        def finish(status: ToolStatus, data: Any = None, error: str | None = None) -> ToolResult:
            return ToolResult(
                status=status,
                tool_name=tool.name,
                tool_call_id=tool_call_id,
                data=data,
                error=error,
                duration_ms=max(0, self._clock() - started_at),
            )

        if missing:
            result = finish(ToolStatus.FAILED, error=str(ToolValidationError(tool.name, missing)))
            await self._audit_finish(result, started_at)
            return result

        ctx = ToolContext(abort=abort or asyncio.Event(), on_progress=on_progress)
        try:
            if gated:
                await self._request_confirmation(tool, args, tool_call_id, confirm or self._confirm)
            ctx.raise_if_cancelled()
            if timeout_s is not None:
                data = await asyncio.wait_for(tool.execute(args, ctx), timeout_s)
            else:
                data = await tool.execute(args, ctx)
            result = finish(ToolStatus.SUCCEEDED, data=data)
        except ConfirmationRejected as e:
            logger.info("Tool %s rejected: %s", tool.name, e.reason)
            result = finish(ToolStatus.REJECTED, error=e.reason)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", tool.name, timeout_s)
            result = finish(ToolStatus.FAILED, error="timeout")
        except asyncio.CancelledError:
            result = finish(ToolStatus.CANCELLED, error=CANCELLED_ERROR)
            if not ctx.cancelled:
                # The calling task itself is being cancelled: record, then propagate.
                await asyncio.shield(self._audit_finish(result, started_at))
                raise
        except Exception as e:
            logger.exception("Tool %s failed", tool.name)
            result = finish(ToolStatus.FAILED, error=f"{type(e).__name__}: {e}")

        await self._audit_finish(result, started_at)
        return result

    async def record_failure(
        self,
        tool_name: str,
        args: Any,
        error: str,
        *,
        run_id: str | None = None,
        tool_call_id: str | None = None,
        source: AuditSource = AuditSource.OTHER,
    ) -> ToolResult:
        """Audit a call that never reached a tool body (unknown tool, bad arguments)."""
        tool_call_id = tool_call_id or uuid.uuid4().hex
        started_at = self._clock()
        await self._audit_start(
            AuditLogEntry(
                id=uuid.uuid4().hex,
                run_id=run_id or uuid.uuid4().hex,
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                source=source,
                args_json=audit_json(args),
                requires_confirmation=False,
                started_at=started_at,
            )
        )
        result = ToolResult(
            status=ToolStatus.FAILED,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            error=error,
        )
        await self._audit_finish(result, started_at)
        return result

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def _request_confirmation(
        self,
        tool: Tool,
        args: dict,
        tool_call_id: str,
        confirm: ConfirmHandler | None,
    ) -> None:
        if confirm is None:
            raise ConfirmationRejected(tool.name, "no confirmation handler available")
        request = ConfirmationRequest(
            tool_name=tool.name,
            description=tool.description,
            args_preview=format_args_for_confirmation(args),
            tool_call_id=tool_call_id,
        )
        # One dialog at a time; concurrent calls queue here.
        async with self._confirm_lock:
            try:
                approved = await confirm(request)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Confirmation handler failed for %s", tool.name)
                approved = False
        if not approved:
            raise ConfirmationRejected(tool.name)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _audit_start(self, entry: AuditLogEntry) -> None:
        if self.audit_store is None:
            return
        try:
            await self.audit_store.insert_started(entry)
        except Exception:
            logger.exception("Failed to write audit start for %s", entry.tool_name)

    async def _audit_finish(self, result: ToolResult, started_at: int) -> None:
        if self.audit_store is None:
            return
        if result.status is ToolStatus.CANCELLED:
            status = AuditStatus.FAILED
        else:
            status = AuditStatus(result.status.value)
        completed_at = self._clock()
        try:
            await self.audit_store.finalize(
                result.tool_call_id,
                status,
                result_json=audit_json(result.data) if result.success else None,
                error=result.error,
                completed_at=completed_at,
                duration_ms=max(0, completed_at - started_at),
            )
        except Exception:
            logger.exception("Failed to finalize audit for %s", result.tool_name)
