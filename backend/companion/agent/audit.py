"""Audit trail for tool invocations.

Every tool call gets a ``started`` row before confirmation or execution and is
finalized exactly once. Arguments and results are passed through
:func:`sanitize_for_audit` so secrets never reach the log and oversized
payloads are truncated.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from companion.agent.constants import (
    AUDIT_LIST_MAX_LIMIT,
    AUDIT_MAX_DEPTH,
    AUDIT_MAX_DICT_KEYS,
    AUDIT_MAX_LIST_ITEMS,
    AUDIT_MAX_STRING_CHARS,
    CONFIRM_PREVIEW_MAX_DICT_KEYS,
    CONFIRM_PREVIEW_MAX_LIST_ITEMS,
    CONFIRM_PREVIEW_MAX_STRING_CHARS,
    DEPTH_LIMIT_MARKER,
    REDACT_KEYS,
    REDACTED,
)
from companion.db import get_db

logger = logging.getLogger(__name__)


class AuditStatus(str, enum.Enum):
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


class AuditSource(str, enum.Enum):
    CHAT = "chat"
    SCHEDULER = "scheduler"
    WORKFLOW = "workflow"
    OTHER = "other"


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    run_id: str
    tool_call_id: str
    tool_name: str
    source: AuditSource
    args_json: str | None
    requires_confirmation: bool
    started_at: int
    status: AuditStatus = AuditStatus.STARTED
    result_json: str | None = None
    error: str | None = None
    completed_at: int | None = None
    duration_ms: int | None = None

    @classmethod
    def from_row(cls, row) -> AuditLogEntry:
        return cls(
            id=row["id"],
            run_id=row["run_id"],
            tool_call_id=row["tool_call_id"],
            tool_name=row["tool_name"],
            source=AuditSource(row["source"]),
            args_json=row["args_json"],
            requires_confirmation=bool(row["requires_confirmation"]),
            started_at=row["started_at"],
            status=AuditStatus(row["status"]),
            result_json=row["result_json"],
            error=row["error"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "source": self.source.value,
            "args_json": self.args_json,
            "result_json": self.result_json,
            "status": self.status.value,
            "error": self.error,
            "requires_confirmation": self.requires_confirmation,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
        }


# ── Sanitizing ──────────────────────────────────────────────────


def _is_secret_key(key: Any) -> bool:
    return isinstance(key, str) and key.lower() in REDACT_KEYS


def _sanitize(
    value: Any,
    *,
    max_chars: int,
    max_items: int,
    max_keys: int,
    max_depth: int,
    depth: int = 0,
) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        if len(value) > max_chars:
            return f"{value[:max_chars]}…({len(value)} chars)"
        return value
    if depth >= max_depth:
        return DEPTH_LIMIT_MARKER

    limits = dict(max_chars=max_chars, max_items=max_items, max_keys=max_keys, max_depth=max_depth)
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for i, (key, item) in enumerate(value.items()):
            if i >= max_keys:
                out["…"] = f"{len(value) - max_keys} more keys"
                break
            if _is_secret_key(key):
                out[str(key)] = REDACTED
            else:
                out[str(key)] = _sanitize(item, depth=depth + 1, **limits)
        return out
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        out_list = [_sanitize(item, depth=depth + 1, **limits) for item in items[:max_items]]
        if len(items) > max_items:
            out_list.append(f"…({len(items) - max_items} more items)")
        return out_list
    return _sanitize(str(value), depth=depth, **limits)


def sanitize_for_audit(value: Any) -> Any:
    return _sanitize(
        value,
        max_chars=AUDIT_MAX_STRING_CHARS,
        max_items=AUDIT_MAX_LIST_ITEMS,
        max_keys=AUDIT_MAX_DICT_KEYS,
        max_depth=AUDIT_MAX_DEPTH,
    )


def audit_json(value: Any) -> str | None:
    """Sanitized JSON for an audit column; ``None`` stays ``None``."""
    if value is None:
        return None
    try:
        return json.dumps(sanitize_for_audit(value), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        logger.warning("Could not serialize audit payload of type %s", type(value).__name__)
        return json.dumps(REDACTED)


def format_args_for_confirmation(args: Any) -> str:
    """Short, redacted, pretty-printed preview of tool arguments."""
    preview = _sanitize(
        args,
        max_chars=CONFIRM_PREVIEW_MAX_STRING_CHARS,
        max_items=CONFIRM_PREVIEW_MAX_LIST_ITEMS,
        max_keys=CONFIRM_PREVIEW_MAX_DICT_KEYS,
        max_depth=AUDIT_MAX_DEPTH,
    )
    return json.dumps(preview, ensure_ascii=False, indent=2, default=str)


def _clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), AUDIT_LIST_MAX_LIMIT))


# ── Stores ──────────────────────────────────────────────────────


class AuditStore(ABC):
    """Append-only storage for :class:`AuditLogEntry` rows."""

    @abstractmethod
    async def insert_started(self, entry: AuditLogEntry) -> bool:
        """Append a started entry. Returns False, leaving the log untouched, if the call id exists."""

    @abstractmethod
    async def finalize(
        self,
        tool_call_id: str,
        status: AuditStatus,
        *,
        result_json: str | None = None,
        error: str | None = None,
        completed_at: int,
        duration_ms: int,
    ) -> bool:
        """Close a started entry. Returns False if it was already finalized."""

    @abstractmethod
    async def list(self, limit: int = 50) -> list[AuditLogEntry]:
        """Newest entries first."""

    @abstractmethod
    async def clear(self) -> None: ...


class InMemoryAuditStore(AuditStore):
    def __init__(self):
        self._entries: dict[str, AuditLogEntry] = {}
        self._lock = asyncio.Lock()

    async def insert_started(self, entry: AuditLogEntry) -> bool:
        async with self._lock:
            if entry.tool_call_id in self._entries:
                logger.warning("Audit entry %s already exists, ignoring duplicate", entry.tool_call_id)
                return False
            self._entries[entry.tool_call_id] = entry
            return True

    async def finalize(
        self,
        tool_call_id: str,
        status: AuditStatus,
        *,
        result_json: str | None = None,
        error: str | None = None,
        completed_at: int,
        duration_ms: int,
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(tool_call_id)
            if entry is None or entry.status is not AuditStatus.STARTED:
                return False
            self._entries[tool_call_id] = replace(
                entry,
                status=status,
                result_json=result_json,
                error=error,
                completed_at=completed_at,
                duration_ms=duration_ms,
            )
            return True

    async def get(self, tool_call_id: str) -> AuditLogEntry | None:
        return self._entries.get(tool_call_id)

    async def list(self, limit: int = 50) -> list[AuditLogEntry]:
        entries = sorted(self._entries.values(), key=lambda e: e.started_at, reverse=True)
        return entries[: _clamp_limit(limit)]

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


class SqliteAuditStore(AuditStore):
    def __init__(self, db_path: Path | str | None = None):
        self._db_path = db_path

    async def insert_started(self, entry: AuditLogEntry) -> bool:
        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(
                """INSERT INTO agent_tool_audit_log
                   (id, run_id, tool_call_id, tool_name, source, args_json,
                    status, requires_confirmation, started_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(tool_call_id) DO NOTHING""",
                (
                    entry.id,
                    entry.run_id,
                    entry.tool_call_id,
                    entry.tool_name,
                    entry.source.value,
                    entry.args_json,
                    entry.status.value,
                    int(entry.requires_confirmation),
                    entry.started_at,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                logger.warning("Audit entry %s already exists, ignoring duplicate", entry.tool_call_id)
                return False
            return True
        finally:
            await db.close()

    async def finalize(
        self,
        tool_call_id: str,
        status: AuditStatus,
        *,
        result_json: str | None = None,
        error: str | None = None,
        completed_at: int,
        duration_ms: int,
    ) -> bool:
        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(
                """UPDATE agent_tool_audit_log
                   SET status = ?, result_json = ?, error = ?,
                       completed_at = ?, duration_ms = ?
                   WHERE tool_call_id = ? AND status = 'started'""",
                (status.value, result_json, error, completed_at, duration_ms, tool_call_id),
            )
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def get(self, tool_call_id: str) -> AuditLogEntry | None:
        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(
                "SELECT * FROM agent_tool_audit_log WHERE tool_call_id = ?", (tool_call_id,)
            )
            row = await cursor.fetchone()
            return AuditLogEntry.from_row(row) if row else None
        finally:
            await db.close()

    async def list(self, limit: int = 50) -> list[AuditLogEntry]:
        db = await get_db(self._db_path)
        try:
            cursor = await db.execute(
                "SELECT * FROM agent_tool_audit_log ORDER BY started_at DESC LIMIT ?",
                (_clamp_limit(limit),),
            )
            rows = await cursor.fetchall()
            return [AuditLogEntry.from_row(r) for r in rows]
        finally:
            await db.close()

    async def clear(self) -> None:
        db = await get_db(self._db_path)
        try:
            await db.execute("DELETE FROM agent_tool_audit_log")
            await db.commit()
        finally:
            await db.close()
