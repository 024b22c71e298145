from datetime import datetime

from companion.agent.tool_registry import Tool, ToolContext, define_tool
from companion.models.schedule import Recurrence, ScheduleCategory
from companion.services.schedule import ScheduleStore


def parse_when(value) -> int:
    """Epoch milliseconds from an epoch-ms number or an ISO 8601 string (local time if naive)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    try:
        return int(datetime.fromisoformat(str(value)).timestamp() * 1000)
    except ValueError:
        raise ValueError(f"Unrecognized date/time: {value!r}") from None


def create_schedule_tools(store: ScheduleStore) -> list[Tool]:
    """Agent-scoped tools for the user's schedule."""

    @define_tool(
        name="create_schedule",
        description="Add an event or reminder to the user's schedule.",
        parameters={
            "title": {"type": "string", "description": "Short title", "required": True},
            "datetime": {"type": "string", "description": "When, as ISO 8601 (e.g. 2025-03-01T09:30)", "required": True},
            "description": {"type": "string", "description": "Details", "default": ""},
            "remind_before": {"type": "number", "description": "Minutes before the event to remind"},
            "recurring": {"type": "string", "description": "Repeat cadence", "enum": [r.value for r in Recurrence]},
            "category": {"type": "string", "description": "Category", "enum": [c.value for c in ScheduleCategory], "default": "life"},
        },
    )
    async def create_schedule(args: dict, ctx: ToolContext) -> dict:
        when = parse_when(args["datetime"])
        conflicts = await store.find_conflicts(when)
        remind_before = args.get("remind_before")
        entry = await store.create(
            title=str(args["title"]),
            datetime=when,
            description=str(args["description"]),
            remind_before=int(remind_before) if remind_before is not None else None,
            recurring=args.get("recurring"),
            category=args["category"],
        )
        return {"schedule": entry.to_dict(), "conflicts": [c.to_dict() for c in conflicts]}

    @define_tool(
        name="list_schedules",
        description="List the user's schedule entries.",
        parameters={
            "upcoming_only": {"type": "boolean", "description": "Only open future entries", "default": True},
            "category": {"type": "string", "description": "Only this category", "enum": [c.value for c in ScheduleCategory]},
        },
    )
    async def list_schedules(args: dict, ctx: ToolContext) -> dict:
        entries = await store.list(upcoming_only=bool(args["upcoming_only"]), category=args.get("category"))
        return {"schedules": [e.to_dict() for e in entries]}

    @define_tool(
        name="complete_schedule",
        description="Mark a schedule entry as done.",
        parameters={
            "id": {"type": "string", "description": "Schedule entry id", "required": True},
        },
    )
    async def complete_schedule(args: dict, ctx: ToolContext) -> dict:
        entry = await store.complete(str(args["id"]))
        if entry is None:
            raise LookupError(f"Schedule entry not found: {args['id']}")
        return entry.to_dict()

    return [create_schedule, list_schedules, complete_schedule]
