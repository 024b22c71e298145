from companion.agent.tool_registry import Tool, ToolContext, define_tool
from companion.models.memory import MemoryCategory
from companion.services.memory import MemoryStore

_CATEGORIES = [c.value for c in MemoryCategory]


def create_memory_tools(store: MemoryStore) -> list[Tool]:
    """Agent-scoped tools for long-term memory."""

    @define_tool(
        name="save_memory",
        description="Remember a fact about the user for later conversations.",
        parameters={
            "content": {"type": "string", "description": "What to remember", "required": True},
            "category": {"type": "string", "description": "Kind of memory", "enum": _CATEGORIES, "default": "other"},
            "importance": {"type": "number", "description": "Importance from 1 to 10", "default": 5},
        },
    )
    async def save_memory(args: dict, ctx: ToolContext) -> dict:
        entry = await store.save(args["category"], str(args["content"]), int(args["importance"]))
        return entry.to_dict()

    @define_tool(
        name="search_memories",
        description="Look up remembered facts about the user.",
        parameters={
            "keyword": {"type": "string", "description": "Text to look for"},
            "category": {"type": "string", "description": "Only this kind of memory", "enum": _CATEGORIES},
            "min_importance": {"type": "number", "description": "Minimum importance from 1 to 10"},
            "limit": {"type": "number", "description": "Maximum number of results", "default": 10},
        },
    )
    async def search_memories(args: dict, ctx: ToolContext) -> dict:
        min_importance = args.get("min_importance")
        entries = await store.search(
            category=args.get("category"),
            keyword=args.get("keyword"),
            min_importance=int(min_importance) if min_importance is not None else None,
            limit=int(args["limit"]),
        )
        return {"memories": [e.to_dict() for e in entries]}

    return [save_memory, search_memories]
