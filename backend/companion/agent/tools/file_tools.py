from pathlib import Path

from companion.agent.constants import (
    MAX_FILE_READ_CHARS,
    MAX_FILE_WRITE_BYTES,
    READ_FILE_TRUNCATION_MSG,
)
from companion.agent.tool_registry import ToolContext, ToolRegistry, define_tool
from companion.config import settings


def _validate_path(base_dir: Path, filename: str) -> Path:
    """Resolve *filename* inside *base_dir*, refusing traversal and absolute paths."""
    if not filename or ".." in Path(filename).parts or Path(filename).is_absolute() or filename.startswith(("/", "\\")):
        raise PermissionError("Invalid filename: path traversal not allowed")
    root = base_dir.resolve()
    full_path = (root / filename).resolve()
    if not full_path.is_relative_to(root):
        raise PermissionError("Access denied: path escapes the user files directory")
    return full_path


def register_file_tools(registry: ToolRegistry, base_dir: Path | None = None) -> None:
    """Register file tools confined to ``base_dir`` (default ``DATA_DIR/user_files``)."""
    root = Path(base_dir) if base_dir is not None else settings.user_files_dir

    @define_tool(
        name="file_read",
        description="Read the contents of a text file. Only works within the app data directory.",
        parameters={
            "filename": {"type": "string", "description": "File name relative to the app data directory", "required": True},
        },
    )
    async def file_read(args: dict, ctx: ToolContext) -> dict:
        path = _validate_path(root, str(args["filename"]))
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {args['filename']}")
        content = path.read_text(encoding="utf-8")
        if len(content) > MAX_FILE_READ_CHARS:
            content = content[:MAX_FILE_READ_CHARS] + READ_FILE_TRUNCATION_MSG.format(len(content))
        return {"filename": args["filename"], "content": content}

    @define_tool(
        name="file_write",
        description="Write content to a text file. Only works within the app data directory.",
        parameters={
            "filename": {"type": "string", "description": "File name relative to the app data directory", "required": True},
            "content": {"type": "string", "description": "The text content to write", "required": True},
            "append": {"type": "boolean", "description": "Append instead of overwriting (default: false)", "default": False},
        },
        requires_confirmation=True,
    )
    async def file_write(args: dict, ctx: ToolContext) -> dict:
        path = _validate_path(root, str(args["filename"]))
        content = str(args["content"])
        if len(content.encode("utf-8")) > MAX_FILE_WRITE_BYTES:
            raise ValueError("File content exceeds 1MB limit")
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if args.get("append") else "w"
        with path.open(mode, encoding="utf-8") as f:
            f.write(content)
        return {"filename": args["filename"], "written": len(content), "appended": mode == "a"}

    @define_tool(
        name="file_exists",
        description="Check if a file exists in the app data directory.",
        parameters={
            "filename": {"type": "string", "description": "File name relative to the app data directory", "required": True},
        },
    )
    async def file_exists(args: dict, ctx: ToolContext) -> dict:
        path = _validate_path(root, str(args["filename"]))
        return {"filename": args["filename"], "exists": path.exists()}

    for tool in (file_read, file_write, file_exists):
        registry.register(tool)
