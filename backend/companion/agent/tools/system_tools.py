import asyncio
import os
import shutil
import subprocess
import sys
import webbrowser

from companion.agent.constants import CLIPBOARD_TIMEOUT_SECONDS
from companion.agent.tool_registry import ToolContext, ToolRegistry, define_tool


def _clipboard_commands() -> tuple[list[str], list[str]]:
    """(read, write) commands for the host clipboard."""
    if sys.platform == "darwin":
        return ["pbpaste"], ["pbcopy"]
    if sys.platform == "win32":
        return ["powershell", "-NoProfile", "-Command", "Get-Clipboard"], ["clip"]
    if shutil.which("wl-paste"):
        return ["wl-paste", "--no-newline"], ["wl-copy"]
    return ["xclip", "-selection", "clipboard", "-o"], ["xclip", "-selection", "clipboard"]


async def _run(command: list[str], stdin: bytes | None = None) -> str:
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if stdin is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise RuntimeError(f"Clipboard helper not available: {command[0]}") from None
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout=CLIPBOARD_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        proc.kill()
        raise
    if proc.returncode != 0:
        raise RuntimeError(
            f"{command[0]} exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    return stdout.decode(errors="replace")


def _open_with_system(target: str) -> bool:
    if sys.platform == "win32":
        os.startfile(target)  # type: ignore[attr-defined]
        return True
    opener = "open" if sys.platform == "darwin" else "xdg-open"
    if shutil.which(opener) is None:
        raise RuntimeError(f"No system opener available ({opener})")
    subprocess.Popen([opener, target], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    return True


@define_tool(
    name="clipboard_read",
    description="Read the current content from the system clipboard.",
)
async def clipboard_read(args: dict, ctx: ToolContext) -> dict:
    read_cmd, _ = _clipboard_commands()
    content = await ctx.guard(_run(read_cmd))
    return {"content": content}


@define_tool(
    name="clipboard_write",
    description="Write content to the system clipboard.",
    parameters={
        "content": {"type": "string", "description": "The text content to write to the clipboard", "required": True},
    },
    requires_confirmation=True,
)
async def clipboard_write(args: dict, ctx: ToolContext) -> dict:
    _, write_cmd = _clipboard_commands()
    content = str(args["content"])
    await ctx.guard(_run(write_cmd, stdin=content.encode()))
    return {"written": len(content)}


@define_tool(
    name="open_url",
    description="Open a URL in the default web browser.",
    parameters={
        "url": {
            "type": "string",
            "description": "The URL to open (must start with http:// or https://)",
            "required": True,
        },
    },
)
async def open_url(args: dict, ctx: ToolContext) -> dict:
    url = str(args["url"]).strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError("URL must start with http:// or https://")
    opened = await asyncio.to_thread(webbrowser.open, url)
    if not opened:
        raise RuntimeError("No browser available to open the URL")
    return {"opened": url}


@define_tool(
    name="open_app",
    description="Open a file or application with the system default handler.",
    parameters={
        "path": {"type": "string", "description": "The path to the file or application to open", "required": True},
    },
    requires_confirmation=True,
)
async def open_app(args: dict, ctx: ToolContext) -> dict:
    target = str(args["path"]).strip()
    if not target:
        raise ValueError("path must not be empty")
    await asyncio.to_thread(_open_with_system, target)
    return {"opened": target}


def register_system_tools(registry: ToolRegistry) -> None:
    """Register clipboard and shell-open tools with the registry."""
    for tool in (clipboard_read, clipboard_write, open_url, open_app):
        registry.register(tool)
