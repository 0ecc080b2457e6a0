"""Built-in tools: read_file, write_file, list_files, current_time.

File tools are confined to the configured workspace directory. All
handlers return MCP-format responses for ToolDispatcher.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from colloquy.api.tools import ToolDispatcher
from colloquy.config import Settings

logger = logging.getLogger(__name__)

_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_LISTING = 200


def _mcp_response(text: str, is_error: bool = False) -> dict[str, Any]:
    """Build MCP-format response."""
    response: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        response["isError"] = True
    return response


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve path_str under workspace_dir. Raises ValueError if it escapes."""
    workspace = Path(workspace_dir).resolve()
    target = (workspace / path_str).resolve()
    if not target.is_relative_to(workspace):
        raise ValueError(f"Path '{path_str}' is outside the workspace.")
    return target


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file_tool(path: str, *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(path, _workspace_dir)
    except ValueError as e:
        return _mcp_response(str(e), is_error=True)
    if not target.is_file():
        return _mcp_response(f"File not found: {path}", is_error=True)
    if target.stat().st_size > _MAX_FILE_SIZE:
        return _mcp_response(f"File too large (limit {_MAX_FILE_SIZE} bytes): {path}", is_error=True)
    return _mcp_response(target.read_text(encoding="utf-8", errors="replace"))


async def write_file_tool(path: str, content: str, *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(path, _workspace_dir)
    except ValueError as e:
        return _mcp_response(str(e), is_error=True)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    logger.info("write_file wrote %d chars to %s", len(content), target)
    return _mcp_response(f"Wrote {len(content)} characters to {path}")


async def list_files_tool(path: str = ".", *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(path, _workspace_dir)
    except ValueError as e:
        return _mcp_response(str(e), is_error=True)
    if not target.is_dir():
        return _mcp_response(f"Not a directory: {path}", is_error=True)
    entries = sorted(p.name + ("/" if p.is_dir() else "") for p in target.iterdir())
    if not entries:
        return _mcp_response("(empty directory)")
    listing = "\n".join(entries[:_MAX_LISTING])
    if len(entries) > _MAX_LISTING:
        listing += f"\n... [{len(entries) - _MAX_LISTING} more]"
    return _mcp_response(listing)


async def current_time_tool() -> dict[str, Any]:
    return _mcp_response(datetime.now(timezone.utc).isoformat())


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Register built-in tools with closures capturing the workspace directory."""
    workspace_dir = settings.workspace_dir
    Path(workspace_dir).mkdir(parents=True, exist_ok=True)

    async def read_file(path: str) -> dict[str, Any]:
        return await read_file_tool(path, _workspace_dir=workspace_dir)

    async def write_file(path: str, content: str) -> dict[str, Any]:
        return await write_file_tool(path, content, _workspace_dir=workspace_dir)

    async def list_files(path: str = ".") -> dict[str, Any]:
        return await list_files_tool(path, _workspace_dir=workspace_dir)

    dispatcher.register("read_file", read_file, {
        "type": "object",
        "description": "Read a UTF-8 text file from the workspace.",
        "properties": {"path": {"type": "string", "description": "Path relative to the workspace"}},
        "required": ["path"],
    })
    dispatcher.register("write_file", write_file, {
        "type": "object",
        "description": "Write a UTF-8 text file in the workspace, creating parent directories.",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the workspace"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
    })
    dispatcher.register("list_files", list_files, {
        "type": "object",
        "description": "List entries of a workspace directory.",
        "properties": {"path": {"type": "string", "description": "Directory relative to the workspace"}},
    })
    dispatcher.register("current_time", current_time_tool, {
        "type": "object",
        "description": "Current date and time in UTC (ISO 8601).",
        "properties": {},
    })
    logger.info("Registered %d built-in tools (workspace: %s)", 4, workspace_dir)
