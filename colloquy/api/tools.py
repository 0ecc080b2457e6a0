"""Tool registry and execution backend.

ToolDispatcher registers async handlers with their JSON schemas and
executes tool calls for the runner. Handlers may return a plain string
or an MCP-format response ({"content": [...], "isError": bool}); multimodal
MCP content is flattened to text because tool results travel as text.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from colloquy.conversation.models import ToolStatus

logger = logging.getLogger(__name__)


@dataclass
class ToolExecution:
    """Outcome of one tool call."""

    status: ToolStatus
    result_text: str
    error: str | None = None


def flatten_mcp_content(result: Any) -> tuple[str, bool]:
    """Reduce an MCP-format response (or plain value) to (text, is_error)."""
    if isinstance(result, str):
        return result, False
    if not isinstance(result, dict) or "content" not in result:
        return str(result), False

    parts: list[str] = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            parts.append(str(item))
            continue
        item_type = item.get("type")
        if item_type == "text":
            parts.append(item.get("text", ""))
        elif item_type == "image":
            parts.append(f"[Image: {item.get('mimeType', 'unknown type')}]")
        elif item_type == "resource":
            resource = item.get("resource", {})
            parts.append(resource.get("text") or f"[Resource: {resource.get('uri', 'unknown')}]")
        else:
            parts.append(f"[{item_type} content]")
    return "\n".join(parts), bool(result.get("isError", False))


class ToolDispatcher:
    """Registers tool handlers and executes tool calls from the model.

    Each handler is an async callable invoked with the tool input as
    **kwargs. Failures never escape execute(): unknown tools and raised
    exceptions become error results the model can read.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    async def execute(self, tool_id: str, name: str, tool_input: Any) -> ToolExecution:
        """Run one tool call and return its outcome."""
        handler = self._handlers.get(name)
        if not handler:
            return ToolExecution(status="error", result_text=f"Unknown tool: {name}", error="unknown_tool")

        args = tool_input if isinstance(tool_input, dict) else {"input": tool_input}
        try:
            raw = await handler(**args)
        except Exception as e:
            logger.exception("Tool execution error for %s (%s)", name, tool_id)
            return ToolExecution(status="error", result_text=f"Tool error: {e}", error=str(e))

        text, is_error = flatten_mcp_content(raw)
        if is_error:
            return ToolExecution(status="error", result_text=text, error=text)
        return ToolExecution(status="success", result_text=text)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": {k: v for k, v in schema.items() if k != "description"},
            }
            for name, schema in self._schemas.items()
        ]
