"""Completion transport -- direct httpx calls to the Anthropic Messages API.

Converts Turn/ContentBlock models to the wire format, streams SSE
responses as StreamEvents and offers a non-streaming completion for
summaries and titles. No SDK involved.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from colloquy.config import Settings
from colloquy.conversation.models import (
    DocumentBlock,
    ImageBlock,
    ReasoningBlock,
    TextBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    Turn,
)
from colloquy.errors import TransportError, TransportTimeout

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_IMAGE_MEDIA_TYPES = {"jpg": "image/jpeg", "jpeg": "image/jpeg", "png": "image/png", "gif": "image/gif", "webp": "image/webp"}
_TEXT_DOCUMENT_FORMATS = frozenset({"txt", "md", "csv", "html", "json", "xml", "yaml"})


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, reasoning_delta, reasoning_signature, tool_call_start, tool_call_input_delta, tool_call_end, block_stop, done
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    index: int = 0
    stop_reason: str = ""


@dataclass
class Completion:
    """Result of a non-streaming completion."""

    text: str
    reasoning: str = ""
    signature: str | None = None
    stop_reason: str = ""


class Transport(Protocol):
    def stream_completion(
        self,
        turns: list[Turn],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...

    async def complete(
        self,
        turns: list[Turn],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> Completion: ...


# ------------------------------------------------------------------
# Wire format
# ------------------------------------------------------------------


def block_to_wire(block: Any) -> dict[str, Any] | None:
    """Convert one content block to its API dict. Unsigned reasoning is dropped."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ReasoningBlock):
        if not block.signature:
            return None
        return {"type": "thinking", "thinking": block.text, "signature": block.signature}
    if isinstance(block, ImageBlock):
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": _IMAGE_MEDIA_TYPES.get(block.format.lower(), f"image/{block.format.lower()}"),
                "data": base64.b64encode(block.data).decode("ascii"),
            },
        }
    if isinstance(block, DocumentBlock):
        if block.format.lower() in _TEXT_DOCUMENT_FORMATS:
            source = {
                "type": "text",
                "media_type": "text/plain",
                "data": block.data.decode("utf-8", errors="replace"),
            }
        else:
            source = {
                "type": "base64",
                "media_type": "application/pdf",
                "data": base64.b64encode(block.data).decode("ascii"),
            }
        return {"type": "document", "source": source, "title": block.name}
    if isinstance(block, ToolInvocationBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.id,
            "content": block.result,
            "is_error": block.status == "error",
        }
    return None


def turns_to_wire(turns: list[Turn]) -> list[dict[str, Any]]:
    messages = []
    for turn in turns:
        content = [wire for wire in (block_to_wire(b) for b in turn.content) if wire is not None]
        if not content:
            content = [{"type": "text", "text": "(reasoning omitted)"}]
        messages.append({"role": turn.role, "content": content})
    return messages


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict into a StreamEvent.

    Skips ping keepalives. stop_reason arrives in message_delta.delta,
    not message_start. In-stream error events (HTTP 200 but an error in
    the body) raise TransportError.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        raise TransportError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_call_start",
                tool_id=block.get("id", ""),
                tool_name=block.get("name", ""),
                index=data.get("index", 0),
            )
        return None

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), index=index)
        if delta_type == "thinking_delta":
            return StreamEvent(type="reasoning_delta", text=delta.get("thinking", ""), index=index)
        if delta_type == "signature_delta":
            return StreamEvent(type="reasoning_signature", text=delta.get("signature", ""), index=index)
        if delta_type == "input_json_delta":
            return StreamEvent(type="tool_call_input_delta", text=delta.get("partial_json", ""), index=index)
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(type="done", stop_reason=data.get("delta", {}).get("stop_reason") or "")

    return None


# ------------------------------------------------------------------
# Anthropic transport
# ------------------------------------------------------------------


class AnthropicTransport:
    """Transport over httpx with auth headers and timeouts from Settings."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (auth: %s)", "Bearer token" if settings.anthropic_auth_token else "API key")

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        turns: list[Turn],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build the Messages API request payload shared by both call paths."""
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt or self._settings.system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": turns_to_wire(turns),
        }
        # Thinking stays off for background calls on another model
        if self._settings.thinking_budget > 0 and model is None:
            payload["thinking"] = {"type": "enabled", "budget_tokens": self._settings.thinking_budget}
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def stream_completion(
        self,
        turns: list[Turn],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one completion. Finite, not restartable.

        Only "data: " lines are processed. block_stop for a tool_use block
        is reported as tool_call_end; other block stops are dropped.
        """
        if not self._http:
            raise TransportError("httpx client not initialized -- call start() first")

        payload = self.build_payload(turns, system_prompt, tools, stream=True)
        tool_indexes: set[int] = set()
        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    error_body = await response.aread()
                    raise TransportError(
                        f"Anthropic API error ({response.status_code}): {error_body.decode(errors='replace')[:500]}"
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError as e:
                        raise TransportError(f"Malformed SSE payload: {line[:200]}") from e
                    event = parse_sse_event(data)
                    if event is None:
                        continue
                    if event.type == "tool_call_start":
                        tool_indexes.add(event.index)
                    elif event.type == "block_stop":
                        if event.index not in tool_indexes:
                            continue
                        tool_indexes.discard(event.index)
                        event.type = "tool_call_end"
                    yield event
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"API stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error: {e}") from e

    async def complete(
        self,
        turns: list[Turn],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> Completion:
        """Call the Messages API without streaming, retrying once on 429/500/529."""
        if not self._http:
            raise TransportError("httpx client not initialized -- call start() first")

        payload = self.build_payload(turns, system_prompt, tools, model=model)

        last_error: TransportError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)
            except httpx.TimeoutException as e:
                last_error = TransportTimeout(f"API request timed out: {e}")
                break
            except httpx.HTTPError as e:
                last_error = TransportError(f"HTTP error: {e}")
                break

            if response.status_code == 200:
                return self._parse_completion(response.json())

            try:
                error_data = response.json()
                error_type = error_data.get("error", {}).get("type", "unknown")
                error_msg = error_data.get("error", {}).get("message", "unknown error")
            except ValueError:
                error_type = "http_error"
                error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

            if response.status_code in (429, 500, 529) and attempt == 0:
                retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                logger.warning(
                    "API error %d (%s), retrying in %.1fs: %s",
                    response.status_code,
                    error_type,
                    retry_after,
                    error_msg,
                )
                await asyncio.sleep(retry_after)
                continue

            last_error = TransportError(
                f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
            )
            break

        raise last_error or TransportError("API call failed with unknown error")

    @staticmethod
    def _parse_completion(data: dict[str, Any]) -> Completion:
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        signature = None
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "thinking":
                reasoning_parts.append(block.get("thinking", ""))
                signature = block.get("signature") or signature
        return Completion(
            text="".join(text_parts),
            reasoning="".join(reasoning_parts),
            signature=signature,
            stop_reason=data.get("stop_reason", ""),
        )
