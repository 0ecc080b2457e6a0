"""Context window management: size estimation and summary-based views.

The WindowManager never touches durable history. It derives a
transmission view from it, replacing older turns with one synthetic
assistant summary turn when the conversation no longer fits the budget.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Protocol

from colloquy.config import Settings
from colloquy.conversation.json_values import estimate_json_tokens
from colloquy.conversation.models import (
    DocumentBlock,
    ImageBlock,
    ReasoningBlock,
    TextBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    Turn,
    assistant_turn,
    user_turn,
)

if TYPE_CHECKING:
    from colloquy.api.transport import Completion

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "[Summary of earlier conversation]"
SUMMARY_CACHE_SIZE = 32

SUMMARY_SYSTEM_PROMPT = """\
You condense conversation transcripts. Output ONLY the summary.
Preserve decisions, conclusions, facts and open questions.
Compress small talk and repetition. Keep exact names, paths and numbers.
Stay under {max_chars} characters."""

# Per-block weights in token-like units
TURN_OVERHEAD = 20
IMAGE_COST = 1600
DOCUMENT_COST = 500
TOOL_INVOCATION_COST = 100
REASONING_OVERHEAD = 50
TOOL_RESULT_MIN = 50
TOOL_RESULT_OVERHEAD = 50


class SummaryCaller(Protocol):
    """Non-streaming completion capability used for summaries."""

    async def complete(
        self,
        turns: list[Turn],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> Completion: ...


# ------------------------------------------------------------------
# Size estimation
# ------------------------------------------------------------------


def estimate_turn(turn: Turn) -> int:
    """Token-like size of one turn."""
    total = TURN_OVERHEAD
    for block in turn.content:
        if isinstance(block, TextBlock):
            total += max(1, len(block.text) // 3)
        elif isinstance(block, ReasoningBlock):
            total += len(block.text) // 3 + REASONING_OVERHEAD
        elif isinstance(block, ImageBlock):
            total += IMAGE_COST
        elif isinstance(block, DocumentBlock):
            total += DOCUMENT_COST + len(block.name) // 4
        elif isinstance(block, ToolInvocationBlock):
            total += TOOL_INVOCATION_COST + estimate_json_tokens(block.input)
        elif isinstance(block, ToolResultBlock):
            total += max(TOOL_RESULT_MIN, len(block.result) // 3) + TOOL_RESULT_OVERHEAD
    return total


def estimate_turns(turns: list[Turn]) -> int:
    return sum(estimate_turn(t) for t in turns)


# ------------------------------------------------------------------
# Transcript serialization
# ------------------------------------------------------------------


def serialize_for_summary(turns: list[Turn]) -> str:
    """Render turns as readable text for a summarization prompt."""
    lines = []
    for turn in turns:
        role = "User" if turn.role == "user" else "Assistant"
        parts: list[str] = []
        for block in turn.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ImageBlock):
                parts.append("[Image]")
            elif isinstance(block, DocumentBlock):
                parts.append(f"[Document: {block.name}]")
            elif isinstance(block, ToolInvocationBlock):
                parts.append(f"[Tool call {block.name}: {json.dumps(block.input, default=str)[:500]}]")
            elif isinstance(block, ToolResultBlock):
                parts.append(f"[Tool result ({block.status}): {block.result[:1000]}]")
        if parts:
            lines.append(f"**{role}:** " + "\n".join(parts))
    return "\n\n".join(lines)


def placeholder_summary(compressed: int) -> str:
    return f"[{compressed} earlier messages were compressed to save space]"


# ------------------------------------------------------------------
# Window Manager
# ------------------------------------------------------------------


class WindowManager:
    """Builds transmission views that fit the configured window budget.

    Summaries are cached per identical run of older turns, so tool rounds
    inside one submission do not summarize the same prefix twice.
    """

    def __init__(self, settings: Settings, caller: SummaryCaller) -> None:
        self._settings = settings
        self._caller = caller
        self._cache: OrderedDict[str, str] = OrderedDict()

    async def transmission_view(self, turns: list[Turn]) -> list[Turn]:
        recent_count = self._settings.window_recent_turns
        if len(turns) <= recent_count or any(t.has_tool_blocks for t in turns):
            return list(turns)

        size = estimate_turns(turns)
        if size <= self._settings.window_budget:
            return list(turns)

        older, recent = turns[:-recent_count], turns[-recent_count:]
        summary = await self._summary_for(older)
        logger.info(
            "Window over budget (%d > %d): summarized %d older turns, kept %d",
            size,
            self._settings.window_budget,
            len(older),
            len(recent),
        )
        return [assistant_turn(f"{SUMMARY_HEADER}\n\n{summary}")] + list(recent)

    async def _summary_for(self, older: list[Turn]) -> str:
        key = hashlib.sha256(
            "\n".join(t.model_dump_json() for t in older).encode()
        ).hexdigest()
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        try:
            summary = await self.summarize(older)
        except Exception as e:
            logger.warning("Window summary failed, using placeholder: %s", e)
            return placeholder_summary(len(older))
        if not summary:
            logger.warning("Window summary came back empty, using placeholder")
            return placeholder_summary(len(older))

        self._cache[key] = summary
        while len(self._cache) > SUMMARY_CACHE_SIZE:
            self._cache.popitem(last=False)
        return summary

    async def summarize(self, turns: list[Turn]) -> str:
        """Condense turns into plain text via the completion capability."""
        max_chars = self._settings.summary_max_chars
        completion = await self._caller.complete(
            [user_turn(serialize_for_summary(turns))],
            system_prompt=SUMMARY_SYSTEM_PROMPT.format(max_chars=max_chars),
            model=self._settings.effective_summary_model,
        )
        return completion.text.strip()[:max_chars]
