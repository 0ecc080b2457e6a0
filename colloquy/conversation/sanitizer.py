"""Repair of common structural violations before validation.

Each pass drops empty turns, drops repeated user text, merges same-role
plain turns, strips unpaired tool blocks and fixes the leading role.
Passes repeat until the output stops changing, which makes sanitize()
idempotent: sanitize(sanitize(x)) == sanitize(x).
"""

from __future__ import annotations

import logging

from colloquy.conversation.models import ContentBlock, TextBlock, ToolInvocationBlock, ToolResultBlock, Turn, user_turn

logger = logging.getLogger(__name__)

PROCESSING_PLACEHOLDER = "Processing your request..."
CONTINUE_PLACEHOLDER = "Continue from previous conversation"


def sanitize(turns: list[Turn]) -> list[Turn]:
    """Return a repaired copy of turns. Never mutates the input."""
    current = list(turns)
    while True:
        repaired = _sanitize_pass(current)
        if repaired == current:
            return repaired
        current = repaired


def _sanitize_pass(turns: list[Turn]) -> list[Turn]:
    result = [turn for turn in turns if not turn.is_empty]
    if len(result) != len(turns):
        logger.warning("Sanitizer dropped %d empty turn(s)", len(turns) - len(result))

    result = _drop_repeated_user_text(result)
    result = _merge_same_role(result)
    result = _strip_unpaired_tool_blocks(result)

    if result and result[0].role != "user":
        logger.warning("Sanitizer prepended a user turn (history started with %s)", result[0].role)
        result.insert(0, user_turn(CONTINUE_PLACEHOLDER))
    return result


def _drop_repeated_user_text(turns: list[Turn]) -> list[Turn]:
    result: list[Turn] = []
    for turn in turns:
        previous = result[-1] if result else None
        if (
            previous is not None
            and turn.role == "user"
            and previous.role == "user"
            and not turn.has_tool_blocks
            and not previous.has_tool_blocks
        ):
            text = turn.text().strip()
            if text and text == previous.text().strip():
                logger.warning("Sanitizer dropped a repeated user message")
                continue
        result.append(turn)
    return result


def _merge_same_role(turns: list[Turn]) -> list[Turn]:
    result: list[Turn] = []
    for turn in turns:
        previous = result[-1] if result else None
        if (
            previous is not None
            and previous.role == turn.role
            and not previous.has_tool_blocks
            and not turn.has_tool_blocks
        ):
            logger.warning("Sanitizer merged consecutive %s turns", turn.role)
            result[-1] = previous.with_content(previous.content + turn.content)
            continue
        result.append(turn)
    return result


def _strip_unpaired_tool_blocks(turns: list[Turn]) -> list[Turn]:
    """Keep a tool pair only when the result sits in the user turn right after its invocation."""
    paired: set[str] = set()
    kept_at: dict[int, set[str]] = {}
    for i, turn in enumerate(turns):
        if turn.role != "assistant" or i + 1 >= len(turns) or turns[i + 1].role != "user":
            continue
        answered = set(turns[i + 1].result_ids)
        kept: set[str] = set()
        for tool_id in turn.invocation_ids:
            if tool_id in answered and tool_id not in paired:
                kept.add(tool_id)
                paired.add(tool_id)
        kept_at[i] = kept

    result: list[Turn] = []
    removed: list[str] = []
    for i, turn in enumerate(turns):
        if not turn.has_tool_blocks:
            result.append(turn)
            continue

        if turn.role == "assistant":
            allowed = kept_at.get(i, set())
        else:
            allowed = kept_at.get(i - 1, set()) if i > 0 and turns[i - 1].role == "assistant" else set()

        seen: set[str] = set()
        blocks: list[ContentBlock] = []
        for block in turn.content:
            if isinstance(block, (ToolInvocationBlock, ToolResultBlock)):
                legal = isinstance(block, ToolInvocationBlock) == (turn.role == "assistant")
                if not legal or block.id not in allowed or block.id in seen:
                    removed.append(block.id)
                    continue
                seen.add(block.id)
            blocks.append(block)

        if not blocks:
            if turn.role == "assistant":
                result.append(turn.with_content([TextBlock(text=PROCESSING_PLACEHOLDER)]))
            continue
        result.append(turn if len(blocks) == len(turn.content) else turn.with_content(blocks))

    if removed:
        logger.warning("Sanitizer removed %d unpaired tool block(s): %s", len(removed), removed)
    return result
