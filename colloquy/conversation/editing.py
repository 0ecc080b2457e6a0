"""History rewinding and in-place edits."""

from __future__ import annotations

from colloquy.conversation.models import ContentBlock, TextBlock, ToolInvocationBlock, Turn


def rewind(turns: list[Turn], index: int) -> list[Turn]:
    """Return the turns before index without leaving a broken tool pair at the tail.

    Cutting between an invocation and its result would orphan the
    invocation, so trailing turns are dropped until the tail is clean.
    """
    kept = list(turns[: max(0, index)])
    while kept:
        tail = kept[-1]
        if tail.role == "assistant" and tail.invocations:
            kept.pop()
            continue
        if tail.role == "user" and tail.results:
            invoked = set(kept[-2].invocation_ids) if len(kept) > 1 else set()
            if not set(tail.result_ids) <= invoked:
                kept.pop()
                continue
        break
    return kept


def replace_text(turn: Turn, text: str) -> Turn:
    """Return turn with its text replaced by text.

    The new text takes the place of the first text block; other text
    blocks are dropped. Reasoning and tool blocks keep their order. A turn
    without text gets it ahead of its first tool invocation.
    """
    blocks: list[ContentBlock] = []
    placed = False
    for block in turn.content:
        if isinstance(block, TextBlock):
            if not placed:
                blocks.append(TextBlock(text=text))
                placed = True
            continue
        if isinstance(block, ToolInvocationBlock) and not placed:
            blocks.append(TextBlock(text=text))
            placed = True
        blocks.append(block)
    if not placed:
        blocks.append(TextBlock(text=text))
    return turn.with_content(blocks)
