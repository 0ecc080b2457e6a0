"""Explicit, user-invoked rewrites of durable history.

Unlike the WindowManager, which only shapes what is sent, these two
operations replace the stored conversation:

  organize()            - whole history -> summary prefix (LLM-powered)
  optimize_for_cache()  - keep the newest turns within a token target,
                          summarize the rest and shrink bulky blocks

Both hold the conversation's single-flight lock while they run.
"""

from __future__ import annotations

import logging
import time

from colloquy.config import Settings
from colloquy.conversation.dedup import DeduplicationGuard
from colloquy.conversation.json_values import simplify_json
from colloquy.conversation.models import (
    ContentBlock,
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
from colloquy.conversation.sanitizer import sanitize
from colloquy.conversation.store import HistoryStore
from colloquy.conversation.window import (
    SummaryCaller,
    estimate_turn,
    placeholder_summary,
    serialize_for_summary,
)
from colloquy.errors import CompactionError

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"
SUMMARY_ACK = "I have the context. Let's continue."

ORGANIZE_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.

## Goal
[1-2 sentences]

## Key Decisions
- **[Decision]**: [Rationale]

## Progress
- [Completed and in-progress items]

## Critical Context
- [File paths, error messages, names, numbers]

## Open Questions
- [Unresolved items]
"""

# Caps applied to kept turns when optimizing for cache
MAX_TEXT_CHARS = 10_000
MAX_REASONING_CHARS = 5_000
MAX_TOOL_RESULT_CHARS = 2_000
TRUNCATION_MARKER = "\n[...truncated]"


class ConversationCompactor:
    """Rewrites a conversation's durable log on request."""

    def __init__(
        self,
        settings: Settings,
        store: HistoryStore,
        caller: SummaryCaller,
        guard: DeduplicationGuard,
    ) -> None:
        self._settings = settings
        self._store = store
        self._caller = caller
        self._guard = guard

    # ------------------------------------------------------------------
    # Organize
    # ------------------------------------------------------------------

    async def organize(self, conversation_id: str) -> list[Turn]:
        """Replace the whole history with a two-turn summary prefix.

        Raises CompactionError and leaves history untouched when the
        summary cannot be produced.
        """
        async with self._guard.exclusive(conversation_id):
            history = await self._store.read(conversation_id)
            if not history:
                raise CompactionError(f"Conversation {conversation_id} has no history to organize")

            start_time = time.monotonic()
            try:
                summary = await self._summarize(history)
            except Exception as e:
                logger.error("Organize failed for %s: %s", conversation_id, e)
                raise CompactionError(f"Summary request failed: {e}") from e
            if not summary:
                raise CompactionError("Summary came back empty")

            compacted = self.summary_prefix(summary)
            await self._store.replace_all(conversation_id, compacted)
            logger.info(
                "Organized conversation %s: %d turns -> summary (%d chars, %d ms)",
                conversation_id,
                len(history),
                len(summary),
                int((time.monotonic() - start_time) * 1000),
            )
            return compacted

    # ------------------------------------------------------------------
    # Optimize for cache
    # ------------------------------------------------------------------

    async def optimize_for_cache(self, conversation_id: str) -> list[Turn]:
        """Keep the newest turns within cache_target_tokens, summarize the rest."""
        async with self._guard.exclusive(conversation_id):
            history = await self._store.read(conversation_id)
            if not history:
                return []

            cut = self.find_cut_point(history, self._settings.cache_target_tokens)
            older, kept = history[:cut], history[cut:]
            kept = [self.shrink_turn(t) for t in kept]

            prefix: list[Turn] = []
            if older:
                try:
                    summary = await self._summarize(older)
                except Exception as e:
                    logger.warning("Cache optimization summary failed for %s: %s", conversation_id, e)
                    summary = ""
                prefix = self.summary_prefix(summary or placeholder_summary(len(older)))

            optimized = sanitize(prefix + kept)
            await self._store.replace_all(conversation_id, optimized)
            logger.info(
                "Optimized conversation %s for cache: %d turns -> %d (%d summarized)",
                conversation_id,
                len(history),
                len(optimized),
                len(older),
            )
            return optimized

    @staticmethod
    def find_cut_point(turns: list[Turn], target_tokens: int) -> int:
        """Index of the first kept turn.

        Walks back from the newest turn while the total fits target_tokens
        (always keeping at least one), then moves forward until the kept run
        starts with a plain user turn so no tool pair is split. Returns 0 when
        everything fits or no such boundary exists.
        """
        accumulated = 0
        cut = len(turns)
        for i in range(len(turns) - 1, -1, -1):
            accumulated += estimate_turn(turns[i])
            if accumulated > target_tokens and cut < len(turns):
                break
            cut = i
        if cut == 0:
            return 0
        for j in range(cut, len(turns)):
            if turns[j].role == "user" and not turns[j].results:
                return j
        return 0

    @staticmethod
    def shrink_turn(turn: Turn) -> Turn:
        """Cap bulky blocks and replace binary payloads with text markers."""
        blocks: list[ContentBlock] = []
        for block in turn.content:
            if isinstance(block, TextBlock):
                blocks.append(TextBlock(text=_truncate(block.text, MAX_TEXT_CHARS)))
            elif isinstance(block, ReasoningBlock):
                # Truncated reasoning would no longer match its signature
                text = _truncate(block.text, MAX_REASONING_CHARS)
                signature = block.signature if text == block.text else None
                blocks.append(ReasoningBlock(text=text, signature=signature))
            elif isinstance(block, ImageBlock):
                blocks.append(TextBlock(text="[Image was attached]"))
            elif isinstance(block, DocumentBlock):
                blocks.append(TextBlock(text=f"[Document: {block.name}]"))
            elif isinstance(block, ToolInvocationBlock):
                blocks.append(ToolInvocationBlock(id=block.id, name=block.name, input=simplify_json(block.input)))
            elif isinstance(block, ToolResultBlock):
                blocks.append(
                    ToolResultBlock(id=block.id, result=_truncate(block.result, MAX_TOOL_RESULT_CHARS), status=block.status)
                )
            else:
                blocks.append(block)
        return turn.with_content(blocks)

    @staticmethod
    def summary_prefix(summary: str) -> list[Turn]:
        return [
            user_turn(f"{SUMMARY_PREFIX}\n\n{summary}"),
            assistant_turn(SUMMARY_ACK),
        ]

    async def _summarize(self, turns: list[Turn]) -> str:
        completion = await self._caller.complete(
            [user_turn(serialize_for_summary(turns))],
            system_prompt=ORGANIZE_SYSTEM_PROMPT,
            model=self._settings.effective_summary_model,
        )
        return completion.text.strip()


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER
