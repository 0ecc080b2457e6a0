"""Conversation core -- turns, durable log, repair, validation and windowing.

Public API:
    Turn, content blocks   - Message/content model
    HistoryStore           - Durable log protocol (in-memory and SQL implementations)
    sanitize, validate     - Repair then certify a transmission view
    WindowManager          - Summary-based transmission views
    DeduplicationGuard     - Single-flight lock and duplicate check
    rewind                 - Cut history for edit-and-resend
"""

from colloquy.conversation.dedup import DeduplicationGuard
from colloquy.conversation.editing import rewind
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
from colloquy.conversation.store import HistoryStore, InMemoryHistoryStore, SqlHistoryStore
from colloquy.conversation.validator import validate
from colloquy.conversation.window import WindowManager

__all__ = [
    "ContentBlock",
    "DeduplicationGuard",
    "DocumentBlock",
    "HistoryStore",
    "ImageBlock",
    "InMemoryHistoryStore",
    "ReasoningBlock",
    "SqlHistoryStore",
    "TextBlock",
    "ToolInvocationBlock",
    "ToolResultBlock",
    "Turn",
    "WindowManager",
    "assistant_turn",
    "rewind",
    "sanitize",
    "user_turn",
    "validate",
]
