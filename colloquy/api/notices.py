"""UI-visible system notices.

Fatal cycle errors are reported here, never in durable history, so they
cannot leak into what is sent to the model.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

logger = logging.getLogger(__name__)

FailureKind = Literal["timeout", "structural", "transport", "store"]

MAX_NOTICES_PER_CONVERSATION = 50


@dataclass
class SystemNotice:
    """A failure shown to the user next to the conversation."""

    kind: FailureKind
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message, "created_at": self.created_at.isoformat()}


class NoticeLog:
    """In-memory, bounded notice history per conversation."""

    def __init__(self, max_per_conversation: int = MAX_NOTICES_PER_CONVERSATION) -> None:
        self._max = max_per_conversation
        self._notices: dict[str, deque[SystemNotice]] = {}

    def add(self, conversation_id: str, kind: FailureKind, message: str) -> SystemNotice:
        notice = SystemNotice(kind=kind, message=message)
        self._notices.setdefault(conversation_id, deque(maxlen=self._max)).append(notice)
        logger.info("Notice for %s: [%s] %s", conversation_id, kind, message)
        return notice

    def list(self, conversation_id: str) -> list[SystemNotice]:
        return list(self._notices.get(conversation_id, ()))

    def clear(self, conversation_id: str) -> None:
        self._notices.pop(conversation_id, None)
