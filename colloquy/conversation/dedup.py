"""Per-conversation single-flight lock and duplicate-submission check.

A second submission while a cycle is running is rejected, never queued.
A resend of the same text shortly after an accepted one is rejected too.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from colloquy.errors import SubmissionRejected

logger = logging.getLogger(__name__)


class DeduplicationGuard:
    """Wraps the runner entry point for one process.

    The clock is injectable so tests can step time without sleeping.
    """

    def __init__(self, window_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._window = window_seconds
        self._clock = clock
        self._in_flight: set[str] = set()
        self._last_accepted: dict[str, tuple[str, float]] = {}

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    def check(self, conversation_id: str, text: str) -> None:
        """Raise SubmissionRejected if text may not be submitted right now."""
        if conversation_id in self._in_flight:
            logger.info("Rejected submission for %s: cycle in flight", conversation_id)
            raise SubmissionRejected(conversation_id, "in_flight")

        self._prune()
        last = self._last_accepted.get(conversation_id)
        normalized = text.strip()
        if last is not None:
            last_text, accepted_at = last
            if normalized == last_text and self._clock() - accepted_at < self._window:
                logger.info("Rejected duplicate submission for %s", conversation_id)
                raise SubmissionRejected(conversation_id, "duplicate")

    def forget(self, conversation_id: str) -> None:
        """Drop the duplicate record of a deleted conversation."""
        self._last_accepted.pop(conversation_id, None)

    def _prune(self) -> None:
        now = self._clock()
        expired = [cid for cid, (_, accepted_at) in self._last_accepted.items() if now - accepted_at >= self._window]
        for cid in expired:
            del self._last_accepted[cid]

    @asynccontextmanager
    async def submission(self, conversation_id: str, text: str) -> AsyncIterator[None]:
        """Hold the conversation for one send; rejects in-flight and duplicate sends."""
        self.check(conversation_id, text)
        self._last_accepted[conversation_id] = (text.strip(), self._clock())
        self._in_flight.add(conversation_id)
        try:
            yield
        finally:
            self._in_flight.discard(conversation_id)

    @asynccontextmanager
    async def exclusive(self, conversation_id: str) -> AsyncIterator[None]:
        """Hold the conversation without the duplicate check (compaction, edit)."""
        if conversation_id in self._in_flight:
            logger.info("Rejected exclusive operation for %s: cycle in flight", conversation_id)
            raise SubmissionRejected(conversation_id, "in_flight")
        self._in_flight.add(conversation_id)
        try:
            yield
        finally:
            self._in_flight.discard(conversation_id)
