"""Exception hierarchy shared by the conversation core and the API layer."""

from __future__ import annotations


class ColloquyError(Exception):
    """Base class for all errors raised by colloquy."""


class StructuralError(ColloquyError):
    """A transmission view violates the message protocol.

    Carries the offending tool ids and turn positions so the failure
    can be surfaced without re-running the validator.
    """

    def __init__(
        self,
        message: str,
        positions: list[int] | None = None,
        tool_ids: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.positions = positions or []
        self.tool_ids = tool_ids or []


class StoreError(ColloquyError):
    """Durable history could not be written."""


class TransportError(ColloquyError):
    """Completion request failed (HTTP error, in-stream error, bad payload)."""


class TransportTimeout(TransportError):
    """Completion request timed out. The only transport failure that is retried."""


class SubmissionRejected(ColloquyError):
    """A submission was refused by the deduplication guard.

    reason is "in_flight" when a cycle is already running for the
    conversation, "duplicate" for a resend of the same text inside the
    duplicate window.
    """

    def __init__(self, conversation_id: str, reason: str) -> None:
        super().__init__(f"Submission rejected for {conversation_id}: {reason}")
        self.conversation_id = conversation_id
        self.reason = reason


class CompactionError(ColloquyError):
    """An explicit organize/optimize request could not produce a summary."""


class EditError(ColloquyError):
    """A history edit targets a turn that does not exist or cannot be edited."""
