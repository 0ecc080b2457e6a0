"""Conversation runner -- the multi-round streaming and tool-invocation cycle.

Every round re-reads durable history, derives a transmission view
(window -> sanitize -> validate), streams a completion and either
finishes or executes the requested tools and goes around again. Only
complete invocation/result pairs and final answers reach durable history;
failures become UI notices.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from colloquy.api.notices import FailureKind, NoticeLog
from colloquy.api.tools import ToolExecution
from colloquy.api.transport import Completion, StreamEvent, Transport
from colloquy.config import Settings
from colloquy.conversation.dedup import DeduplicationGuard
from colloquy.conversation.editing import replace_text, rewind
from colloquy.conversation.models import (
    ContentBlock,
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
from colloquy.conversation.validator import validate
from colloquy.conversation.window import WindowManager
from colloquy.errors import EditError, StoreError, StructuralError, TransportError, TransportTimeout

logger = logging.getLogger(__name__)

CycleStatus = Literal["completed", "max_rounds", "fatal"]

TOOL_PREAMBLE = "I'll help you with that."
EMPTY_RESPONSE = "(empty response)"
INTERRUPTED_BRIDGE = "[The previous response was interrupted.]"

TITLE_PROMPT = (
    "Write a short title (at most 6 words) for a conversation that starts "
    "with the message below. Reply with the title only, no quotes.\n\n{text}"
)


class ToolExecutor(Protocol):
    async def execute(self, tool_id: str, name: str, tool_input: Any) -> ToolExecution: ...

    def tool_definitions(self) -> list[dict[str, Any]]: ...


@dataclass
class CycleResult:
    """Terminal state of one submission."""

    status: CycleStatus
    rounds: int = 0
    text: str = ""
    appended: list[Turn] = field(default_factory=list)
    failure: FailureKind | None = None
    message: str | None = None


@dataclass
class ChatEvent:
    """Event re-emitted to the caller while a cycle runs."""

    type: str  # text_delta, reasoning_delta, tool_start, tool_end, round_restart, done
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    status: str = ""
    round: int = 0
    result: CycleResult | None = None


@dataclass
class _ToolCall:
    id: str
    name: str
    input_parts: list[str] = field(default_factory=list)
    input: Any = None


class _RoundAccumulator:
    """Pure accumulation of one streamed completion."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.text_parts: list[str] = []
        self.reasoning_parts: list[str] = []
        self.signature: str | None = None
        self.stop_reason = ""
        self.tool_calls: list[_ToolCall] = []
        self._open: dict[int, _ToolCall] = {}

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def reasoning(self) -> str:
        return "".join(self.reasoning_parts)

    def feed(self, event: StreamEvent) -> None:
        if event.type == "text_delta":
            self.text_parts.append(event.text)
        elif event.type == "reasoning_delta":
            self.reasoning_parts.append(event.text)
        elif event.type == "reasoning_signature":
            self.signature = (self.signature or "") + event.text
        elif event.type == "tool_call_start":
            self._open[event.index] = _ToolCall(id=event.tool_id, name=event.tool_name)
        elif event.type == "tool_call_input_delta":
            call = self._open.get(event.index)
            if call:
                call.input_parts.append(event.text)
        elif event.type == "tool_call_end":
            call = self._open.pop(event.index, None)
            if call:
                self._close(call)
        elif event.type == "done":
            self.stop_reason = event.stop_reason

    def finish(self) -> None:
        """Close tool calls the stream never ended explicitly."""
        for index in sorted(self._open):
            self._close(self._open[index])
        self._open.clear()

    @staticmethod
    def _parse_input(call: _ToolCall) -> Any:
        raw = "".join(call.input_parts)
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON input for tool %s (%s), using {}", call.name, call.id)
            return {}

    def _close(self, call: _ToolCall) -> None:
        call.input = self._parse_input(call)
        self.tool_calls.append(call)

    def reasoning_block(self) -> ReasoningBlock | None:
        if not self.reasoning:
            return None
        return ReasoningBlock(text=self.reasoning, signature=self.signature)


class _Fatal(Exception):
    """Internal: aborts a cycle with a failure kind."""

    def __init__(self, kind: FailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class ConversationRunner:
    """Runs submissions against durable history with a tool loop.

    Collaborators are injected; the sleep callable exists so tests can
    skip the retry backoff.
    """

    def __init__(
        self,
        settings: Settings,
        store: HistoryStore,
        transport: Transport,
        tools: ToolExecutor,
        window: WindowManager,
        guard: DeduplicationGuard,
        notices: NoticeLog,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._store = store
        self._transport = transport
        self._tools = tools
        self._window = window
        self._guard = guard
        self._notices = notices
        self._sleep = sleep
        self._orphaned_tool_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def stream_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: list[ContentBlock] | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Submit a user message and yield events until the cycle ends.

        The last event is always type "done" carrying the CycleResult.
        Raises SubmissionRejected before any event when the guard refuses.
        """
        async with self._guard.submission(conversation_id, text):
            async for event in self._cycle(conversation_id, self._user_turn(text, attachments)):
                yield event

    async def run_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: list[ContentBlock] | None = None,
    ) -> CycleResult:
        """Submit a user message and wait for the terminal state."""
        return await self._drain(self.stream_turn(conversation_id, text, attachments))

    async def edit_and_resend(
        self,
        conversation_id: str,
        index: int,
        text: str,
        attachments: list[ContentBlock] | None = None,
    ) -> CycleResult:
        """Rewind history to before index and run a new cycle with the edited message."""
        async with self._guard.exclusive(conversation_id):
            try:
                history = await self._store.read(conversation_id)
            except Exception as e:
                return self._fail(conversation_id, _Fatal("store", f"History read failed: {e}"), 0, [])
            kept = rewind(history, index)
            logger.info(
                "Edit in %s at turn %d: keeping %d of %d turns",
                conversation_id,
                index,
                len(kept),
                len(history),
            )
            try:
                await self._store.replace_all(conversation_id, kept)
            except StoreError as e:
                return self._fail(conversation_id, _Fatal("store", str(e)), 0, [])
            return await self._drain(self._cycle(conversation_id, self._user_turn(text, attachments)))

    async def delete_from(self, conversation_id: str, index: int) -> list[Turn]:
        """Delete the turn at index and everything after it. Returns the kept turns."""
        async with self._guard.exclusive(conversation_id):
            history = await self._read_for_edit(conversation_id)
            kept = rewind(history, index)
            await self._store.replace_all(conversation_id, kept)
            logger.info("Deleted %d turn(s) of %s from turn %d", len(history) - len(kept), conversation_id, index)
            return kept

    async def edit_assistant_text(self, conversation_id: str, index: int, text: str) -> list[Turn]:
        """Replace the text of the assistant turn at index in place."""
        async with self._guard.exclusive(conversation_id):
            history = await self._read_for_edit(conversation_id)
            if not 0 <= index < len(history):
                raise EditError(f"No turn {index} in {conversation_id}")
            if history[index].role != "assistant":
                raise EditError(f"Turn {index} of {conversation_id} is not an assistant turn")
            if not text.strip():
                raise EditError("Edited text is empty")
            history[index] = replace_text(history[index], text)
            await self._store.replace_all(conversation_id, history)
            logger.info("Edited assistant turn %d of %s", index, conversation_id)
            return history

    async def complete_turn(self, conversation_id: str, text: str) -> CycleResult:
        """Non-streaming submission: one completion, no tools."""
        async with self._guard.submission(conversation_id, text):
            appended: list[Turn] = []
            user_message = self._user_turn(text, None)
            try:
                await self._append_user(conversation_id, user_message, appended)
                view = await self._certified_view(conversation_id, appended or [user_message])
                completion = await self._complete_with_retry(view)
                final = self._final_turn(completion.text, self._completion_reasoning(completion))
                await self._append(conversation_id, final, appended)
            except _Fatal as fatal:
                return self._fail(conversation_id, fatal, 0, appended)
            return CycleResult(status="completed", text=final.text(), appended=appended)

    async def suggest_title(self, text: str) -> str:
        """Short title for a conversation; falls back to its first five words."""
        fallback = " ".join(text.split()[:5])
        try:
            completion = await self._transport.complete(
                [user_turn(TITLE_PROMPT.format(text=text[:2000]))],
                model=self._settings.effective_summary_model,
            )
        except TransportError as e:
            logger.warning("Title generation failed, using fallback: %s", e)
            return fallback
        title = completion.text.strip().strip("\"'").strip()
        return title or fallback

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _cycle(self, conversation_id: str, turn: Turn) -> AsyncIterator[ChatEvent]:
        appended: list[Turn] = []
        rounds = 0
        tools = self._tools.tool_definitions() or None
        try:
            await self._append_user(conversation_id, turn, appended)

            while True:
                view = await self._certified_view(conversation_id, appended or [turn])

                acc = _RoundAccumulator()
                async for event in self._stream_round(view, tools, acc, rounds):
                    yield event

                if not acc.tool_calls:
                    final = self._final_turn(acc.text, acc.reasoning_block())
                    await self._append(conversation_id, final, appended)
                    result = CycleResult(status="completed", rounds=rounds, text=final.text(), appended=appended)
                    logger.info("Cycle for %s completed after %d tool round(s)", conversation_id, rounds)
                    yield ChatEvent(type="done", status=result.status, round=rounds, result=result)
                    return

                for call in acc.tool_calls:
                    yield ChatEvent(type="tool_start", tool_id=call.id, tool_name=call.name, round=rounds)
                executions = await self._execute_tools(acc.tool_calls)
                for call, execution in zip(acc.tool_calls, executions):
                    yield ChatEvent(
                        type="tool_end",
                        tool_id=call.id,
                        tool_name=call.name,
                        status=execution.status,
                        text=execution.result_text,
                        round=rounds,
                    )

                await self._append(conversation_id, self._invocation_turn(acc), appended)
                await self._append(
                    conversation_id,
                    Turn(
                        role="user",
                        content=tuple(
                            ToolResultBlock(id=call.id, result=execution.result_text, status=execution.status)
                            for call, execution in zip(acc.tool_calls, executions)
                        ),
                    ),
                    appended,
                )
                rounds += 1

                if rounds >= self._settings.max_tool_rounds:
                    logger.warning(
                        "Cycle for %s reached max_tool_rounds=%d",
                        conversation_id,
                        self._settings.max_tool_rounds,
                    )
                    result = CycleResult(status="max_rounds", rounds=rounds, text=acc.text, appended=appended)
                    yield ChatEvent(type="done", status=result.status, round=rounds, result=result)
                    return

        except _Fatal as fatal:
            result = self._fail(conversation_id, fatal, rounds, appended)
            yield ChatEvent(type="done", status=result.status, text=result.message or "", round=rounds, result=result)

    async def _stream_round(
        self,
        view: list[Turn],
        tools: list[dict[str, Any]] | None,
        acc: _RoundAccumulator,
        round_number: int,
    ) -> AsyncIterator[ChatEvent]:
        """Stream one completion into acc. A timeout restarts the round once."""
        attempt = 0
        while True:
            try:
                async for event in self._transport.stream_completion(view, tools=tools):
                    acc.feed(event)
                    if event.type == "text_delta":
                        yield ChatEvent(type="text_delta", text=event.text, round=round_number)
                    elif event.type == "reasoning_delta":
                        yield ChatEvent(type="reasoning_delta", text=event.text, round=round_number)
                acc.finish()
                return
            except TransportTimeout as e:
                attempt += 1
                if attempt > 1:
                    raise _Fatal("timeout", f"Request timed out twice: {e}") from e
                logger.warning(
                    "Stream timed out in round %d, retrying in %.1fs: %s",
                    round_number,
                    self._settings.retry_backoff_seconds,
                    e,
                )
                acc.reset()
                yield ChatEvent(type="round_restart", text=str(e), round=round_number)
                await self._sleep(self._settings.retry_backoff_seconds)
            except TransportError as e:
                raise _Fatal("transport", str(e)) from e

    async def _complete_with_retry(self, view: list[Turn]) -> Completion:
        for attempt in range(2):
            try:
                return await self._transport.complete(view)
            except TransportTimeout as e:
                if attempt == 1:
                    raise _Fatal("timeout", f"Request timed out twice: {e}") from e
                logger.warning("Completion timed out, retrying in %.1fs", self._settings.retry_backoff_seconds)
                await self._sleep(self._settings.retry_backoff_seconds)
            except TransportError as e:
                raise _Fatal("transport", str(e)) from e
        raise _Fatal("transport", "Completion failed")

    async def _execute_tools(self, calls: list[_ToolCall]) -> list[ToolExecution]:
        """Run every call of the round.

        The work runs in its own task awaited through a shield: if the
        cycle is cancelled the tools keep running, and their results are
        dropped instead of being appended.
        """

        async def run_all() -> list[ToolExecution]:
            executions = []
            for call in calls:
                try:
                    execution = await self._tools.execute(call.id, call.name, call.input)
                except Exception as e:
                    logger.exception("Tool %s (%s) raised", call.name, call.id)
                    execution = ToolExecution(status="error", result_text=f"Tool error: {e}", error=str(e))
                executions.append(execution)
            return executions

        task = asyncio.ensure_future(run_all())
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.info("Cycle cancelled during tool execution; %d result(s) will be discarded", len(calls))
            self._orphaned_tool_tasks.add(task)
            task.add_done_callback(self._orphaned_tool_tasks.discard)
            raise

    # ------------------------------------------------------------------
    # Durable history
    # ------------------------------------------------------------------

    async def _read_history(self, conversation_id: str, fallback: list[Turn] | None = None) -> list[Turn]:
        """Read durable history. A failed read counts as a new conversation.

        Inside a cycle the fallback is what this cycle appended, so the
        submitted message is still sent.
        """
        try:
            return await self._store.read(conversation_id)
        except Exception as e:
            logger.warning("History read failed for %s, treating as new conversation: %s", conversation_id, e)
            return list(fallback or [])

    async def _read_for_edit(self, conversation_id: str) -> list[Turn]:
        # Editing from a failed read would overwrite the log with nothing
        try:
            return await self._store.read(conversation_id)
        except Exception as e:
            raise StoreError(f"History read failed for {conversation_id}: {e}") from e

    async def _append(self, conversation_id: str, turn: Turn, appended: list[Turn]) -> None:
        try:
            await self._store.append(conversation_id, turn)
        except StoreError as e:
            raise _Fatal("store", str(e)) from e
        appended.append(turn)

    async def _append_user(self, conversation_id: str, turn: Turn, appended: list[Turn]) -> None:
        """Append the user turn, skipping a resend and bridging an interrupted cycle."""
        history = await self._read_history(conversation_id)
        last = history[-1] if history else None
        if last is not None and last.role == "user":
            text = turn.text().strip()
            if text and not last.has_tool_blocks and last.text().strip() == text:
                logger.info("Last turn of %s already holds this message, not appending", conversation_id)
                return
            logger.info("Previous cycle of %s was interrupted, appending bridge turn", conversation_id)
            await self._append(conversation_id, assistant_turn(INTERRUPTED_BRIDGE), appended)
        await self._append(conversation_id, turn, appended)

    async def _certified_view(self, conversation_id: str, fallback: list[Turn]) -> list[Turn]:
        history = await self._read_history(conversation_id, fallback)
        view = sanitize(await self._window.transmission_view(history))
        try:
            validate(view)
        except StructuralError as e:
            logger.error(
                "Structural error in view for %s (ids=%s, positions=%s): %s",
                conversation_id,
                e.tool_ids,
                e.positions,
                e,
            )
            raise _Fatal("structural", str(e)) from e
        return view

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _user_turn(text: str, attachments: list[ContentBlock] | None) -> Turn:
        blocks: list[ContentBlock] = list(attachments or [])
        if text or not blocks:
            blocks.append(TextBlock(text=text))
        return Turn(role="user", content=tuple(blocks))

    @staticmethod
    def _invocation_turn(acc: _RoundAccumulator) -> Turn:
        blocks: list[ContentBlock] = []
        reasoning = acc.reasoning_block()
        if reasoning:
            blocks.append(reasoning)
        blocks.append(TextBlock(text=acc.text or TOOL_PREAMBLE))
        blocks.extend(ToolInvocationBlock(id=c.id, name=c.name, input=c.input) for c in acc.tool_calls)
        return Turn(role="assistant", content=tuple(blocks))

    @staticmethod
    def _final_turn(text: str, reasoning: ReasoningBlock | None) -> Turn:
        blocks: list[ContentBlock] = []
        if reasoning:
            blocks.append(reasoning)
        blocks.append(TextBlock(text=text or EMPTY_RESPONSE))
        return Turn(role="assistant", content=tuple(blocks))

    @staticmethod
    def _completion_reasoning(completion: Completion) -> ReasoningBlock | None:
        if not completion.reasoning:
            return None
        return ReasoningBlock(text=completion.reasoning, signature=completion.signature)

    def _fail(self, conversation_id: str, fatal: _Fatal, rounds: int, appended: list[Turn]) -> CycleResult:
        logger.error("Cycle for %s failed (%s): %s", conversation_id, fatal.kind, fatal.message)
        self._notices.add(conversation_id, fatal.kind, fatal.message)
        return CycleResult(
            status="fatal",
            rounds=rounds,
            appended=appended,
            failure=fatal.kind,
            message=fatal.message,
        )

    @staticmethod
    async def _drain(events: AsyncIterator[ChatEvent]) -> CycleResult:
        result: CycleResult | None = None
        async for event in events:
            if event.type == "done":
                result = event.result
        if result is None:
            raise RuntimeError("Cycle ended without a result")
        return result
