"""Shared fixtures: scripted transport, tool dispatcher, stores, runner factory."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from colloquy.api.compaction import ConversationCompactor
from colloquy.api.notices import NoticeLog
from colloquy.api.runner import ConversationRunner
from colloquy.api.tools import ToolDispatcher
from colloquy.api.transport import Completion, StreamEvent
from colloquy.config import Settings
from colloquy.conversation.dedup import DeduplicationGuard
from colloquy.conversation.models import Turn
from colloquy.conversation.store import InMemoryHistoryStore, SqlHistoryStore
from colloquy.conversation.window import WindowManager
from colloquy.storage.database import Database

# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------


class FakeTransport:
    """Replays scripted streams in order and records every view it receives.

    A script is a list of StreamEvents; an Exception entry is raised at
    that point and an asyncio.Event entry blocks until it is set.
    """

    def __init__(self) -> None:
        self.scripts: list = []
        self.views: list[list[Turn]] = []
        self.tools_seen: list = []
        self.completions: list = []
        self.complete_calls: list[dict] = []
        self.repeat_last = False

    # -- scripting ---------------------------------------------------------

    def add_events(self, events: list) -> None:
        self.scripts.append(events)

    def add_text(self, text: str, reasoning: str = "", signature: str | None = None) -> None:
        events = []
        if reasoning:
            events.append(StreamEvent(type="reasoning_delta", text=reasoning))
        if signature:
            events.append(StreamEvent(type="reasoning_signature", text=signature))
        # split to exercise delta accumulation
        half = len(text) // 2
        for part in (text[:half], text[half:]):
            if part:
                events.append(StreamEvent(type="text_delta", text=part))
        events.append(StreamEvent(type="done", stop_reason="end_turn"))
        self.scripts.append(events)

    def add_tool_calls(self, calls: list[tuple[str, str, dict]], text: str = "") -> None:
        events = []
        if text:
            events.append(StreamEvent(type="text_delta", text=text))
        for index, (tool_id, name, tool_input) in enumerate(calls, start=1):
            raw = json.dumps(tool_input)
            events.append(StreamEvent(type="tool_call_start", tool_id=tool_id, tool_name=name, index=index))
            events.append(StreamEvent(type="tool_call_input_delta", text=raw[:3], index=index))
            events.append(StreamEvent(type="tool_call_input_delta", text=raw[3:], index=index))
            events.append(StreamEvent(type="tool_call_end", index=index))
        events.append(StreamEvent(type="done", stop_reason="tool_use"))
        self.scripts.append(events)

    def add_error(self, exc: Exception) -> None:
        self.scripts.append([exc])

    # -- Transport protocol -----------------------------------------------

    async def stream_completion(self, turns, system_prompt=None, tools=None):
        self.views.append(list(turns))
        self.tools_seen.append(tools)
        if not self.scripts:
            raise AssertionError("FakeTransport ran out of scripted responses")
        if self.repeat_last and len(self.scripts) == 1:
            script = self.scripts[0]
        else:
            script = self.scripts.pop(0)
        for entry in script:
            if isinstance(entry, Exception):
                raise entry
            if isinstance(entry, asyncio.Event):
                await entry.wait()
                continue
            yield entry

    async def complete(self, turns, system_prompt=None, tools=None, model=None):
        self.complete_calls.append({"turns": list(turns), "system_prompt": system_prompt, "model": model})
        if self.completions:
            item = self.completions.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return Completion(text="Condensed summary of the earlier turns.")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Settings and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        max_tool_rounds=5,
        retry_backoff_seconds=0.0,
        builtin_tools_enabled=False,
        workspace_dir=str(tmp_path / "workspace"),
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture
def notices() -> NoticeLog:
    return NoticeLog()


@pytest.fixture
def guard(clock) -> DeduplicationGuard:
    return DeduplicationGuard(window_seconds=2.0, clock=clock)


@pytest.fixture
def tool_gate() -> asyncio.Event:
    """Released by tests that need a tool call to block."""
    return asyncio.Event()


@pytest.fixture
def dispatcher(tool_gate) -> ToolDispatcher:
    """ToolDispatcher with echo, failing and blocking tools registered."""
    dispatcher = ToolDispatcher()

    async def echo(message: str = "default") -> dict:
        return {"content": [{"type": "text", "text": f"Echo: {message}"}]}

    async def explode(**kwargs) -> dict:
        raise RuntimeError("disk on fire")

    async def wait_for_gate() -> str:
        await tool_gate.wait()
        return "gate released"

    dispatcher.register("echo", echo, {
        "type": "object",
        "description": "Echo tool",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    })
    dispatcher.register("explode", explode, {"type": "object", "description": "Always fails", "properties": {}})
    dispatcher.register("wait", wait_for_gate, {"type": "object", "description": "Blocks", "properties": {}})
    return dispatcher


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def make_runner(settings, store, transport, dispatcher, guard, notices, sleep):
    """Build a ConversationRunner; keyword overrides replace settings fields."""

    def _make(**overrides) -> ConversationRunner:
        run_settings = settings.model_copy(update=overrides) if overrides else settings
        window = WindowManager(run_settings, transport)
        return ConversationRunner(run_settings, store, transport, dispatcher, window, guard, notices, sleep=sleep)

    return _make


@pytest.fixture
def runner(make_runner) -> ConversationRunner:
    return make_runner()


@pytest.fixture
def compactor(settings, store, transport, guard) -> ConversationCompactor:
    return ConversationCompactor(settings, store, transport, guard)


@pytest_asyncio.fixture
async def database(settings):
    """SQLite database under tmp_path with tables created."""
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def sql_store(database) -> SqlHistoryStore:
    return SqlHistoryStore(database)
