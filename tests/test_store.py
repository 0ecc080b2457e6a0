"""Tests for the in-memory and SQL history stores."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from colloquy.conversation.models import ImageBlock, TextBlock, ToolInvocationBlock, ToolResultBlock, Turn, assistant_turn, user_turn
from colloquy.conversation.store import SqlHistoryStore
from colloquy.errors import StoreError


def _sample_turns() -> list[Turn]:
    return [
        Turn(role="user", content=[ImageBlock(format="png", data=b"\x00\x01binary"), TextBlock(text="look")]),
        Turn(role="assistant", content=[TextBlock(text="Checking"), ToolInvocationBlock(id="t1", name="echo", input={"a": [1, 2]})]),
        Turn(role="user", content=[ToolResultBlock(id="t1", result="done", status="error")]),
        assistant_turn("All set."),
    ]


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_append_and_read_in_order(self, store):
        for turn in _sample_turns():
            await store.append("c1", turn)
        assert await store.read("c1") == _sample_turns()
        assert await store.read("other") == []

    @pytest.mark.asyncio
    async def test_read_returns_copy(self, store):
        await store.append("c1", user_turn("hi"))
        turns = await store.read("c1")
        turns.append(assistant_turn("injected"))
        assert await store.read("c1") == [user_turn("hi")]

    @pytest.mark.asyncio
    async def test_replace_all(self, store):
        await store.append("c1", user_turn("old"))
        await store.replace_all("c1", [user_turn("new"), assistant_turn("reply")])
        assert await store.read("c1") == [user_turn("new"), assistant_turn("reply")]

    @pytest.mark.asyncio
    async def test_delete_and_ids(self, store):
        await store.append("b", user_turn("x"))
        await store.append("a", user_turn("y"))
        assert await store.conversation_ids() == ["a", "b"]
        await store.delete("a")
        assert await store.conversation_ids() == ["b"]


class TestSqlStore:
    @pytest.mark.asyncio
    async def test_append_and_read_round_trip(self, sql_store):
        for turn in _sample_turns():
            await sql_store.append("c1", turn)
        assert await sql_store.read("c1") == _sample_turns()

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self, sql_store):
        await sql_store.append("c1", user_turn("one"))
        await sql_store.append("c2", user_turn("two"))
        assert await sql_store.read("c1") == [user_turn("one")]
        assert await sql_store.read("c2") == [user_turn("two")]
        assert await sql_store.conversation_ids() == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_replace_all_rewrites_positions(self, sql_store):
        for turn in _sample_turns():
            await sql_store.append("c1", turn)
        await sql_store.replace_all("c1", [user_turn("summary"), assistant_turn("ack")])
        await sql_store.append("c1", user_turn("next"))
        assert await sql_store.read("c1") == [user_turn("summary"), assistant_turn("ack"), user_turn("next")]

    @pytest.mark.asyncio
    async def test_shared_session(self, sql_store, database):
        async with database.session() as session:
            await sql_store.append("c1", user_turn("a"), session=session)
            await sql_store.append("c1", assistant_turn("b"), session=session)
            await session.commit()
        assert await sql_store.read("c1") == [user_turn("a"), assistant_turn("b")]

    @pytest.mark.asyncio
    async def test_delete(self, sql_store):
        await sql_store.append("c1", user_turn("a"))
        await sql_store.delete("c1")
        assert await sql_store.read("c1") == []

    @pytest.mark.asyncio
    async def test_write_failure_raises_store_error(self):
        db = MagicMock()
        db.session.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
        store = SqlHistoryStore(db)
        with pytest.raises(StoreError, match="append failed"):
            await store.append("c1", user_turn("a"))
        with pytest.raises(StoreError, match="replace_all failed"):
            await store.replace_all("c1", [])
        with pytest.raises(StoreError, match="delete failed"):
            await store.delete("c1")
        with pytest.raises(StoreError, match="listing conversations failed"):
            await store.conversation_ids()
