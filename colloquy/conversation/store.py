"""Durable conversation log.

HistoryStore is the single source of truth the runner reads before
every round. Writes that fail raise StoreError. Reads that fail are
handled by the runner, which falls back to what the current cycle
appended.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.conversation.models import Turn
from colloquy.errors import StoreError
from colloquy.storage.database import Database
from colloquy.storage.models import ConversationTurn

logger = logging.getLogger(__name__)


class HistoryStore(Protocol):
    async def append(self, conversation_id: str, turn: Turn) -> None: ...

    async def replace_all(self, conversation_id: str, turns: list[Turn]) -> None: ...

    async def read(self, conversation_id: str) -> list[Turn]: ...

    async def delete(self, conversation_id: str) -> None: ...

    async def conversation_ids(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryHistoryStore:
    """Dict-of-lists store. Reads return copies so callers cannot mutate the log."""

    def __init__(self) -> None:
        self._logs: dict[str, list[Turn]] = {}

    async def append(self, conversation_id: str, turn: Turn) -> None:
        self._logs.setdefault(conversation_id, []).append(turn)

    async def replace_all(self, conversation_id: str, turns: list[Turn]) -> None:
        self._logs[conversation_id] = list(turns)

    async def read(self, conversation_id: str) -> list[Turn]:
        return list(self._logs.get(conversation_id, []))

    async def delete(self, conversation_id: str) -> None:
        self._logs.pop(conversation_id, None)

    async def conversation_ids(self) -> list[str]:
        return sorted(self._logs)


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


class SqlHistoryStore:
    """SQLAlchemy-backed store, one row per turn ordered by position.

    Methods accept an optional session so several writes can share a
    transaction; without one each call opens and commits its own.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def append(self, conversation_id: str, turn: Turn, session: AsyncSession | None = None) -> None:
        try:
            if session is None:
                async with self.db.session() as session:
                    await self._append(conversation_id, turn, session)
                    await session.commit()
                    return
            await self._append(conversation_id, turn, session)
        except SQLAlchemyError as e:
            logger.error("Failed to append turn to %s: %s", conversation_id, e)
            raise StoreError(f"append failed for {conversation_id}: {e}") from e

    async def _append(self, conversation_id: str, turn: Turn, session: AsyncSession) -> None:
        result = await session.execute(
            select(ConversationTurn.position)
            .where(ConversationTurn.conversation_id == conversation_id)
            .order_by(ConversationTurn.position.desc())
            .limit(1)
        )
        last = result.scalar_one_or_none()
        session.add(self._to_row(conversation_id, 0 if last is None else last + 1, turn))
        await session.flush()

    async def replace_all(self, conversation_id: str, turns: list[Turn], session: AsyncSession | None = None) -> None:
        try:
            if session is None:
                async with self.db.session() as session:
                    await self._replace_all(conversation_id, turns, session)
                    await session.commit()
                    return
            await self._replace_all(conversation_id, turns, session)
        except SQLAlchemyError as e:
            logger.error("Failed to replace history of %s: %s", conversation_id, e)
            raise StoreError(f"replace_all failed for {conversation_id}: {e}") from e

    async def _replace_all(self, conversation_id: str, turns: list[Turn], session: AsyncSession) -> None:
        await session.execute(delete(ConversationTurn).where(ConversationTurn.conversation_id == conversation_id))
        for position, turn in enumerate(turns):
            session.add(self._to_row(conversation_id, position, turn))
        await session.flush()

    async def read(self, conversation_id: str, session: AsyncSession | None = None) -> list[Turn]:
        if session is None:
            async with self.db.session() as session:
                return await self._read(conversation_id, session)
        return await self._read(conversation_id, session)

    async def _read(self, conversation_id: str, session: AsyncSession) -> list[Turn]:
        result = await session.execute(
            select(ConversationTurn.payload)
            .where(ConversationTurn.conversation_id == conversation_id)
            .order_by(ConversationTurn.position)
        )
        return [Turn.model_validate_json(payload) for payload in result.scalars()]

    async def delete(self, conversation_id: str) -> None:
        try:
            async with self.db.session() as session:
                await session.execute(delete(ConversationTurn).where(ConversationTurn.conversation_id == conversation_id))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to delete %s: %s", conversation_id, e)
            raise StoreError(f"delete failed for {conversation_id}: {e}") from e

    async def conversation_ids(self) -> list[str]:
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(ConversationTurn.conversation_id).distinct().order_by(ConversationTurn.conversation_id)
                )
                return list(result.scalars())
        except SQLAlchemyError as e:
            raise StoreError(f"listing conversations failed: {e}") from e

    @staticmethod
    def _to_row(conversation_id: str, position: int, turn: Turn) -> ConversationTurn:
        return ConversationTurn(
            conversation_id=conversation_id,
            position=position,
            role=turn.role,
            payload=turn.model_dump_json(),
        )
