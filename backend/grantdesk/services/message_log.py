"""
GrantDesk Backend: Message Log
===============================

What:  Append-only, totally ordered record of chat messages.
How:   Two implementations behind one async interface:
         - InMemoryMessageLog: a Python list; lost on restart
         - DatabaseMessageLog: one row per message in `chat_messages`,
           ordered by an autoincrement sequence
Who:   RelayService appends inside its critical section and reads for
       history replay and conversation queries.

Invariants:
    - append() is the only mutation; entries are never edited or removed
    - every read returns messages in ascending append order
    - reads return copies; callers cannot reorder the log
"""

import logging
from abc import ABC, abstractmethod
from datetime import timezone
from typing import List, Optional

from sqlalchemy import and_, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grantdesk.database import session_scope
from grantdesk.exceptions import MessageStoreError
from grantdesk.models.chat_message import ChatMessageRecord
from grantdesk.schemas.chat import ChatMessage

logger = logging.getLogger(__name__)


class MessageLog(ABC):
    """Interface shared by the in-memory and database-backed logs."""

    name: str = "abstract"

    @abstractmethod
    async def append(self, message: ChatMessage) -> None:
        """Persist `message` at the end of the log."""

    @abstractmethod
    async def all(self) -> List[ChatMessage]:
        """Every message, oldest first."""

    @abstractmethod
    async def for_participant(self, identifier: str) -> List[ChatMessage]:
        """Messages sent by or addressed to `identifier`, oldest first."""

    @abstractmethod
    async def conversation(self, first: str, second: str) -> List[ChatMessage]:
        """Messages exchanged between `first` and `second` in either direction."""

    @abstractmethod
    async def count(self) -> int:
        """Number of messages in the log."""

    async def health_check(self) -> bool:
        """Whether the backing store is reachable."""
        return True


class InMemoryMessageLog(MessageLog):
    """List-backed log; the reference behaviour of the relay."""

    name = "memory"

    def __init__(self) -> None:
        self._messages: List[ChatMessage] = []

    async def append(self, message: ChatMessage) -> None:
        self._messages.append(message)

    async def all(self) -> List[ChatMessage]:
        return list(self._messages)

    async def for_participant(self, identifier: str) -> List[ChatMessage]:
        return [m for m in self._messages if m.involves(identifier)]

    async def conversation(self, first: str, second: str) -> List[ChatMessage]:
        return [m for m in self._messages if m.between(first, second)]

    async def count(self) -> int:
        return len(self._messages)


class DatabaseMessageLog(MessageLog):
    """
    SQLAlchemy-backed log.

    Each append runs in its own transaction and has committed by the time
    append() returns, so a message is durable before it is delivered.

    Error Handling:
        Driver and connection errors are logged with context and re-raised
        as MessageStoreError, whose client-facing message is generic.
    """

    name = "database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(self, message: ChatMessage) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                session.add(
                    ChatMessageRecord(
                        id=message.id,
                        sender_id=message.sender_id,
                        sender_role=message.sender_role.value,
                        body=message.body,
                        target_id=message.target_id,
                        created_at=message.created_at,
                    )
                )
        except Exception as e:
            logger.error("Failed to append message %s: %s", message.id, str(e), exc_info=True)
            raise MessageStoreError(
                context={"message_id": message.id, "error_type": type(e).__name__},
            )

    async def all(self) -> List[ChatMessage]:
        return await self._select()

    async def for_participant(self, identifier: str) -> List[ChatMessage]:
        return await self._select(
            or_(
                ChatMessageRecord.sender_id == identifier,
                ChatMessageRecord.target_id == identifier,
            )
        )

    async def conversation(self, first: str, second: str) -> List[ChatMessage]:
        return await self._select(
            or_(
                and_(ChatMessageRecord.sender_id == first, ChatMessageRecord.target_id == second),
                and_(ChatMessageRecord.sender_id == second, ChatMessageRecord.target_id == first),
            )
        )

    async def count(self) -> int:
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(select(func.count(ChatMessageRecord.seq)))
                return result.scalar() or 0
        except Exception as e:
            logger.error("Failed to count messages: %s", str(e))
            raise MessageStoreError(
                message="Message history is temporarily unavailable.",
                context={"error_type": type(e).__name__},
            )

    async def health_check(self) -> bool:
        try:
            async with session_scope(self._session_factory) as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("Message store unreachable: %s", str(e))
            return False

    async def _select(self, where: Optional[object] = None) -> List[ChatMessage]:
        query = select(ChatMessageRecord).order_by(ChatMessageRecord.seq)
        if where is not None:
            query = query.where(where)
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(query)
                records = list(result.scalars().all())
        except Exception as e:
            logger.error("Failed to read message log: %s", str(e), exc_info=True)
            raise MessageStoreError(
                message="Message history is temporarily unavailable.",
                context={"error_type": type(e).__name__},
            )
        return [self._to_message(record) for record in records]

    @staticmethod
    def _to_message(record: ChatMessageRecord) -> ChatMessage:
        created_at = record.created_at
        # SQLite drops tzinfo; values are always written in UTC
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return ChatMessage(
            id=record.id,
            sender_id=record.sender_id,
            sender_role=record.sender_role,
            body=record.body,
            target_id=record.target_id,
            created_at=created_at,
        )
