"""
GrantDesk Backend: Chat Message SQLAlchemy Model
=================================================

What:  ORM model for the `chat_messages` table backing the durable Message Log.
Who:   DatabaseMessageLog writes one row per successful send and reads them
       back in `seq` order.

Table Design:
    - seq: autoincrement surrogate key; defines log order
    - id: relay-assigned message id (strictly increasing string), unique
    - sender_id / target_id: participant identifiers of unbounded length
    - sender_role: "user" or "admin"
    - body: message text
    - created_at: UTC with timezone

    Rows are never updated or deleted.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from grantdesk.database import Base


class ChatMessageRecord(Base):
    """One persisted chat message."""

    __tablename__ = "chat_messages"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        comment="Relay-assigned message id",
    )

    sender_id: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Identifier of the participant who sent the message",
    )

    sender_role: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="Role of the sender when the message was sent: user, admin",
    )

    body: Mapped[str] = mapped_column(Text, nullable=False)

    target_id: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        default=None,
        comment="Addressed participant; NULL for untargeted sends",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Conversation and replay queries filter on sender or target
    __table_args__ = (
        Index("idx_chat_messages_sender_id", "sender_id"),
        Index("idx_chat_messages_target_id", "target_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChatMessageRecord(id={self.id}, sender_id='{self.sender_id}', "
            f"target_id='{self.target_id}')>"
        )
