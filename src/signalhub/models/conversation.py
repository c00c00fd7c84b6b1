"""Models describing conversations and their membership."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from signalhub.db.session import Base
from signalhub.db.time import utcnow


class ConversationKind(StrEnum):
    """Addressing scope of a conversation."""

    DIRECT = "direct"
    GROUP = "group"


def direct_pair_key(user_a: int, user_b: int) -> str:
    """Return the order-independent key identifying a 1:1 pair."""
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


class Conversation(Base):
    """A 1:1 pair or a group with an admin."""

    __tablename__ = "conversation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_user_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("user_account.id"),
        nullable=True,
    )
    # Unique "low:high" user id pair for direct conversations, NULL for groups.
    direct_key: Mapped[str | None] = mapped_column(Text, unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ConversationMember(Base):
    """Join table mapping users into conversations.

    Rows only change through explicit add/remove operations, each of which is
    fanned out to the audience.
    """

    __tablename__ = "conversation_member"

    conversation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("conversation.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("user_account.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
