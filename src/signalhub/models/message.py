"""Models describing encrypted messages and their per-user state."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, LargeBinary, Text
from sqlalchemy.orm import Mapped, mapped_column

from signalhub.db.session import Base
from signalhub.db.time import utcnow


class Message(Base):
    """Opaque ciphertext posted into a conversation.

    The server never decrypts ``ciphertext``. Once ``deleted_for_all`` is set the
    payload columns are emptied and the row is immutable.
    """

    __tablename__ = "message"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("conversation.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender_user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("user_account.id"),
        nullable=False,
    )
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    iv: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    # Set for server-generated notices such as "call ended by connection loss".
    system_event: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_for_all: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class MessageHidden(Base):
    """Delete-for-me marker: hides one message from one user's views."""

    __tablename__ = "message_hidden"

    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("message.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("user_account.id", ondelete="CASCADE"),
        primary_key=True,
    )
    hidden_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReadReceipt(Base):
    """First read of a message by an audience member."""

    __tablename__ = "read_receipt"

    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("message.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("user_account.id", ondelete="CASCADE"),
        primary_key=True,
    )
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
