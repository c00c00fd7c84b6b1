"""Models tracking call signaling state."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from signalhub.db.session import Base
from signalhub.db.time import utcnow


class CallKind(StrEnum):
    DIRECT = "direct"
    GROUP = "group"


class CallMedia(StrEnum):
    AUDIO = "audio"
    VIDEO = "video"


class CallState(StrEnum):
    """Lifecycle of a call. ENDED, REJECTED and TIMED_OUT are terminal."""

    REQUESTED = "requested"
    RINGING = "ringing"
    ACTIVE = "active"
    ENDED = "ended"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_CALL_STATES


TERMINAL_CALL_STATES = frozenset({CallState.ENDED, CallState.REJECTED, CallState.TIMED_OUT})


class ParticipantState(StrEnum):
    INVITED = "invited"
    RINGING = "ringing"
    JOINED = "joined"
    LEFT = "left"
    REJECTED = "rejected"


class EndReason(StrEnum):
    HANGUP = "hangup"
    CONNECTION_LOST = "connection_lost"
    LAST_PARTICIPANT_LEFT = "last_participant_left"
    REJECTED = "rejected"
    NO_ANSWER = "no_answer"


class Call(Base):
    """One direct or group call.

    ``room_token`` is the opaque identifier of the external media room; it is
    stored and relayed verbatim and never derived from anything else.
    """

    __tablename__ = "call"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    media: Mapped[str] = mapped_column(String(16), nullable=False)
    room_token: Mapped[str] = mapped_column(Text, nullable=False)
    initiator_user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("user_account.id"),
        nullable=False,
        index=True,
    )
    # Direct calls only.
    target_user_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("user_account.id"),
        nullable=True,
        index=True,
    )
    # Group calls only: the owning group conversation.
    conversation_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("conversation.id", ondelete="CASCADE"),
        nullable=True,
    )
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=CallState.REQUESTED)
    end_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ended_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CallParticipant(Base):
    """Per-user state inside a call."""

    __tablename__ = "call_participant"

    call_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("user_account.id", ondelete="CASCADE"),
        primary_key=True,
    )
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
