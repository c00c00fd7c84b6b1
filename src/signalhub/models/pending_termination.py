"""Durable store-and-forward record for connection-loss terminations."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from signalhub.db.session import Base
from signalhub.db.time import utcnow


class PendingTermination(Base):
    """At most one pending termination notice per call.

    Written when a call is ended because ``user_id`` went silent; replayed once
    to that user's next connection, then deleted.
    """

    __tablename__ = "pending_termination"

    call_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    peer_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    # False when the peer had no live connection at termination time.
    peer_notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
