"""SQLAlchemy model for user identities known to the signaling core."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from signalhub.db.session import Base
from signalhub.db.time import utcnow


class User(Base):
    """Identity referenced by connections, conversations and calls.

    Account management and token issuance live outside this service; rows are
    provisioned by the identity provider and only read (plus ``last_seen_at``)
    here.
    """

    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
