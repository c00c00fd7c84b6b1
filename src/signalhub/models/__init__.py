"""SQLAlchemy models for the SignalHub application."""

from .call import (
    Call,
    CallKind,
    CallMedia,
    CallParticipant,
    CallState,
    EndReason,
    ParticipantState,
)
from .conversation import Conversation, ConversationKind, ConversationMember
from .message import Message, MessageHidden, ReadReceipt
from .pending_termination import PendingTermination
from .user import User

__all__ = [
    "Call", "CallKind", "CallMedia", "CallParticipant", "CallState", "EndReason",
    "ParticipantState",
    "Conversation", "ConversationKind", "ConversationMember",
    "Message", "MessageHidden", "ReadReceipt",
    "PendingTermination",
    "User",
]
