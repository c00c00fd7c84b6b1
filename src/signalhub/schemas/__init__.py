"""
Pydantic schemas for the event channel and the REST API.

These schemas define the structure of wire data for serialization and validation.
"""

from .calls import CallOut, ParticipantOut
from .events import Ack, InboundEvent, OutboundEvent, build_frame, parse_inbound
from .messages import ConversationCreate, ConversationOut, HistoryOut, MemberAdd, MessageOut
from .presence import PresenceOut

__all__ = [
    "Ack", "InboundEvent", "OutboundEvent", "build_frame", "parse_inbound",
    "CallOut", "ParticipantOut",
    "ConversationCreate", "ConversationOut", "HistoryOut", "MemberAdd", "MessageOut",
    "PresenceOut",
]
