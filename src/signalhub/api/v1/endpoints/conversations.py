"""Conversation endpoints: thin REST wrappers over the store and fan-out engine."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from signalhub.models import ConversationKind
from signalhub.schemas.messages import (
    ConversationCreate,
    ConversationOut,
    HistoryOut,
    MemberAdd,
    UnreadCountOut,
)
from signalhub.services.errors import SignalError

from ..dependencies import CurrentUserDep, HubDep, raise_http

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=ConversationOut)
async def create_conversation(
    payload: ConversationCreate,
    current_user: CurrentUserDep,
    hub: HubDep,
) -> ConversationOut:
    """Create a group (caller becomes admin) or get-or-create a direct pair."""
    others = [user_id for user_id in dict.fromkeys(payload.member_ids) if user_id != current_user.id]
    if payload.kind == ConversationKind.DIRECT and len(others) != 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A direct conversation needs exactly one other member",
        )
    try:
        conversation = await hub.store.create_conversation(
            payload.kind,
            [current_user.id, *others],
            admin_user_id=current_user.id if payload.kind == ConversationKind.GROUP else None,
            title=payload.title,
        )
    except SignalError as exc:
        raise_http(exc)
    return ConversationOut.from_record(conversation)


@router.get("/", response_model=list[ConversationOut])
async def list_conversations(current_user: CurrentUserDep, hub: HubDep) -> list[ConversationOut]:
    conversations = await hub.store.list_conversations(current_user.id)
    return [ConversationOut.from_record(conversation) for conversation in conversations]


@router.get("/{conversation_id}/messages", response_model=HistoryOut)
async def get_history(
    conversation_id: int,
    current_user: CurrentUserDep,
    hub: HubDep,
    before: Annotated[int | None, Query(description="Return messages older than this id")] = None,
    limit: Annotated[int | None, Query(ge=1)] = None,
) -> HistoryOut:
    """Return one page of history, oldest first."""
    try:
        return await hub.fanout.history(current_user.id, conversation_id, before=before, limit=limit)
    except SignalError as exc:
        raise_http(exc)


@router.get("/{conversation_id}/unread", response_model=UnreadCountOut)
async def get_unread_count(
    conversation_id: int,
    current_user: CurrentUserDep,
    hub: HubDep,
) -> UnreadCountOut:
    try:
        count = await hub.fanout.unread_count(current_user.id, conversation_id)
    except SignalError as exc:
        raise_http(exc)
    return UnreadCountOut(conversation_id=conversation_id, count=count)


@router.post("/{conversation_id}/members", response_model=ConversationOut)
async def add_member(
    conversation_id: int,
    payload: MemberAdd,
    current_user: CurrentUserDep,
    hub: HubDep,
) -> ConversationOut:
    """Add a member to a group; live members receive ``conversation:member-added``."""
    try:
        conversation = await hub.fanout.add_member(current_user.id, conversation_id, payload.user_id)
    except SignalError as exc:
        raise_http(exc)
    return ConversationOut.from_record(conversation)


@router.delete("/{conversation_id}/members/{user_id}", response_model=ConversationOut)
async def remove_member(
    conversation_id: int,
    user_id: int,
    current_user: CurrentUserDep,
    hub: HubDep,
) -> ConversationOut:
    try:
        conversation = await hub.fanout.remove_member(current_user.id, conversation_id, user_id)
    except SignalError as exc:
        raise_http(exc)
    return ConversationOut.from_record(conversation)
