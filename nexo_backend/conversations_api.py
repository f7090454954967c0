"""Conversation and message API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from nexo_backend.auth import get_current_user_id
from nexo_backend.db_session import get_async_session
from nexo_backend.schemas import ConversationOut, CreateMessageRequest, MessageOut, MessagesResponse
from nexo_backend.services.conversation_service import (
    append_message,
    create_conversation,
    get_active_conversation,
    list_messages,
    serialize_conversation,
    serialize_message,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["conversations"])


@router.post("/conversations", response_model=ConversationOut)
async def start_conversation(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    conversation = await create_conversation(db, user_id)
    return serialize_conversation(conversation)


@router.get("/conversations", response_model=Optional[ConversationOut])
async def current_conversation(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    conversation = await get_active_conversation(db, user_id)
    return serialize_conversation(conversation) if conversation is not None else None


@router.post("/messages", response_model=MessageOut)
async def save_message(
    request: CreateMessageRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    try:
        message = await append_message(db, user_id, request.conversation_id, request.role, request.content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LookupError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return serialize_message(message)


@router.get("/messages", response_model=MessagesResponse)
async def get_messages(
    conversation_id: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    try:
        messages = await list_messages(db, user_id, conversation_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LookupError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    serialized = [serialize_message(message) for message in messages]
    return {"messages": serialized, "count": len(serialized)}
