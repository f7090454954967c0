"""
Conversation and message persistence.

Service layer for the chat transcript the refresh cycle later reads. Every
lookup is scoped to the owning user; a conversation that exists but belongs
to someone else is reported exactly like a missing one.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nexo_backend.models import Conversation, Message

logger = logging.getLogger(__name__)


def parse_uuid(value: str, field_name: str = "id") -> uuid.UUID:
    """Parse a string to UUID, raising ``ValueError`` with a clear message."""
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError, TypeError) as exc:
        raise ValueError(f"Invalid UUID for {field_name}: {value}") from exc


def serialize_conversation(conversation: Conversation) -> dict:
    return {
        "id": str(conversation.id),
        "is_active": bool(conversation.is_active),
        "created_at": conversation.created_at,
    }


def serialize_message(message: Message) -> dict:
    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "role": message.role,
        "content": message.content,
        "included_in_refresh": bool(message.included_in_refresh),
        "created_at": message.created_at,
    }


async def create_conversation(db: AsyncSession, user_id: str) -> Conversation:
    conversation = Conversation(id=uuid.uuid4(), user_id=user_id, is_active=True)
    db.add(conversation)
    await db.commit()
    await db.refresh(conversation)
    logger.info("Conversation %s created for user %s", conversation.id, user_id)
    return conversation


async def get_active_conversation(db: AsyncSession, user_id: str) -> Optional[Conversation]:
    """Most recently created active conversation, or ``None``."""
    result = await db.execute(
        select(Conversation)
        .where(Conversation.user_id == user_id, Conversation.is_active.is_(True))
        .order_by(Conversation.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_owned_conversation(db: AsyncSession, user_id: str, conversation_id: str) -> Conversation:
    """
    Raises:
        ValueError: malformed id
        LookupError: no such conversation for this user
    """
    conversation_uuid = parse_uuid(conversation_id, "conversation_id")
    result = await db.execute(
        select(Conversation).where(Conversation.id == conversation_uuid, Conversation.user_id == user_id)
    )
    conversation = result.scalar_one_or_none()
    if conversation is None:
        raise LookupError(f"Conversation {conversation_id} not found")
    return conversation


async def append_message(db: AsyncSession, user_id: str, conversation_id: str, role: str, content: str) -> Message:
    conversation = await get_owned_conversation(db, user_id, conversation_id)
    message = Message(id=uuid.uuid4(), conversation_id=conversation.id, role=role, content=content)
    db.add(message)
    await db.commit()
    await db.refresh(message)
    return message


async def list_messages(db: AsyncSession, user_id: str, conversation_id: str) -> List[Message]:
    conversation = await get_owned_conversation(db, user_id, conversation_id)
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation.id)
        .order_by(Message.created_at.asc())
    )
    return list(result.scalars().all())
