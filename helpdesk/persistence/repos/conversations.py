from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.domain.models import Conversation, ConversationEvent, Escalation


async def get_conversation(session: AsyncSession, conversation_id: int) -> Conversation | None:
    return await session.get(Conversation, conversation_id)


async def get_conversation_by_slug(session: AsyncSession, slug: str) -> Conversation | None:
    result = await session.execute(select(Conversation).where(Conversation.slug == slug))
    return result.scalar_one_or_none()


async def get_original_conversation(session: AsyncSession, conversation_id: int) -> Conversation | None:
    # Merged conversations forward to their surviving target.
    conversation = await get_conversation(session, conversation_id)
    seen: set[int] = set()
    while conversation is not None and conversation.merged_into_id and conversation.id not in seen:
        seen.add(conversation.id)
        conversation = await get_conversation(session, conversation.merged_into_id)
    return conversation


async def has_event_of_type(session: AsyncSession, conversation_id: int, event_type: str) -> bool:
    result = await session.execute(
        select(ConversationEvent.id)
        .where(ConversationEvent.conversation_id == conversation_id, ConversationEvent.type == event_type)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_events(session: AsyncSession, conversation_id: int) -> list[ConversationEvent]:
    result = await session.execute(
        select(ConversationEvent)
        .where(ConversationEvent.conversation_id == conversation_id)
        .order_by(ConversationEvent.created_at.asc(), ConversationEvent.id.asc())
    )
    return list(result.scalars().all())


async def get_active_escalation(session: AsyncSession, conversation_id: int) -> Escalation | None:
    result = await session.execute(
        select(Escalation)
        .where(Escalation.conversation_id == conversation_id, Escalation.resolved_at.is_(None))
        .order_by(Escalation.created_at.desc(), Escalation.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
