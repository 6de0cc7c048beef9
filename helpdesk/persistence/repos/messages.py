from __future__ import annotations

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.domain.models import ConversationMessage, File


def _not_status(*statuses: str):
    # NULL status counts as "not any of these".
    return or_(ConversationMessage.status.is_(None), ConversationMessage.status.notin_(statuses))


async def get_message(session: AsyncSession, message_id: int) -> ConversationMessage | None:
    return await session.get(ConversationMessage, message_id)


async def list_messages(
    session: AsyncSession,
    conversation_id: int,
    *,
    exclude_statuses: tuple[str, ...] = (),
) -> list[ConversationMessage]:
    stmt = select(ConversationMessage).where(
        ConversationMessage.conversation_id == conversation_id,
        ConversationMessage.deleted_at.is_(None),
    )
    if exclude_statuses:
        stmt = stmt.where(_not_status(*exclude_statuses))
    result = await session.execute(stmt.order_by(ConversationMessage.created_at.asc(), ConversationMessage.id.asc()))
    return list(result.scalars().all())


async def list_messages_for_conversations(
    session: AsyncSession, conversation_ids: list[int]
) -> dict[int, list[ConversationMessage]]:
    if not conversation_ids:
        return {}
    result = await session.execute(
        select(ConversationMessage)
        .where(
            ConversationMessage.conversation_id.in_(conversation_ids),
            ConversationMessage.deleted_at.is_(None),
            _not_status("draft", "discarded"),
        )
        .order_by(ConversationMessage.created_at.asc(), ConversationMessage.id.asc())
    )
    grouped: dict[int, list[ConversationMessage]] = {conversation_id: [] for conversation_id in conversation_ids}
    for message in result.scalars().all():
        grouped[message.conversation_id].append(message)
    return grouped


async def get_last_ai_generated_draft(session: AsyncSession, conversation_id: int) -> ConversationMessage | None:
    result = await session.execute(
        select(ConversationMessage)
        .where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == "ai_assistant",
            ConversationMessage.status == "draft",
            ConversationMessage.deleted_at.is_(None),
        )
        .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_live_drafts(
    session: AsyncSession, conversation_id: int, *, response_to_id: int | None = None
) -> list[ConversationMessage]:
    stmt = select(ConversationMessage).where(
        ConversationMessage.conversation_id == conversation_id,
        ConversationMessage.role == "ai_assistant",
        ConversationMessage.status == "draft",
    )
    if response_to_id is not None:
        stmt = stmt.where(ConversationMessage.response_to_id == response_to_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_non_draft_messages(session: AsyncSession, conversation_id: int) -> int:
    result = await session.execute(
        select(func.count(ConversationMessage.id)).where(
            ConversationMessage.conversation_id == conversation_id,
            _not_status("draft"),
        )
    )
    return int(result.scalar_one())


async def has_staff_message(session: AsyncSession, conversation_id: int) -> bool:
    result = await session.execute(
        select(ConversationMessage.id)
        .where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == "staff",
            ConversationMessage.deleted_at.is_(None),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_last_message(session: AsyncSession, conversation_id: int) -> ConversationMessage | None:
    result = await session.execute(
        select(ConversationMessage)
        .where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.deleted_at.is_(None),
            _not_status("draft", "discarded"),
        )
        .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_last_message_by_role(
    session: AsyncSession, conversation_id: int, role: str
) -> ConversationMessage | None:
    result = await session.execute(
        select(ConversationMessage)
        .where(and_(ConversationMessage.conversation_id == conversation_id, ConversationMessage.role == role))
        .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def attach_files(session: AsyncSession, message_id: int, file_ids: list[int]) -> None:
    if not file_ids:
        return
    result = await session.execute(select(File).where(File.id.in_(file_ids)))
    for file in result.scalars().all():
        file.message_id = message_id


async def get_newest_message(session: AsyncSession, conversation_id: int) -> ConversationMessage | None:
    # Any role or status; the raw tail of the thread.
    result = await session.execute(
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
