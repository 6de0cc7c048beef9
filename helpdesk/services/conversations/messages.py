from __future__ import annotations

from datetime import datetime, timezone
import html
import logging
import re
from typing import Any, Sequence

import nh3
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.config import get_settings
from helpdesk.core.errors import NotFoundError
from helpdesk.domain.models import Conversation, ConversationMessage, Mailbox, PlatformCustomer, Tool
from helpdesk.persistence.repos.conversations import get_active_escalation, get_conversation, has_event_of_type
from helpdesk.persistence.repos.messages import (
    attach_files,
    get_last_ai_generated_draft,
    has_staff_message,
    list_live_drafts,
)
from helpdesk.persistence.transactions import transaction
from helpdesk.services.conversations.mutations import resolve_escalation, update_conversation
from helpdesk.services.queue import send_after_commit


logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\s*\n\s*")
# Block-level boundaries become line breaks before tags are stripped.
_BLOCK_BREAK_RE = re.compile(r"<\s*br\s*/?\s*>|</\s*(p|div|li|tr|h[1-6]|blockquote|pre)\s*>", re.IGNORECASE)


def generate_cleaned_up_text(body: str) -> str:
    if not body.strip():
        return ""
    with_breaks = _BLOCK_BREAK_RE.sub("\n", body)
    text = html.unescape(nh3.clean(with_breaks, tags=set()))
    paragraphs = [part for part in _PARAGRAPH_SPLIT_RE.split(text) if part.strip()]
    return "\n\n".join(paragraphs)


def _normalize_for_comparison(body: str) -> str:
    return _WHITESPACE_RE.sub(" ", _TAG_RE.sub("", body)).strip()


async def ensure_cleaned_up_text(session: AsyncSession, message: ConversationMessage) -> str:
    # Computed once and cached on the row.
    if message.cleaned_up_text is not None:
        return message.cleaned_up_text
    message.cleaned_up_text = generate_cleaned_up_text(message.body or "")
    async with transaction(session):
        await session.flush()
    return message.cleaned_up_text


async def get_text_with_conversation_subject(
    session: AsyncSession, conversation: Conversation, message: ConversationMessage
) -> str:
    cleaned = await ensure_cleaned_up_text(session, message)
    prefix = f"{conversation.subject}\n\n" if conversation.subject else ""
    return f"{prefix}{cleaned}"


async def create_conversation_message(
    session: AsyncSession,
    *,
    conversation_id: int,
    role: str,
    body: str | None,
    cleaned_up_text: str | None = None,
    status: str | None = None,
    response_to_id: int | None = None,
    user_id: str | None = None,
    email_from: str | None = None,
    metadata: dict[str, Any] | None = None,
    prompt_info: dict[str, Any] | None = None,
    is_perfect: bool = False,
) -> ConversationMessage:
    async with transaction(session):
        message = ConversationMessage(
            conversation_id=conversation_id,
            role=role,
            body=body,
            cleaned_up_text=cleaned_up_text,
            status=status,
            response_to_id=response_to_id,
            user_id=user_id,
            email_from=email_from,
            metadata_json=metadata,
            prompt_info=prompt_info,
            is_perfect=is_perfect,
        )
        session.add(message)
        await session.flush()

        if role == "user":
            await update_conversation(
                session,
                conversation_id,
                set={"last_user_email_created_at": datetime.now(timezone.utc)},
                skip_realtime=True,
            )
        if status != "draft":
            await send_after_commit(
                session,
                "conversations/message.created",
                {"messageId": message.id, "conversationId": conversation_id},
            )
        if status == "queueing":
            # Held back for the undo window before the email actually goes out.
            await send_after_commit(
                session,
                "conversations/email.enqueued",
                {"messageId": message.id},
                delay_s=get_settings().email_undo_delay_s,
            )
    return message


async def discard_ai_generated_drafts(
    session: AsyncSession, conversation_id: int, *, response_to_id: int | None = None
) -> int:
    async with transaction(session):
        drafts = await list_live_drafts(session, conversation_id, response_to_id=response_to_id)
        for draft in drafts:
            draft.status = "discarded"
        await session.flush()
    return len(drafts)


async def create_reply(
    session: AsyncSession,
    conversation_id: int,
    message: str | None,
    *,
    user_id: str | None = None,
    role: str = "staff",
    close: bool = True,
    response_to_id: int | None = None,
    should_auto_assign: bool = True,
    file_ids: Sequence[int] = (),
) -> int:
    """Create an outbound reply and apply its side effects as one unit.

    Any failure rolls back the whole reply, including assignment, escalation
    resolution and status changes.
    """
    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")

    async with transaction(session):
        if should_auto_assign and user_id and not conversation.assigned_to_user_id:
            await update_conversation(session, conversation_id, set={"assigned_to_user_id": user_id})

        created = await create_conversation_message(
            session,
            conversation_id=conversation_id,
            role=role or "staff",
            body=message,
            status="queueing",
            response_to_id=response_to_id,
            user_id=user_id,
        )
        await attach_files(session, created.id, list(file_ids))

        escalation = await get_active_escalation(session, conversation_id)
        if escalation is not None:
            await resolve_escalation(session, escalation, by_user_id=user_id, via="email", closed=close)

        if close and conversation.status != "spam":
            await update_conversation(session, conversation_id, set={"status": "closed"}, by_user_id=user_id)

        last_draft = await get_last_ai_generated_draft(session, conversation_id)
        if last_draft is not None and last_draft.body and message:
            if _normalize_for_comparison(last_draft.body) == _normalize_for_comparison(message):
                created.is_perfect = True
        await discard_ai_generated_drafts(session, conversation_id)

    logger.info(
        "reply_created conversation_id=%s message_id=%s role=%s close=%s perfect=%s",
        conversation_id,
        created.id,
        created.role,
        close,
        created.is_perfect,
    )
    return created.id


def _validate_prompt_info(prompt_info: dict[str, Any]) -> dict[str, Any]:
    # Without style examples there is no separate unstyled version worth keeping.
    validated = dict(prompt_info)
    if not validated.get("style_linter_examples"):
        validated["style_linter_examples"] = None
        validated["unstyled_response"] = None
    return validated


async def create_ai_draft(
    session: AsyncSession,
    *,
    conversation_id: int,
    body: str,
    response_to_id: int | None,
    prompt_info: dict[str, Any],
) -> ConversationMessage:
    if not response_to_id:
        raise ValueError("response_to_id is required")
    async with transaction(session):
        # One live draft per target message.
        await discard_ai_generated_drafts(session, conversation_id, response_to_id=response_to_id)
        draft = await create_conversation_message(
            session,
            conversation_id=conversation_id,
            role="ai_assistant",
            body=body.replace("\n", "<br>", 1),
            cleaned_up_text=body,
            status="draft",
            response_to_id=response_to_id,
            prompt_info=_validate_prompt_info(prompt_info),
        )
    return draft


async def create_tool_event(
    session: AsyncSession,
    *,
    conversation_id: int,
    tool: Tool,
    parameters: dict[str, Any],
    user_message: str,
    data: Any = None,
    error: Any = None,
) -> ConversationMessage:
    async with transaction(session):
        message = ConversationMessage(
            conversation_id=conversation_id,
            role="tool",
            body=user_message,
            cleaned_up_text=user_message,
            status="sent",
            metadata_json={
                "tool": {
                    "id": tool.id,
                    "slug": tool.slug,
                    "name": tool.name,
                    "description": tool.description,
                    "url": tool.url,
                    "requestMethod": tool.request_method,
                },
                "result": data if data else error,
                "success": not error,
                "parameters": parameters,
            },
        )
        session.add(message)
        await session.flush()
    return message


async def disable_ai_response(
    session: AsyncSession,
    conversation_id: int,
    mailbox: Mailbox,
    platform_customer: PlatformCustomer | None,
) -> bool:
    if await has_event_of_type(session, conversation_id, "request_human_support"):
        return True
    if platform_customer is not None and platform_customer.is_vip and mailbox.disable_auto_response_for_vips:
        return True
    return await has_staff_message(session, conversation_id)
