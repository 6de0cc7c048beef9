from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.errors import NotFoundError
from helpdesk.domain.models import Conversation, ConversationEvent, Escalation, Mailbox, Note
from helpdesk.persistence.repos.conversations import get_conversation
from helpdesk.persistence.repos.messages import get_newest_message
from helpdesk.persistence.transactions import transaction
from helpdesk.services.queue import send_after_commit
from helpdesk.services.realtime import conversation_channel, conversations_list_channel, publish_after_commit


logger = logging.getLogger(__name__)

# Only these fields produce audit events, and only when the value changes.
AUDITED_FIELDS = ("status", "assigned_to_user_id", "assigned_to_ai")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_conversation(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "slug": conversation.slug,
        "subject": conversation.subject,
        "emailFrom": conversation.email_from,
        "status": conversation.status,
        "assignedToId": conversation.assigned_to_user_id,
        "assignedToAI": conversation.assigned_to_ai,
        "isPrompt": conversation.is_prompt,
        "closedAt": _iso(conversation.closed_at),
        "createdAt": _iso(conversation.created_at),
        "updatedAt": _iso(conversation.updated_at),
    }


async def update_conversation(
    session: AsyncSession,
    conversation_id: int,
    *,
    set: dict[str, Any] | None = None,
    by_user_id: str | None = None,
    message: str | None = None,
    type: str = "update",
    skip_realtime: bool = False,
) -> Conversation:
    """Apply a partial update to a conversation inside the caller's transaction.

    Handing a conversation to the AI closes it and clears the human assignee;
    assigning a human takes it away from the AI. The first transition into
    ``closed`` stamps ``closed_at``, which later reopenings leave untouched.
    Status and assignment changes are written as one audit event. Follow-up
    jobs and realtime events are dispatched only after the commit.
    """
    updates = dict(set or {})
    async with transaction(session):
        conversation = await get_conversation(session, conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        if updates.get("assigned_to_ai"):
            updates["status"] = "closed"
            updates["assigned_to_user_id"] = None
        elif updates.get("assigned_to_user_id"):
            updates["assigned_to_ai"] = False
        if conversation.closed_at is None and conversation.status != "closed" and updates.get("status") == "closed":
            updates["closed_at"] = datetime.now(timezone.utc)

        previous = {key: getattr(conversation, key) for key in AUDITED_FIELDS}
        for key, value in updates.items():
            if not hasattr(Conversation, key):
                raise ValueError(f"Unknown conversation field: {key}")
            setattr(conversation, key, value)
        await session.flush()

        changed = [key for key in AUDITED_FIELDS if previous[key] != getattr(conversation, key)]
        if changed:
            session.add(
                ConversationEvent(
                    conversation_id=conversation.id,
                    type=type or "update",
                    changes={key: getattr(conversation, key) for key in changed},
                    by_user_id=by_user_id,
                    reason=message,
                )
            )

        if conversation.assigned_to_user_id and previous["assigned_to_user_id"] != conversation.assigned_to_user_id:
            await send_after_commit(
                session,
                "conversations/assigned",
                {
                    "conversationId": conversation.id,
                    "assignEvent": {
                        "assignedToId": conversation.assigned_to_user_id,
                        "assignedById": by_user_id,
                        "message": message,
                    },
                },
            )

        if not previous["assigned_to_ai"] and conversation.assigned_to_ai:
            last_message = await get_newest_message(session, conversation.id)
            if last_message is not None and last_message.role == "user":
                await send_after_commit(session, "conversations/auto-response.create", {"messageId": last_message.id})

        if previous["status"] != "closed" and conversation.status == "closed":
            await send_after_commit(session, "conversations/embedding.create", {"conversationSlug": conversation.slug})

        if not skip_realtime:
            await _publish_updates(session, conversation, status_changed=previous["status"] != conversation.status)

    logger.info(
        "conversation_updated conversation_id=%s changed=%s type=%s",
        conversation.id,
        ",".join(changed) or "-",
        type,
    )
    return conversation


async def _publish_updates(session: AsyncSession, conversation: Conversation, *, status_changed: bool) -> None:
    await publish_after_commit(
        session,
        conversation_channel(conversation.slug),
        "conversation.updated",
        serialize_conversation(conversation),
    )
    if not status_changed:
        return
    mailbox = await session.get(Mailbox, conversation.mailbox_id)
    if mailbox is None:
        logger.warning("conversation_mailbox_missing conversation_id=%s", conversation.id)
        return
    await publish_after_commit(
        session,
        conversations_list_channel(mailbox.slug),
        "conversation.statusChanged",
        {"id": conversation.id, "status": conversation.status},
    )


async def update_conversation_status(
    session: AsyncSession,
    conversation: Conversation,
    status: str,
    *,
    by_user_id: str | None = None,
    message: str | None = None,
) -> Conversation:
    return await update_conversation(
        session,
        conversation.id,
        set={"status": status},
        by_user_id=by_user_id,
        message=message,
    )


async def add_note(
    session: AsyncSession,
    conversation_id: int,
    body: str,
    *,
    user_id: str | None = None,
) -> Note:
    async with transaction(session):
        note = Note(conversation_id=conversation_id, body=body, user_id=user_id)
        session.add(note)
        await session.flush()
    return note


async def resolve_escalation(
    session: AsyncSession,
    escalation: Escalation,
    *,
    by_user_id: str | None = None,
    via: str = "email",
    closed: bool = False,
) -> Escalation:
    async with transaction(session):
        escalation.resolved_at = datetime.now(timezone.utc)
        escalation.resolved_via = via
        await session.flush()
        if not closed:
            await update_conversation(
                session,
                escalation.conversation_id,
                set={"status": "open"},
                by_user_id=by_user_id,
                message="Escalation resolved",
            )
    logger.info("escalation_resolved escalation_id=%s via=%s", escalation.id, via)
    return escalation
