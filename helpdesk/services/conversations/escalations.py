from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.domain.models import Conversation, Escalation, Mailbox
from helpdesk.persistence.repos.conversations import get_active_escalation
from helpdesk.persistence.transactions import transaction
from helpdesk.services.conversations.messages import create_reply
from helpdesk.services.conversations.mutations import update_conversation
from helpdesk.services.queue import send_after_commit


logger = logging.getLogger(__name__)


def default_email_body(mailbox: Mailbox, as_html: bool = True) -> str:
    separator = "<br>" if as_html else "\n"
    return separator.join(
        [
            "Hey there,",
            "Thank you for reporting this issue. Really sorry you ran into this!",
            "We are looking into it now and will get back to you soon about a solution.",
            "Let me know if you need any further help!",
            "",
            "Best,",
            f"{mailbox.name} Support",
        ]
    )


async def create_escalation(
    session: AsyncSession,
    conversation: Conversation,
    mailbox: Mailbox,
    *,
    user_id: str | None = None,
) -> dict[str, int | str]:
    """Escalate a conversation to humans.

    Returns ``{"id": ...}`` on success or ``{"error": ...}`` when the
    conversation is already escalated or has no customer address.
    """
    if await get_active_escalation(session, conversation.id) is not None:
        return {"error": "Conversation is already escalated"}
    if not conversation.email_from:
        return {"error": "Conversation has no email from"}

    body = mailbox.escalation_email_body or default_email_body(mailbox)
    async with transaction(session):
        await create_reply(
            session,
            conversation.id,
            body,
            user_id=user_id,
            close=False,
            should_auto_assign=False,
        )
        await update_conversation(session, conversation.id, set={"status": "escalated"}, by_user_id=user_id)
        escalation = Escalation(conversation_id=conversation.id, user_id=user_id)
        session.add(escalation)
        await session.flush()
        await send_after_commit(session, "conversations/escalation.created", {"escalationId": escalation.id})

    logger.info("escalation_created conversation_id=%s escalation_id=%s", conversation.id, escalation.id)
    return {"id": escalation.id}
