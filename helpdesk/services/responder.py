from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.errors import NotFoundError
from helpdesk.persistence.repos.conversations import get_conversation
from helpdesk.persistence.repos.mailboxes import get_mailbox, get_platform_customer, upsert_platform_customer
from helpdesk.persistence.repos.messages import count_non_draft_messages, get_message
from helpdesk.persistence.repos.workflows import list_active_workflows
from helpdesk.persistence.transactions import transaction
from helpdesk.providers.llm.base import LLMProvider
from helpdesk.services.conversations.messages import (
    disable_ai_response,
    ensure_cleaned_up_text,
    get_text_with_conversation_subject,
)
from helpdesk.services.queue import send_after_commit
from helpdesk.services.retrieval import fetch_metadata
from helpdesk.services.workflows.conditions import evaluate_workflow_condition
from helpdesk.services.workflows.engine import execute_workflow_actions


logger = logging.getLogger(__name__)


async def respond_to_email(
    session: AsyncSession,
    message_id: int,
    *,
    provider: LLMProvider | None = None,
) -> str:
    """Decide what happens to a newly received customer email.

    Workflows are evaluated in order and the first match runs. Without a match,
    eligible mailboxes get an automatic chat-style answer through a job.
    Returns a short outcome label for logging.
    """
    message = await get_message(session, message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    conversation = await get_conversation(session, message.conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {message.conversation_id} not found")
    mailbox = await get_mailbox(session, conversation.mailbox_id)
    if mailbox is None:
        raise NotFoundError(f"Mailbox {conversation.mailbox_id} not found")

    if conversation.status == "spam":
        return "spam"

    await ensure_cleaned_up_text(session, message)

    user_info = await fetch_metadata(session, message.email_from, mailbox) if message.email_from else None
    if user_info is not None:
        async with transaction(session):
            message.metadata_json = user_info.model_dump()
            await upsert_platform_customer(
                session, mailbox_id=mailbox.id, email=message.email_from, metadata=user_info.metadata
            )

    platform_customer = (
        await get_platform_customer(session, mailbox.id, conversation.email_from) if conversation.email_from else None
    )
    if await disable_ai_response(session, conversation.id, mailbox, platform_customer):
        return "ai_disabled"

    is_follow_up = await count_non_draft_messages(session, conversation.id) > 1
    workflows = await list_active_workflows(session, mailbox.id, run_on_replies_only=is_follow_up)
    for workflow in workflows:
        if await evaluate_workflow_condition(session, workflow.prompt, message, provider=provider):
            workflow_id = workflow.id
            await execute_workflow_actions(session, workflow, message, provider=provider)
            logger.info("email_matched_workflow message_id=%s workflow_id=%s", message_id, workflow_id)
            return "workflow"

    text = (await get_text_with_conversation_subject(session, conversation, message)).strip()
    if not text:
        return "empty"

    if mailbox.auto_respond_email_to_chat and mailbox.widget_host and not is_follow_up:
        await send_after_commit(session, "conversations/auto-response.create", {"messageId": message.id})
        return "auto_response"
    return "no_action"
