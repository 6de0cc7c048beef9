from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.prompts import AUTO_REPLY_FROM_METADATA_PROMPT
from helpdesk.core.errors import HelpdeskError
from helpdesk.domain.models import Conversation, ConversationMessage, Organization, WorkflowAction
from helpdesk.persistence.repos.conversations import get_conversation
from helpdesk.persistence.repos.mailboxes import get_mailbox, get_organization
from helpdesk.persistence.transactions import transaction
from helpdesk.providers.llm.base import LLMProvider
from helpdesk.services.conversations.messages import create_reply
from helpdesk.services.conversations.mutations import add_note, update_conversation, update_conversation_status
from helpdesk.services.generation import generate_response_with_prompt
from helpdesk.services.organizations import can_send_automated_replies, record_automated_reply
from helpdesk.services.retrieval import fetch_metadata


logger = logging.getLogger(__name__)

# Actions that send something to the customer and therefore need an eligible organization.
REPLY_ACTIONS = ("send_email", "send_auto_reply_from_metadata")


async def _send_workflow_email(
    session: AsyncSession,
    organization: Organization,
    conversation: Conversation,
    message: ConversationMessage,
    body: str,
) -> int:
    async with transaction(session):
        reply_id = await create_reply(
            session,
            conversation.id,
            body,
            user_id=None,
            role="workflow",
            close=False,
            response_to_id=message.id,
        )
        await record_automated_reply(session, organization)
    return reply_id


async def run_workflow_action(
    session: AsyncSession,
    action: WorkflowAction,
    message: ConversationMessage,
    *,
    provider: LLMProvider | None = None,
) -> bool:
    """Apply a single workflow action to the conversation of ``message``.

    Returns ``False`` when the action did not complete; the caller stops the
    chain at that point. Side effects of earlier actions are kept.
    """
    conversation = await get_conversation(session, message.conversation_id)
    if conversation is None:
        logger.error("workflow_action_conversation_missing message_id=%s", message.id)
        return False
    mailbox = await get_mailbox(session, conversation.mailbox_id)
    if mailbox is None:
        logger.error("workflow_action_mailbox_missing conversation_id=%s", conversation.id)
        return False
    organization = await get_organization(session, mailbox.organization_id)
    if organization is None:
        logger.error("workflow_action_organization_missing mailbox_id=%s", mailbox.id)
        return False

    action_type = action.action_type
    if action_type in REPLY_ACTIONS and not await can_send_automated_replies(session, organization):
        logger.info(
            "workflow_action_skipped action=%s organization_id=%s reason=automated_replies_unavailable",
            action_type,
            organization.id,
        )
        return False

    if action_type == "send_email":
        await _send_workflow_email(session, organization, conversation, message, action.action_value)
    elif action_type == "send_auto_reply_from_metadata":
        user_info = await fetch_metadata(session, message.email_from, mailbox) if message.email_from else None
        if user_info is None:
            logger.info("workflow_action_skipped action=%s message_id=%s reason=no_metadata", action_type, message.id)
            return False
        try:
            body = await generate_response_with_prompt(
                session,
                message=message,
                mailbox=mailbox,
                append_prompt=AUTO_REPLY_FROM_METADATA_PROMPT,
                metadata=user_info.model_dump(),
                provider=provider,
            )
        except HelpdeskError as exc:
            logger.error("workflow_action_failed action=%s message_id=%s error=%s", action_type, message.id, exc)
            return False
        await _send_workflow_email(session, organization, conversation, message, body)
    elif action_type == "change_status":
        logger.info("workflow_action_skipped action=%s reason=deprecated", action_type)
        return False
    elif action_type == "add_note":
        await add_note(session, conversation.id, action.action_value)
    elif action_type == "change_helper_status":
        await update_conversation_status(session, conversation, action.action_value)
    elif action_type == "assign_user":
        await update_conversation(
            session,
            conversation.id,
            set={"assigned_to_user_id": action.action_value},
            message="Assigned by workflow",
        )
    else:
        logger.error("workflow_action_unknown action=%s action_id=%s", action_type, action.id)
        return False

    logger.info("workflow_action_done action=%s message_id=%s", action_type, message.id)
    return True
