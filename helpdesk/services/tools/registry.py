from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.prompts import ESCALATION_REASON_DESCRIPTION, REQUEST_HUMAN_SUPPORT_DESCRIPTION
from helpdesk.core.errors import NotFoundError, ToolApiError
from helpdesk.domain.models import Mailbox, Tool
from helpdesk.persistence.repos.conversations import get_conversation, get_original_conversation
from helpdesk.persistence.repos.mailboxes import get_metadata_api, list_tools_for_chat, upsert_platform_customer
from helpdesk.persistence.transactions import transaction
from helpdesk.services.conversations.mutations import update_conversation
from helpdesk.services.queue import send_after_commit
from helpdesk.services.retrieval import fetch_metadata, get_past_conversations_prompt
from helpdesk.services.tools.api_tools import call_tool_api, parameter_schema
from helpdesk.services.tools.base import ToolExecutor, ToolSpec, object_schema, with_reasoning


logger = logging.getLogger(__name__)

ESCALATED_TO_HUMAN_MESSAGE = "The conversation has been escalated to a human agent. You will be contacted soon by email."
EMAIL_SET_MESSAGE = "Your email has been set. You can now request human support if needed."
NO_PAST_CONVERSATIONS_MESSAGE = "No past conversations found"
METADATA_ERROR_MESSAGE = "Error fetching metadata"


async def _update_customer_metadata(session: AsyncSession, email: str, mailbox: Mailbox) -> None:
    user_info = await fetch_metadata(session, email, mailbox)
    if user_info is None or not user_info.metadata:
        return
    async with transaction(session):
        await upsert_platform_customer(session, mailbox_id=mailbox.id, email=email, metadata=user_info.metadata)


async def request_human_support(
    session: AsyncSession,
    conversation_id: int,
    mailbox: Mailbox,
    email: str | None,
    reason: str,
    new_email: str | None = None,
) -> str:
    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")

    if new_email:
        await update_conversation(
            session,
            conversation.id,
            set={"email_from": new_email},
            message="Email set for escalation",
        )
        email = new_email

    # Merged conversations escalate the conversation they were merged into.
    target = await get_original_conversation(session, conversation.id) or conversation
    await update_conversation(
        session,
        target.id,
        set={"status": "open", "assigned_to_ai": False},
        message=reason,
        type="request_human_support",
    )

    if email:
        await _update_customer_metadata(session, email, mailbox)
        await send_after_commit(
            session,
            "conversations/human-support-requested",
            {"mailboxSlug": mailbox.slug, "conversationId": target.id},
        )
    logger.info("human_support_requested conversation_id=%s", target.id)
    return ESCALATED_TO_HUMAN_MESSAGE


async def set_user_email(session: AsyncSession, conversation_id: int, email: str) -> str:
    await update_conversation(session, conversation_id, set={"email_from": email}, message="Email set by user")
    return EMAIL_SET_MESSAGE


def _mailbox_tool_executor(
    session: AsyncSession,
    conversation_id: int,
    tool: Tool,
    email: str | None,
) -> ToolExecutor:
    async def _execute(arguments: dict[str, Any]) -> str:
        params = dict(arguments)
        if tool.customer_email_parameter and email:
            params[tool.customer_email_parameter] = email
        conversation = await get_conversation(session, conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        result = await call_tool_api(session, conversation, tool, params)
        return json.dumps(result, default=str)

    return _execute


async def build_tools(
    session: AsyncSession,
    conversation_id: int,
    email: str | None,
    mailbox: Mailbox,
    *,
    include_human_support: bool = True,
    include_mailbox_tools: bool = True,
    reasoning_prompt: str | None = None,
) -> dict[str, ToolSpec]:
    """Assemble the tools available to the model for one conversation.

    Every executor is wrapped so that ``reasoning_prompt`` prefixes its result.
    """
    metadata_api = await get_metadata_api(session, mailbox.id)

    async def _search_knowledge_base(arguments: dict[str, Any]) -> str:
        documents = await get_past_conversations_prompt(session, str(arguments.get("query", "")), mailbox)
        return documents or NO_PAST_CONVERSATIONS_MESSAGE

    tools: dict[str, ToolSpec] = {
        "knowledge_base": ToolSpec(
            name="knowledge_base",
            description="search the knowledge base",
            parameters=object_schema(
                {"query": {"type": "string", "description": "query to search the knowledge base"}},
                ["query"],
            ),
            executor=with_reasoning(_search_knowledge_base, reasoning_prompt),
        )
    }

    if not email:

        async def _set_user_email(arguments: dict[str, Any]) -> str:
            new_email = str(arguments.get("email") or "").strip()
            if not new_email:
                raise ToolApiError("INVALID_PARAMETER", "email is required")
            return await set_user_email(session, conversation_id, new_email)

        tools["set_user_email"] = ToolSpec(
            name="set_user_email",
            description="Set the email address for the current anonymous user, so that the user can be contacted later",
            parameters=object_schema(
                {"email": {"type": "string", "format": "email", "description": "email address to set for the user"}},
                ["email"],
            ),
            executor=with_reasoning(_set_user_email, reasoning_prompt),
        )

    if include_human_support:

        async def _request_human_support(arguments: dict[str, Any]) -> str:
            return await request_human_support(
                session,
                conversation_id,
                mailbox,
                email,
                str(arguments.get("reason", "")),
                arguments.get("email") or None,
            )

        email_schema: dict[str, Any] = {"type": "string"}
        if not email:
            email_schema.update(format="email", description="email address to contact you (required for anonymous users)")
        tools["request_human_support"] = ToolSpec(
            name="request_human_support",
            description=REQUEST_HUMAN_SUPPORT_DESCRIPTION,
            parameters=object_schema(
                {
                    "reason": {"type": "string", "description": ESCALATION_REASON_DESCRIPTION},
                    "email": email_schema,
                },
                ["reason"] if email else ["reason", "email"],
            ),
            executor=with_reasoning(_request_human_support, reasoning_prompt),
        )

    if metadata_api is not None and email:

        async def _fetch_user_information(arguments: dict[str, Any]) -> str | None:
            user_info = await fetch_metadata(session, email, mailbox)
            return user_info.prompt if user_info is not None else METADATA_ERROR_MESSAGE

        tools["fetch_user_information"] = ToolSpec(
            name="fetch_user_information",
            description="fetch user related information",
            parameters=object_schema(
                {"reason": {"type": "string", "description": "reason for fetching user information"}},
                ["reason"],
            ),
            executor=with_reasoning(_fetch_user_information, reasoning_prompt),
        )

    if include_mailbox_tools:
        for tool in await list_tools_for_chat(session, mailbox.id):
            tools[tool.slug] = ToolSpec(
                name=tool.slug,
                description=f"{tool.name} - {tool.description}",
                parameters=parameter_schema(tool, email=email),
                executor=with_reasoning(_mailbox_tool_executor(session, conversation_id, tool, email), reasoning_prompt),
            )

    logger.debug("tools_built conversation_id=%s tools=%s", conversation_id, ",".join(tools))
    return tools
