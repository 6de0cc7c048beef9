from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.domain.models import (
    Conversation,
    ConversationMessage,
    Mailbox,
    MetadataApi,
    Organization,
    Subscription,
    Workflow,
    WorkflowAction,
)


async def create_organization(session: AsyncSession, *, paid: bool = True, **fields: Any) -> Organization:
    organization = Organization(id=fields.pop("id", f"org_{uuid4().hex[:8]}"), name="Acme", **fields)
    session.add(organization)
    await session.flush()
    if paid:
        session.add(
            Subscription(
                organization_id=organization.id,
                status="active",
                current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
            )
        )
    await session.commit()
    return organization


async def create_mailbox(session: AsyncSession, organization: Organization | None = None, **fields: Any) -> Mailbox:
    organization = organization or await create_organization(session)
    mailbox = Mailbox(
        slug=fields.pop("slug", f"mailbox-{uuid4().hex[:8]}"),
        name=fields.pop("name", "Gumroad"),
        organization_id=organization.id,
        **fields,
    )
    session.add(mailbox)
    await session.commit()
    return mailbox


async def create_conversation(session: AsyncSession, mailbox: Mailbox, **fields: Any) -> Conversation:
    fields.setdefault("subject", "Help needed")
    fields.setdefault("email_from", "customer@example.com")
    fields.setdefault("status", "open")
    conversation = Conversation(mailbox_id=mailbox.id, **fields)
    session.add(conversation)
    await session.commit()
    return conversation


async def create_message(session: AsyncSession, conversation: Conversation, **fields: Any) -> ConversationMessage:
    fields.setdefault("role", "user")
    fields.setdefault("body", "Hello, I need help")
    fields.setdefault("status", "sent")
    if fields["role"] == "user":
        fields.setdefault("email_from", conversation.email_from)
    message = ConversationMessage(conversation_id=conversation.id, **fields)
    session.add(message)
    await session.commit()
    return message


async def create_workflow(
    session: AsyncSession,
    mailbox: Mailbox,
    *,
    prompt: str,
    actions: list[tuple[str, str]],
    **fields: Any,
) -> Workflow:
    workflow = Workflow(
        mailbox_id=mailbox.id,
        name=fields.pop("name", "Workflow"),
        prompt=prompt,
        description=prompt,
        **fields,
    )
    session.add(workflow)
    await session.flush()
    for action_type, action_value in actions:
        session.add(WorkflowAction(workflow_id=workflow.id, action_type=action_type, action_value=action_value))
    await session.commit()
    return workflow


async def create_metadata_api(session: AsyncSession, mailbox: Mailbox, **fields: Any) -> MetadataApi:
    endpoint = MetadataApi(
        mailbox_id=mailbox.id,
        url=fields.pop("url", "https://tenant.example.com/metadata"),
        hmac_secret=fields.pop("hmac_secret", "hlpr_somesecret"),
        **fields,
    )
    session.add(endpoint)
    await session.commit()
    return endpoint
