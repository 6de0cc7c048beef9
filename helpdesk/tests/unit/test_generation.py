from __future__ import annotations

import pytest
from sqlalchemy import select

from helpdesk.core.config import get_settings
from helpdesk.domain.models import ConversationMessage, PlatformCustomer
from helpdesk.persistence.repos.conversations import has_event_of_type
from helpdesk.persistence.repos.mailboxes import get_organization
from helpdesk.providers.llm.fake import tool_call_result
from helpdesk.services.generation import (
    ESCALATED_REPLY,
    HUMAN_FOLLOW_UP_REPLY,
    Source,
    create_draft_for_conversation,
    extract_markdown_sources,
    handle_auto_response,
    markdown_to_html,
    respond_with_ai,
)
from helpdesk.services.prompting import check_token_count_and_summarize_if_needed
from helpdesk.tests.utils.factories import (
    create_conversation,
    create_mailbox,
    create_message,
    create_organization,
)


async def _assistant_messages(session, conversation_id: int) -> list[ConversationMessage]:
    result = await session.execute(
        select(ConversationMessage)
        .where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == "ai_assistant",
        )
        .order_by(ConversationMessage.id.asc())
    )
    return list(result.scalars().all())


async def _collect_text(response) -> str:
    return "".join([chunk.text async for chunk in response.chunks if chunk.type == "text-delta"])


def test_markdown_to_html_strips_unsafe_markup() -> None:
    html = markdown_to_html("**Thanks!**\n\n<script>alert(1)</script>")
    assert "<strong>Thanks!</strong>" in html
    assert "<script>" not in html


def test_extract_markdown_sources_dedupes_and_sorts() -> None:
    text = "See [(2)](https://b.example.com) and [(1)](https://a.example.com/page), again [(1)](https://a.example.com/page)."
    sources = [Source(url="https://a.example.com/page", page_title="Refund policy")]

    assert extract_markdown_sources(text, sources) == [
        {"id": "1", "url": "https://a.example.com/page", "title": "Refund policy"},
        {"id": "2", "url": "https://b.example.com", "title": "https://b.example.com"},
    ]


@pytest.mark.asyncio
async def test_summarize_leaves_short_text_alone(session, llm, monkeypatch) -> None:
    text = "short question about billing"
    assert await check_token_count_and_summarize_if_needed(session, text) == text
    assert llm.calls == []

    monkeypatch.setenv("COMPLETION_TOKEN_LIMIT", "3")
    get_settings.cache_clear()
    llm.queue("Billing question")
    summary = await check_token_count_and_summarize_if_needed(session, "a very long question about billing")
    assert summary == "Billing question"
    assert await check_token_count_and_summarize_if_needed(session, summary) == summary
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_chat_reply_is_streamed_and_persisted(session, llm, jobs) -> None:
    llm.queue("Hello! How can I help?")
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, source="chat")
    user_message = await create_message(session, conversation, body="Hi there")

    response = await respond_with_ai(
        session,
        conversation=conversation,
        mailbox=mailbox,
        user_email="customer@example.com",
        content="Hi there",
        message_id=user_message.id,
    )
    assert await _collect_text(response) == "Hello! How can I help?"

    assistants = await _assistant_messages(session, conversation.id)
    assert len(assistants) == 1
    assert assistants[0].body == "Hello! How can I help?"
    assert assistants[0].response_to_id == user_message.id
    assert assistants[0].status == "sent"
    assert response.message_id == assistants[0].id
    assert response.text == "Hello! How can I help?"
    assert response.human_support_requested is False
    assert "conversations/check-resolution" in jobs.events()
    assert llm.calls[0]["messages"][-1] == {"role": "user", "content": "Hi there"}


@pytest.mark.asyncio
async def test_chat_escalation_replaces_model_text(session, llm) -> None:
    llm.queue(tool_call_result("request_human_support", {"reason": "Wants a manager"}), "Someone will reach out.")
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, source="chat", assigned_to_ai=True)
    user_message = await create_message(session, conversation, body="Get me a human")

    response = await respond_with_ai(
        session,
        conversation=conversation,
        mailbox=mailbox,
        user_email="customer@example.com",
        content="Get me a human",
        message_id=user_message.id,
    )
    await _collect_text(response)

    assert response.human_support_requested is True
    assert response.text == ESCALATED_REPLY
    assert [message.body for message in await _assistant_messages(session, conversation.id)] == [ESCALATED_REPLY]
    assert await has_event_of_type(session, conversation.id, "request_human_support")
    await session.refresh(conversation)
    assert conversation.assigned_to_ai is False
    assert conversation.status == "open"


@pytest.mark.asyncio
async def test_vip_first_message_gets_holding_reply(session, llm) -> None:
    mailbox = await create_mailbox(session, disable_auto_response_for_vips=True)
    session.add(PlatformCustomer(mailbox_id=mailbox.id, email="vip@example.com", is_vip=True))
    await session.commit()
    conversation = await create_conversation(session, mailbox, source="chat", email_from="vip@example.com")
    user_message = await create_message(session, conversation, body="Hello")

    response = await respond_with_ai(
        session,
        conversation=conversation,
        mailbox=mailbox,
        user_email="vip@example.com",
        content="Hello",
        message_id=user_message.id,
    )

    assert await _collect_text(response) == HUMAN_FOLLOW_UP_REPLY
    assert response.human_support_requested is True
    assert [message.body for message in await _assistant_messages(session, conversation.id)] == [HUMAN_FOLLOW_UP_REPLY]
    assert llm.calls == []


@pytest.mark.asyncio
async def test_staff_handled_conversation_gets_no_ai_reply(session, llm) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, source="chat", status="closed")
    await create_message(session, conversation, body="First question")
    await create_message(session, conversation, role="staff", body="Staff answer", user_id="user_1")
    follow_up = await create_message(session, conversation, body="Another question")

    response = await respond_with_ai(
        session,
        conversation=conversation,
        mailbox=mailbox,
        user_email="customer@example.com",
        content="Another question",
        message_id=follow_up.id,
    )

    assert await _collect_text(response) == ""
    assert response.human_support_requested is True
    assert response.message_id is None
    assert await _assistant_messages(session, conversation.id) == []
    await session.refresh(conversation)
    assert conversation.status == "open"
    assert llm.calls == []


@pytest.mark.asyncio
async def test_draft_is_rendered_as_html(session, llm) -> None:
    llm.queue("**Thanks** for reaching out.")
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, source="email")
    user_message = await create_message(session, conversation, body="Where is my order?")

    draft = await create_draft_for_conversation(session, conversation.slug)

    assert draft is not None
    assert draft.status == "draft"
    assert draft.response_to_id == user_message.id
    assert "<strong>Thanks</strong>" in draft.body
    assert "Where is my order?" in llm.calls[0]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_draft_without_customer_message_is_skipped(session, llm) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    assert await create_draft_for_conversation(session, conversation.slug) is None
    assert llm.calls == []


@pytest.mark.asyncio
async def test_auto_response_answers_and_closes(session, llm, jobs) -> None:
    llm.queue("You can reset your password from the login page.")
    mailbox = await create_mailbox(session, widget_host="https://help.example.com")
    conversation = await create_conversation(session, mailbox, source="email")
    message = await create_message(session, conversation, body="How do I reset my password?")

    result = await handle_auto_response(session, message.id)

    assert result == {"message": f"Auto response sent for message {message.id}"}
    assistants = await _assistant_messages(session, conversation.id)
    assert [assistant.body for assistant in assistants] == ["You can reset your password from the login page."]
    await session.refresh(conversation)
    assert conversation.status == "closed"
    assert conversation.source == "chat"
    assert "conversations/check-resolution" in jobs.events()
    organization = await get_organization(session, mailbox.organization_id)
    assert organization.automated_replies_count == 1


@pytest.mark.asyncio
async def test_auto_response_needs_eligible_organization(session, llm) -> None:
    organization = await create_organization(session, paid=False)
    mailbox = await create_mailbox(session, organization, widget_host="https://help.example.com")
    conversation = await create_conversation(session, mailbox, source="email")
    message = await create_message(session, conversation)

    assert await handle_auto_response(session, message.id) == {"message": "Not sent, free trial expired"}
    assert llm.calls == []
    await session.refresh(conversation)
    assert conversation.status == "open"
