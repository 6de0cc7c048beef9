from __future__ import annotations

import pytest
from sqlalchemy import func, select

from helpdesk.domain.models import Escalation, Note
from helpdesk.persistence.repos.conversations import get_active_escalation, list_events
from helpdesk.persistence.repos.messages import get_last_ai_generated_draft, get_message
from helpdesk.persistence.transactions import transaction
from helpdesk.services.conversations.escalations import create_escalation
from helpdesk.services.conversations.messages import create_ai_draft, create_reply
from helpdesk.services.conversations.mutations import add_note, update_conversation
from helpdesk.tests.utils.factories import create_conversation, create_mailbox, create_message


@pytest.mark.asyncio
async def test_closed_at_is_stamped_once_and_kept_on_reopen(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    assert conversation.closed_at is None

    await update_conversation(session, conversation.id, set={"status": "closed"})
    first_closed_at = conversation.closed_at
    assert first_closed_at is not None

    await update_conversation(session, conversation.id, set={"status": "open"})
    assert conversation.closed_at == first_closed_at

    await update_conversation(session, conversation.id, set={"status": "closed"})
    assert conversation.closed_at == first_closed_at


@pytest.mark.asyncio
async def test_only_changed_status_or_assignee_is_audited(session, published) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    await update_conversation(session, conversation.id, set={"subject": "New subject"})
    await update_conversation(session, conversation.id, set={"status": "open"})
    assert await list_events(session, conversation.id) == []
    assert "conversation.statusChanged" not in published.events()
    assert published.events().count("conversation.updated") == 2

    await update_conversation(session, conversation.id, set={"status": "closed"}, by_user_id="user_1", message="done")
    events = await list_events(session, conversation.id)
    assert len(events) == 1
    assert events[0].changes == {"status": "closed"}
    assert events[0].by_user_id == "user_1"
    assert events[0].reason == "done"
    assert published.events().count("conversation.statusChanged") == 1


@pytest.mark.asyncio
async def test_closing_requests_embedding_and_assignment_notifies(session, jobs) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    await update_conversation(session, conversation.id, set={"assigned_to_user_id": "user_2"}, by_user_id="user_1")
    await update_conversation(session, conversation.id, set={"status": "closed"})

    assert jobs.events() == ["conversations/assigned", "conversations/embedding.create"]
    assert jobs.sent[0].data["assignEvent"]["assignedToId"] == "user_2"
    assert jobs.sent[1].data == {"conversationSlug": conversation.slug}


@pytest.mark.asyncio
async def test_assigning_to_ai_closes_and_unassigns(session, jobs) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, assigned_to_user_id="user_1")
    message = await create_message(session, conversation)

    await update_conversation(session, conversation.id, set={"assigned_to_ai": True})

    assert conversation.status == "closed"
    assert conversation.assigned_to_user_id is None
    assert "conversations/auto-response.create" in jobs.events()
    assert {"messageId": message.id} in [job.data for job in jobs.sent]


@pytest.mark.asyncio
async def test_realtime_is_deferred_until_commit_and_dropped_on_rollback(session, published) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    with pytest.raises(RuntimeError):
        async with transaction(session):
            await update_conversation(session, conversation.id, set={"status": "closed"})
            assert published.events() == []
            raise RuntimeError("boom")

    assert published.events() == []
    await session.refresh(conversation)
    assert conversation.status == "open"


@pytest.mark.asyncio
async def test_reply_discards_pending_drafts_and_flags_perfect_match(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    customer_message = await create_message(session, conversation)
    await create_ai_draft(
        session,
        conversation_id=conversation.id,
        body="<p>Thanks for   reaching out!</p>",
        response_to_id=customer_message.id,
        prompt_info={},
    )

    reply_id = await create_reply(session, conversation.id, "Thanks for reaching out!", user_id="user_1")

    assert await get_last_ai_generated_draft(session, conversation.id) is None
    reply = await get_message(session, reply_id)
    assert reply.is_perfect is True
    assert reply.status == "queueing"
    assert conversation.status == "closed"
    assert conversation.assigned_to_user_id == "user_1"


@pytest.mark.asyncio
async def test_reply_resolves_active_escalation(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    session.add(Escalation(conversation_id=conversation.id))
    await session.commit()

    await create_reply(session, conversation.id, "We fixed it", user_id="user_1", close=False)

    assert await get_active_escalation(session, conversation.id) is None
    escalation = (await session.execute(select(Escalation))).scalar_one()
    assert escalation.resolved_via == "email"
    assert conversation.status == "open"


@pytest.mark.asyncio
async def test_new_draft_replaces_previous_draft_for_same_message(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    customer_message = await create_message(session, conversation)

    first = await create_ai_draft(
        session, conversation_id=conversation.id, body="First", response_to_id=customer_message.id, prompt_info={}
    )
    second = await create_ai_draft(
        session, conversation_id=conversation.id, body="Second", response_to_id=customer_message.id, prompt_info={}
    )

    assert first.status == "discarded"
    assert (await get_last_ai_generated_draft(session, conversation.id)).id == second.id


@pytest.mark.asyncio
async def test_escalating_twice_returns_error_without_second_row(session, jobs) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    first = await create_escalation(session, conversation, mailbox, user_id="user_1")
    second = await create_escalation(session, conversation, mailbox, user_id="user_1")

    assert "id" in first
    assert second == {"error": "Conversation is already escalated"}
    count = (await session.execute(select(func.count(Escalation.id)))).scalar_one()
    assert count == 1
    assert conversation.status == "escalated"
    assert "conversations/escalation.created" in jobs.events()


@pytest.mark.asyncio
async def test_escalation_requires_customer_email(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, email_from=None)

    assert await create_escalation(session, conversation, mailbox) == {"error": "Conversation has no email from"}


@pytest.mark.asyncio
async def test_add_note(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    note = await add_note(session, conversation.id, "Internal context")

    stored = (await session.execute(select(Note))).scalar_one()
    assert stored.id == note.id
    assert stored.body == "Internal context"
