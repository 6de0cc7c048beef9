from __future__ import annotations

import pytest
from sqlalchemy import func, select

from helpdesk.domain.models import Note
from helpdesk.persistence.transactions import in_transaction, transaction
from helpdesk.services.conversations.messages import create_conversation_message
from helpdesk.services.queue import send_after_commit
from helpdesk.services.realtime import publish_after_commit
from helpdesk.tests.utils.factories import create_conversation, create_mailbox


async def _note_count(session) -> int:
    return (await session.execute(select(func.count()).select_from(Note))).scalar_one()


@pytest.mark.asyncio
async def test_nested_blocks_commit_once_and_dispatch_after(session, jobs, published) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    async with transaction(session):
        session.add(Note(conversation_id=conversation.id, body="outer"))
        async with transaction(session):
            session.add(Note(conversation_id=conversation.id, body="inner"))
            await send_after_commit(session, "conversations/test", {"id": 1})
            await publish_after_commit(session, "channel", "test.event", {"id": 1})
        assert in_transaction(session)
        assert jobs.sent == []
        assert published.published == []

    assert not in_transaction(session)
    assert await _note_count(session) == 2
    assert jobs.events() == ["conversations/test"]
    assert published.events() == ["test.event"]


@pytest.mark.asyncio
async def test_failure_rolls_back_everything_and_drops_dispatch(session, jobs, published) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    with pytest.raises(RuntimeError):
        async with transaction(session):
            session.add(Note(conversation_id=conversation.id, body="lost"))
            async with transaction(session):
                await send_after_commit(session, "conversations/test", {"id": 1})
                await publish_after_commit(session, "channel", "test.event", {"id": 1})
                raise RuntimeError("boom")

    assert await _note_count(session) == 0
    assert jobs.sent == []
    assert published.published == []

    # The next block starts clean.
    async with transaction(session):
        await send_after_commit(session, "conversations/other", {})
    assert jobs.events() == ["conversations/other"]


@pytest.mark.asyncio
async def test_dispatch_outside_a_block_is_immediate(session, jobs) -> None:
    await send_after_commit(session, "conversations/now", {"a": 1}, delay_s=5)

    assert [(job.event, job.data, job.delay_s) for job in jobs.sent] == [("conversations/now", {"a": 1}, 5)]


@pytest.mark.asyncio
async def test_queued_outbound_message_schedules_email(session, jobs) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)

    async with transaction(session):
        message = await create_conversation_message(
            session, conversation_id=conversation.id, role="staff", body="Reply", status="queueing"
        )
        draft = await create_conversation_message(
            session, conversation_id=conversation.id, role="ai_assistant", body="Draft", status="draft"
        )

    assert [(job.event, job.data) for job in jobs.sent] == [
        ("conversations/message.created", {"messageId": message.id, "conversationId": conversation.id}),
        ("conversations/email.enqueued", {"messageId": message.id}),
    ]
    assert jobs.sent[1].delay_s == 15
    assert draft.id not in [job.data["messageId"] for job in jobs.sent]
