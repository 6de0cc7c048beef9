from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import func, select

from helpdesk.core.config import get_settings
from helpdesk.core.errors import LLMError
from helpdesk.domain.models import ConversationMessage, Note, Subscription, WorkflowAction, WorkflowRun
from helpdesk.persistence.repos.workflows import list_workflow_run_actions
from helpdesk.persistence.transactions import transaction
from helpdesk.services.metadata_api import UserInfo
from helpdesk.services.organizations import can_send_automated_replies, record_automated_reply
from helpdesk.services.responder import respond_to_email
from helpdesk.services.workflows import actions as actions_module
from helpdesk.services.workflows.actions import run_workflow_action
from helpdesk.services.workflows.conditions import evaluate_workflow_condition
from helpdesk.services.workflows.engine import execute_workflow_actions
from helpdesk.tests.utils.factories import (
    create_conversation,
    create_mailbox,
    create_message,
    create_organization,
    create_workflow,
)


REFUND_PROMPT = "The customer asks for a refund"
REFUND_REPLY = "We'll process your refund within 3 business days."


async def _workflow_messages(session, conversation_id: int) -> list[ConversationMessage]:
    result = await session.execute(
        select(ConversationMessage).where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == "workflow",
        )
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_condition_over_token_limit_is_false_without_model_call(session, llm, monkeypatch) -> None:
    monkeypatch.setenv("COMPLETION_TOKEN_LIMIT", "5")
    get_settings.cache_clear()
    llm.queue(LLMError("should not be called"))
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation, body="I would like my money back for the last order please")

    assert await evaluate_workflow_condition(session, REFUND_PROMPT, message) is False
    assert llm.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("output", "expected"),
    [("TRUE", True), ("FALSE", False), ("true", False), ("Maybe", False), (" TRUE\n", True)],
)
async def test_condition_only_matches_exact_true(session, llm, output, expected) -> None:
    llm.queue(output)
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, subject="Refund")
    message = await create_message(session, conversation, body="Please refund me")

    assert await evaluate_workflow_condition(session, REFUND_PROMPT, message) is expected
    call = llm.calls[0]
    assert call["temperature"] == 0
    assert REFUND_PROMPT in call["messages"][0]["content"]
    assert call["messages"][-1]["content"] == "Refund\n\nPlease refund me"


@pytest.mark.asyncio
async def test_condition_provider_failure_is_false(session, llm) -> None:
    llm.queue(LLMError("invalid request", status_code=400))
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)

    assert await evaluate_workflow_condition(session, REFUND_PROMPT, message) is False


@pytest.mark.asyncio
async def test_condition_connection_failure_is_false(session, llm) -> None:
    llm.queue(*[httpx.ConnectError("refused")] * 3)
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)

    assert await evaluate_workflow_condition(session, REFUND_PROMPT, message) is False
    assert len(llm.calls) == 3


@pytest.mark.asyncio
async def test_refund_workflow_closes_and_replies(session, llm) -> None:
    llm.queue("TRUE")
    mailbox = await create_mailbox(session)
    workflow = await create_workflow(
        session,
        mailbox,
        prompt=REFUND_PROMPT,
        actions=[("change_helper_status", "closed"), ("send_email", REFUND_REPLY)],
    )
    conversation = await create_conversation(session, mailbox, source="email", subject="Refund please")
    message = await create_message(session, conversation, body="I want a refund for my purchase")

    assert await respond_to_email(session, message.id) == "workflow"

    await session.refresh(conversation)
    assert conversation.status == "closed"
    replies = await _workflow_messages(session, conversation.id)
    assert [reply.body for reply in replies] == [REFUND_REPLY]
    assert replies[0].response_to_id == message.id

    runs = (await session.execute(select(WorkflowRun))).scalars().all()
    assert len(runs) == 1
    assert runs[0].workflow_id == workflow.id
    assert runs[0].message_id == message.id
    recorded = await list_workflow_run_actions(session, runs[0].id)
    assert [(action.action_type, action.action_value) for action in recorded] == [
        ("change_helper_status", "closed"),
        ("send_email", REFUND_REPLY),
    ]


@pytest.mark.asyncio
async def test_first_matching_workflow_wins(session, llm) -> None:
    llm.queue("FALSE", "TRUE", "TRUE")
    mailbox = await create_mailbox(session)
    await create_workflow(session, mailbox, prompt="Spam", actions=[("change_helper_status", "spam")], order=1)
    second = await create_workflow(session, mailbox, prompt="Question", actions=[("add_note", "second")], order=2)
    await create_workflow(session, mailbox, prompt="Other", actions=[("add_note", "third")], order=3)
    conversation = await create_conversation(session, mailbox, source="email")
    message = await create_message(session, conversation)

    assert await respond_to_email(session, message.id) == "workflow"

    assert len(llm.calls) == 2
    runs = (await session.execute(select(WorkflowRun))).scalars().all()
    assert [run.workflow_id for run in runs] == [second.id]
    notes = (await session.execute(select(Note))).scalars().all()
    assert [note.body for note in notes] == ["second"]


@pytest.mark.asyncio
async def test_chain_stops_at_failing_action_and_records_attempts(session) -> None:
    mailbox = await create_mailbox(session)
    workflow = await create_workflow(
        session,
        mailbox,
        prompt="Anything",
        actions=[("add_note", "checked"), ("change_status", "closed"), ("change_helper_status", "spam")],
    )
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)

    run = await execute_workflow_actions(session, workflow, message)

    assert run is not None
    recorded = await list_workflow_run_actions(session, run.id)
    assert [action.action_type for action in recorded] == ["add_note", "change_status"]
    await session.refresh(conversation)
    assert conversation.status == "open"
    notes = (await session.execute(select(Note))).scalars().all()
    assert [note.body for note in notes] == ["checked"]


@pytest.mark.asyncio
async def test_workflow_runs_once_per_message(session) -> None:
    mailbox = await create_mailbox(session)
    workflow = await create_workflow(session, mailbox, prompt="Anything", actions=[("add_note", "once")])
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)

    assert await execute_workflow_actions(session, workflow, message) is not None
    assert await execute_workflow_actions(session, workflow, message) is None

    assert (await session.execute(select(func.count()).select_from(WorkflowRun))).scalar_one() == 1
    assert (await session.execute(select(func.count()).select_from(Note))).scalar_one() == 1


@pytest.mark.asyncio
async def test_reply_actions_require_eligible_organization(session) -> None:
    organization = await create_organization(session, paid=False)
    mailbox = await create_mailbox(session, organization)
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)
    action = WorkflowAction(workflow_id=0, action_type="send_email", action_value="Hi")

    assert await run_workflow_action(session, action, message) is False
    assert await _workflow_messages(session, conversation.id) == []


@pytest.mark.asyncio
async def test_assign_user_action_unassigns_ai(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, assigned_to_ai=True, status="open")
    message = await create_message(session, conversation)
    action = WorkflowAction(workflow_id=0, action_type="assign_user", action_value="user_9")

    assert await run_workflow_action(session, action, message) is True
    await session.refresh(conversation)
    assert conversation.assigned_to_user_id == "user_9"
    assert conversation.assigned_to_ai is False


@pytest.mark.asyncio
async def test_unknown_action_does_not_complete(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)
    action = WorkflowAction(workflow_id=0, action_type="launch_rocket", action_value="")

    assert await run_workflow_action(session, action, message) is False


@pytest.mark.asyncio
async def test_auto_reply_from_metadata_uses_customer_data(session, llm, monkeypatch) -> None:
    async def fake_fetch_metadata(session, email, mailbox):
        return UserInfo(prompt="Customer bought Pro on 2024-01-02", metadata={"plan": "pro"})

    monkeypatch.setattr(actions_module, "fetch_metadata", fake_fetch_metadata)
    llm.queue("Your Pro plan refund is on its way.")
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation, body="Refund my Pro plan")
    action = WorkflowAction(workflow_id=0, action_type="send_auto_reply_from_metadata", action_value="1")

    assert await run_workflow_action(session, action, message) is True

    replies = await _workflow_messages(session, conversation.id)
    assert [reply.body for reply in replies] == ["Your Pro plan refund is on its way."]
    system = llm.calls[-1]["messages"][0]["content"]
    assert "Customer bought Pro on 2024-01-02" in system


@pytest.mark.asyncio
async def test_auto_reply_from_metadata_without_metadata_fails(session, llm, monkeypatch) -> None:
    async def no_metadata(session, email, mailbox):
        return None

    monkeypatch.setattr(actions_module, "fetch_metadata", no_metadata)
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)
    action = WorkflowAction(workflow_id=0, action_type="send_auto_reply_from_metadata", action_value="1")

    assert await run_workflow_action(session, action, message) is False
    assert llm.calls == []


@pytest.mark.asyncio
async def test_metadata_reply_with_unreachable_model_is_recorded(session, llm, monkeypatch) -> None:
    async def fake_fetch_metadata(session, email, mailbox):
        return UserInfo(prompt="Customer bought Pro on 2024-01-02", metadata={"plan": "pro"})

    monkeypatch.setattr(actions_module, "fetch_metadata", fake_fetch_metadata)
    llm.queue(*[httpx.ConnectError("refused")] * 3)
    mailbox = await create_mailbox(session)
    workflow = await create_workflow(
        session,
        mailbox,
        prompt="Anything",
        actions=[("change_helper_status", "closed"), ("send_auto_reply_from_metadata", "1")],
    )
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation, body="Refund my Pro plan")

    run = await execute_workflow_actions(session, workflow, message)

    assert run is not None
    recorded = await list_workflow_run_actions(session, run.id)
    assert [action.action_type for action in recorded] == ["change_helper_status", "send_auto_reply_from_metadata"]
    await session.refresh(conversation)
    assert conversation.status == "closed"
    assert await _workflow_messages(session, conversation.id) == []


@pytest.mark.asyncio
async def test_crashing_action_stops_chain_and_records_run(session, monkeypatch) -> None:
    async def crashing_fetch_metadata(session, email, mailbox):
        raise RuntimeError("metadata endpoint crashed")

    monkeypatch.setattr(actions_module, "fetch_metadata", crashing_fetch_metadata)
    mailbox = await create_mailbox(session)
    workflow = await create_workflow(
        session,
        mailbox,
        prompt="Anything",
        actions=[("add_note", "checked"), ("send_auto_reply_from_metadata", "1"), ("change_helper_status", "spam")],
    )
    conversation = await create_conversation(session, mailbox, email_from="customer@example.com")
    message = await create_message(session, conversation)

    run = await execute_workflow_actions(session, workflow, message)

    assert run is not None
    recorded = await list_workflow_run_actions(session, run.id)
    assert [action.action_type for action in recorded] == ["add_note", "send_auto_reply_from_metadata"]
    notes = (await session.execute(select(Note))).scalars().all()
    assert [note.body for note in notes] == ["checked"]
    await session.refresh(conversation)
    assert conversation.status == "open"


@pytest.mark.asyncio
async def test_action_failing_inside_transaction_is_rolled_back_and_recorded(session, monkeypatch) -> None:
    async def failing_status_update(session, conversation, status):
        async with transaction(session):
            conversation.status = status
            raise RuntimeError("status update failed")

    monkeypatch.setattr(actions_module, "update_conversation_status", failing_status_update)
    mailbox = await create_mailbox(session)
    workflow = await create_workflow(session, mailbox, prompt="Anything", actions=[("change_helper_status", "closed")])
    conversation = await create_conversation(session, mailbox)
    message = await create_message(session, conversation)
    conversation_id = conversation.id

    run = await execute_workflow_actions(session, workflow, message)

    assert run is not None
    assert run.conversation_id == conversation_id
    assert (await session.execute(select(func.count()).select_from(WorkflowRun))).scalar_one() == 1
    await session.refresh(conversation)
    assert conversation.status == "open"


@pytest.mark.asyncio
async def test_workflow_replies_use_up_free_trial_allowance(session, monkeypatch) -> None:
    monkeypatch.setenv("FREE_TRIAL_AUTOMATED_REPLIES_LIMIT", "1")
    get_settings.cache_clear()
    organization = await create_organization(
        session, paid=False, free_trial_ends_at=datetime.now(timezone.utc) + timedelta(days=7)
    )
    session.add(Subscription(organization_id=organization.id, status="trialing"))
    await session.commit()
    mailbox = await create_mailbox(session, organization)
    conversation = await create_conversation(session, mailbox)
    first = await create_message(session, conversation)
    second = await create_message(session, conversation)
    action = WorkflowAction(workflow_id=0, action_type="send_email", action_value=REFUND_REPLY)

    assert await run_workflow_action(session, action, first) is True
    await session.refresh(organization)
    assert organization.automated_replies_count == 1
    assert await can_send_automated_replies(session, organization) is False

    assert await run_workflow_action(session, action, second) is False
    replies = await _workflow_messages(session, conversation.id)
    assert [reply.body for reply in replies] == [REFUND_REPLY]


@pytest.mark.asyncio
async def test_automated_reply_count_is_capped_at_trial_limit(session, monkeypatch) -> None:
    monkeypatch.setenv("FREE_TRIAL_AUTOMATED_REPLIES_LIMIT", "2")
    get_settings.cache_clear()
    organization = await create_organization(session, automated_replies_count=2)

    assert await record_automated_reply(session, organization) == 2
    assert organization.automated_replies_count == 2
