from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.domain.models import ConversationMessage, Workflow, WorkflowRun, WorkflowRunAction
from helpdesk.persistence.repos.workflows import get_workflow_run, list_workflow_actions
from helpdesk.persistence.transactions import in_transaction, transaction
from helpdesk.providers.llm.base import LLMProvider
from helpdesk.services.workflows.actions import run_workflow_action


logger = logging.getLogger(__name__)


def workflow_snapshot(workflow: Workflow) -> dict[str, object]:
    return {
        "name": workflow.name,
        "description": workflow.description,
        "prompt": workflow.prompt,
        "order": workflow.order,
        "workflow_type": workflow.workflow_type,
        "run_on_replies": workflow.run_on_replies,
        "auto_reply_from_metadata": workflow.auto_reply_from_metadata,
    }


async def _track_workflow_run(
    session: AsyncSession,
    workflow_id: int,
    message_id: int,
    conversation_id: int,
    snapshot: dict[str, object],
    attempted: list[tuple[str, str]],
) -> WorkflowRun | None:
    try:
        async with transaction(session):
            run = WorkflowRun(
                workflow_id=workflow_id,
                message_id=message_id,
                conversation_id=conversation_id,
                workflow_info=snapshot,
            )
            session.add(run)
            await session.flush()
            for action_type, action_value in attempted:
                session.add(
                    WorkflowRunAction(
                        workflow_run_id=run.id,
                        action_type=action_type,
                        action_value=action_value,
                    )
                )
            await session.flush()
    except IntegrityError:
        # Another delivery of the same event recorded the run first.
        logger.warning("workflow_run_duplicate workflow_id=%s message_id=%s", workflow_id, message_id)
        return await get_workflow_run(session, workflow_id, message_id)
    return run


async def execute_workflow_actions(
    session: AsyncSession,
    workflow: Workflow,
    message: ConversationMessage,
    *,
    provider: LLMProvider | None = None,
) -> WorkflowRun | None:
    """Run a matched workflow's actions in order and record the run.

    The chain stops at the first action that does not complete, whether it
    reports failure or raises. Exactly one WorkflowRun is written per
    (workflow, message), listing the actions that were attempted, including
    the one that failed. A message that already has a run for this workflow
    is left alone and ``None`` is returned.
    """
    # A failed action rolls the session back and expires loaded rows.
    workflow_id = workflow.id
    message_id = message.id
    conversation_id = message.conversation_id
    snapshot = workflow_snapshot(workflow)

    if await get_workflow_run(session, workflow_id, message_id) is not None:
        logger.info("workflow_run_exists workflow_id=%s message_id=%s", workflow_id, message_id)
        return None

    actions = [
        (action, action.action_type, action.action_value)
        for action in await list_workflow_actions(session, workflow_id)
    ]
    attempted: list[tuple[str, str]] = []
    completed = True
    for action, action_type, action_value in actions:
        attempted.append((action_type, action_value))
        try:
            done = await run_workflow_action(session, action, message, provider=provider)
        except Exception as exc:  # noqa: BLE001 - the run is still recorded for the attempted actions
            logger.error(
                "workflow_action_error action=%s workflow_id=%s message_id=%s",
                action_type,
                workflow_id,
                message_id,
                exc_info=exc,
            )
            if not in_transaction(session):
                await session.rollback()
            done = False
        if not done:
            completed = False
            break

    run = await _track_workflow_run(session, workflow_id, message_id, conversation_id, snapshot, attempted)
    logger.info(
        "workflow_executed workflow_id=%s message_id=%s attempted=%s completed=%s",
        workflow_id,
        message_id,
        len(attempted),
        completed,
    )
    return run
