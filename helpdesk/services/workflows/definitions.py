from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any, Literal, Sequence

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.prompts import WORKFLOW_NAME_PROMPT
from helpdesk.core.config import get_settings
from helpdesk.domain.models import Mailbox, Workflow, WorkflowAction, WorkflowRun
from helpdesk.persistence.repos.mailboxes import get_mailbox, get_metadata_api
from helpdesk.persistence.repos.workflows import (
    delete_workflow_actions,
    get_workflow,
    list_workflow_run_actions,
    max_order,
)
from helpdesk.persistence.transactions import transaction
from helpdesk.providers.llm.base import LLMProvider
from helpdesk.services.completion import generate_completion


logger = logging.getLogger(__name__)

FreeformAction = Literal[
    "close_ticket",
    "mark_spam",
    "reply_and_close_ticket",
    "reply_and_set_open",
    "assign_user",
    "unknown",
]

ACTIONS_WITH_MESSAGE = ("reply_and_close_ticket", "reply_and_set_open")

_QUOTED_RE = re.compile(r'^"(.*)"$', re.DOTALL)


class FreeformWorkflowInput(BaseModel):
    mailbox_id: int
    prompt: str
    action: FreeformAction
    id: int | None = None
    name: str | None = None
    order: int | None = None
    run_on_replies: bool = False
    auto_reply_from_metadata: bool = False
    message: str | None = None
    assigned_user_id: str | None = None


def serialize_freeform_workflow(
    *, action: str | None, message: str | None = None, auto_reply_from_metadata: bool = False
) -> dict[str, str | None]:
    if action in ACTIONS_WITH_MESSAGE and not (auto_reply_from_metadata or message):
        return {"error": "The message field cannot be empty for this action"}
    return {"error": None}


async def generate_workflow_name(
    session: AsyncSession, prompt: str, mailbox: Mailbox, *, provider: LLMProvider | None = None
) -> str:
    outcome = await generate_completion(
        session,
        system=WORKFLOW_NAME_PROMPT,
        messages=[{"role": "user", "content": prompt}],
        model=get_settings().mini_model,
        temperature=0,
        max_tokens=15,
        mailbox_id=mailbox.id,
        query_type="workflow_name_generator",
        provider=provider,
    )
    return _QUOTED_RE.sub(r"\1", outcome.text.strip())


def _status_for(action: str) -> str | None:
    if action == "reply_and_set_open":
        return "open"
    if action == "mark_spam":
        return "spam"
    if action in ("close_ticket", "reply_and_close_ticket"):
        return "closed"
    return None


def build_workflow_actions(params: FreeformWorkflowInput, metadata_api_id: int | None) -> list[tuple[str, str]]:
    """Translate a UI-level action into the stored (action_type, action_value) chain."""
    actions: list[tuple[str, str]] = []
    status = _status_for(params.action)
    if status is not None:
        actions.append(("change_helper_status", status))
    if params.action == "reply_and_close_ticket":
        if params.auto_reply_from_metadata and metadata_api_id is not None:
            actions.append(("send_auto_reply_from_metadata", str(metadata_api_id)))
        else:
            actions.append(("send_email", params.message or ""))
    if params.action == "assign_user":
        actions.append(("assign_user", params.assigned_user_id or ""))
    return actions


async def update_or_create_freeform_workflow(
    session: AsyncSession,
    params: FreeformWorkflowInput,
    *,
    provider: LLMProvider | None = None,
) -> dict[str, Any]:
    """Create a workflow, or replace an existing one's definition and actions.

    Returns ``{"workflow": ...}`` on success and ``{"error": ...}`` otherwise.
    New workflows without a name get a short generated title and are placed
    after the mailbox's current last workflow.
    """
    mailbox = await get_mailbox(session, params.mailbox_id)
    if mailbox is None:
        return {"error": "Mailbox not found"}

    metadata_api_id: int | None = None
    if params.action == "reply_and_close_ticket" and params.auto_reply_from_metadata:
        metadata_api = await get_metadata_api(session, mailbox.id)
        if metadata_api is None:
            return {"error": "Mailbox does not have metadata endpoint"}
        metadata_api_id = metadata_api.id

    workflow: Workflow | None = None
    if params.id is not None:
        workflow = await get_workflow(session, params.id)
        if workflow is None or workflow.mailbox_id != mailbox.id or workflow.deleted_at is not None:
            return {"error": "Workflow not found"}
        name = params.name or workflow.name
    else:
        name = params.name or await generate_workflow_name(session, params.prompt, mailbox, provider=provider)

    async with transaction(session):
        if workflow is not None:
            workflow.name = name
            workflow.prompt = params.prompt
            workflow.description = params.prompt
            if params.order is not None:
                workflow.order = params.order
            workflow.run_on_replies = params.run_on_replies
            workflow.auto_reply_from_metadata = params.auto_reply_from_metadata
            await delete_workflow_actions(session, workflow.id)
        else:
            last_order = await max_order(session, mailbox.id)
            workflow = Workflow(
                mailbox_id=mailbox.id,
                name=name,
                prompt=params.prompt,
                description=params.prompt,
                order=(last_order or 0) + 1,
                workflow_type="freeform",
                run_on_replies=params.run_on_replies,
                auto_reply_from_metadata=params.auto_reply_from_metadata,
            )
            session.add(workflow)
            await session.flush()

        for action_type, action_value in build_workflow_actions(params, metadata_api_id):
            session.add(WorkflowAction(workflow_id=workflow.id, action_type=action_type, action_value=action_value))
        await session.flush()

    logger.info(
        "workflow_saved workflow_id=%s mailbox_id=%s action=%s created=%s",
        workflow.id,
        mailbox.id,
        params.action,
        params.id is None,
    )
    return {"workflow": workflow}


async def reorder_workflows(session: AsyncSession, mailbox_id: int, positions: Sequence[int]) -> None:
    async with transaction(session):
        for order, workflow_id in enumerate(positions):
            await session.execute(
                update(Workflow)
                .where(Workflow.mailbox_id == mailbox_id, Workflow.id == workflow_id)
                .values(order=order)
            )


async def delete_workflow(session: AsyncSession, mailbox_id: int, workflow_id: int) -> bool:
    async with transaction(session):
        result = await session.execute(
            update(Workflow)
            .where(
                Workflow.mailbox_id == mailbox_id,
                Workflow.id == workflow_id,
                Workflow.deleted_at.is_(None),
            )
            .values(deleted_at=datetime.now(timezone.utc))
        )
    return result.rowcount > 0


def get_workflow_action(actions: Sequence[Any]) -> dict[str, Any]:
    """Map a stored action chain back to the single UI-level action it represents."""
    kinds = [(action.action_type, action.action_value) for action in actions]
    if len(kinds) == 1:
        action_type, action_value = kinds[0]
        if (action_type, action_value) == ("change_helper_status", "spam"):
            return {"action": "mark_spam"}
        if (action_type, action_value) == ("change_helper_status", "closed"):
            return {"action": "close_ticket"}
        if action_type == "assign_user":
            return {"action": "assign_user", "assignedUserId": action_value}
    elif len(kinds) == 2:
        message = next((value for action_type, value in kinds if action_type == "send_email"), None)
        sends_reply = any(action_type in ("send_email", "send_auto_reply_from_metadata") for action_type, _ in kinds)
        if sends_reply and ("change_helper_status", "closed") in kinds:
            return {"action": "reply_and_close_ticket", "message": message}
        if sends_reply and ("change_helper_status", "open") in kinds:
            return {"action": "reply_and_set_open", "message": message}
    return {"action": "unknown"}


async def get_workflow_info(session: AsyncSession, run: WorkflowRun) -> dict[str, Any]:
    info = dict(run.workflow_info or {})
    run_on_replies = info.pop("run_on_replies", False)
    auto_reply_from_metadata = info.pop("auto_reply_from_metadata", False)
    actions = await list_workflow_run_actions(session, run.id)
    return {
        "id": run.workflow_id,
        **info,
        "runOnReplies": run_on_replies,
        "autoReplyFromMetadata": auto_reply_from_metadata or False,
        **get_workflow_action(actions),
    }
