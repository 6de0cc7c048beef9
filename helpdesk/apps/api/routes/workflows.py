from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.apps.api.deps import get_db
from helpdesk.domain.models import Mailbox
from helpdesk.persistence.repos.mailboxes import get_mailbox_by_slug
from helpdesk.persistence.repos.workflows import list_active_workflows, list_workflow_actions
from helpdesk.services.workflows.definitions import (
    FreeformAction,
    FreeformWorkflowInput,
    delete_workflow,
    get_workflow_action,
    reorder_workflows,
    serialize_freeform_workflow,
    update_or_create_freeform_workflow,
)

router = APIRouter(prefix="/mailboxes/{mailbox_slug}/workflows", tags=["workflows"])


class WorkflowRequest(BaseModel):
    id: int | None = None
    name: str | None = None
    prompt: str
    action: FreeformAction
    order: int | None = None
    run_on_replies: bool = False
    auto_reply_from_metadata: bool = False
    message: str | None = None
    assigned_user_id: str | None = None


class ReorderRequest(BaseModel):
    positions: list[int]


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": message})


async def _mailbox(db: AsyncSession, mailbox_slug: str) -> Mailbox:
    mailbox = await get_mailbox_by_slug(db, mailbox_slug)
    if mailbox is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Mailbox not found"})
    return mailbox


@router.get("")
async def list_workflows(mailbox_slug: str, db: AsyncSession = Depends(get_db)) -> list[dict]:
    mailbox = await _mailbox(db, mailbox_slug)
    items = []
    for workflow in await list_active_workflows(db, mailbox.id):
        items.append(
            {
                "id": workflow.id,
                "name": workflow.name,
                "prompt": workflow.prompt,
                "order": workflow.order,
                "runOnReplies": workflow.run_on_replies,
                "autoReplyFromMetadata": workflow.auto_reply_from_metadata,
                **get_workflow_action(await list_workflow_actions(db, workflow.id)),
            }
        )
    return items


@router.put("")
async def set_workflow(mailbox_slug: str, payload: WorkflowRequest, db: AsyncSession = Depends(get_db)) -> dict:
    mailbox = await _mailbox(db, mailbox_slug)
    check = serialize_freeform_workflow(
        action=payload.action,
        message=payload.message,
        auto_reply_from_metadata=payload.auto_reply_from_metadata,
    )
    if check["error"]:
        raise _bad_request(check["error"])
    result = await update_or_create_freeform_workflow(
        db, FreeformWorkflowInput(mailbox_id=mailbox.id, **payload.model_dump())
    )
    if "error" in result:
        raise _bad_request(result["error"])
    return {"id": result["workflow"].id, "name": result["workflow"].name}


@router.delete("/{workflow_id}", status_code=204)
async def remove_workflow(mailbox_slug: str, workflow_id: int, db: AsyncSession = Depends(get_db)) -> Response:
    mailbox = await _mailbox(db, mailbox_slug)
    if not await delete_workflow(db, mailbox.id, workflow_id):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Workflow not found"})
    return Response(status_code=204)


@router.post("/reorder", status_code=204)
async def reorder(mailbox_slug: str, payload: ReorderRequest, db: AsyncSession = Depends(get_db)) -> Response:
    mailbox = await _mailbox(db, mailbox_slug)
    await reorder_workflows(db, mailbox.id, payload.positions)
    return Response(status_code=204)
