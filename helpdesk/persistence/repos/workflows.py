from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.domain.models import Workflow, WorkflowAction, WorkflowRun, WorkflowRunAction


async def list_active_workflows(
    session: AsyncSession, mailbox_id: int, *, run_on_replies_only: bool = False
) -> list[Workflow]:
    stmt = select(Workflow).where(Workflow.mailbox_id == mailbox_id, Workflow.deleted_at.is_(None))
    if run_on_replies_only:
        stmt = stmt.where(Workflow.run_on_replies.is_(True))
    result = await session.execute(stmt.order_by(Workflow.order.asc(), Workflow.id.asc()))
    return list(result.scalars().all())


async def get_workflow(session: AsyncSession, workflow_id: int) -> Workflow | None:
    return await session.get(Workflow, workflow_id)


async def list_workflow_actions(session: AsyncSession, workflow_id: int) -> list[WorkflowAction]:
    result = await session.execute(
        select(WorkflowAction).where(WorkflowAction.workflow_id == workflow_id).order_by(WorkflowAction.id.asc())
    )
    return list(result.scalars().all())


async def delete_workflow_actions(session: AsyncSession, workflow_id: int) -> None:
    for action in await list_workflow_actions(session, workflow_id):
        await session.delete(action)
    await session.flush()


async def get_workflow_run(session: AsyncSession, workflow_id: int, message_id: int) -> WorkflowRun | None:
    result = await session.execute(
        select(WorkflowRun).where(WorkflowRun.workflow_id == workflow_id, WorkflowRun.message_id == message_id)
    )
    return result.scalar_one_or_none()


async def list_workflow_run_actions(session: AsyncSession, run_id: int) -> list[WorkflowRunAction]:
    result = await session.execute(
        select(WorkflowRunAction)
        .where(WorkflowRunAction.workflow_run_id == run_id)
        .order_by(WorkflowRunAction.id.asc())
    )
    return list(result.scalars().all())


async def max_order(session: AsyncSession, mailbox_id: int) -> int | None:
    result = await session.execute(
        select(func.max(Workflow.order)).where(Workflow.mailbox_id == mailbox_id, Workflow.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()
