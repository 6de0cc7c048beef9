from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.config import get_settings
from helpdesk.core.errors import NotFoundError
from helpdesk.core.logging import configure_logging
from helpdesk.persistence.db import SessionLocal
from helpdesk.persistence.repos.conversations import get_conversation
from helpdesk.persistence.repos.messages import get_message
from helpdesk.services.generation import create_draft_for_conversation, handle_auto_response
from helpdesk.services.queue import JobPayload
from helpdesk.services.responder import respond_to_email
from helpdesk.services.retrieval import create_conversation_embedding
from helpdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

EventHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[Any]]


async def _message_created(session: AsyncSession, data: dict[str, Any]) -> Any:
    # Only inbound customer emails go through workflows and auto-response.
    message = await get_message(session, int(data["messageId"]))
    if message is None:
        raise NotFoundError(f"Message {data['messageId']} not found")
    if message.role != "user":
        return "ignored"
    conversation = await get_conversation(session, message.conversation_id)
    if conversation is None or conversation.source != "email":
        return "ignored"
    return await respond_to_email(session, message.id)


async def _auto_response(session: AsyncSession, data: dict[str, Any]) -> Any:
    return await handle_auto_response(session, int(data["messageId"]))


async def _refresh_draft(session: AsyncSession, data: dict[str, Any]) -> Any:
    draft = await create_draft_for_conversation(session, str(data["conversationSlug"]))
    return draft.id if draft is not None else None


async def _embed_conversation(session: AsyncSession, data: dict[str, Any]) -> Any:
    conversation = await create_conversation_embedding(session, str(data["conversationSlug"]))
    return conversation.id


HANDLERS: dict[str, EventHandler] = {
    "conversations/message.created": _message_created,
    "conversations/auto-response.create": _auto_response,
    "conversations/draft.refresh": _refresh_draft,
    "conversations/embedding.create": _embed_conversation,
}


async def dispatch_event(session: AsyncSession, payload: JobPayload) -> Any:
    handler = HANDLERS.get(payload.event)
    if handler is None:
        # Delivered to other consumers (email sender, notifications); nothing to do here.
        logger.info("job_acknowledged event=%s", payload.event)
        return None
    result = await handler(session, payload.data)
    increment_counter(f"jobs:{payload.event}")
    logger.info("job_handled event=%s result=%s", payload.event, result)
    return result


async def handle_event(ctx, payload: dict) -> Any:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = JobPayload.model_validate(payload)
    attempt = ctx.get("job_try", 1)
    logger.info("job_started event=%s job_id=%s attempt=%s", job_payload.event, ctx.get("job_id"), attempt)
    async with SessionLocal() as session:
        return await dispatch_event(session, job_payload)


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("worker_started queue=%s", get_settings().queue_name)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.queue_name
    max_tries = settings.job_max_tries
    functions = [handle_event]
    on_startup = _startup
