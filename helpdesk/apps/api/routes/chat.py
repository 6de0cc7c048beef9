from __future__ import annotations

import json
import logging
import time
from typing import AsyncGenerator
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.apps.api.deps import get_db
from helpdesk.core.errors import DatabaseError, LLMError, NotFoundError, ProviderConfigError, RetrievalError
from helpdesk.domain.models import Conversation
from helpdesk.persistence.repos.conversations import get_conversation_by_slug
from helpdesk.persistence.repos.mailboxes import get_mailbox_by_slug
from helpdesk.persistence.transactions import transaction
from helpdesk.services.conversations.messages import create_conversation_message
from helpdesk.services.generation import respond_with_ai
from helpdesk.services.telemetry import increment_counter, record_stream_duration

logger = logging.getLogger(__name__)
router = APIRouter(tags=["chat"])

GENERIC_ERROR_MESSAGE = "Error generating AI response"

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


class ChatRequest(BaseModel):
    mailbox_slug: str
    message: str = Field(min_length=1)
    conversation_slug: str | None = None
    email: str | None = None
    send_email: bool = False


def _wrap_payload(payload_type: str, request_id: str, conversation_slug: str, data: dict) -> dict:
    # Always include request/conversation identifiers for traceability across streamed events.
    return {
        "type": payload_type,
        "request_id": request_id,
        "conversation_slug": conversation_slug,
        "data": data,
    }


def _sse_message(payload: dict) -> str:
    # SSE framing invariants: event name must be "message" and data must be a compact JSON line.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: message\ndata: {data}\n\n"


def _map_error(exc: Exception) -> tuple[str, str]:
    # Map internal exceptions to stable client-facing codes without leaking provider detail.
    if isinstance(exc, ProviderConfigError):
        return "LLM_CONFIG_MISSING", GENERIC_ERROR_MESSAGE
    if isinstance(exc, LLMError):
        return "LLM_ERROR", GENERIC_ERROR_MESSAGE
    if isinstance(exc, RetrievalError):
        return "RETRIEVAL_ERROR", GENERIC_ERROR_MESSAGE
    if isinstance(exc, NotFoundError):
        return "NOT_FOUND", str(exc)
    if isinstance(exc, (DatabaseError, SQLAlchemyError)):
        return "DB_ERROR", "Database error"
    return "INTERNAL_ERROR", GENERIC_ERROR_MESSAGE


@router.post("/chat")
async def chat(
    payload: ChatRequest,
    http_request: Request,
    db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
    request_id = str(uuid4())
    mailbox = await get_mailbox_by_slug(db, payload.mailbox_slug)
    if mailbox is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Mailbox not found"})

    conversation: Conversation | None = None
    if payload.conversation_slug:
        conversation = await get_conversation_by_slug(db, payload.conversation_slug)
        if conversation is None or conversation.mailbox_id != mailbox.id:
            raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Conversation not found"})

    # TX #1: persist the customer message so history is durable before streaming.
    try:
        async with transaction(db):
            if conversation is None:
                conversation = Conversation(
                    mailbox_id=mailbox.id,
                    email_from=payload.email,
                    subject=payload.message[:50],
                    status="open",
                    source="chat",
                )
                db.add(conversation)
                await db.flush()
            user_message = await create_conversation_message(
                db,
                conversation_id=conversation.id,
                role="user",
                body=payload.message,
                cleaned_up_text=payload.message,
                email_from=payload.email,
                status="sent",
            )
    except Exception as exc:
        code, message = _map_error(exc)
        logger.warning("chat_message_persist_failed request_id=%s code=%s", request_id, code)
        slug = conversation.slug if conversation is not None else ""

        async def early_error_stream() -> AsyncGenerator[str, None]:
            # Emit a single SSE error event if pre-run persistence fails.
            yield _sse_message(_wrap_payload("error", request_id, slug, {"code": code, "message": message}))

        return StreamingResponse(early_error_stream(), headers=_SSE_HEADERS, media_type="text/event-stream")

    conversation_slug = conversation.slug

    async def event_stream() -> AsyncGenerator[str, None]:
        started = time.monotonic()
        increment_counter("chat_streams")
        try:
            response = await respond_with_ai(
                db,
                conversation=conversation,
                mailbox=mailbox,
                user_email=payload.email,
                content=payload.message,
                message_id=user_message.id,
                send_email=payload.send_email,
            )
            async for chunk in response.chunks:
                if await http_request.is_disconnected():
                    # Stop streaming immediately when the client disconnects.
                    logger.info("chat_client_disconnected request_id=%s", request_id)
                    return
                if chunk.type != "text-delta" or not chunk.text:
                    continue
                yield _sse_message(_wrap_payload("token.delta", request_id, conversation_slug, {"delta": chunk.text}))
        except Exception as exc:
            logger.exception("chat_stream_failed request_id=%s", request_id)
            increment_counter("chat_stream_errors")
            code, message = _map_error(exc)
            yield _sse_message(_wrap_payload("error", request_id, conversation_slug, {"code": code, "message": message}))
            return
        finally:
            record_stream_duration((time.monotonic() - started) * 1000.0)

        yield _sse_message(
            _wrap_payload(
                "message.final",
                request_id,
                conversation_slug,
                {
                    "text": response.text,
                    "messageId": response.message_id,
                    "traceId": response.trace_id,
                    "sources": response.sources,
                    "humanSupportRequested": response.human_support_requested,
                },
            )
        )

    return StreamingResponse(event_stream(), headers=_SSE_HEADERS, media_type="text/event-stream")
