from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.config import get_settings
from helpdesk.persistence.transactions import after_commit


logger = logging.getLogger(__name__)

# arq function that receives every dispatched event.
JOB_FUNCTION = "handle_event"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
_queue: "JobQueue | None" = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobPayload(BaseModel):
    # Published job schema for API/core-to-worker handoff.
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=_utc_now)


class JobQueue(Protocol):
    async def send(self, event: str, data: dict[str, Any], *, delay_s: float | None = None) -> None:
        ...


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class ArqJobQueue:
    async def send(self, event: str, data: dict[str, Any], *, delay_s: float | None = None) -> None:
        payload = JobPayload(event=event, data=data)
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            JOB_FUNCTION,
            payload.model_dump(mode="json"),
            _defer_by=delay_s,
        )
        logger.info(
            "job_enqueued event=%s job_id=%s delay_s=%s",
            event,
            getattr(job, "job_id", None),
            delay_s,
        )


@dataclass
class SentJob:
    event: str
    data: dict[str, Any]
    delay_s: float | None = None


@dataclass
class RecordingJobQueue:
    # Inline mode keeps dispatched jobs in memory so tests can assert on them.
    sent: list[SentJob] = field(default_factory=list)

    async def send(self, event: str, data: dict[str, Any], *, delay_s: float | None = None) -> None:
        self.sent.append(SentJob(event=event, data=dict(data), delay_s=delay_s))

    def events(self) -> list[str]:
        return [job.event for job in self.sent]

    def clear(self) -> None:
        self.sent.clear()


def get_job_queue() -> JobQueue:
    global _queue
    if _queue is None:
        mode = get_settings().job_execution_mode.lower()
        _queue = RecordingJobQueue() if mode == "inline" else ArqJobQueue()
    return _queue


async def send_after_commit(
    session: AsyncSession,
    event: str,
    data: dict[str, Any],
    *,
    delay_s: float | None = None,
) -> None:
    async def _send() -> None:
        await get_job_queue().send(event, data, delay_s=delay_s)

    await after_commit(session, _send)
