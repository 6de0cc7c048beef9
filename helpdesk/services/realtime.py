from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.config import get_settings
from helpdesk.persistence.transactions import after_commit


logger = logging.getLogger(__name__)

_publisher: "Publisher | None" = None


class Publisher(Protocol):
    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        ...


def conversation_channel(slug: str) -> str:
    return f"{get_settings().realtime_channel_prefix}:conversation:{slug}"


def conversations_list_channel(mailbox_slug: str) -> str:
    return f"{get_settings().realtime_channel_prefix}:mailbox:{mailbox_slug}:conversations"


class RedisPublisher:
    def __init__(self, redis: Redis | None = None) -> None:
        self._redis = redis
        self._loop: asyncio.AbstractEventLoop | None = None

    def _client(self) -> Redis:
        current_loop = asyncio.get_running_loop()
        if self._redis is None or self._loop is not current_loop:
            # Redis clients are loop-bound; rebuild after loop changes.
            self._redis = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
            self._loop = current_loop
        return self._redis

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        # Fire-and-forget: subscribers receive at most once, no ack is awaited.
        message = json.dumps({"event": event, "data": payload}, default=str, separators=(",", ":"))
        await self._client().publish(channel, message)


@dataclass
class PublishedEvent:
    channel: str
    event: str
    payload: dict[str, Any]


@dataclass
class RecordingPublisher:
    published: list[PublishedEvent] = field(default_factory=list)

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        self.published.append(PublishedEvent(channel=channel, event=event, payload=payload))

    def events(self) -> list[str]:
        return [item.event for item in self.published]

    def clear(self) -> None:
        self.published.clear()


def get_publisher() -> Publisher:
    global _publisher
    if _publisher is None:
        mode = get_settings().realtime_mode.lower()
        _publisher = RecordingPublisher() if mode == "memory" else RedisPublisher()
    return _publisher


async def publish_after_commit(session: AsyncSession, channel: str, event: str, payload: dict[str, Any]) -> None:
    # Subscribers must never observe state that could still roll back.
    async def _publish() -> None:
        await get_publisher().publish(channel, event, payload)

    await after_commit(session, _publish)
