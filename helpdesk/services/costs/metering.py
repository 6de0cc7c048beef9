from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
import logging

import tiktoken
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.config import get_settings
from helpdesk.domain.models import AIUsageEvent
from helpdesk.persistence.db import SessionLocal
from helpdesk.persistence.transactions import in_transaction
from helpdesk.services.costs.pricing import calculate_cost


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
        )


@lru_cache
def _encoding():
    # Loading BPE ranks is slow; share one encoder per process.
    return tiktoken.get_encoding(get_settings().token_encoding)


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return len(_encoding().encode(text, disallowed_special=()))


def is_within_token_limit(text: str, is_embedding: bool = False) -> bool:
    settings = get_settings()
    limit = settings.embedding_token_limit if is_embedding else settings.completion_token_limit
    return count_tokens(text) <= limit


async def record_ai_usage(
    *,
    session: AsyncSession | None,
    mailbox_id: int | None,
    model: str,
    query_type: str,
    usage: TokenUsage,
) -> Decimal:
    """Append one usage ledger row; failures are logged and never raised."""
    cost = calculate_cost(
        model=model,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        cached_tokens=usage.cached_tokens,
    )

    async def _write(session_to_use: AsyncSession) -> None:
        session_to_use.add(
            AIUsageEvent(
                mailbox_id=mailbox_id,
                model_name=model,
                query_type=query_type,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                cached_tokens=usage.cached_tokens,
                cost=cost,
            )
        )
        # Inside a transaction block the row rides along with the caller's commit.
        if in_transaction(session_to_use):
            await session_to_use.flush()
        else:
            await session_to_use.commit()

    try:
        if session is None:
            async with SessionLocal() as local_session:
                await _write(local_session)
        else:
            await _write(session)
    except SQLAlchemyError as exc:
        logger.warning(
            "ai_usage_write_failed model=%s query_type=%s mailbox_id=%s",
            model,
            query_type,
            mailbox_id,
            exc_info=exc,
        )
    return cost
