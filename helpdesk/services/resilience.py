from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from helpdesk.core.config import get_settings
from helpdesk.core.errors import LLMError
from helpdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_TRANSIENT_ERRORS = (TimeoutError, OSError, httpx.TransportError)


def is_transient(exc: Exception) -> bool:
    # Timeouts, dropped connections, upstream 5xx and rate limits.
    if isinstance(exc, _TRANSIENT_ERRORS):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    timeout_ms: int
    max_attempts: int
    backoff_ms: int = 0
    factor: float = 2.0
    max_backoff_ms: int | None = None
    jitter: bool = True

    def delay_s(self, attempt: int) -> float:
        delay_ms = self.backoff_ms * (self.factor ** (attempt - 1))
        if self.jitter:
            delay_ms *= random.uniform(0.5, 1.5)
        if self.max_backoff_ms is not None:
            delay_ms = min(delay_ms, self.max_backoff_ms)
        return delay_ms / 1000.0


def llm_retry_policy() -> RetryPolicy:
    # Generation and embedding calls are idempotent and retried with doubling backoff.
    settings = get_settings()
    return RetryPolicy(
        name="llm",
        timeout_ms=settings.llm_call_timeout_ms,
        max_attempts=settings.llm_retry_max_attempts,
        backoff_ms=settings.llm_retry_backoff_ms,
        max_backoff_ms=settings.llm_retry_max_backoff_ms,
    )


def metadata_read_policy() -> RetryPolicy:
    # The metadata lookup is a read, so it shares the LLM backoff under the shorter external timeout.
    settings = get_settings()
    return RetryPolicy(
        name="metadata_api",
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.llm_retry_max_attempts,
        backoff_ms=settings.llm_retry_backoff_ms,
        max_backoff_ms=settings.llm_retry_max_backoff_ms,
    )


def single_attempt_policy() -> RetryPolicy:
    # Tenant tools may have side effects: one attempt, then an explicit failure.
    return RetryPolicy(name="tenant_tool", timeout_ms=get_settings().ext_call_timeout_ms, max_attempts=1)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    policy = policy or llm_retry_policy()
    retryable = retryable or is_transient
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-transient failures are re-raised below
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter(f"{policy.name}_retries_total")
            sleep_s = policy.delay_s(attempt)
            logger.info(
                "retry_scheduled policy=%s attempt=%s sleep_s=%.2f error=%s",
                policy.name,
                attempt,
                sleep_s,
                type(exc).__name__,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1


def is_transport_failure(exc: Exception) -> bool:
    return isinstance(exc, (*_TRANSIENT_ERRORS, httpx.HTTPError))


def as_llm_error(exc: Exception) -> LLMError:
    return LLMError(f"LLM request failed: {type(exc).__name__}")


async def retry_llm_call(func: Callable[[], Awaitable[Any]], *, policy: RetryPolicy | None = None) -> Any:
    """``retry_async`` for model calls: exhausted transport failures surface as ``LLMError``."""
    try:
        return await retry_async(func, policy=policy or llm_retry_policy())
    except LLMError:
        raise
    except Exception as exc:  # noqa: BLE001 - only transport failures are wrapped
        if not is_transport_failure(exc):
            raise
        raise as_llm_error(exc) from exc
