from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import hashlib
import json
import logging
import re
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.graph import run_graph
from helpdesk.agent.prompts import REASONING_INSTRUCTIONS
from helpdesk.core.config import get_settings
from helpdesk.core.errors import LLMError
from helpdesk.providers.llm.base import ChatMessage, LLMProvider, StreamChunk, ToolCall
from helpdesk.providers.llm.factory import get_llm_provider, get_reasoning_provider
from helpdesk.services.costs.metering import TokenUsage, is_within_token_limit, record_ai_usage
from helpdesk.services.prompt_budget import PromptParts, ShortenPromptOptions, retry_on_prompt_length_error
from helpdesk.services.resilience import llm_retry_policy, retry_llm_call
from helpdesk.services.tools.base import ToolSpec


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)
# Embeddings are cached for 30 days when the cache is enabled.
EMBEDDING_CACHE_TTL_S = 60 * 60 * 24 * 30


@dataclass
class CompletionOutcome:
    text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    steps: int = 1
    messages: list[ChatMessage] = field(default_factory=list)

    def called_tool(self, name: str) -> bool:
        return any(call.name == name for call in self.tool_calls)


@dataclass(frozen=True)
class ReasoningResult:
    reasoning: str | None
    usage: TokenUsage | None


def compose_messages(parts: PromptParts) -> list[ChatMessage]:
    messages: list[ChatMessage] = []
    if parts.system:
        messages.append({"role": "system", "content": parts.system})
    if parts.prompt is not None:
        messages.append({"role": "user", "content": parts.prompt})
    messages.extend(parts.messages or [])
    return messages


def _check_prompt_arguments(prompt: str | None, messages: list[ChatMessage] | None) -> None:
    if (prompt is None) == (messages is None):
        raise ValueError("Provide exactly one of prompt or messages")


async def generate_completion(
    session: AsyncSession | None,
    *,
    system: str | None = None,
    prompt: str | None = None,
    messages: list[ChatMessage] | None = None,
    model: str | None = None,
    temperature: float = 0.1,
    max_tokens: int | None = None,
    tools: dict[str, ToolSpec] | None = None,
    max_steps: int = 1,
    mailbox_id: int | None = None,
    query_type: str = "completion",
    shorten_prompt_by: ShortenPromptOptions | None = None,
    provider: LLMProvider | None = None,
) -> CompletionOutcome:
    """Run a (possibly tool-augmented) completion and record its usage.

    Each model step is retried with the idempotent LLM policy. A context-window
    rejection is retried with a shortened prompt when ``shorten_prompt_by`` is
    given. Usage is recorded only after the whole call succeeds.
    """
    _check_prompt_arguments(prompt, messages)
    settings = get_settings()
    model = model or settings.completion_model
    provider = provider or get_llm_provider()
    policy = llm_retry_policy()

    async def _generate(parts: PromptParts) -> CompletionOutcome:
        state = await run_graph(
            provider=provider,
            model=model,
            messages=compose_messages(parts),
            tools=tools,
            max_steps=max_steps,
            temperature=temperature,
            max_tokens=max_tokens,
            policy=policy,
        )
        return CompletionOutcome(
            text=state["text"],
            model=model,
            usage=state["usage"],
            tool_calls=state["tool_calls"],
            finish_reason=state["finish_reason"],
            steps=state["steps"],
            messages=state["messages"],
        )

    outcome = await retry_on_prompt_length_error(
        shorten_prompt_by,
        PromptParts(system=system, prompt=prompt, messages=messages),
        _generate,
    )
    await record_ai_usage(
        session=session,
        mailbox_id=mailbox_id,
        model=model,
        query_type=query_type,
        usage=outcome.usage,
    )
    return outcome


async def generate_structured_object(
    session: AsyncSession | None,
    *,
    schema: type[ModelT],
    system: str | None = None,
    prompt: str | None = None,
    messages: list[ChatMessage] | None = None,
    model: str | None = None,
    temperature: float = 0.1,
    max_tokens: int | None = None,
    mailbox_id: int | None = None,
    query_type: str = "structured_object",
    shorten_prompt_by: ShortenPromptOptions | None = None,
    provider: LLMProvider | None = None,
) -> ModelT:
    _check_prompt_arguments(prompt, messages)
    settings = get_settings()
    model = model or settings.completion_model
    provider = provider or get_llm_provider()
    policy = llm_retry_policy()
    json_schema = schema.model_json_schema()

    async def _generate(parts: PromptParts) -> tuple[ModelT, TokenUsage]:
        result = await retry_llm_call(
            lambda: provider.complete(
                model=model,
                messages=compose_messages(parts),
                temperature=temperature,
                max_tokens=max_tokens,
                response_schema=json_schema,
            ),
            policy=policy,
        )
        try:
            return schema.model_validate(json.loads(result.text)), result.usage
        except (ValueError, ValidationError) as exc:
            raise LLMError(f"Model response did not match {schema.__name__}") from exc

    value, usage = await retry_on_prompt_length_error(
        shorten_prompt_by,
        PromptParts(system=system, prompt=prompt, messages=messages),
        _generate,
    )
    await record_ai_usage(session=session, mailbox_id=mailbox_id, model=model, query_type=query_type, usage=usage)
    return value


async def _cached_embedding(key: str) -> list[float] | None:
    try:
        redis = Redis.from_url(get_settings().redis_url, decode_responses=True)
        try:
            raw = await redis.get(key)
        finally:
            await redis.aclose()
    except RedisError as exc:
        logger.warning("embedding_cache_read_failed key=%s", key, exc_info=exc)
        return None
    return json.loads(raw) if raw else None


async def _store_embedding(key: str, embedding: list[float]) -> None:
    try:
        redis = Redis.from_url(get_settings().redis_url, decode_responses=True)
        try:
            await redis.set(key, json.dumps(embedding), ex=EMBEDDING_CACHE_TTL_S)
        finally:
            await redis.aclose()
    except RedisError as exc:
        logger.warning("embedding_cache_write_failed key=%s", key, exc_info=exc)


async def generate_embedding(
    session: AsyncSession | None,
    text: str,
    *,
    query_type: str = "embedding",
    mailbox_id: int | None = None,
    provider: LLMProvider | None = None,
) -> list[float]:
    settings = get_settings()
    value = text.replace("\n", " ")
    if not is_within_token_limit(value, is_embedding=True):
        raise LLMError("Embedding input exceeds the token limit")

    cache_key = f"embedding:{hashlib.md5(value.encode('utf-8')).hexdigest()}"
    if settings.embedding_cache_enabled:
        cached = await _cached_embedding(cache_key)
        if cached is not None:
            return cached

    provider = provider or get_llm_provider()
    embedding, usage = await retry_llm_call(
        lambda: provider.embed(model=settings.embedding_model, text=value),
        policy=llm_retry_policy(),
    )
    await record_ai_usage(
        session=session,
        mailbox_id=mailbox_id,
        model=settings.embedding_model,
        query_type=query_type,
        usage=usage,
    )
    if settings.embedding_cache_enabled:
        await _store_embedding(cache_key, embedding)
    return embedding


def _tools_overview(tools: dict[str, ToolSpec]) -> str:
    lines = []
    for name, tool in tools.items():
        params = ", ".join(f"{key}: {description}" for key, description in tool.parameter_descriptions().items())
        lines.append(f"{name}: {tool.description} Params: {params}")
    return "The following tools are available:\n" + "\n".join(lines)


def extract_reasoning(text: str) -> str | None:
    match = _THINK_RE.search(text)
    if match is None:
        return None
    return match.group(1).strip() or None


async def generate_reasoning(
    *,
    tools: dict[str, ToolSpec],
    system_messages: list[ChatMessage],
    messages: list[ChatMessage],
    evaluation: bool = False,
    provider: LLMProvider | None = None,
) -> ReasoningResult:
    """Run the secondary think step; any failure or timeout yields no reasoning."""
    settings = get_settings()
    provider = provider or get_reasoning_provider()
    timeout_s = settings.reasoning_eval_timeout_s if evaluation else settings.reasoning_timeout_s
    reasoning_messages = [
        *system_messages,
        {"role": "system", "content": _tools_overview(tools)},
        {"role": "system", "content": REASONING_INSTRUCTIONS},
        *messages,
    ]

    async def _collect() -> tuple[str, TokenUsage | None]:
        parts: list[str] = []
        usage: TokenUsage | None = None
        async for chunk in provider.stream(
            model=settings.reasoning_model,
            messages=reasoning_messages,
            temperature=0.6,
        ):
            if chunk.type == "text-delta":
                parts.append(chunk.text)
            elif chunk.type == "finish":
                usage = chunk.usage
        return "".join(parts), usage

    try:
        text, usage = await asyncio.wait_for(_collect(), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning("reasoning_timeout timeout_s=%s", timeout_s)
        return ReasoningResult(reasoning=None, usage=None)
    except Exception as exc:  # noqa: BLE001 - reasoning never blocks the primary response
        logger.warning("reasoning_failed error=%s", type(exc).__name__, exc_info=exc)
        return ReasoningResult(reasoning=None, usage=None)
    return ReasoningResult(reasoning=extract_reasoning(text), usage=usage)


async def hide_tool_results(chunks: AsyncIterator[StreamChunk]) -> AsyncIterator[StreamChunk]:
    async for chunk in chunks:
        if chunk.type != "tool-result":
            yield chunk


async def stream_completion(
    *,
    messages: list[ChatMessage],
    tools: dict[str, ToolSpec] | None = None,
    model: str | None = None,
    temperature: float = 0.1,
    max_steps: int = 1,
    provider: LLMProvider | None = None,
    on_finish: Callable[[CompletionOutcome], Awaitable[None]] | None = None,
) -> AsyncIterator[StreamChunk]:
    """Yield every chunk of a streamed, tool-augmented completion.

    The sequence is finite and not restartable. ``on_finish`` runs once the
    last step completes, before the final ``finish`` chunk is yielded.
    """
    model = model or get_settings().completion_model
    provider = provider or get_llm_provider()
    queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()

    async def _on_chunk(chunk: StreamChunk) -> None:
        # Per-step finish chunks are folded into one terminal finish.
        if chunk.type != "finish":
            await queue.put(chunk)

    async def _run() -> CompletionOutcome:
        try:
            state = await run_graph(
                provider=provider,
                model=model,
                messages=messages,
                tools=tools,
                max_steps=max_steps,
                temperature=temperature,
                stream=True,
                on_chunk=_on_chunk,
            )
        finally:
            await queue.put(None)
        return CompletionOutcome(
            text=state["text"],
            model=model,
            usage=state["usage"],
            tool_calls=state["tool_calls"],
            finish_reason=state["finish_reason"],
            steps=state["steps"],
            messages=state["messages"],
        )

    task = asyncio.create_task(_run())
    try:
        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            yield chunk
        outcome = await task
        if on_finish is not None:
            await on_finish(outcome)
        yield StreamChunk(type="finish", usage=outcome.usage, finish_reason=outcome.finish_reason)
    finally:
        if not task.done():
            task.cancel()

