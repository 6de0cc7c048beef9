from __future__ import annotations

import hashlib
import math
import re
from typing import Any, AsyncIterator, Callable, Union

from helpdesk.core.config import EMBED_DIM
from helpdesk.providers.llm.base import (
    ChatMessage,
    CompletionResult,
    StreamChunk,
    ToolCall,
    ToolDefinition,
)
from helpdesk.services.costs.metering import TokenUsage


_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")

ScriptedResponse = Union[str, CompletionResult, Exception, Callable[[list[ChatMessage]], Any]]


def _hash_token(token: str) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    # Hash to a stable index within the fixed embedding dimension.
    idx = int(digest[:8], 16) % EMBED_DIM
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def hash_embedding(text: str) -> list[float]:
    """Deterministic bag-of-words embedding; identical texts have similarity 1."""
    vector = [0.0] * EMBED_DIM
    for token in _TOKEN_RE.findall(text.lower()):
        idx, value = _hash_token(token)
        vector[idx] += value
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class FakeLLMProvider:
    """Scripted provider: each call consumes the next response, then falls back to a default.

    A scripted entry may be a string, a ``CompletionResult`` (for tool calls), an
    exception to raise, or a callable receiving the messages.
    """

    def __init__(
        self,
        responses: list[ScriptedResponse] | None = None,
        *,
        default: str = "This is a fake response.",
        usage: TokenUsage | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._default = default
        self._usage = usage or TokenUsage(prompt_tokens=10, completion_tokens=5)
        self.calls: list[dict[str, Any]] = []
        self.embed_calls: list[str] = []

    def queue(self, *responses: ScriptedResponse) -> None:
        self._responses.extend(responses)

    def _next(self, messages: list[ChatMessage]) -> CompletionResult:
        item: Any = self._responses.pop(0) if self._responses else self._default
        if callable(item) and not isinstance(item, (CompletionResult, Exception)):
            item = item(messages)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, CompletionResult):
            return item
        return CompletionResult(text=str(item), usage=self._usage)

    async def complete(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> CompletionResult:
        self.calls.append(
            {
                "model": model,
                "messages": [dict(message) for message in messages],
                "tools": [tool.name for tool in tools or []],
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_schema": response_schema,
            }
        )
        result = self._next(messages)
        result.model = result.model or model
        return result

    async def stream(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        result = await self.complete(
            model=model, messages=messages, tools=tools, temperature=temperature, max_tokens=max_tokens
        )
        # Yield word tokens so streaming consumers see several deltas.
        words = result.text.split(" ") if result.text else []
        for index, word in enumerate(words):
            yield StreamChunk(type="text-delta", text=word if index == len(words) - 1 else f"{word} ")
        for call in result.tool_calls:
            yield StreamChunk(type="tool-call", tool_call=call)
        yield StreamChunk(type="finish", usage=result.usage, finish_reason=result.finish_reason)

    async def embed(self, *, model: str, text: str) -> tuple[list[float], TokenUsage]:
        self.embed_calls.append(text)
        return hash_embedding(text), TokenUsage(prompt_tokens=len(_TOKEN_RE.findall(text)))


def tool_call_result(name: str, arguments: dict[str, Any], *, call_id: str = "call_1", text: str = "") -> CompletionResult:
    # Helper for scripting a model turn that requests one tool.
    return CompletionResult(
        text=text,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)],
        finish_reason="tool_calls",
    )
