from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, AsyncIterator

import httpx

from helpdesk.core.config import get_settings
from helpdesk.core.errors import LLMError, PromptTooLongError, ProviderConfigError
from helpdesk.providers.llm.base import (
    ChatMessage,
    CompletionResult,
    StreamChunk,
    ToolCall,
    ToolDefinition,
)
from helpdesk.services.costs.metering import TokenUsage
from helpdesk.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_PROMPT_TOO_LONG_RE = re.compile(r"prompt is too long: (\d+) tokens > (\d+) maximum")
_CONTEXT_LENGTH_RE = re.compile(r"maximum context length is (\d+) tokens.*?resulted in (\d+) tokens", re.DOTALL)


def parse_prompt_length_error(message: str) -> tuple[int, int] | None:
    """Return ``(actual, maximum)`` token counts from a context-window rejection."""
    match = _PROMPT_TOO_LONG_RE.search(message)
    if match:
        return int(match.group(1)), int(match.group(2))
    match = _CONTEXT_LENGTH_RE.search(message)
    if match:
        return int(match.group(2)), int(match.group(1))
    return None


def _usage_from_payload(payload: dict[str, Any] | None) -> TokenUsage:
    if not payload:
        return TokenUsage()
    details = payload.get("prompt_tokens_details") or {}
    return TokenUsage(
        prompt_tokens=int(payload.get("prompt_tokens") or 0),
        completion_tokens=int(payload.get("completion_tokens") or 0),
        cached_tokens=int(details.get("cached_tokens") or 0),
    )


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LLMError("Model returned malformed tool arguments") from exc
    return parsed if isinstance(parsed, dict) else {}


class OpenAIProvider:
    """Chat completions and embeddings over the OpenAI-compatible HTTP API."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        integration: str = "llm.openai",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._integration = integration
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = get_settings().llm_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ProviderConfigError(f"API key is required for {self._integration}")
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    def _record(self, started: float, success: bool) -> None:
        record_external_call(
            integration=self._integration,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )

    def _raise_for_status(self, response: httpx.Response, body: str) -> None:
        if response.status_code < 400:
            return
        message = body
        try:
            message = json.loads(body).get("error", {}).get("message") or body
        except (json.JSONDecodeError, AttributeError):
            pass
        lengths = parse_prompt_length_error(message)
        if lengths is not None:
            actual, maximum = lengths
            raise PromptTooLongError(message, actual=actual, maximum=maximum)
        raise LLMError(f"LLM request failed: {response.status_code} {message}", status_code=response.status_code)

    def _chat_payload(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if tools:
            payload["tools"] = [tool.to_openai() for tool in tools]
        return payload

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
        payload = self._chat_payload(
            model=model, messages=messages, tools=tools, temperature=temperature, max_tokens=max_tokens
        )
        if response_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": response_schema},
            }
        started = time.monotonic()
        try:
            response = await self._get_client().post(
                f"{self._base_url}/chat/completions", json=payload, headers=self._headers()
            )
            self._raise_for_status(response, response.text)
        except (httpx.HTTPError, LLMError):
            self._record(started, success=False)
            raise
        self._record(started, success=True)

        data = response.json()
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=item.get("id") or f"call_{index}",
                name=item["function"]["name"],
                arguments=_parse_arguments(item["function"].get("arguments")),
            )
            for index, item in enumerate(message.get("tool_calls") or [])
        ]
        return CompletionResult(
            text=message.get("content") or "",
            tool_calls=tool_calls,
            usage=_usage_from_payload(data.get("usage")),
            finish_reason=choice.get("finish_reason") or "stop",
            model=data.get("model") or model,
        )

    async def stream(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        payload = self._chat_payload(
            model=model, messages=messages, tools=tools, temperature=temperature, max_tokens=max_tokens
        )
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        pending_calls: dict[int, dict[str, str]] = {}
        usage: TokenUsage | None = None
        finish_reason: str | None = None
        started = time.monotonic()
        try:
            async with self._get_client().stream(
                "POST", f"{self._base_url}/chat/completions", json=payload, headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    self._raise_for_status(response, body)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    event = json.loads(data)
                    if event.get("usage"):
                        usage = _usage_from_payload(event["usage"])
                    for choice in event.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamChunk(type="text-delta", text=delta["content"])
                        for call in delta.get("tool_calls") or []:
                            # Tool call names and arguments arrive in fragments keyed by index.
                            entry = pending_calls.setdefault(call.get("index", 0), {"id": "", "name": "", "arguments": ""})
                            function = call.get("function") or {}
                            entry["id"] = call.get("id") or entry["id"]
                            entry["name"] += function.get("name") or ""
                            entry["arguments"] += function.get("arguments") or ""
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except (httpx.HTTPError, LLMError):
            self._record(started, success=False)
            raise
        self._record(started, success=True)

        for index in sorted(pending_calls):
            entry = pending_calls[index]
            yield StreamChunk(
                type="tool-call",
                tool_call=ToolCall(
                    id=entry["id"] or f"call_{index}",
                    name=entry["name"],
                    arguments=_parse_arguments(entry["arguments"]),
                ),
            )
        yield StreamChunk(type="finish", usage=usage or TokenUsage(), finish_reason=finish_reason or "stop")

    async def embed(self, *, model: str, text: str) -> tuple[list[float], TokenUsage]:
        started = time.monotonic()
        try:
            response = await self._get_client().post(
                f"{self._base_url}/embeddings",
                json={"model": model, "input": text},
                headers=self._headers(),
            )
            self._raise_for_status(response, response.text)
        except (httpx.HTTPError, LLMError):
            self._record(started, success=False)
            raise
        self._record(started, success=True)
        data = response.json()
        embedding = [float(value) for value in data["data"][0]["embedding"]]
        return embedding, _usage_from_payload(data.get("usage"))
