from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from helpdesk.services.costs.metering import TokenUsage


# Chat messages use the OpenAI wire shape: {"role", "content", "tool_calls"?, "tool_call_id"?}.
ChatMessage = dict[str, Any]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any]

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class CompletionResult:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    model: str | None = None


@dataclass
class StreamChunk:
    # type: text-delta | tool-call | tool-result | finish
    type: str
    text: str = ""
    tool_call: ToolCall | None = None
    result: Any = None
    usage: TokenUsage | None = None
    finish_reason: str | None = None


class LLMProvider(Protocol):
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
        ...

    def stream(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        ...

    async def embed(self, *, model: str, text: str) -> tuple[list[float], TokenUsage]:
        ...
