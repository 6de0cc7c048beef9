from __future__ import annotations

from typing import Any, TypedDict

from helpdesk.providers.llm.base import ToolCall
from helpdesk.services.costs.metering import TokenUsage


class ChatState(TypedDict):
    messages: list[dict[str, Any]]
    steps: int
    text: str
    pending_calls: list[ToolCall]
    tool_calls: list[ToolCall]
    usage: TokenUsage
    finish_reason: str
