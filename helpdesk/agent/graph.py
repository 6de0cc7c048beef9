from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from langgraph.graph import END, StateGraph

from helpdesk.domain.state import ChatState
from helpdesk.providers.llm.base import ChatMessage, CompletionResult, LLMProvider, StreamChunk, ToolCall
from helpdesk.services.costs.metering import TokenUsage
from helpdesk.services.resilience import RetryPolicy, as_llm_error, is_transport_failure, retry_llm_call
from helpdesk.services.tools.base import ToolSpec


logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Awaitable[None]]


def _assistant_message(text: str, calls: list[ToolCall]) -> ChatMessage:
    message: ChatMessage = {"role": "assistant", "content": text or None}
    if calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in calls
        ]
    return message


def _tool_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def build_graph(
    *,
    provider: LLMProvider,
    model: str,
    tools: dict[str, ToolSpec],
    max_steps: int,
    temperature: float | None = None,
    max_tokens: int | None = None,
    stream: bool = False,
    on_chunk: ChunkCallback | None = None,
    policy: RetryPolicy | None = None,
):
    graph = StateGraph(ChatState)
    definitions = [tool.definition() for tool in tools.values()] or None

    async def _emit(chunk: StreamChunk) -> None:
        if on_chunk is not None:
            await on_chunk(chunk)

    async def _stream_step(messages: list[ChatMessage]) -> CompletionResult:
        parts: list[str] = []
        calls: list[ToolCall] = []
        usage = TokenUsage()
        finish_reason = "stop"
        try:
            async for chunk in provider.stream(
                model=model,
                messages=messages,
                tools=definitions,
                temperature=temperature,
                max_tokens=max_tokens,
            ):
                if chunk.type == "text-delta":
                    parts.append(chunk.text)
                elif chunk.type == "tool-call" and chunk.tool_call is not None:
                    calls.append(chunk.tool_call)
                elif chunk.type == "finish":
                    usage = chunk.usage or usage
                    finish_reason = chunk.finish_reason or finish_reason
                await _emit(chunk)
        except Exception as exc:  # noqa: BLE001 - only transport failures are wrapped
            if not is_transport_failure(exc):
                raise
            raise as_llm_error(exc) from exc
        return CompletionResult(text="".join(parts), tool_calls=calls, usage=usage, finish_reason=finish_reason)

    async def call_model(state: ChatState) -> dict:
        messages = state["messages"]
        if stream:
            # Streams are never retried; deltas may already be on the wire.
            result = await _stream_step(messages)
        else:
            result = await retry_llm_call(
                lambda: provider.complete(
                    model=model,
                    messages=messages,
                    tools=definitions,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                policy=policy,
            )
        return {
            "messages": [*messages, _assistant_message(result.text, result.tool_calls)],
            "steps": state["steps"] + 1,
            "text": result.text,
            "pending_calls": list(result.tool_calls),
            "tool_calls": [*state["tool_calls"], *result.tool_calls],
            "usage": state["usage"] + result.usage,
            "finish_reason": result.finish_reason,
        }

    async def run_tools(state: ChatState) -> dict:
        messages = list(state["messages"])
        for call in state["pending_calls"]:
            tool = tools.get(call.name)
            if tool is None or tool.executor is None:
                logger.warning("tool_unknown name=%s", call.name)
                result: Any = f"Unknown tool: {call.name}"
            else:
                try:
                    result = await tool.executor(call.arguments)
                except Exception as exc:  # noqa: BLE001 - the model sees the failure and can recover
                    logger.warning("tool_execution_failed name=%s error=%s", call.name, exc)
                    result = f"Error: {exc}"
            messages.append({"role": "tool", "tool_call_id": call.id, "content": _tool_content(result)})
            await _emit(StreamChunk(type="tool-result", tool_call=call, result=result))
        return {"messages": messages, "pending_calls": []}

    def after_model(state: ChatState) -> str:
        return "run_tools" if state["pending_calls"] else END

    def after_tools(state: ChatState) -> str:
        return "call_model" if state["steps"] < max_steps else END

    graph.add_node("call_model", call_model)
    graph.add_node("run_tools", run_tools)

    graph.set_entry_point("call_model")
    graph.add_conditional_edges("call_model", after_model, {"run_tools": "run_tools", END: END})
    graph.add_conditional_edges("run_tools", after_tools, {"call_model": "call_model", END: END})

    return graph.compile()


async def run_graph(
    *,
    provider: LLMProvider,
    model: str,
    messages: list[ChatMessage],
    tools: dict[str, ToolSpec] | None = None,
    max_steps: int = 1,
    temperature: float | None = None,
    max_tokens: int | None = None,
    stream: bool = False,
    on_chunk: ChunkCallback | None = None,
    policy: RetryPolicy | None = None,
) -> ChatState:
    max_steps = max(max_steps, 1)
    graph = build_graph(
        provider=provider,
        model=model,
        tools=tools or {},
        max_steps=max_steps,
        temperature=temperature,
        max_tokens=max_tokens,
        stream=stream,
        on_chunk=on_chunk,
        policy=policy,
    )
    state: ChatState = {
        "messages": list(messages),
        "steps": 0,
        "text": "",
        "pending_calls": [],
        "tool_calls": [],
        "usage": TokenUsage(),
        "finish_reason": "stop",
    }
    # Two graph supersteps per model step, plus headroom.
    return await graph.ainvoke(state, config={"recursion_limit": max_steps * 2 + 5})
