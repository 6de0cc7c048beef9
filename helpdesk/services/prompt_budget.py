from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import math
from typing import Any, Awaitable, Callable, TypeVar

from helpdesk.core.errors import PromptTooLongError


logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH_RETRIES = 3
MAX_SHORTEN_ITERATIONS = 10
# Aim 10% under the provider-reported ratio.
SHORTEN_SAFETY_FACTOR = 0.9

T = TypeVar("T")


@dataclass
class PromptParts:
    system: str | None = None
    prompt: str | None = None
    messages: list[dict[str, Any]] | None = None

    def character_length(self) -> int:
        total = len(self.system or "") + len(self.prompt or "")
        for message in self.messages or []:
            content = message.get("content")
            if isinstance(content, str):
                total += len(content)
        return total


@dataclass(frozen=True)
class ShortenPromptOptions:
    # Sections removed from the system prompt, in this order.
    remove_system: tuple[str | None, ...] = field(default_factory=tuple)
    truncate_messages: bool = False


def _halve_longest_message(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    longest_index = 0
    longest_length = -1
    for index, message in enumerate(messages):
        content = message.get("content")
        if isinstance(content, str) and len(content) > longest_length:
            longest_index, longest_length = index, len(content)
    if longest_length < 0:
        return messages
    updated = list(messages)
    content = updated[longest_index]["content"]
    updated[longest_index] = {**updated[longest_index], "content": content[: len(content) // 2]}
    return updated


def shorten_prompt(parts: PromptParts, ratio: float, options: ShortenPromptOptions) -> PromptParts:
    """Shrink ``parts`` toward ``ratio`` of their current size.

    Removable system sections are dropped first, in the order given. Only once
    none are left is the longest message (or the bare prompt) halved, and only
    when truncation is allowed. Shrinking stops as soon as the target is reached.
    """
    target = math.floor(parts.character_length() * ratio * SHORTEN_SAFETY_FACTOR)
    result = replace(parts, messages=list(parts.messages) if parts.messages is not None else None)
    removable = [section for section in options.remove_system if section and result.system and section in result.system]
    for _ in range(MAX_SHORTEN_ITERATIONS):
        if result.character_length() <= target:
            break
        if removable:
            result.system = (result.system or "").replace(removable.pop(0), "", 1)
            continue
        if not options.truncate_messages:
            break
        if result.messages:
            result.messages = _halve_longest_message(result.messages)
        elif result.prompt:
            result.prompt = result.prompt[: len(result.prompt) // 2]
        else:
            break
    return result


async def retry_on_prompt_length_error(
    options: ShortenPromptOptions | None,
    parts: PromptParts,
    generate: Callable[[PromptParts], Awaitable[T]],
) -> T:
    # Without shortening options a context-window rejection is final.
    retries = 0
    while True:
        try:
            return await generate(parts)
        except PromptTooLongError as exc:
            if options is None or retries >= MAX_PROMPT_LENGTH_RETRIES:
                raise
            retries += 1
            logger.info(
                "prompt_too_long_shortening actual=%s maximum=%s retry=%s",
                exc.actual,
                exc.maximum,
                retries,
            )
            parts = shorten_prompt(parts, exc.maximum / exc.actual, options)
