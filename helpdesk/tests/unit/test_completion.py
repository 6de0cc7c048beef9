from __future__ import annotations

import httpx
import pytest
from pydantic import BaseModel
from sqlalchemy import select

from helpdesk.core.errors import LLMError, PromptTooLongError
from helpdesk.domain.models import AIUsageEvent
from helpdesk.services.completion import generate_completion, generate_embedding, generate_structured_object
from helpdesk.services.prompt_budget import PromptParts, ShortenPromptOptions, shorten_prompt


PAST = "PAST CONVERSATIONS " * 20
KNOWLEDGE = "KNOWLEDGE BANK " * 20


class Verdict(BaseModel):
    matches: bool
    reason: str


def test_shorten_prompt_drops_sections_in_order() -> None:
    parts = PromptParts(system=f"Base rules.\n{PAST}\n{KNOWLEDGE}", prompt="Where is my order?")
    options = ShortenPromptOptions(remove_system=(PAST, KNOWLEDGE))

    shortened = shorten_prompt(parts, 0.75, options)

    assert PAST not in shortened.system
    assert KNOWLEDGE in shortened.system
    assert shortened.prompt == "Where is my order?"
    assert parts.system.startswith("Base rules.")


def test_shorten_prompt_halves_longest_message() -> None:
    parts = PromptParts(
        system="Rules",
        messages=[{"role": "user", "content": "a" * 100}, {"role": "assistant", "content": "b" * 10}],
    )

    shortened = shorten_prompt(parts, 0.5, ShortenPromptOptions(truncate_messages=True))

    assert len(shortened.messages[0]["content"]) < 100
    assert shortened.messages[1]["content"] == "b" * 10
    assert parts.messages[0]["content"] == "a" * 100


def test_shorten_prompt_drops_sections_before_truncating() -> None:
    question = "Where is my order? " * 18
    parts = PromptParts(system=f"Base rules.\n{PAST}", prompt=question)

    shortened = shorten_prompt(parts, 0.75, ShortenPromptOptions(remove_system=(PAST,), truncate_messages=True))

    assert PAST not in shortened.system
    assert shortened.prompt == question


@pytest.mark.asyncio
async def test_prompt_too_long_is_retried_with_shorter_prompt(session, llm) -> None:
    llm.queue(PromptTooLongError("context exceeded", actual=200, maximum=150), "Short answer")

    outcome = await generate_completion(
        session,
        system=f"Base rules.\n{PAST}\n{KNOWLEDGE}",
        prompt="Where is my order?",
        shorten_prompt_by=ShortenPromptOptions(remove_system=(PAST, KNOWLEDGE)),
        query_type="response_generator",
        mailbox_id=7,
    )

    assert outcome.text == "Short answer"
    assert PAST in llm.calls[0]["messages"][0]["content"]
    assert PAST not in llm.calls[1]["messages"][0]["content"]
    usage = (await session.execute(select(AIUsageEvent))).scalars().all()
    assert [(row.query_type, row.mailbox_id, row.input_tokens) for row in usage] == [("response_generator", 7, 10)]


@pytest.mark.asyncio
async def test_prompt_too_long_without_options_is_final(session, llm) -> None:
    llm.queue(PromptTooLongError("context exceeded", actual=200, maximum=150))

    with pytest.raises(PromptTooLongError):
        await generate_completion(session, system="Rules", prompt="Question")
    assert len(llm.calls) == 1
    assert (await session.execute(select(AIUsageEvent))).scalars().all() == []


@pytest.mark.asyncio
async def test_transient_provider_errors_are_retried(session, llm) -> None:
    llm.queue(LLMError("overloaded", status_code=503), "Recovered")

    outcome = await generate_completion(session, prompt="Hello")

    assert outcome.text == "Recovered"
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_prompt_and_messages_are_exclusive(session, llm) -> None:
    with pytest.raises(ValueError):
        await generate_completion(session, prompt="Hi", messages=[{"role": "user", "content": "Hi"}])
    with pytest.raises(ValueError):
        await generate_completion(session)
    assert llm.calls == []


@pytest.mark.asyncio
async def test_structured_object_is_validated(session, llm) -> None:
    llm.queue('{"matches": true, "reason": "refund request"}', "not json")

    verdict = await generate_structured_object(session, schema=Verdict, prompt="Is this a refund?")

    assert verdict == Verdict(matches=True, reason="refund request")
    assert llm.calls[0]["response_schema"]["title"] == "Verdict"
    with pytest.raises(LLMError):
        await generate_structured_object(session, schema=Verdict, prompt="Is this a refund?")


@pytest.mark.asyncio
async def test_exhausted_connection_failures_raise_llm_error(session, llm) -> None:
    llm.queue(*[httpx.ConnectError("refused")] * 3)

    with pytest.raises(LLMError):
        await generate_completion(session, prompt="Hello")
    assert len(llm.calls) == 3
    assert (await session.execute(select(AIUsageEvent))).scalars().all() == []


@pytest.mark.asyncio
async def test_structured_object_timeouts_raise_llm_error(session, llm) -> None:
    llm.queue(*[httpx.ReadTimeout("timed out")] * 3)

    with pytest.raises(LLMError):
        await generate_structured_object(session, schema=Verdict, prompt="Is this a refund?")
    assert len(llm.calls) == 3


@pytest.mark.asyncio
async def test_embedding_connection_failures_raise_llm_error(session, llm, monkeypatch) -> None:
    async def _refused(*, model: str, text: str):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(llm, "embed", _refused)

    with pytest.raises(LLMError):
        await generate_embedding(session, "Where is my order?", provider=llm)
