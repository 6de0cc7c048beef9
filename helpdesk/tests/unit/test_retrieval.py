from __future__ import annotations

import pytest

from helpdesk.core.config import get_settings
from helpdesk.core.errors import LLMError
from helpdesk.domain.models import KnowledgeBankEntry, Website, WebsitePage
from helpdesk.providers.llm.fake import hash_embedding
from helpdesk.services.completion import generate_embedding
from helpdesk.services.retrieval import (
    conversation_embedding_text,
    create_conversation_embedding,
    fetch_prompt_retrieval_data,
    find_similar_conversations,
    find_similar_in_knowledge_bank,
)
from helpdesk.tests.utils.factories import create_conversation, create_mailbox, create_message


@pytest.mark.asyncio
async def test_empty_results_differ_between_sources(session, llm) -> None:
    mailbox = await create_mailbox(session)

    assert await find_similar_in_knowledge_bank(session, "refund policy", mailbox) == []
    assert await find_similar_conversations(session, "refund policy", mailbox) is None


@pytest.mark.asyncio
async def test_knowledge_bank_is_scoped_and_thresholded(session, llm) -> None:
    mailbox = await create_mailbox(session)
    other_mailbox = await create_mailbox(session)
    session.add_all(
        [
            KnowledgeBankEntry(mailbox_id=mailbox.id, content="Refund policy", embedding=hash_embedding("refund policy")),
            KnowledgeBankEntry(
                mailbox_id=mailbox.id,
                content="Disabled refund policy",
                enabled=False,
                embedding=hash_embedding("refund policy"),
            ),
            KnowledgeBankEntry(
                mailbox_id=other_mailbox.id,
                content="Other tenant refund policy",
                embedding=hash_embedding("refund policy"),
            ),
        ]
    )
    await session.commit()

    entries = await find_similar_in_knowledge_bank(session, "refund policy", mailbox)

    assert [entry.content for entry in entries] == ["Refund policy"]
    assert entries[0].similarity == pytest.approx(1.0)
    assert await find_similar_in_knowledge_bank(session, "refund policy", mailbox, threshold=1.5) == []


@pytest.mark.asyncio
async def test_conversation_embedding_feeds_similarity_search(session, llm) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, subject="Refund")
    await create_message(session, conversation, body="I want a refund", cleaned_up_text="I want a refund")
    await create_message(session, conversation, role="staff", body="Refund issued", cleaned_up_text="Refund issued")
    await create_message(session, conversation, role="ai_assistant", body="Draft", status="draft")

    embedded = await create_conversation_embedding(session, conversation.slug)

    expected_text = "Subject: Refund\n\nFrom: user\nContent: I want a refund\n\nFrom: staff\nContent: Refund issued"
    assert embedded.embedding_text == expected_text
    assert llm.embed_calls == [expected_text.replace("\n", " ")]

    similar = await find_similar_conversations(session, expected_text, mailbox)
    assert similar is not None
    assert [item.conversation.id for item in similar] == [conversation.id]
    assert [message.body for message in similar[0].messages] == ["I want a refund", "Refund issued"]
    assert await find_similar_conversations(session, expected_text, mailbox, exclude_slug=conversation.slug) is None


def test_conversation_embedding_text_skips_other_roles() -> None:
    class Row:
        def __init__(self, role: str, body: str) -> None:
            self.role = role
            self.body = body
            self.cleaned_up_text = None

    text = conversation_embedding_text([Row("user", "Hi\n\nthere"), Row("workflow", "Auto"), Row("staff", "Hello")])

    assert text == "From: user\nContent: Hi there\n\nFrom: staff\nContent: Hello"


@pytest.mark.asyncio
async def test_website_pages_become_sources(session, llm) -> None:
    mailbox = await create_mailbox(session)
    website = Website(mailbox_id=mailbox.id, name="Docs", url="https://docs.example.com")
    session.add(website)
    await session.flush()
    session.add(
        WebsitePage(
            website_id=website.id,
            url="https://docs.example.com/refunds",
            page_title="Refunds",
            markdown="Refunds take 3 days",
            embedding=hash_embedding("how do refunds work"),
        )
    )
    await session.commit()

    data = await fetch_prompt_retrieval_data(session, "how do refunds work", mailbox, metadata={"plan": "pro"})

    assert [page.url for page in data.website_pages] == ["https://docs.example.com/refunds"]
    assert "Refunds take 3 days" in data.website_pages_prompt
    assert data.knowledge_bank is None
    assert '"plan"' in data.metadata


@pytest.mark.asyncio
async def test_oversized_embedding_input_is_rejected(session, llm, monkeypatch) -> None:
    monkeypatch.setenv("EMBEDDING_TOKEN_LIMIT", "2")
    get_settings.cache_clear()

    with pytest.raises(LLMError):
        await generate_embedding(session, "three words here")
    assert llm.embed_calls == []
