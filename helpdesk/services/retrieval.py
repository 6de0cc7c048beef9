from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.prompts import knowledge_bank_prompt, metadata_prompt, past_conversations_prompt, website_pages_prompt
from helpdesk.core.config import get_settings
from helpdesk.core.errors import MetadataAPIError, NotFoundError
from helpdesk.domain.models import Conversation, ConversationMessage, KnowledgeBankEntry, Mailbox, Website, WebsitePage
from helpdesk.persistence.repos.conversations import get_conversation_by_slug
from helpdesk.persistence.repos.mailboxes import get_metadata_api
from helpdesk.persistence.repos.messages import list_messages, list_messages_for_conversations
from helpdesk.persistence.transactions import transaction
from helpdesk.persistence.vector import similarity_to
from helpdesk.services.completion import generate_embedding
from helpdesk.services.metadata_api import UserInfo, get_metadata
from helpdesk.services.prompting import clean_up_text_for_ai


logger = logging.getLogger(__name__)

MAX_SIMILAR_CONVERSATIONS = 3
MAX_SIMILAR_KNOWLEDGE_ITEMS = 10
MAX_SIMILAR_WEBSITE_PAGES = 5

QueryInput = str | Sequence[float]


@dataclass(frozen=True)
class SimilarConversation:
    conversation: Conversation
    similarity: float
    # Oldest first.
    messages: list[ConversationMessage] = field(default_factory=list)


@dataclass(frozen=True)
class SimilarKnowledgeEntry:
    content: str
    similarity: float


@dataclass(frozen=True)
class SimilarWebsitePage:
    url: str
    page_title: str
    markdown: str
    similarity: float


@dataclass(frozen=True)
class PromptRetrievalData:
    knowledge_bank: str | None
    metadata: str | None
    website_pages_prompt: str | None
    website_pages: list[SimilarWebsitePage] = field(default_factory=list)


def _threshold(value: float | None) -> float:
    return get_settings().similarity_threshold if value is None else value


async def _embed(session: AsyncSession, query: QueryInput, mailbox: Mailbox, query_type: str) -> list[float]:
    if isinstance(query, str):
        return await generate_embedding(session, query, query_type=query_type, mailbox_id=mailbox.id)
    return list(query)


async def find_similar_conversations(
    session: AsyncSession,
    query: QueryInput,
    mailbox: Mailbox,
    *,
    limit: int = MAX_SIMILAR_CONVERSATIONS,
    exclude_slug: str | None = None,
    threshold: float | None = None,
) -> list[SimilarConversation] | None:
    """Return the closest past conversations of the tenant, or ``None`` when nothing qualifies."""
    embedding = await _embed(session, query, mailbox, "embedding-query-past-conversations")
    similarity = similarity_to(Conversation.embedding, embedding)
    stmt = (
        select(Conversation, similarity.label("similarity"))
        .where(
            similarity > _threshold(threshold),
            Conversation.mailbox_id == mailbox.id,
            Conversation.is_prompt.is_(False),
            Conversation.merged_into_id.is_(None),
        )
        .order_by(similarity.desc())
        .limit(limit)
    )
    if exclude_slug:
        stmt = stmt.where(Conversation.slug != exclude_slug)
    rows = (await session.execute(stmt)).all()
    if not rows:
        return None

    messages = await list_messages_for_conversations(session, [conversation.id for conversation, _ in rows])
    return [
        SimilarConversation(
            conversation=conversation,
            similarity=float(score),
            messages=messages.get(conversation.id, []),
        )
        for conversation, score in rows
    ]


async def find_similar_in_knowledge_bank(
    session: AsyncSession,
    query: QueryInput,
    mailbox: Mailbox,
    *,
    threshold: float | None = None,
) -> list[SimilarKnowledgeEntry]:
    embedding = await _embed(session, query, mailbox, "embedding-query-similar-faqs")
    similarity = similarity_to(KnowledgeBankEntry.embedding, embedding)
    result = await session.execute(
        select(KnowledgeBankEntry.content, similarity.label("similarity"))
        .where(
            similarity > _threshold(threshold),
            KnowledgeBankEntry.mailbox_id == mailbox.id,
            KnowledgeBankEntry.enabled.is_(True),
        )
        .order_by(similarity.desc())
        .limit(MAX_SIMILAR_KNOWLEDGE_ITEMS)
    )
    # An empty list (not None) means "searched, nothing relevant".
    return [SimilarKnowledgeEntry(content=content, similarity=float(score)) for content, score in result.all()]


async def find_similar_website_pages(
    session: AsyncSession,
    query: QueryInput,
    mailbox: Mailbox,
    *,
    limit: int = MAX_SIMILAR_WEBSITE_PAGES,
    threshold: float | None = None,
) -> list[SimilarWebsitePage]:
    embedding = await _embed(session, query, mailbox, "embedding-query-similar-pages")
    similarity = similarity_to(WebsitePage.embedding, embedding)
    result = await session.execute(
        select(WebsitePage.url, WebsitePage.page_title, WebsitePage.markdown, similarity.label("similarity"))
        .join(
            Website,
            (Website.id == WebsitePage.website_id)
            & Website.deleted_at.is_(None)
            & (Website.mailbox_id == mailbox.id),
        )
        .where(similarity > _threshold(threshold), WebsitePage.deleted_at.is_(None))
        .order_by(similarity.desc())
        .limit(limit)
    )
    return [
        SimilarWebsitePage(url=url, page_title=title, markdown=markdown, similarity=float(score))
        for url, title, markdown, score in result.all()
    ]


def _format_date(value: Any) -> str:
    return f"{value.month}/{value.day}/{value.year}"


def render_past_conversations(conversations: list[SimilarConversation]) -> str:
    blocks = []
    for item in conversations:
        lines = [
            f"{'Customer' if message.role == 'user' else 'Agent'}:\n"
            f"{clean_up_text_for_ai(message.cleaned_up_text or message.body)}"
            for message in item.messages
        ]
        blocks.append(
            "--- Conversation Start ---\n"
            f"Date: {_format_date(item.conversation.created_at)}\n"
            + "\n".join(lines)
            + "\n--- Conversation End ---"
        )
    return "\n\n".join(blocks)


async def get_past_conversations_prompt(session: AsyncSession, query: str, mailbox: Mailbox) -> str | None:
    conversations = await find_similar_conversations(session, query, mailbox)
    if not conversations:
        return None
    return past_conversations_prompt(render_past_conversations(conversations), query)


async def fetch_prompt_retrieval_data(
    session: AsyncSession,
    query: str,
    mailbox: Mailbox,
    metadata: Any | None = None,
) -> PromptRetrievalData:
    knowledge = await find_similar_in_knowledge_bank(session, query, mailbox)
    pages = await find_similar_website_pages(session, query, mailbox)
    return PromptRetrievalData(
        knowledge_bank=knowledge_bank_prompt(knowledge),
        metadata=metadata_prompt(metadata),
        website_pages_prompt=website_pages_prompt(pages) if pages else None,
        website_pages=pages,
    )


async def fetch_metadata(session: AsyncSession, email: str, mailbox: Mailbox) -> UserInfo | None:
    endpoint = await get_metadata_api(session, mailbox.id)
    if endpoint is None:
        return None
    try:
        return await get_metadata(endpoint, email=email)
    except MetadataAPIError as exc:
        # Metadata is optional context; an unusable endpoint never blocks a response.
        logger.warning("metadata_fetch_failed mailbox_id=%s error=%s", mailbox.id, exc)
        return None


def conversation_embedding_text(messages: Sequence[ConversationMessage]) -> str:
    return "\n\n".join(
        f"From: {message.role}\nContent: {clean_up_text_for_ai(message.cleaned_up_text or message.body)}"
        for message in messages
        if message.role in ("user", "staff", "ai_assistant") and (message.cleaned_up_text or message.body)
    )


async def create_conversation_embedding(session: AsyncSession, conversation_slug: str) -> Conversation:
    """Embed the visible thread so the conversation shows up in similarity search."""
    conversation = await get_conversation_by_slug(session, conversation_slug)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_slug} not found")
    history = await list_messages(session, conversation.id, exclude_statuses=("draft", "discarded"))
    text = conversation_embedding_text(history)
    if conversation.subject:
        text = f"Subject: {conversation.subject}\n\n{text}"
    embedding = await generate_embedding(
        session,
        text,
        query_type="embedding_conversation",
        mailbox_id=conversation.mailbox_id,
    )
    async with transaction(session):
        conversation.embedding = embedding
        conversation.embedding_text = text
        await session.flush()
    logger.info("conversation_embedded conversation_id=%s chars=%s", conversation.id, len(text))
    return conversation
