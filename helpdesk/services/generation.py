from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

import markdown as markdown_lib
import nh3
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.prompts import STYLE_LINTER_SYSTEM_PROMPT, STYLE_LINTER_USER_PROMPT, style_linter_examples
from helpdesk.core.config import get_settings
from helpdesk.core.errors import NotFoundError
from helpdesk.domain.models import Conversation, ConversationMessage, Mailbox
from helpdesk.persistence.repos.conversations import (
    get_conversation,
    get_conversation_by_slug,
    get_original_conversation,
)
from helpdesk.persistence.repos.mailboxes import (
    get_mailbox,
    get_organization,
    get_platform_customer,
    list_style_linters,
    upsert_platform_customer,
)
from helpdesk.persistence.repos.messages import get_last_message_by_role, get_message, list_messages
from helpdesk.persistence.transactions import transaction
from helpdesk.providers.llm.base import ChatMessage, LLMProvider, StreamChunk
from helpdesk.services.completion import (
    CompletionOutcome,
    generate_completion,
    generate_reasoning,
    hide_tool_results,
    stream_completion,
)
from helpdesk.services.conversations.messages import (
    create_ai_draft,
    create_conversation_message,
    disable_ai_response,
    ensure_cleaned_up_text,
    get_text_with_conversation_subject,
)
from helpdesk.services.conversations.mutations import update_conversation
from helpdesk.services.costs import TokenUsage, record_ai_usage
from helpdesk.services.organizations import can_send_automated_replies, record_automated_reply
from helpdesk.services.prompt_budget import ShortenPromptOptions
from helpdesk.services.prompting import (
    base_prompt_for,
    build_chat_system_prompt,
    build_draft_system_prompt,
    build_prompt_with_messages,
    check_token_count_and_summarize_if_needed,
    clean_up_text_for_ai,
)
from helpdesk.services.queue import send_after_commit
from helpdesk.services.retrieval import fetch_prompt_retrieval_data, get_past_conversations_prompt
from helpdesk.services.tools.registry import build_tools


logger = logging.getLogger(__name__)

DRAFT_MAX_STEPS = 5
CHAT_MAX_STEPS = 4
ESCALATED_REPLY = "_Escalated to a human! You will be contacted soon by email._"
HUMAN_FOLLOW_UP_REPLY = "Our support team will respond to your message shortly. Thank you for your patience."
PERSISTED_FINISH_REASONS = ("stop", "tool_calls")

_MARKDOWN_SOURCE_RE = re.compile(r"\[\((\d+)\)\]\((https?://[^\s)]+)\)")


@dataclass(frozen=True)
class GenerationOptions:
    reasoning_enabled: bool = False
    style_linter_enabled: bool = False

    @classmethod
    def from_settings(cls) -> "GenerationOptions":
        settings = get_settings()
        return cls(
            reasoning_enabled=settings.reasoning_enabled,
            style_linter_enabled=settings.style_linter_enabled,
        )


@dataclass(frozen=True)
class DraftResponse:
    body: str
    prompt_info: dict[str, Any]


@dataclass(frozen=True)
class Source:
    url: str
    page_title: str


@dataclass(frozen=True)
class AIResponseFinish:
    outcome: CompletionOutcome
    trace_id: str
    reasoning: str | None
    sources: list[Source]


@dataclass
class ChatResponse:
    """A chat reply being streamed.

    The remaining fields are filled in once ``chunks`` has been fully consumed.
    """

    chunks: AsyncIterator[StreamChunk]
    trace_id: str
    message_id: int | None = None
    text: str = ""
    sources: list[dict[str, str]] = field(default_factory=list)
    human_support_requested: bool = False


def markdown_to_html(text: str) -> str:
    return nh3.clean(markdown_lib.markdown(text))


async def style_lint(
    session: AsyncSession,
    mailbox: Mailbox,
    response: str,
    *,
    options: GenerationOptions,
    provider: LLMProvider | None = None,
) -> tuple[str, str | None]:
    """Rewrite ``response`` in the tenant's house style.

    Returns the (possibly unchanged) text and the examples that were used.
    """
    if not options.style_linter_enabled:
        return response, None
    organization = await get_organization(session, mailbox.organization_id)
    if organization is None or not organization.is_style_linter_enabled:
        return response, None
    linters = await list_style_linters(session, organization.id)
    if not linters:
        return response, None

    examples = style_linter_examples(linters)
    outcome = await generate_completion(
        session,
        system=STYLE_LINTER_SYSTEM_PROMPT.replace("{{EXAMPLES}}", examples),
        prompt=STYLE_LINTER_USER_PROMPT.replace("{{DRAFT_RESPONSE}}", response),
        model=get_settings().completion_model,
        mailbox_id=mailbox.id,
        query_type="style-linter",
        provider=provider,
    )
    return outcome.text, examples


async def generate_draft_response(
    session: AsyncSession,
    message: ConversationMessage,
    mailbox: Mailbox,
    *,
    metadata: Any | None = None,
    enable_mailbox_tools: bool = False,
    options: GenerationOptions | None = None,
    provider: LLMProvider | None = None,
) -> DraftResponse:
    """Compose a reply draft for the customer message ``message``.

    Retrieval results, the tenant prompt and optional metadata feed the system
    prompt. Under context pressure past conversations go first, then the
    knowledge bank, then metadata, before the thread itself is truncated.
    """
    options = options or GenerationOptions.from_settings()
    conversation = await get_conversation(session, message.conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {message.conversation_id} not found")

    user_prompt = await get_text_with_conversation_subject(session, conversation, message)
    retrieval = await fetch_prompt_retrieval_data(session, user_prompt, mailbox, metadata)
    past_conversations = await get_past_conversations_prompt(session, user_prompt, mailbox)
    base_prompt = base_prompt_for(mailbox)
    system = build_draft_system_prompt(
        base_prompt=base_prompt,
        knowledge_bank=retrieval.knowledge_bank,
        website_pages=retrieval.website_pages_prompt,
        past_conversations=past_conversations,
        metadata=retrieval.metadata,
    )
    tools = await build_tools(
        session,
        conversation.id,
        message.email_from,
        mailbox,
        include_human_support=False,
        include_mailbox_tools=enable_mailbox_tools,
    )
    outcome = await generate_completion(
        session,
        system=system,
        prompt=await build_prompt_with_messages(session, conversation.id),
        tools=tools,
        max_steps=DRAFT_MAX_STEPS,
        mailbox_id=mailbox.id,
        query_type="response_generator",
        shorten_prompt_by=ShortenPromptOptions(
            remove_system=(past_conversations, retrieval.knowledge_bank, retrieval.metadata),
            truncate_messages=True,
        ),
        provider=provider,
    )

    linted, examples = await style_lint(session, mailbox, outcome.text, options=options, provider=provider)
    logger.info(
        "draft_generated conversation_id=%s steps=%s styled=%s",
        conversation.id,
        outcome.steps,
        examples is not None,
    )
    return DraftResponse(
        body=markdown_to_html(linted),
        prompt_info={
            "past_conversations": past_conversations,
            "base_prompt": base_prompt,
            "pinned_replies": retrieval.knowledge_bank,
            "metadata": retrieval.metadata,
            "style_linter_examples": examples,
            "unstyled_response": outcome.text,
        },
    )


async def create_draft_for_conversation(
    session: AsyncSession,
    conversation_slug: str,
    *,
    options: GenerationOptions | None = None,
    provider: LLMProvider | None = None,
) -> ConversationMessage | None:
    conversation = await get_conversation_by_slug(session, conversation_slug)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_slug} not found")
    last_user_message = await get_last_message_by_role(session, conversation.id, "user")
    if last_user_message is None:
        return None
    mailbox = await get_mailbox(session, conversation.mailbox_id)
    if mailbox is None:
        raise NotFoundError(f"Mailbox {conversation.mailbox_id} not found")

    draft = await generate_draft_response(
        session,
        last_user_message,
        mailbox,
        metadata=last_user_message.metadata_json,
        options=options,
        provider=provider,
    )
    return await create_ai_draft(
        session,
        conversation_id=conversation.id,
        body=draft.body,
        response_to_id=last_user_message.id,
        prompt_info=draft.prompt_info,
    )


async def generate_response_with_prompt(
    session: AsyncSession,
    *,
    message: ConversationMessage,
    mailbox: Mailbox,
    append_prompt: str,
    metadata: Any | None = None,
    provider: LLMProvider | None = None,
) -> str:
    conversation = await get_conversation(session, message.conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {message.conversation_id} not found")

    history = await list_messages(session, conversation.id, exclude_statuses=("draft", "discarded"))
    thread = [item for item in history if item.role in ("user", "staff", "ai_assistant") and item.id < message.id]
    messages: list[ChatMessage] = [
        {
            "role": "user" if item.role == "user" else "assistant",
            "content": item.cleaned_up_text or item.body or "",
        }
        for item in thread
    ]
    messages.append({"role": "user", "content": await get_text_with_conversation_subject(session, conversation, message)})
    if messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": "Start"})

    sections = [base_prompt_for(mailbox), append_prompt]
    if metadata:
        sections.append(f"Metadata:\n{json.dumps(metadata, separators=(',', ':'), default=str)}")
    outcome = await generate_completion(
        session,
        system="\n\n".join(section for section in sections if section),
        messages=messages,
        mailbox_id=mailbox.id,
        query_type="response_generator",
        provider=provider,
    )
    return outcome.text


async def generate_ai_response(
    session: AsyncSession,
    *,
    messages: list[ChatMessage],
    mailbox: Mailbox,
    conversation_id: int,
    email: str | None,
    options: GenerationOptions | None = None,
    evaluation: bool = False,
    on_finish: Callable[[AIResponseFinish], Awaitable[None]] | None = None,
    provider: LLMProvider | None = None,
    reasoning_provider: LLMProvider | None = None,
) -> AsyncIterator[StreamChunk]:
    """Stream a chat reply with tool access.

    Raw tool results are filtered out of the yielded chunks. When reasoning is
    enabled and produces output, it is injected as an extra system message.
    """
    options = options or GenerationOptions.from_settings()
    settings = get_settings()
    query = next((message["content"] for message in reversed(messages) if message["role"] == "user"), "") or ""
    retrieval = await fetch_prompt_retrieval_data(session, query, mailbox)
    system_messages: list[ChatMessage] = [
        {
            "role": "system",
            "content": build_chat_system_prompt(
                mailbox,
                email,
                knowledge_bank=retrieval.knowledge_bank,
                website_pages=retrieval.website_pages_prompt,
            ),
        }
    ]
    sources = [Source(url=page.url, page_title=page.page_title) for page in retrieval.website_pages]
    tools = await build_tools(session, conversation_id, email, mailbox)
    trace_id = str(uuid4())
    final_messages = [*system_messages, *messages]

    reasoning: str | None = None
    if options.reasoning_enabled:
        result = await generate_reasoning(
            tools=tools,
            system_messages=system_messages,
            messages=messages,
            evaluation=evaluation,
            provider=reasoning_provider,
        )
        if not evaluation:
            await record_ai_usage(
                session=session,
                mailbox_id=mailbox.id,
                model=settings.reasoning_model,
                query_type="reasoning",
                usage=result.usage or TokenUsage(),
            )
        if result.reasoning:
            reasoning = result.reasoning
            final_messages.append({"role": "system", "content": f"Reasoning: {reasoning}"})

    async def _finish(outcome: CompletionOutcome) -> None:
        if not evaluation:
            await record_ai_usage(
                session=session,
                mailbox_id=mailbox.id,
                model=outcome.model,
                query_type="chat_completion",
                usage=outcome.usage,
            )
        if on_finish is not None:
            await on_finish(AIResponseFinish(outcome=outcome, trace_id=trace_id, reasoning=reasoning, sources=sources))

    chunks = stream_completion(
        messages=final_messages,
        tools=tools,
        temperature=0.1,
        max_steps=CHAT_MAX_STEPS,
        provider=provider,
        on_finish=_finish,
    )
    async for chunk in hide_tool_results(chunks):
        yield chunk


async def load_previous_messages(
    session: AsyncSession, conversation_id: int, latest_message_id: int | None = None
) -> list[ChatMessage]:
    # Tool events are history, not pending calls, so they are not replayed.
    history = await list_messages(session, conversation_id, exclude_statuses=("draft", "discarded"))
    return [
        {
            "role": "assistant" if message.role in ("staff", "ai_assistant") else "user",
            "content": message.body or "",
        }
        for message in history
        if message.body and message.id != latest_message_id and message.role != "tool"
    ]


def extract_markdown_sources(text: str, sources: list[Source]) -> list[dict[str, str]]:
    titles = {source.url: source.page_title for source in sources}
    unique: dict[str, dict[str, str]] = {}
    for source_id, url in _MARKDOWN_SOURCE_RE.findall(text):
        unique[source_id] = {"id": source_id, "url": url, "title": titles.get(url, url)}
    return sorted(unique.values(), key=lambda item: int(item["id"]))


async def create_assistant_message(
    session: AsyncSession,
    conversation_id: int,
    user_message_id: int | None,
    text: str,
    *,
    trace_id: str | None = None,
    reasoning: str | None = None,
    send_email: bool = False,
) -> ConversationMessage:
    return await create_conversation_message(
        session,
        conversation_id=conversation_id,
        role="ai_assistant",
        body=text,
        cleaned_up_text=text,
        status="queueing" if send_email else "sent",
        response_to_id=user_message_id,
        metadata={"trace_id": trace_id, "reasoning": reasoning},
    )


async def _text_chunks(text: str) -> AsyncIterator[StreamChunk]:
    if text:
        yield StreamChunk(type="text-delta", text=text)
    yield StreamChunk(type="finish", finish_reason="stop")


async def respond_with_ai(
    session: AsyncSession,
    *,
    conversation: Conversation,
    mailbox: Mailbox,
    user_email: str | None,
    content: str,
    message_id: int,
    send_email: bool = False,
    options: GenerationOptions | None = None,
    provider: LLMProvider | None = None,
    reasoning_provider: LLMProvider | None = None,
) -> ChatResponse:
    """Answer the customer message ``message_id`` in a chat conversation.

    Conversations where the AI must stay quiet are handed back to humans; the
    very first message still gets a holding reply. Otherwise the reply is
    streamed and the assistant message is stored once the model finishes.
    """
    previous = await load_previous_messages(session, conversation.id, message_id)
    messages: list[ChatMessage] = [*previous, {"role": "user", "content": content}]
    platform_customer = await get_platform_customer(session, mailbox.id, user_email) if user_email else None
    is_first_message = len(messages) == 1
    trace_id = str(uuid4())

    if await disable_ai_response(session, conversation.id, mailbox, platform_customer) and (
        not conversation.is_prompt or not is_first_message
    ):
        target = await get_original_conversation(session, conversation.id) or conversation
        await update_conversation(session, target.id, set={"status": "open"})
        user_turns = sum(1 for message in messages if message["role"] == "user")
        if is_first_message or (conversation.is_prompt and user_turns == 2):
            async with transaction(session):
                assistant = await create_assistant_message(
                    session, conversation.id, message_id, HUMAN_FOLLOW_UP_REPLY, send_email=send_email
                )
            return ChatResponse(
                chunks=_text_chunks(HUMAN_FOLLOW_UP_REPLY),
                trace_id=trace_id,
                message_id=assistant.id,
                text=HUMAN_FOLLOW_UP_REPLY,
                human_support_requested=True,
            )
        return ChatResponse(chunks=_text_chunks(""), trace_id=trace_id, human_support_requested=True)

    response = ChatResponse(chunks=_text_chunks(""), trace_id=trace_id)

    async def _on_finish(finish: AIResponseFinish) -> None:
        outcome = finish.outcome
        response.trace_id = finish.trace_id
        if outcome.finish_reason not in PERSISTED_FINISH_REASONS:
            logger.warning(
                "chat_reply_not_persisted conversation_id=%s finish_reason=%s",
                conversation.id,
                outcome.finish_reason,
            )
            return
        human_support_requested = outcome.called_tool("request_human_support")
        text = ESCALATED_REPLY if human_support_requested else outcome.text
        async with transaction(session):
            assistant = await create_assistant_message(
                session,
                conversation.id,
                message_id,
                text,
                trace_id=finish.trace_id,
                reasoning=finish.reasoning,
                send_email=send_email,
            )
            await send_after_commit(
                session,
                "conversations/check-resolution",
                {"conversationId": conversation.id, "messageId": assistant.id},
            )
        response.message_id = assistant.id
        response.text = text
        response.human_support_requested = human_support_requested
        response.sources = extract_markdown_sources(outcome.text, finish.sources)

    response.chunks = generate_ai_response(
        session,
        messages=messages,
        mailbox=mailbox,
        conversation_id=conversation.id,
        email=user_email,
        options=options,
        on_finish=_on_finish,
        provider=provider,
        reasoning_provider=reasoning_provider,
    )
    return response


async def handle_auto_response(
    session: AsyncSession,
    message_id: int,
    *,
    options: GenerationOptions | None = None,
    provider: LLMProvider | None = None,
) -> dict[str, Any]:
    """Answer an inbound email through the chat assistant and close the thread."""
    message = await get_message(session, message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    conversation = await get_conversation(session, message.conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {message.conversation_id} not found")
    mailbox = await get_mailbox(session, conversation.mailbox_id)
    if mailbox is None:
        raise NotFoundError(f"Mailbox {conversation.mailbox_id} not found")

    if conversation.status == "spam":
        return {"message": "Skipped - conversation is spam"}
    if not mailbox.widget_host:
        return {"message": "Skipped - widget host is not configured"}
    if not message.email_from:
        return {"message": "Skipped - message has no sender"}
    organization = await get_organization(session, mailbox.organization_id)
    if organization is None or not await can_send_automated_replies(session, organization):
        return {"message": "Not sent, free trial expired"}

    async with transaction(session):
        await upsert_platform_customer(session, mailbox_id=mailbox.id, email=message.email_from, metadata=None)

    cleaned = await ensure_cleaned_up_text(session, message)
    text = await check_token_count_and_summarize_if_needed(
        session,
        clean_up_text_for_ai(cleaned or message.body),
        mailbox_id=mailbox.id,
        provider=provider,
    )

    parts: list[str] = []
    async for chunk in generate_ai_response(
        session,
        messages=[{"role": "user", "content": text}],
        mailbox=mailbox,
        conversation_id=conversation.id,
        email=message.email_from,
        options=options,
        provider=provider,
    ):
        if chunk.type == "text-delta":
            parts.append(chunk.text)

    async with transaction(session):
        assistant = await create_assistant_message(session, conversation.id, message.id, "".join(parts))
        await send_after_commit(
            session,
            "conversations/check-resolution",
            {"conversationId": conversation.id, "messageId": assistant.id},
        )
        await update_conversation(session, conversation.id, set={"status": "closed", "source": "chat"})
        await record_automated_reply(session, organization)
    logger.info("auto_response_sent message_id=%s assistant_message_id=%s", message.id, assistant.id)
    return {"message": f"Auto response sent for message {message.id}"}
