from __future__ import annotations

from datetime import datetime
import re
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.prompts import (
    GLOBAL_RULES_SUFFIX,
    SUMMARY_PROMPT,
    SYSTEM_PROMPT_PREFIX,
    chat_system_prompt,
)
from helpdesk.core.config import get_settings
from helpdesk.domain.models import ConversationMessage, Mailbox
from helpdesk.persistence.repos.messages import list_messages
from helpdesk.providers.llm.base import ChatMessage, LLMProvider
from helpdesk.services.completion import generate_completion
from helpdesk.services.costs.metering import is_within_token_limit


SUMMARY_MAX_TOKENS = 7000

_BASE64_IMAGE_RE = re.compile(r"data:image/[^;]+;base64,[^\s\"']+")
_BLANK_LINES_RE = re.compile(r"\n{2,}")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_up_text_for_ai(text: str | None) -> str:
    if not text:
        return ""
    without_images = _BASE64_IMAGE_RE.sub("[IMAGE]", text)
    single_breaks = _BLANK_LINES_RE.sub("\n", without_images)
    return _WHITESPACE_RE.sub(" ", single_breaks).strip()


async def check_token_count_and_summarize_if_needed(
    session: AsyncSession | None,
    text: str,
    *,
    mailbox_id: int | None = None,
    provider: LLMProvider | None = None,
) -> str:
    # Text already inside the budget is returned untouched, so repeated calls are no-ops.
    if is_within_token_limit(text):
        return text
    outcome = await generate_completion(
        session,
        system=SUMMARY_PROMPT,
        prompt=text,
        model=get_settings().mini_model,
        max_tokens=SUMMARY_MAX_TOKENS,
        mailbox_id=mailbox_id,
        query_type="summary",
        provider=provider,
    )
    return outcome.text


def messages_from_history(messages: Iterable[ConversationMessage]) -> list[ChatMessage]:
    return [
        {"role": "user" if message.role == "user" else "assistant", "content": message.cleaned_up_text or ""}
        for message in messages
    ]


async def build_prompt_with_messages(session: AsyncSession, conversation_id: int) -> str:
    """Render the visible thread as ``<message>`` blocks for the draft prompt."""
    history = await list_messages(session, conversation_id, exclude_statuses=("draft", "discarded"))
    with_text = [message for message in history if message.cleaned_up_text and message.cleaned_up_text.strip()]
    formatted = "\n".join(
        f"<message><role>{message['role']}</role><content>{message['content']}</content></message>"
        for message in messages_from_history(with_text)
    )
    return f"This is the conversation history: <messages>{clean_up_text_for_ai(formatted)}</messages>"


def base_prompt_for(mailbox: Mailbox) -> str:
    return "\n".join(mailbox.response_generator_prompt or [])


def build_draft_system_prompt(
    *,
    base_prompt: str,
    knowledge_bank: str | None = None,
    website_pages: str | None = None,
    past_conversations: str | None = None,
    metadata: str | None = None,
) -> str:
    # Tenant context first; global rules always last.
    optional = [section for section in (knowledge_bank, website_pages, past_conversations, metadata) if section]
    return "\n".join([SYSTEM_PROMPT_PREFIX, base_prompt, *optional, GLOBAL_RULES_SUFFIX])


def build_chat_system_prompt(
    mailbox: Mailbox,
    email: str | None,
    *,
    knowledge_bank: str | None = None,
    website_pages: str | None = None,
    now: datetime | None = None,
) -> str:
    system_prompt = chat_system_prompt(mailbox.name, now=now)
    if knowledge_bank:
        system_prompt += f"\n{knowledge_bank}"
    if website_pages:
        system_prompt += f"\n{website_pages}"
    system_prompt += f"\nCurrent user email: {email}" if email else "Anonymous user"
    return system_prompt
