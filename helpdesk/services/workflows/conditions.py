from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.agent.prompts import workflow_condition_prompt
from helpdesk.core.config import get_settings
from helpdesk.core.errors import LLMError
from helpdesk.domain.models import ConversationMessage
from helpdesk.persistence.repos.conversations import get_conversation
from helpdesk.providers.llm.base import LLMProvider
from helpdesk.services.completion import generate_completion
from helpdesk.services.conversations.messages import get_text_with_conversation_subject
from helpdesk.services.costs.metering import is_within_token_limit


logger = logging.getLogger(__name__)

_VERDICTS = {"TRUE": True, "FALSE": False}


async def evaluate_workflow_condition(
    session: AsyncSession,
    condition: str,
    message: ConversationMessage,
    *,
    provider: LLMProvider | None = None,
) -> bool:
    """Ask the model whether ``message`` satisfies ``condition``.

    Anything other than an exact ``TRUE`` counts as no match: oversized input,
    a provider failure and unexpected output all evaluate to ``False``.
    """
    conversation = await get_conversation(session, message.conversation_id)
    if conversation is None:
        logger.error("workflow_condition_conversation_missing message_id=%s", message.id)
        return False

    system = workflow_condition_prompt(condition)
    text = await get_text_with_conversation_subject(session, conversation, message)
    if not is_within_token_limit(f"{system}\n{text}"):
        logger.warning("workflow_condition_too_long message_id=%s", message.id)
        return False

    try:
        outcome = await generate_completion(
            session,
            system=system,
            prompt=text,
            model=get_settings().mini_model,
            temperature=0,
            max_tokens=5,
            mailbox_id=conversation.mailbox_id,
            query_type="workflow_condition",
            provider=provider,
        )
    except LLMError as exc:
        logger.warning("workflow_condition_failed message_id=%s error=%s", message.id, exc)
        return False

    output = outcome.text.strip()
    verdict = _VERDICTS.get(output)
    if verdict is None:
        logger.warning("workflow_condition_invalid_output message_id=%s output=%r", message.id, output)
        return False
    return verdict
