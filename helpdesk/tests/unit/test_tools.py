from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from helpdesk.core.errors import ToolApiError
from helpdesk.domain.models import ConversationMessage, Tool
from helpdesk.services.tools.api_tools import build_url, call_tool_api, parameter_schema
from helpdesk.services.tools.base import with_reasoning
from helpdesk.services.tools.registry import EMAIL_SET_MESSAGE, build_tools
from helpdesk.tests.utils.factories import create_conversation, create_mailbox, create_metadata_api


ORDER_PARAMETERS = [
    {"name": "order_id", "type": "string", "in": "path", "required": True, "description": "Order id"},
    {"name": "email", "type": "string", "in": "query", "required": True},
    {"name": "include_items", "type": "boolean", "in": "query"},
]


async def _create_tool(session, mailbox, **fields) -> Tool:
    tool = Tool(
        mailbox_id=mailbox.id,
        name=fields.pop("name", "Get order"),
        slug=fields.pop("slug", "get_order"),
        description=fields.pop("description", "Look up an order"),
        url=fields.pop("url", "https://api.example.com/orders/{order_id}"),
        parameters=fields.pop("parameters", ORDER_PARAMETERS),
        customer_email_parameter=fields.pop("customer_email_parameter", "email"),
        **fields,
    )
    session.add(tool)
    await session.commit()
    return tool


async def _tool_events(session, conversation_id: int) -> list[ConversationMessage]:
    result = await session.execute(
        select(ConversationMessage).where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == "tool",
        )
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_email_parameter_is_optional_once_email_is_known(session) -> None:
    mailbox = await create_mailbox(session)
    tool = await _create_tool(session, mailbox)

    anonymous = parameter_schema(tool)
    known = parameter_schema(tool, email="customer@example.com")

    assert anonymous["required"] == ["order_id", "email"]
    assert known["required"] == ["order_id"]
    assert known["properties"]["include_items"]["type"] == "boolean"


@pytest.mark.asyncio
async def test_build_url_fills_path_and_query(session) -> None:
    mailbox = await create_mailbox(session)
    tool = await _create_tool(session, mailbox)

    url = build_url(tool, {"order_id": "A/1", "email": "a@example.com", "include_items": True})

    assert url.startswith("https://api.example.com/orders/A%2F1?")
    assert dict(httpx.URL(url).params) == {"email": "a@example.com", "include_items": "True"}


@pytest.mark.asyncio
async def test_successful_call_records_tool_event(session) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"status": "shipped"})

    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    tool = await _create_tool(
        session,
        mailbox,
        request_method="POST",
        authentication_method="bearer_token",
        authentication_token="secret",
        parameters=[{"name": "order_id", "type": "string", "in": "body", "required": True}],
        url="https://api.example.com/orders/lookup",
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await call_tool_api(session, conversation, tool, {"order_id": "123"}, client=client)

    assert result == {"data": {"status": "shipped"}, "success": True}
    assert requests[0].method == "POST"
    assert requests[0].headers["Authorization"] == "Bearer secret"
    assert json.loads(requests[0].content) == {"order_id": "123"}
    events = await _tool_events(session, conversation.id)
    assert len(events) == 1
    assert events[0].metadata_json["success"] is True
    assert events[0].metadata_json["result"] == {"status": "shipped"}


@pytest.mark.asyncio
async def test_error_response_is_reported_generically(session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    tool = await _create_tool(session, mailbox)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await call_tool_api(
            session, conversation, tool, {"order_id": "1", "email": "a@example.com"}, client=client
        )

    assert result == {"success": False, "message": "The API returned an error"}
    events = await _tool_events(session, conversation.id)
    assert events[0].metadata_json["success"] is False
    assert events[0].metadata_json["result"]["status"] == 500
    assert events[0].metadata_json["result"]["body"] == "upstream exploded"


@pytest.mark.asyncio
async def test_invalid_parameters_fail_before_request(session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    tool = await _create_tool(session, mailbox)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ToolApiError) as exc_info:
            await call_tool_api(session, conversation, tool, {"email": "a@example.com"}, client=client)

    assert exc_info.value.code == "INVALID_PARAMETER"
    assert "order_id" in str(exc_info.value)
    assert await _tool_events(session, conversation.id) == []


@pytest.mark.asyncio
async def test_registry_depends_on_caller_context(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox)
    await _create_tool(session, mailbox)
    await _create_tool(session, mailbox, slug="hidden", available_in_chat=False)

    anonymous = await build_tools(session, conversation.id, None, mailbox)
    assert set(anonymous) == {"knowledge_base", "set_user_email", "request_human_support", "get_order"}
    assert anonymous["request_human_support"].parameters["required"] == ["reason", "email"]

    await create_metadata_api(session, mailbox)
    known = await build_tools(session, conversation.id, "customer@example.com", mailbox, include_human_support=False)
    assert set(known) == {"knowledge_base", "fetch_user_information", "get_order"}

    drafting = await build_tools(
        session, conversation.id, "customer@example.com", mailbox, include_mailbox_tools=False
    )
    assert "get_order" not in drafting


@pytest.mark.asyncio
async def test_set_user_email_tool_updates_conversation(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, email_from=None)
    tools = await build_tools(session, conversation.id, None, mailbox)

    result = await tools["set_user_email"].executor({"email": "new@example.com"})

    assert result == EMAIL_SET_MESSAGE
    await session.refresh(conversation)
    assert conversation.email_from == "new@example.com"


@pytest.mark.asyncio
async def test_set_user_email_tool_requires_an_email(session) -> None:
    mailbox = await create_mailbox(session)
    conversation = await create_conversation(session, mailbox, email_from=None)
    tools = await build_tools(session, conversation.id, None, mailbox)

    with pytest.raises(ToolApiError, match="email is required"):
        await tools["set_user_email"].executor({})

    await session.refresh(conversation)
    assert conversation.email_from is None


@pytest.mark.asyncio
async def test_reasoning_prefixes_non_empty_results() -> None:
    async def executor(arguments):
        return arguments.get("value")

    wrapped = with_reasoning(executor, "Looking up the order")

    assert await wrapped({"value": "found"}) == "Looking up the order\n\nfound"
    assert await wrapped({"value": ""}) == ""
    assert with_reasoning(executor, None) is executor
