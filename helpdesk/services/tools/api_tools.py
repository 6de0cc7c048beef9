from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ConfigDict, ValidationError, create_model
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.errors import ToolApiError
from helpdesk.domain.models import Conversation, Tool
from helpdesk.services.conversations.messages import create_tool_event
from helpdesk.services.resilience import retry_async, single_attempt_policy
from helpdesk.services.telemetry import TOOL_INTEGRATION, record_external_call


logger = logging.getLogger(__name__)

API_ERROR_MESSAGE = "The API returned an error"
SUCCESS_MESSAGE = "Tool executed successfully."

_PYTHON_TYPES: dict[str, type] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def tool_parameters(tool: Tool) -> list[dict[str, Any]]:
    return list(tool.parameters or [])


def parameter_schema(tool: Tool, *, email: str | None = None) -> dict[str, Any]:
    """JSON schema the model sees for a tenant tool.

    The customer email parameter becomes optional when the caller's address is
    already known, since the executor fills it in.
    """
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in tool_parameters(tool):
        name = param["name"]
        is_email_param = name == tool.customer_email_parameter
        properties[name] = {
            "type": "string" if is_email_param else param.get("type", "string"),
            "description": param.get("description") or name,
        }
        if is_email_param:
            if not email:
                required.append(name)
        elif param.get("required"):
            required.append(name)
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def validate_parameters(tool: Tool, params: dict[str, Any]) -> None:
    fields: dict[str, Any] = {}
    for param in tool_parameters(tool):
        python_type = _PYTHON_TYPES.get(param.get("type", "string"), str)
        if param.get("required"):
            fields[param["name"]] = (python_type, ...)
        else:
            fields[param["name"]] = (python_type | None, None)
    model = create_model(f"{tool.slug}_params", __config__=ConfigDict(strict=True), **fields)
    try:
        model.model_validate(params)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(item) for item in first.get("loc", ()))
        raise ToolApiError("INVALID_PARAMETER", f"Parameter validation failed: {location} - {first.get('msg')}") from exc


def build_headers(tool: Tool) -> dict[str, str]:
    headers = dict(tool.headers or {})
    if tool.authentication_method == "bearer_token" and tool.authentication_token:
        headers["Authorization"] = f"Bearer {tool.authentication_token}"
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    return headers


def build_url(tool: Tool, params: dict[str, Any]) -> str:
    url = tool.url
    query: list[tuple[str, str]] = []
    for param in tool_parameters(tool):
        value = params.get(param["name"])
        if value is None:
            continue
        if param.get("in") == "query":
            query.append((param["name"], str(value)))
        elif param.get("in") == "path":
            url = url.replace(f"{{{param['name']}}}", quote(str(value), safe=""))
    return str(httpx.URL(url).copy_merge_params(query)) if query else url


def build_body(tool: Tool, params: dict[str, Any]) -> dict[str, Any] | None:
    if tool.request_method.upper() == "GET":
        return None
    body = {
        param["name"]: params[param["name"]]
        for param in tool_parameters(tool)
        if param.get("in") == "body" and params.get(param["name"]) is not None
    }
    return body or None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def call_tool_api(
    session: AsyncSession,
    conversation: Conversation,
    tool: Tool,
    params: dict[str, Any],
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Invoke a tenant HTTP tool and record the attempt as a tool event.

    Invalid parameters raise ``ToolApiError`` before any request is sent.
    Network failures and non-2xx responses are captured on the tool event and
    reported back as a generic failure.
    """
    validate_parameters(tool, params)
    method = tool.request_method.upper()
    url = build_url(tool, params)
    headers = build_headers(tool)
    body = build_body(tool, params)
    content = json.dumps(body) if body is not None else None

    async def _request() -> httpx.Response:
        started = time.monotonic()
        success = False
        try:
            if client is not None:
                response = await client.request(method, url, headers=headers, content=content)
            else:
                async with httpx.AsyncClient() as local_client:
                    response = await local_client.request(method, url, headers=headers, content=content)
            success = response.is_success
            return response
        finally:
            record_external_call(
                integration=f"{TOOL_INTEGRATION}:{tool.slug}",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

    try:
        response = await retry_async(_request, policy=single_attempt_policy())
    except (httpx.HTTPError, TimeoutError) as exc:
        logger.warning("tool_api_request_failed tool=%s error=%s", tool.slug, type(exc).__name__)
        await create_tool_event(
            session,
            conversation_id=conversation.id,
            tool=tool,
            parameters=params,
            user_message=API_ERROR_MESSAGE,
            error=str(exc) or type(exc).__name__,
        )
        return {"success": False, "message": API_ERROR_MESSAGE}

    if not response.is_success:
        logger.warning("tool_api_error_response tool=%s status=%s", tool.slug, response.status_code)
        await create_tool_event(
            session,
            conversation_id=conversation.id,
            tool=tool,
            parameters=params,
            user_message=API_ERROR_MESSAGE,
            error={
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "body": _response_body(response),
            },
        )
        return {"success": False, "message": API_ERROR_MESSAGE}

    data = _response_body(response)
    await create_tool_event(
        session,
        conversation_id=conversation.id,
        tool=tool,
        parameters=params,
        user_message=SUCCESS_MESSAGE,
        data=data,
    )
    return {"data": data, "success": True}
