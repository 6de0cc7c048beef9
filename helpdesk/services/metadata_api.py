from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Literal
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field, ValidationError

from helpdesk.core.errors import MetadataAPIError
from helpdesk.domain.models import MetadataApi
from helpdesk.services.resilience import metadata_read_policy, retry_async
from helpdesk.services.telemetry import METADATA_INTEGRATION, record_external_call


logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 5000


class UserInfo(BaseModel):
    prompt: str = Field(max_length=MAX_PROMPT_LENGTH)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MetadataResponse(BaseModel):
    success: Literal[True]
    user_info: UserInfo


def timestamp() -> int:
    return int(time.time())


def create_hmac_digest(
    secret: str,
    *,
    query: dict[str, Any] | None = None,
    json_body: dict[str, Any] | None = None,
) -> bytes:
    """Sign either the urlencoded query string or the compact JSON body."""
    if query is not None:
        payload = urlencode(query)
    elif json_body is not None:
        payload = json.dumps(json_body, separators=(",", ":"))
    else:
        raise ValueError("Either query or json_body is required")
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"'{location}' {error.get('msg', 'Invalid value')}")
    return "; ".join(parts)


async def get_metadata(
    endpoint: MetadataApi,
    *,
    email: str,
    ts: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> UserInfo:
    query = {"email": email, "timestamp": ts if ts is not None else timestamp()}
    signature = base64.b64encode(create_hmac_digest(endpoint.hmac_secret, query=query)).decode("ascii")
    headers = {"Authorization": f"Bearer {signature}", "Content-Type": "application/json"}
    url = f"{endpoint.url}?{urlencode(query)}"

    async def _request() -> httpx.Response:
        started = time.monotonic()
        success = False
        try:
            if client is not None:
                response = await client.get(url, headers=headers)
            else:
                async with httpx.AsyncClient() as local_client:
                    response = await local_client.get(url, headers=headers)
            success = response.is_success
            return response
        finally:
            record_external_call(
                integration=METADATA_INTEGRATION,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

    try:
        response = await retry_async(_request, policy=metadata_read_policy())
    except (httpx.HTTPError, TimeoutError) as exc:
        raise MetadataAPIError(f"Request failed: {type(exc).__name__}") from exc

    if not response.is_success:
        raise MetadataAPIError(f"HTTP error occurred: {response.status_code}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise MetadataAPIError("Endpoint did not return JSON response") from exc
    try:
        return MetadataResponse.model_validate(payload).user_info
    except ValidationError as exc:
        raise MetadataAPIError(f"Invalid format for JSON response: {_format_validation_error(exc)}") from exc
