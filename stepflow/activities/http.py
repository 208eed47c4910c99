"""Generic HTTP request activity."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from ..contracts import ActivityInput, ActivityResult
from ..errors import ActivityFailed, ErrorCode
from .base import Activity, http_client

logger = logging.getLogger(__name__)


class HTTPRequestPayload(BaseModel):
    method: str = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    query_params: Dict[str, str] = Field(default_factory=dict)
    expected_status: Optional[int] = None
    timeout: float = 30.0


def decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


class HTTPActivity(Activity[HTTPRequestPayload]):
    """Perform an HTTP request and return ``{status, headers, body}``.

    A response whose status differs from ``expected_status`` fails the
    activity; server errors stay retryable, anything else does not.
    """

    name = "http-request"
    payload_model = HTTPRequestPayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        request_kwargs: dict[str, Any] = {
            "headers": payload.headers,
            "params": payload.query_params or None,
        }
        if payload.body is not None:
            if isinstance(payload.body, (dict, list)):
                request_kwargs["json"] = payload.body
            else:
                request_kwargs["content"] = str(payload.body)

        async with http_client(ctx, timeout=payload.timeout) as client:
            try:
                response = await client.request(
                    payload.method.upper(), payload.url, **request_kwargs
                )
            except httpx.HTTPError as exc:
                raise ActivityFailed(
                    f"{payload.method.upper()} {payload.url} failed: {exc}"
                ) from exc

        output = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": decode_body(response),
        }
        if (
            payload.expected_status is not None
            and response.status_code != payload.expected_status
        ):
            raise ActivityFailed(
                f"unexpected status {response.status_code} from {payload.url} "
                f"(expected {payload.expected_status})",
                output,
                code=ErrorCode.UNEXPECTED_HTTP_STATUS,
                retryable=response.status_code >= 500,
            )

        logger.debug(f"{payload.method.upper()} {payload.url} -> {response.status_code}")
        return ActivityResult(output=output)
