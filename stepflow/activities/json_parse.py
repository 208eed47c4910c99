"""Parse a raw JSON string into structured data."""

from __future__ import annotations

import json

from pydantic import BaseModel, Field

from ..contracts import ActivityInput, ActivityResult
from ..errors import ActivityFailed
from .base import Activity


class JSONParsePayload(BaseModel):
    raw_json: str = Field(alias="rawJSON")

    model_config = {"populate_by_name": True}


class JSONActivity(Activity[JSONParsePayload]):
    name = "json-parse"
    payload_model = JSONParsePayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        try:
            data = json.loads(payload.raw_json)
        except json.JSONDecodeError as exc:
            raise ActivityFailed(f"invalid JSON: {exc}", retryable=False) from exc
        return ActivityResult(output=data)
