from __future__ import annotations

import asyncio
import os

from pydantic import BaseModel

from ..contracts import ActivityInput, ActivityResult
from .base import Activity


class CheckFileExistsPayload(BaseModel):
    path: str


class CheckFileExistsActivity(Activity[CheckFileExistsPayload]):
    """Report whether ``path`` exists on the worker host."""

    name = "check-file-exists"
    payload_model = CheckFileExistsPayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        exists = await asyncio.to_thread(os.path.exists, payload.path)
        return ActivityResult(output=exists)
