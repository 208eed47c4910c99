"""Activities managing persisted failed cleanup records."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from ..contracts import ActivityInput, ActivityResult
from ..persistence import (
    CleanupStatus,
    FailedCleanupRecord,
    FailedCleanupStore,
    get_cleanup_store,
)
from .base import Activity

logger = logging.getLogger(__name__)


def _store(ctx) -> FailedCleanupStore:
    if ctx.clients is not None:
        return ctx.clients.cleanup_store
    return get_cleanup_store()


class RecordFailedCleanupPayload(BaseModel):
    workflow_id: str
    step_name: str
    error: str
    retry_count: int = 0
    payload: Any = None


class FetchFailedCleanupsPayload(BaseModel):
    status: CleanupStatus = CleanupStatus.PENDING
    max_retries: int
    limit: int


class UpdateFailedCleanupPayload(BaseModel):
    record_id: str
    status: CleanupStatus
    retry_count: int
    error: str = ""


class DeleteFailedCleanupPayload(BaseModel):
    record_id: str


class RecordFailedCleanupActivity(Activity[RecordFailedCleanupPayload]):
    name = "record-failed-cleanup"
    payload_model = RecordFailedCleanupPayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        record = await _store(ctx).record(
            FailedCleanupRecord(
                workflow_id=payload.workflow_id,
                step_name=payload.step_name,
                payload=payload.payload,
                retry_count=payload.retry_count,
                error=payload.error,
                last_attempt=datetime.now(timezone.utc),
            )
        )
        logger.info(
            f"Recorded failed cleanup {payload.step_name} for workflow {payload.workflow_id}"
        )
        return ActivityResult(output=record.model_dump(mode="json"))


class FetchFailedCleanupsActivity(Activity[FetchFailedCleanupsPayload]):
    """Return PENDING records still under the retry ceiling."""

    name = "fetch-failed-cleanups"
    payload_model = FetchFailedCleanupsPayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        records = await _store(ctx).fetch_pending(payload.max_retries, payload.limit)
        return ActivityResult(output=[r.model_dump(mode="json") for r in records])


class UpdateFailedCleanupActivity(Activity[UpdateFailedCleanupPayload]):
    name = "update-failed-cleanup"
    payload_model = UpdateFailedCleanupPayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        await _store(ctx).update(
            payload.record_id, payload.retry_count, payload.status, payload.error
        )
        return ActivityResult()


class DeleteFailedCleanupActivity(Activity[DeleteFailedCleanupPayload]):
    name = "delete-failed-cleanup"
    payload_model = DeleteFailedCleanupPayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        await _store(ctx).delete(payload.record_id)
        return ActivityResult()
