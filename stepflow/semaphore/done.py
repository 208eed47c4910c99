from __future__ import annotations

import logging
import os
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, Field

from .. import constants
from ..activities.base import Activity
from ..contracts import ActivityInput, ActivityResult
from ..errors import ValidationError
from .client import SemaphoreClient
from .types import RunStatus

logger = logging.getLogger(__name__)


class ReportSemaphoreDonePayload(BaseModel):
    ticket_id: str = ""
    owner_namespace: str = ""
    leader_runner_id: str = ""
    required_runner_ids: List[str] = Field(default_factory=list)
    workflow_id: str = ""
    run_id: str = ""


def semaphore_disabled() -> bool:
    value = os.getenv(constants.SEMAPHORE_DISABLED_ENV, "").strip().lower()
    return value in ("1", "true", "yes")


def _default_client(ctx) -> SemaphoreClient:
    return SemaphoreClient(ctx.clients)


class ReportSemaphoreDoneActivity(Activity[ReportSemaphoreDonePayload]):
    """Release a finished run's ticket on its leader runner's semaphore."""

    name = "report-semaphore-done"
    payload_model = ReportSemaphoreDonePayload

    def __init__(self, client_factory: Optional[Callable[[Any], SemaphoreClient]] = None) -> None:
        self.client_factory = client_factory or _default_client

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        ticket_id = payload.ticket_id.strip()
        leader = payload.leader_runner_id.strip()
        owner_namespace = payload.owner_namespace.strip()
        if not ticket_id or not leader or not owner_namespace:
            raise ValidationError("ticket_id, leader_runner_id and owner_namespace are required")

        if semaphore_disabled():
            logger.info(f"Semaphore disabled, not reporting ticket {ticket_id} done")
            return ActivityResult()

        status = await self.client_factory(ctx).run_done(
            leader,
            owner_namespace,
            ticket_id,
            workflow_id=payload.workflow_id.strip(),
            run_id=payload.run_id.strip(),
        )
        if status.status is RunStatus.NOT_FOUND:
            logger.info(f"Ticket {ticket_id} already released on runner {leader}")
        return ActivityResult(output=status.model_dump(mode="json"))
