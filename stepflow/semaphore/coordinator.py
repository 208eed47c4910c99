"""Admit one pipeline run on every runner it needs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .. import constants
from ..activities.base import Activity
from ..contracts import ActivityInput, ActivityResult
from ..errors import (
    PipelineExecutionError,
    QueueLimitExceededError,
    StepflowError,
    ValidationError,
)
from .aggregate import RunnerStatus, aggregate_runner_statuses
from .client import SemaphoreClient
from .types import EnqueueRunRequest, RunStatus

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Any], SemaphoreClient]


class EnqueuePipelineRunTicketPayload(BaseModel):
    ticket_id: str = ""
    owner_namespace: str = ""
    enqueued_at: Optional[datetime] = None
    runner_ids: List[str] = Field(default_factory=list)
    leader_runner_id: str = ""
    max_pipelines_in_queue: int = 0
    pipeline_identifier: str = ""
    yaml: str = ""
    pipeline_config: Dict[str, Any] = Field(default_factory=dict)
    memo: Dict[str, Any] = Field(default_factory=dict)


def normalize_runner_ids(values: Iterable[str]) -> List[str]:
    """Trim, drop blanks and duplicates, and sort runner ids."""
    return sorted({v.strip() for v in values or () if v and v.strip()})


def _default_client(ctx) -> SemaphoreClient:
    return SemaphoreClient(ctx.clients)


async def rollback_enqueued_tickets(
    client: SemaphoreClient,
    runner_ids: Iterable[str],
    owner_namespace: str,
    ticket_id: str,
    timeout: float = constants.ROLLBACK_CANCEL_TIMEOUT,
) -> None:
    """Best-effort cancel of a ticket on runners it was already enqueued on."""
    for runner_id in runner_ids:
        try:
            status = await asyncio.wait_for(
                client.cancel(runner_id, owner_namespace, ticket_id, reason="enqueue rollback"),
                timeout,
            )
        except (StepflowError, asyncio.TimeoutError) as exc:
            logger.warning(
                f"failed to rollback run ticket {ticket_id} for runner {runner_id}: {exc}"
            )
            continue
        if status.status is not RunStatus.NOT_FOUND:
            logger.info(f"Rolled back ticket {ticket_id} on runner {runner_id}")


class EnqueuePipelineRunTicketActivity(Activity[EnqueuePipelineRunTicketPayload]):
    """Enqueue a run ticket on the semaphore of every required runner.

    Enqueues happen in runner order. When one fails, the runners already
    enqueued are rolled back. A queue-limit rejection reaches the caller
    unchanged so it can report "try later"; anything else becomes a
    ``PipelineExecutionError``.
    """

    name = "enqueue-pipeline-run-ticket"
    payload_model = EnqueuePipelineRunTicketPayload

    def __init__(self, client_factory: Optional[ClientFactory] = None) -> None:
        self.client_factory = client_factory or _default_client

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        ticket_id = payload.ticket_id.strip()
        owner_namespace = payload.owner_namespace.strip()
        pipeline_identifier = payload.pipeline_identifier.strip()
        if not ticket_id:
            raise ValidationError("ticket_id is required")
        if not owner_namespace:
            raise ValidationError("owner_namespace is required")
        if not pipeline_identifier:
            raise ValidationError("pipeline_identifier is required")
        if not payload.yaml.strip():
            raise ValidationError("yaml is required")
        runner_ids = normalize_runner_ids(payload.runner_ids)
        if not runner_ids:
            raise ValidationError("runner_ids are required")

        leader = payload.leader_runner_id.strip()
        if leader not in runner_ids:
            leader = runner_ids[0]
        enqueued_at = payload.enqueued_at or datetime.now(timezone.utc)

        client = self.client_factory(ctx)
        try:
            for runner_id in runner_ids:
                await client.ensure_started(runner_id)
        except StepflowError as exc:
            raise PipelineExecutionError(str(exc)) from exc

        enqueued: List[str] = []
        statuses: List[RunnerStatus] = []
        for runner_id in runner_ids:
            enqueued.append(runner_id)
            request = EnqueueRunRequest(
                ticket_id=ticket_id,
                owner_namespace=owner_namespace,
                enqueued_at=enqueued_at,
                runner_id=runner_id,
                required_runner_ids=runner_ids,
                leader_runner_id=leader,
                max_pipelines_in_queue=payload.max_pipelines_in_queue,
                pipeline_identifier=pipeline_identifier,
                yaml=payload.yaml,
                pipeline_config=payload.pipeline_config,
                memo=payload.memo,
            )
            try:
                response = await client.enqueue(request)
            except Exception as exc:
                logger.error(f"Enqueue of ticket {ticket_id} on runner {runner_id} failed: {exc}")
                await rollback_enqueued_tickets(client, enqueued, owner_namespace, ticket_id)
                if isinstance(exc, QueueLimitExceededError):
                    raise
                raise PipelineExecutionError(str(exc)) from exc
            statuses.append(
                RunnerStatus(
                    runner_id=runner_id,
                    status=response.status,
                    position=response.position,
                    line_len=response.line_len,
                )
            )

        aggregate = aggregate_runner_statuses(statuses)
        logger.info(
            f"Enqueued ticket {ticket_id} on {len(runner_ids)} runner(s): {aggregate.status.value}"
        )
        output = aggregate.model_dump(mode="json")
        output["runners"] = [s.model_dump(mode="json") for s in statuses]
        return ActivityResult(output=output)
