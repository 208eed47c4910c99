"""Caller side of the runner semaphores."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from .. import constants
from ..contracts import WorkflowInput
from ..errors import WorkflowAlreadyStartedError, WorkflowNotFoundError
from .types import (
    CANCEL_RUN_UPDATE,
    ENQUEUE_RUN_UPDATE,
    LIST_QUEUED_RUNS_QUERY,
    RUN_DONE_UPDATE,
    RUN_STATUS_QUERY,
    EnqueueRunRequest,
    EnqueueRunResponse,
    RunCancelRequest,
    RunDoneRequest,
    RunStatus,
    RunStatusView,
    SemaphoreInput,
    SemaphoreState,
    semaphore_workflow_id,
)
from .workflow import MobileRunnerSemaphoreWorkflow

if TYPE_CHECKING:
    from ..runtime.clients import ClientRegistry
    from ..runtime.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class SemaphoreClient:
    """Start, feed and inspect the semaphore workflows of one namespace."""

    def __init__(self, clients: "ClientRegistry", namespace: Optional[str] = None) -> None:
        self.clients = clients
        self.namespace = namespace or clients.config.semaphore.namespace

    @property
    def engine(self) -> "WorkflowEngine":
        return self.clients.engine(self.namespace)

    async def ensure_started(self, runner_id: str, capacity: Optional[int] = None) -> None:
        settings = self.clients.config.semaphore
        workflow_id = semaphore_workflow_id(runner_id)
        try:
            await self.engine.start_workflow(
                MobileRunnerSemaphoreWorkflow(safety_net_interval=settings.safety_net_interval),
                WorkflowInput(
                    payload=SemaphoreInput(
                        runner_id=runner_id, capacity=capacity or settings.capacity
                    ).model_dump(mode="json")
                ),
                workflow_id=workflow_id,
            )
        except WorkflowAlreadyStartedError:
            logger.debug(f"Semaphore {workflow_id} already running")

    async def enqueue(self, request: EnqueueRunRequest) -> EnqueueRunResponse:
        result = await self.engine.update(
            semaphore_workflow_id(request.runner_id),
            ENQUEUE_RUN_UPDATE,
            request.model_dump(mode="json"),
            update_id=f"{constants.ENQUEUE_UPDATE_PREFIX}/{request.runner_id}/{request.ticket_id}",
        )
        return EnqueueRunResponse.model_validate(result)

    async def cancel(
        self, runner_id: str, owner_namespace: str, ticket_id: str, reason: str = ""
    ) -> RunStatusView:
        request = RunCancelRequest(
            ticket_id=ticket_id, owner_namespace=owner_namespace, reason=reason
        )
        try:
            result = await self.engine.update(
                semaphore_workflow_id(runner_id), CANCEL_RUN_UPDATE, request.model_dump()
            )
        except WorkflowNotFoundError:
            return await self._cancel_snapshot(runner_id, request)
        return RunStatusView.model_validate(result)

    async def _cancel_snapshot(self, runner_id: str, request: RunCancelRequest) -> RunStatusView:
        """Cancel against the persisted snapshot of a semaphore that is not running."""
        state = await self.load_state(runner_id)
        ticket = state.run_tickets.get(request.ticket_id) if state else None
        if ticket is None or ticket.request.owner_namespace != request.owner_namespace:
            return RunStatusView.not_found(request.ticket_id, runner_id)

        view = state.status_view(request.ticket_id)
        if ticket.status in (RunStatus.QUEUED, RunStatus.STARTING):
            if request.ticket_id in state.run_queue:
                state.run_queue.remove(request.ticket_id)
            del state.run_tickets[request.ticket_id]
            view.status = RunStatus.CANCELED
            view.position = view.line_len = 0
        elif ticket.status is RunStatus.RUNNING:
            ticket.cancel_requested = True
        else:
            return view
        state.update_count += 1
        await self.clients.semaphore_store.save_state(runner_id, state.model_dump(mode="json"))
        logger.info(f"Canceled ticket {request.ticket_id} in stored state of runner {runner_id}")
        return view

    async def run_done(
        self,
        runner_id: str,
        owner_namespace: str,
        ticket_id: str,
        workflow_id: str = "",
        run_id: str = "",
    ) -> RunStatusView:
        request = RunDoneRequest(
            ticket_id=ticket_id,
            owner_namespace=owner_namespace,
            workflow_id=workflow_id,
            run_id=run_id,
        )
        try:
            result = await self.engine.update(
                semaphore_workflow_id(runner_id), RUN_DONE_UPDATE, request.model_dump()
            )
        except WorkflowNotFoundError:
            return RunStatusView.not_found(ticket_id, runner_id)
        return RunStatusView.model_validate(result)

    async def run_status(
        self, runner_id: str, owner_namespace: str, ticket_id: str
    ) -> RunStatusView:
        try:
            return self.engine.query(
                semaphore_workflow_id(runner_id), RUN_STATUS_QUERY, owner_namespace, ticket_id
            )
        except WorkflowNotFoundError:
            pass
        state = await self.load_state(runner_id)
        if state is None:
            return RunStatusView.not_found(ticket_id, runner_id)
        ticket = state.run_tickets.get(ticket_id)
        if ticket is None or ticket.request.owner_namespace != owner_namespace:
            return RunStatusView.not_found(ticket_id, runner_id)
        return state.status_view(ticket_id)

    async def list_queued(self, runner_id: str) -> List[RunStatusView]:
        try:
            return self.engine.query(semaphore_workflow_id(runner_id), LIST_QUEUED_RUNS_QUERY)
        except WorkflowNotFoundError:
            pass
        state = await self.load_state(runner_id)
        return state.active_views() if state else []

    async def load_state(self, runner_id: str) -> Optional[SemaphoreState]:
        """Last persisted snapshot of a runner's semaphore, if any."""
        snapshot = await self.clients.semaphore_store.load_state(runner_id)
        return SemaphoreState.model_validate(snapshot) if snapshot else None

    async def runner_ids(self) -> List[str]:
        return await self.clients.semaphore_store.list_runner_ids()
