"""Messages and state of the per-runner admission semaphore."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .. import constants

ENQUEUE_RUN_UPDATE = "EnqueueRun"
CANCEL_RUN_UPDATE = "CancelRun"
RUN_DONE_UPDATE = "RunDone"
RUN_STATUS_QUERY = "GetRunStatus"
LIST_QUEUED_RUNS_QUERY = "ListQueuedRuns"
RUN_GRANTED_SIGNAL = "RunGranted"
RUN_STARTED_SIGNAL = "RunStarted"
RUN_DONE_SIGNAL = "RunDoneSignal"


class RunStatus(str, Enum):
    QUEUED = "queued"
    STARTING = "starting"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"
    NOT_FOUND = "not_found"


ACTIVE_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.STARTING, RunStatus.RUNNING})


class EnqueueRunRequest(BaseModel):
    ticket_id: str = ""
    owner_namespace: str = ""
    enqueued_at: Optional[datetime] = None
    runner_id: str = ""
    required_runner_ids: List[str] = Field(default_factory=list)
    leader_runner_id: str = ""
    max_pipelines_in_queue: int = 0
    pipeline_identifier: str = ""
    yaml: str = ""
    pipeline_config: Dict[str, Any] = Field(default_factory=dict)
    memo: Dict[str, Any] = Field(default_factory=dict)


class EnqueueRunResponse(BaseModel):
    ticket_id: str
    status: RunStatus
    position: int = 0
    line_len: int = 0


class RunCancelRequest(BaseModel):
    ticket_id: str = ""
    owner_namespace: str = ""
    reason: str = ""


class RunDoneRequest(BaseModel):
    ticket_id: str = ""
    owner_namespace: str = ""
    workflow_id: str = ""
    run_id: str = ""


class RunGrantedSignal(BaseModel):
    ticket_id: str = ""
    runner_id: str = ""


class RunStartedSignal(BaseModel):
    ticket_id: str = ""
    workflow_id: str = ""
    run_id: str = ""
    workflow_namespace: str = ""


class RunDoneSignal(BaseModel):
    ticket_id: str = ""
    workflow_id: str = ""
    run_id: str = ""


class RunTicketState(BaseModel):
    request: EnqueueRunRequest
    status: RunStatus = RunStatus.QUEUED
    workflow_id: str = ""
    run_id: str = ""
    workflow_namespace: str = ""
    error_message: str = ""
    cancel_requested: bool = False
    granted_runner_ids: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    done_at: Optional[datetime] = None

    def all_granted(self) -> bool:
        return set(self.request.required_runner_ids) <= set(self.granted_runner_ids)

    def sort_key(self) -> tuple:
        enqueued = self.request.enqueued_at
        return (enqueued.timestamp() if enqueued else 0.0, self.request.ticket_id)


class RunStatusView(BaseModel):
    ticket_id: str
    status: RunStatus
    position: int = 0
    line_len: int = 0
    leader_runner_id: str = ""
    required_runner_ids: List[str] = Field(default_factory=list)
    workflow_id: str = ""
    run_id: str = ""
    workflow_namespace: str = ""
    error_message: str = ""
    runner_id: str = ""

    @classmethod
    def not_found(cls, ticket_id: str, runner_id: str = "") -> "RunStatusView":
        return cls(ticket_id=ticket_id, status=RunStatus.NOT_FOUND, runner_id=runner_id)


class SemaphoreInput(BaseModel):
    runner_id: str
    capacity: int = constants.SEMAPHORE_DEFAULT_CAPACITY
    state: Optional["SemaphoreState"] = None


class SemaphoreState(BaseModel):
    """Snapshot of one runner's queue, persisted after every mutation."""

    runner_id: str
    capacity: int = constants.SEMAPHORE_DEFAULT_CAPACITY
    run_queue: List[str] = Field(default_factory=list)
    run_tickets: Dict[str, RunTicketState] = Field(default_factory=dict)
    update_count: int = 0

    def sort_queue(self) -> None:
        self.run_queue.sort(
            key=lambda t: self.run_tickets[t].sort_key() if t in self.run_tickets else (float("inf"), t)
        )

    def queue_position(self, ticket_id: str) -> tuple[int, int]:
        line_len = len(self.run_queue)
        try:
            return self.run_queue.index(ticket_id), line_len
        except ValueError:
            return 0, line_len

    def status_view(self, ticket_id: str) -> RunStatusView:
        ticket = self.run_tickets.get(ticket_id)
        if ticket is None:
            return RunStatusView.not_found(ticket_id, self.runner_id)
        view = RunStatusView(
            ticket_id=ticket_id,
            status=ticket.status,
            leader_runner_id=ticket.request.leader_runner_id,
            required_runner_ids=list(ticket.request.required_runner_ids),
            workflow_id=ticket.workflow_id,
            run_id=ticket.run_id,
            workflow_namespace=ticket.workflow_namespace,
            error_message=ticket.error_message,
            runner_id=self.runner_id,
        )
        if ticket.status is RunStatus.QUEUED:
            view.position, view.line_len = self.queue_position(ticket_id)
        return view

    def active_views(self) -> List[RunStatusView]:
        ordered = sorted(
            (t for t in self.run_tickets.values() if t.status in ACTIVE_STATUSES),
            key=RunTicketState.sort_key,
        )
        return [self.status_view(t.request.ticket_id) for t in ordered]


SemaphoreInput.model_rebuild()


def semaphore_workflow_id(runner_id: str) -> str:
    return f"{constants.SEMAPHORE_WORKFLOW_ID_PREFIX}/{runner_id}"
