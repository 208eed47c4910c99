"""Per-runner admission control for pipelines that need mobile runners."""

from .aggregate import AggregateStatus, RunnerStatus, aggregate_runner_statuses
from .client import SemaphoreClient
from .coordinator import (
    EnqueuePipelineRunTicketActivity,
    EnqueuePipelineRunTicketPayload,
    normalize_runner_ids,
    rollback_enqueued_tickets,
)
from .done import ReportSemaphoreDoneActivity, semaphore_disabled
from .types import (
    EnqueueRunRequest,
    EnqueueRunResponse,
    RunStatus,
    RunStatusView,
    SemaphoreState,
    semaphore_workflow_id,
)
from .workflow import MobileRunnerSemaphoreWorkflow

__all__ = [
    "AggregateStatus",
    "EnqueuePipelineRunTicketActivity",
    "EnqueuePipelineRunTicketPayload",
    "EnqueueRunRequest",
    "EnqueueRunResponse",
    "MobileRunnerSemaphoreWorkflow",
    "ReportSemaphoreDoneActivity",
    "RunStatus",
    "RunStatusView",
    "RunnerStatus",
    "SemaphoreClient",
    "SemaphoreState",
    "aggregate_runner_statuses",
    "normalize_runner_ids",
    "rollback_enqueued_tickets",
    "semaphore_disabled",
    "semaphore_workflow_id",
]
