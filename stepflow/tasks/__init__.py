"""Task registry and dispatch for pipeline steps."""

from .outputs import OutputKind, coerce_output
from .registry import (
    PIPELINE_WORKER_DENYLIST,
    REGISTRY,
    ActivityTask,
    ChildWorkflowTask,
    TaskRegistryEntry,
    TaskRequest,
    get_task,
    pipeline_worker_tasks,
)

__all__ = [
    "ActivityTask",
    "ChildWorkflowTask",
    "OutputKind",
    "PIPELINE_WORKER_DENYLIST",
    "REGISTRY",
    "TaskRegistryEntry",
    "TaskRequest",
    "coerce_output",
    "get_task",
    "pipeline_worker_tasks",
]
