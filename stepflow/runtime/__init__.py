"""In-process durable workflow runtime."""

from .clients import ClientRegistry
from .context import ActivityContext, WorkflowContext, WorkflowInfo
from .engine import WorkflowEngine, WorkflowHandle
from .workflow import Workflow

__all__ = [
    "ActivityContext",
    "ClientRegistry",
    "Workflow",
    "WorkflowContext",
    "WorkflowEngine",
    "WorkflowHandle",
    "WorkflowInfo",
]
