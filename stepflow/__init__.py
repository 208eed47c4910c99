"""stepflow: declarative pipelines with runner admission control and cleanup sagas."""

from .config import StepflowConfig, load_config
from .contracts import ActivityInput, ActivityOptions, ActivityResult, WorkflowInput, WorkflowResult
from .persistence import get_repository
from .pipeline import PipelineWorkflow, parse_workflow, start_pipeline
from .runtime import ClientRegistry, WorkflowEngine
from .semaphore import EnqueuePipelineRunTicketActivity, SemaphoreClient
from .tasks import REGISTRY

__version__ = "0.1.0"
__all__ = [
    "ActivityInput",
    "ActivityOptions",
    "ActivityResult",
    "ClientRegistry",
    "EnqueuePipelineRunTicketActivity",
    "PipelineWorkflow",
    "REGISTRY",
    "SemaphoreClient",
    "StepflowConfig",
    "WorkflowEngine",
    "WorkflowInput",
    "WorkflowResult",
    "get_repository",
    "load_config",
    "parse_workflow",
    "start_pipeline",
]
