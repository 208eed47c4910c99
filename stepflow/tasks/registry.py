"""Static table of the tasks a pipeline step can ``use``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, Mapping, Optional, Type, Union

from pydantic import BaseModel

from .. import constants
from ..activities.base import Activity, ConfigurableActivity, validate_payload
from ..activities.email import SendMailActivity
from ..activities.files import CheckFileExistsActivity
from ..activities.http import HTTPActivity
from ..activities.json_parse import JSONActivity
from ..activities.mobile import MobileAutomationPayload, MobileAutomationWorkflow
from ..contracts import ActivityInput, ActivityOptions, ParentClosePolicy, WorkflowInput
from ..errors import MissingOrInvalidConfigError, PipelineInputError
from ..runtime.workflow import Workflow
from ..utils.naming import canonify
from .outputs import OutputKind, coerce_output

if TYPE_CHECKING:
    from ..runtime.context import WorkflowContext

logger = logging.getLogger(__name__)


@dataclass
class TaskRequest:
    """Resolved inputs of one step, ready for dispatch."""

    step_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    activity_options: ActivityOptions = field(default_factory=ActivityOptions)


@dataclass(frozen=True)
class ActivityTask:
    """A step executed as a single activity."""

    key: str
    factory: Callable[[], Activity]
    output_kind: OutputKind = OutputKind.MAP
    kind: ClassVar[str] = "activity"

    async def execute(self, ctx: "WorkflowContext", request: TaskRequest) -> Any:
        activity = self.factory()
        input = ActivityInput(
            payload=activity.decode_payload(request.payload),
            config=dict(request.config),
        )
        if isinstance(activity, ConfigurableActivity):
            activity.configure(input)
        result = await ctx.execute_activity(activity, input, request.activity_options)
        return coerce_output(self.output_kind, result)


@dataclass(frozen=True)
class ChildWorkflowTask:
    """A step executed as a child workflow of the pipeline run.

    The child id is ``{parent_id}-{canonify(step_id)}`` and the child is
    terminated when the parent goes away.
    """

    key: str
    factory: Callable[[], Workflow]
    payload_model: Optional[Type[BaseModel]] = None
    custom_task_queue: bool = False
    kind: ClassVar[str] = "workflow"

    async def execute(self, ctx: "WorkflowContext", request: TaskRequest) -> Any:
        payload: Any = request.payload
        if self.payload_model is not None:
            payload = validate_payload(self.payload_model, payload, self.key).model_dump(
                mode="json"
            )

        config = dict(request.config)
        options = request.activity_options.model_copy(deep=True)
        if self.custom_task_queue:
            task_queue = config.get("taskqueue")
            if not task_queue:
                raise MissingOrInvalidConfigError(
                    f"missing taskqueue for step {request.step_id}"
                )
            options.task_queue = task_queue
        if "app_url" in config and not config["app_url"]:
            config["app_url"] = constants.DEFAULT_APP_URL

        memo = config.get("memo") if isinstance(config.get("memo"), dict) else None
        result = await ctx.execute_child_workflow(
            self.factory(),
            WorkflowInput(payload=payload, config=config, activity_options=options),
            workflow_id=f"{ctx.info.workflow_id}-{canonify(request.step_id)}",
            parent_close_policy=ParentClosePolicy.TERMINATE,
            memo=memo,
        )
        return result.output


TaskRegistryEntry = Union[ActivityTask, ChildWorkflowTask]

REGISTRY: Mapping[str, TaskRegistryEntry] = {
    "http-request": ActivityTask("http-request", HTTPActivity, OutputKind.MAP),
    "json-parse": ActivityTask("json-parse", JSONActivity, OutputKind.MAP),
    "email": ActivityTask("email", SendMailActivity, OutputKind.STRING),
    "check-file-exists": ActivityTask(
        "check-file-exists", CheckFileExistsActivity, OutputKind.BOOL
    ),
    constants.MOBILE_AUTOMATION_TASK: ChildWorkflowTask(
        constants.MOBILE_AUTOMATION_TASK,
        MobileAutomationWorkflow,
        payload_model=MobileAutomationPayload,
        custom_task_queue=True,
    ),
}

# Tasks that need dedicated runner hosts and never run on the shared pipeline pool.
PIPELINE_WORKER_DENYLIST = frozenset({constants.MOBILE_AUTOMATION_TASK})


def get_task(key: str) -> TaskRegistryEntry:
    try:
        return REGISTRY[key]
    except KeyError:
        raise PipelineInputError(f"unknown step type: {key}") from None


def pipeline_worker_tasks() -> dict[str, TaskRegistryEntry]:
    """Registry entries the shared pipeline worker pool may execute."""
    return {k: v for k, v in REGISTRY.items() if k not in PIPELINE_WORKER_DENYLIST}
