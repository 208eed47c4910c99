"""Activities the runner semaphore uses to start and watch admitted runs."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx
from pydantic import BaseModel, Field, field_validator

from .. import constants
from ..contracts import ActivityInput, ActivityResult, WorkflowStatus
from ..errors import MissingOrInvalidConfigError, WorkflowNotFoundError
from ..utils.naming import join_url
from ..utils.retry import schedule_retry
from .base import Activity, http_client

logger = logging.getLogger(__name__)

RESULT_POST_BACKOFFS = (0.25, 1.0, 3.0)


class StartQueuedPipelinePayload(BaseModel):
    ticket_id: str = ""
    owner_namespace: str
    required_runner_ids: List[str] = Field(default_factory=list)
    leader_runner_id: str = ""
    pipeline_identifier: str
    yaml: str
    pipeline_config: Dict[str, Any] = Field(default_factory=dict)
    memo: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("owner_namespace", "pipeline_identifier", "yaml")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class CheckWorkflowClosedPayload(BaseModel):
    workflow_id: str
    run_id: str = ""
    workflow_namespace: str

    @field_validator("workflow_id", "workflow_namespace")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


def apply_ticket_metadata(config: dict[str, Any], payload: StartQueuedPipelinePayload) -> None:
    """Stamp the admitting ticket on a pipeline's config."""
    config[constants.SEMAPHORE_TICKET_CONFIG_KEY] = payload.ticket_id
    config[constants.SEMAPHORE_RUNNER_IDS_CONFIG_KEY] = list(payload.required_runner_ids)
    config[constants.SEMAPHORE_LEADER_CONFIG_KEY] = payload.leader_runner_id
    config[constants.SEMAPHORE_OWNER_NAMESPACE_CONFIG_KEY] = payload.owner_namespace


class StartQueuedPipelineActivity(Activity[StartQueuedPipelinePayload]):
    """Start the pipeline of a granted ticket in its owner's namespace.

    After the run started, a pipeline execution result is registered with the
    hosting application. That call is best effort: a failure is logged and
    reported in the output but never fails the activity, since the run is
    already underway.
    """

    name = "start-queued-pipeline"
    payload_model = StartQueuedPipelinePayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        from ..pipeline.workflow import start_pipeline

        payload = self.decode_payload(input.payload)
        config = dict(payload.pipeline_config)
        if not config.get("namespace"):
            config["namespace"] = payload.owner_namespace
        app_url = str(config.get("app_url") or "").strip()
        if not app_url:
            raise MissingOrInvalidConfigError("app_url is required in pipeline_config")
        apply_ticket_metadata(config, payload)

        started = await start_pipeline(
            payload.yaml, config, dict(payload.memo), clients=ctx.clients
        )
        output: dict[str, Any] = {
            "workflow_id": started.workflow_id,
            "run_id": started.workflow_run_id,
            "workflow_namespace": config["namespace"],
            "pipeline_result_created": True,
        }
        result = ActivityResult(output=output)

        try:
            await self._create_execution_result(ctx, app_url, payload, started)
        except Exception as exc:
            logger.warning(
                f"Failed to create pipeline execution result for ticket {payload.ticket_id} "
                f"({started.workflow_id}/{started.workflow_run_id}): {exc}"
            )
            output["pipeline_result_created"] = False
            output["pipeline_result_error"] = str(exc)
            result.log.append(f"pipeline execution result not created: {exc}")
        return result

    async def _create_execution_result(self, ctx, app_url, payload, started) -> None:
        url = join_url(app_url, "api", "pipeline", "pipeline-execution-results")
        body = {
            "owner": payload.owner_namespace,
            "pipeline_id": payload.pipeline_identifier,
            "workflow_id": started.workflow_id,
            "run_id": started.workflow_run_id,
        }
        sleep = ctx.engine.sleep
        async with http_client(ctx, timeout=15.0) as client:
            for attempt in range(len(RESULT_POST_BACKOFFS) + 1):
                try:
                    response = await client.post(url, json=body)
                    response.raise_for_status()
                    return
                except httpx.HTTPStatusError as exc:
                    if exc.response.status_code < 500:
                        raise
                    error: Exception = exc
                except httpx.HTTPError as exc:
                    error = exc
                if attempt >= len(RESULT_POST_BACKOFFS):
                    raise error
                await schedule_retry(attempt + 1, RESULT_POST_BACKOFFS[attempt], sleep=sleep)


class CheckWorkflowClosedActivity(Activity[CheckWorkflowClosedPayload]):
    """Report whether a started run has closed; unknown runs count as closed."""

    name = "check-workflow-closed"
    payload_model = CheckWorkflowClosedPayload

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        engine = ctx.clients.engine(payload.workflow_namespace) if ctx.clients else ctx.engine
        try:
            status = await engine.describe(payload.workflow_id)
        except WorkflowNotFoundError:
            return ActivityResult(output={"closed": True, "status": "NOT_FOUND"})
        return ActivityResult(
            output={"closed": status is not WorkflowStatus.RUNNING, "status": status.value}
        )
