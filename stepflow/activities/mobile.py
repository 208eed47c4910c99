"""Mobile runner activities and the mobile automation child workflow.

Every runner host exposes a small HTTP agent (``runner_url``) that owns its
emulators, screen recordings and flow executions. The activities below are
thin, idempotent wrappers around that agent.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Dict, Optional

import httpx
from pydantic import BaseModel, Field, model_validator

from .. import constants
from ..contracts import ActivityInput, ActivityResult, WorkflowInput, WorkflowResult
from ..errors import ActivityFailed, ErrorCode, MissingOrInvalidConfigError, UnexpectedActivityOutputError
from ..runtime.workflow import Workflow
from ..utils.naming import join_url
from .base import Activity, http_client, validate_payload
from .http import decode_body

logger = logging.getLogger(__name__)


class StartEmulatorPayload(BaseModel):
    runner_url: str
    device_name: str


class StopEmulatorPayload(BaseModel):
    runner_url: str
    emulator_serial: str
    clone_name: str


class StartRecordingPayload(BaseModel):
    runner_url: str
    serial: str
    workflow_id: str = ""


class StopRecordingPayload(BaseModel):
    runner_url: str
    emulator_serial: str
    adb_process_pid: int
    ffmpeg_process_pid: int
    logcat_process_pid: int
    video_path: str


class RunMobileFlowPayload(BaseModel):
    runner_url: str
    serial: str
    action_code: str
    version_id: str = ""
    parameters: Dict[str, str] = Field(default_factory=dict)


class _RunnerActivity(Activity):
    """POST the decoded payload to ``{runner_url}/{endpoint}``."""

    endpoint: ClassVar[str] = ""
    required_output: ClassVar[tuple[str, ...]] = ()

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        body = payload.model_dump(exclude={"runner_url"})
        url = join_url(payload.runner_url, self.endpoint)
        async with http_client(ctx, timeout=ctx.options.start_to_close_timeout or 30.0) as client:
            try:
                response = await client.post(url, json=body)
            except httpx.HTTPError as exc:
                raise ActivityFailed(f"{self.name}: runner call to {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise ActivityFailed(
                f"{self.name}: runner answered {response.status_code}",
                response.text,
                code=ErrorCode.UNEXPECTED_HTTP_STATUS,
                retryable=response.status_code >= 500,
            )
        output = decode_body(response)
        if output is None:
            output = {}
        elif isinstance(output, str):
            raise UnexpectedActivityOutputError(
                f"{self.name}: runner answered with a non-JSON body", output
            )
        missing = [k for k in self.required_output if not isinstance(output, dict) or k not in output]
        if missing:
            raise UnexpectedActivityOutputError(
                f"{self.name}: missing {', '.join(missing)} in runner response", output
            )
        return ActivityResult(output=output)


class StartEmulatorActivity(_RunnerActivity):
    name = "start-emulator"
    payload_model = StartEmulatorPayload
    endpoint = "emulator/start"
    required_output = ("serial", "clone_name")


class StopEmulatorActivity(_RunnerActivity):
    name = "stop-emulator"
    payload_model = StopEmulatorPayload
    endpoint = "emulator/stop"


class StartRecordingActivity(_RunnerActivity):
    name = "start-recording"
    payload_model = StartRecordingPayload
    endpoint = "recording/start"
    required_output = (
        "adb_process_pid",
        "ffmpeg_process_pid",
        "logcat_process_pid",
        "video_path",
    )


class StopRecordingActivity(_RunnerActivity):
    name = "stop-recording"
    payload_model = StopRecordingPayload
    endpoint = "recording/stop"
    required_output = ("last_frame_path",)


class RunMobileFlowActivity(_RunnerActivity):
    name = "run-mobile-flow"
    payload_model = RunMobileFlowPayload
    endpoint = "flow/run"


class MobileAutomationPayload(BaseModel):
    runner_id: str = ""
    action_id: str = ""
    action_code: str = ""
    version_id: str = ""
    serial: str = ""
    parameters: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _action_required(self) -> "MobileAutomationPayload":
        if self.action_code and not self.version_id:
            raise ValueError("version_id is required with action_code")
        if not self.action_code and not self.action_id:
            raise ValueError("either action_id or action_code is required")
        return self


class MobileAutomationWorkflow(Workflow):
    """Run one mobile flow on the emulator a setup hook prepared for the step."""

    name = "Mobile Automation Workflow"

    def __init__(self, flow_activity: Optional[Activity] = None) -> None:
        self.flow_activity = flow_activity or RunMobileFlowActivity()

    async def run(self, ctx, input: WorkflowInput) -> WorkflowResult:
        payload = decode_mobile_payload(input.payload)
        runner_url = input.config.get("runner_url")
        if not runner_url:
            raise MissingOrInvalidConfigError("missing runner_url for mobile automation")
        app_url = input.config.get("app_url") or constants.DEFAULT_APP_URL

        options = ctx.activity_options.with_timeout(
            constants.CLEANUP_RECORDING_TIMEOUT_SECONDS
        )
        options.task_queue = input.config.get("taskqueue")
        flow_input = ActivityInput(
            payload={
                "runner_url": runner_url,
                "serial": payload.serial,
                "action_code": payload.action_code or payload.action_id,
                "version_id": payload.version_id,
                "parameters": payload.parameters,
            }
        )
        result = await ctx.execute_activity(self.flow_activity, flow_input, options)
        flow_output: Any = result.output
        if isinstance(flow_output, dict) and "output" in flow_output:
            flow_output = flow_output["output"]

        return WorkflowResult(
            message=f"mobile flow completed on {payload.runner_id or runner_url}",
            output={
                "test_run_url": join_url(
                    app_url, "my", "tests", "runs", ctx.info.workflow_id, ctx.info.run_id
                ),
                "flow_output": flow_output,
            },
        )


def decode_mobile_payload(payload: Any) -> MobileAutomationPayload:
    return validate_payload(MobileAutomationPayload, payload, constants.MOBILE_AUTOMATION_TASK)
