"""Reverse-order cleanup saga.

Compensating steps are appended to a run's run data as resources get
acquired (``stop-emulator`` when an emulator starts, ``stop-recording`` when a
recording starts) and executed in reverse when the run ends. Each step gets
its own retry budget; a step that never succeeds is logged, handed to an
optional failure recorder and the saga moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, model_validator

from .. import constants
from ..activities.base import validate_payload
from ..activities.failed_cleanup import RecordFailedCleanupActivity
from ..activities.http import HTTPActivity
from ..activities.mobile import StopEmulatorActivity, StopRecordingActivity
from ..contracts import ActivityInput, ActivityOptions
from ..errors import UnexpectedActivityOutputError, ValidationError
from ..utils.naming import join_url
from ..utils.retry import cleanup_backoff

if TYPE_CHECKING:
    from ..runtime.context import WorkflowContext

logger = logging.getLogger(__name__)


def infer_cleanup_type(name: str) -> str:
    for step_type in (constants.CLEANUP_STOP_EMULATOR, constants.CLEANUP_STOP_RECORDING):
        if name.startswith(f"{step_type}:") or name == step_type:
            return step_type
    return ""


class CleanupStepSpec(BaseModel):
    name: str
    type: str = ""
    payload: Any = None
    max_retries: int = constants.CLEANUP_DEFAULT_MAX_RETRIES
    timeout_seconds: int = 0
    idempotent: bool = False

    @model_validator(mode="after")
    def _infer_type(self) -> "CleanupStepSpec":
        if not self.type:
            self.type = infer_cleanup_type(self.name)
        return self


class StopEmulatorCleanupPayload(BaseModel):
    runner_url: str
    emulator_serial: str
    clone_name: str


class StopRecordingCleanupPayload(BaseModel):
    runner_url: str
    emulator_serial: str
    adb_process_pid: int
    ffmpeg_process_pid: int
    logcat_process_pid: int
    video_path: str
    run_identifier: str
    version_id: str = ""
    app_url: str


# ---------------------------------------------------------------------------
# Run data bookkeeping


def append_cleanup_step_spec(run_data: Dict[str, Any], spec: CleanupStepSpec) -> None:
    if spec.max_retries <= 0:
        spec.max_retries = constants.CLEANUP_DEFAULT_MAX_RETRIES
    run_data.setdefault(constants.CLEANUP_STEP_SPECS_KEY, []).append(
        spec.model_dump(mode="json")
    )
    logger.debug(f"Registered cleanup step {spec.name}")


def cleanup_step_specs(run_data: Dict[str, Any]) -> List[CleanupStepSpec]:
    """Return the specs stored in run data, skipping entries that do not decode."""
    specs: List[CleanupStepSpec] = []
    for raw in run_data.get(constants.CLEANUP_STEP_SPECS_KEY) or []:
        try:
            specs.append(CleanupStepSpec.model_validate(raw))
        except ValueError as exc:
            logger.error(f"Skipping malformed cleanup step spec {raw!r}: {exc}")
    return specs


def stop_emulator_spec(runner_url: str, serial: str, clone_name: str) -> CleanupStepSpec:
    return CleanupStepSpec(
        name=f"{constants.CLEANUP_STOP_EMULATOR}:{serial}",
        type=constants.CLEANUP_STOP_EMULATOR,
        payload=StopEmulatorCleanupPayload(
            runner_url=runner_url, emulator_serial=serial, clone_name=clone_name
        ).model_dump(),
        max_retries=constants.CLEANUP_DEFAULT_MAX_RETRIES,
        timeout_seconds=constants.CLEANUP_EMULATOR_TIMEOUT_SECONDS,
        idempotent=True,
    )


def stop_recording_spec(payload: StopRecordingCleanupPayload) -> CleanupStepSpec:
    return CleanupStepSpec(
        name=f"{constants.CLEANUP_STOP_RECORDING}:{payload.emulator_serial}",
        type=constants.CLEANUP_STOP_RECORDING,
        payload=payload.model_dump(),
        max_retries=constants.CLEANUP_DEFAULT_MAX_RETRIES,
        timeout_seconds=constants.CLEANUP_RECORDING_TIMEOUT_SECONDS,
        idempotent=True,
    )


# ---------------------------------------------------------------------------
# Building executable steps


@dataclass
class CleanupOptions:
    """Activity options the cleanup steps run with.

    The saga owns retries, so every option set allows a single attempt.
    """

    pipeline: ActivityOptions
    mobile: ActivityOptions
    record: ActivityOptions


def build_cleanup_options(base: ActivityOptions) -> CleanupOptions:
    single = base.with_max_attempts(1)
    return CleanupOptions(
        pipeline=single,
        mobile=single.with_timeout(constants.CLEANUP_RECORDING_TIMEOUT_SECONDS),
        record=single.with_timeout(60),
    )


@dataclass
class CleanupStep:
    spec: CleanupStepSpec
    execute: Callable[["WorkflowContext"], Awaitable[None]]


def _spec_options(spec: CleanupStepSpec, options: ActivityOptions) -> ActivityOptions:
    if spec.timeout_seconds > 0:
        return options.with_timeout(spec.timeout_seconds)
    return options


def build_cleanup_step(
    spec: CleanupStepSpec,
    options: CleanupOptions,
    output: Optional[Dict[str, Any]] = None,
) -> CleanupStep:
    """Turn a spec into an executable step.

    Raises:
        ValidationError: for an unknown step type or a payload that does not
            match the step type.
    """
    if spec.type == constants.CLEANUP_STOP_EMULATOR:
        payload = validate_payload(StopEmulatorCleanupPayload, spec.payload, spec.name)

        async def stop_emulator(ctx: "WorkflowContext") -> None:
            await ctx.execute_activity(
                StopEmulatorActivity(),
                ActivityInput(payload=payload.model_dump()),
                _spec_options(spec, options.mobile),
            )

        return CleanupStep(spec, stop_emulator)

    if spec.type == constants.CLEANUP_STOP_RECORDING:
        recording = validate_payload(StopRecordingCleanupPayload, spec.payload, spec.name)

        async def stop_recording(ctx: "WorkflowContext") -> None:
            await _stop_recording(ctx, recording, _spec_options(spec, options.mobile), options, output)

        return CleanupStep(spec, stop_recording)

    raise ValidationError(f"unknown cleanup step type {spec.type!r} for {spec.name}")


async def _stop_recording(
    ctx: "WorkflowContext",
    payload: StopRecordingCleanupPayload,
    mobile_options: ActivityOptions,
    options: CleanupOptions,
    output: Optional[Dict[str, Any]],
) -> None:
    stopped = await ctx.execute_activity(
        StopRecordingActivity(),
        ActivityInput(
            payload={
                "runner_url": payload.runner_url,
                "emulator_serial": payload.emulator_serial,
                "adb_process_pid": payload.adb_process_pid,
                "ffmpeg_process_pid": payload.ffmpeg_process_pid,
                "logcat_process_pid": payload.logcat_process_pid,
                "video_path": payload.video_path,
            }
        ),
        mobile_options,
    )
    last_frame_path = (stopped.output or {}).get("last_frame_path", "")

    stored = await ctx.execute_activity(
        HTTPActivity(),
        ActivityInput(
            payload={
                "method": "POST",
                "url": join_url(payload.app_url, "store-pipeline-result"),
                "body": {
                    "video_path": payload.video_path,
                    "last_frame_path": last_frame_path,
                    "run_identifier": payload.run_identifier,
                    "version_identifier": payload.version_id,
                    "instance_url": payload.app_url,
                },
                "expected_status": 200,
            }
        ),
        options.pipeline,
    )
    body = (stored.output or {}).get("body")
    if not isinstance(body, dict):
        raise UnexpectedActivityOutputError("store-pipeline-result returned no JSON body", body)
    result_urls = body.get("result_urls") or []
    screenshot_urls = body.get("screenshot_urls") or []
    if not result_urls or not screenshot_urls:
        raise UnexpectedActivityOutputError(
            "store-pipeline-result returned empty result_urls or screenshot_urls", body
        )
    if output is not None:
        output.setdefault("result_video_urls", []).extend(result_urls)
        output.setdefault("screenshot_urls", []).extend(screenshot_urls)


# ---------------------------------------------------------------------------
# Execution

RecordFailure = Callable[["WorkflowContext", CleanupStepSpec, BaseException, int], Awaitable[None]]


async def execute_cleanup_specs(
    ctx: "WorkflowContext",
    specs: List[CleanupStepSpec],
    options: CleanupOptions,
    output: Optional[Dict[str, Any]] = None,
    record_failure: Optional[RecordFailure] = None,
) -> List[BaseException]:
    """Run ``specs`` in reverse order and return the errors of failed steps.

    A spec that cannot be built is recorded with zero attempts up front and
    reported when its turn comes. Recording failures are logged only.
    """
    built: List[tuple[CleanupStepSpec, Optional[CleanupStep], Optional[BaseException]]] = []
    for spec in specs:
        try:
            built.append((spec, build_cleanup_step(spec, options, output), None))
        except Exception as exc:
            logger.error(f"Failed to build cleanup step {spec.name}: {exc}")
            await _record(ctx, record_failure, spec, exc, 0)
            built.append((spec, None, exc))

    errors: List[BaseException] = []
    for spec, step, build_error in reversed(built):
        if step is None:
            errors.append(build_error)
            continue
        error = await _run_with_retries(ctx, step)
        if error is None:
            continue
        logger.error(f"Cleanup step {spec.name} failed after {max(spec.max_retries, 1)} attempt(s): {error}")
        errors.append(error)
        await _record(ctx, record_failure, spec, error, max(spec.max_retries, 1))
    return errors


async def _run_with_retries(ctx: "WorkflowContext", step: CleanupStep) -> Optional[BaseException]:
    attempts = max(step.spec.max_retries, 1)
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            await step.execute(ctx)
            logger.info(f"Cleanup step {step.spec.name} succeeded on attempt {attempt}")
            return None
        except Exception as exc:
            last_error = exc
            logger.warning(f"Cleanup step {step.spec.name} attempt {attempt}/{attempts} failed: {exc}")
            if attempt < attempts:
                await ctx.sleep(cleanup_backoff(attempt))
    return last_error


async def _record(
    ctx: "WorkflowContext",
    record_failure: Optional[RecordFailure],
    spec: CleanupStepSpec,
    error: BaseException,
    attempts: int,
) -> None:
    if record_failure is None:
        return
    try:
        await record_failure(ctx, spec, error, attempts)
    except Exception as exc:
        logger.error(f"Failed to record cleanup failure for {spec.name}: {exc}")


def failure_recorder(options: CleanupOptions, workflow_id: str) -> RecordFailure:
    """Return a recorder persisting failures as FailedCleanupRecords of ``workflow_id``."""

    async def record(
        ctx: "WorkflowContext", spec: CleanupStepSpec, error: BaseException, attempts: int
    ) -> None:
        await ctx.execute_activity(
            RecordFailedCleanupActivity(),
            ActivityInput(
                payload={
                    "workflow_id": workflow_id,
                    "step_name": spec.name,
                    "error": str(error),
                    "retry_count": attempts,
                    "payload": spec.payload,
                }
            ),
            options.record,
        )

    return record
