"""Setup and cleanup hooks run around a pipeline's steps.

Setup hooks see the full step list before anything executes and may rewrite
step inputs in place. Cleanup hooks run after the steps, whatever the outcome,
on a detached context so that cancelling or timing out the run cannot stop
them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .. import constants
from ..activities.http import HTTPActivity
from ..activities.mobile import (
    StartEmulatorActivity,
    StartRecordingActivity,
    decode_mobile_payload,
)
from ..contracts import ActivityInput, ActivityOptions
from ..errors import MissingOrInvalidConfigError, PipelineExecutionError, UnexpectedActivityOutputError
from ..semaphore.done import ReportSemaphoreDoneActivity
from ..utils.naming import join_url
from .cleanup import (
    StopRecordingCleanupPayload,
    append_cleanup_step_spec,
    build_cleanup_options,
    cleanup_step_specs,
    execute_cleanup_specs,
    failure_recorder,
    stop_emulator_spec,
    stop_recording_spec,
)
from .models import StepDefinition
from .reconciliation import start_cleanup_verification

if TYPE_CHECKING:
    from ..runtime.context import WorkflowContext

logger = logging.getLogger(__name__)


@dataclass
class PipelineRun:
    """Mutable state of one pipeline run that hooks may read and change."""

    steps: List[StepDefinition]
    activity_options: ActivityOptions
    config: Dict[str, Any]
    run_data: Dict[str, Any]
    output: Dict[str, Any] = field(default_factory=dict)


Hook = Callable[["WorkflowContext", PipelineRun], Awaitable[None]]


async def run_setup_hooks(ctx: "WorkflowContext", run: PipelineRun, hooks: Sequence[Hook]) -> None:
    """Run setup hooks in order; the first failure aborts the run."""
    for hook in hooks:
        await hook(ctx, run)


async def run_cleanup_hooks(
    ctx: "WorkflowContext", run: PipelineRun, hooks: Sequence[Hook]
) -> List[BaseException]:
    """Run every cleanup hook on a detached context and collect their errors."""
    detached = ctx.detached()
    errors: List[BaseException] = []
    for hook in hooks:
        try:
            await detached.run(hook(detached, run))
        except Exception as exc:
            logger.error(f"Cleanup hook {getattr(hook, '__name__', hook)} failed: {exc}")
            errors.append(exc)
    return errors


# ---------------------------------------------------------------------------
# Mobile runner hooks


def is_semaphore_managed(config: Dict[str, Any]) -> bool:
    return bool(str(config.get(constants.SEMAPHORE_TICKET_CONFIG_KEY) or "").strip())


def mobile_steps(steps: Sequence[StepDefinition]) -> List[StepDefinition]:
    return [s for s in steps if s.use == constants.MOBILE_AUTOMATION_TASK]


def collect_runner_ids(steps: Sequence[StepDefinition], global_runner_id: str = "") -> List[str]:
    """Return the sorted runner ids the mobile steps of a pipeline need.

    Raises:
        MissingOrInvalidConfigError: when a mobile step has no runner id and
            no global runner id is configured.
    """
    runner_ids = set()
    for step in mobile_steps(steps):
        runner_id = str(step.with_.values().get("runner_id") or "").strip() or global_runner_id
        if not runner_id:
            raise MissingOrInvalidConfigError(
                f"step {step.id} needs a runner_id or a global_runner_id"
            )
        runner_ids.add(runner_id)
    return sorted(runner_ids)


async def _lookup_runner(
    ctx: "WorkflowContext", app_url: str, runner_id: str, options: ActivityOptions
) -> Dict[str, Any]:
    result = await ctx.execute_activity(
        HTTPActivity(),
        ActivityInput(
            payload={
                "method": "GET",
                "url": join_url(app_url, "api", "mobile-runner"),
                "query_params": {"runner_identifier": runner_id},
                "expected_status": 200,
            }
        ),
        options,
    )
    body = (result.output or {}).get("body")
    if not isinstance(body, dict) or not body.get("runner_url"):
        raise UnexpectedActivityOutputError(f"runner {runner_id} has no runner_url", body)
    return body


async def _prepare_device(
    ctx: "WorkflowContext", run: PipelineRun, app_url: str, runner_id: str
) -> Dict[str, Any]:
    options = run.activity_options.model_copy(deep=True)
    options.task_queue = f"{runner_id}-TaskQueue"

    runner = await _lookup_runner(ctx, app_url, runner_id, run.activity_options)
    runner_url = runner["runner_url"]
    serial = str(runner.get("serial") or "")
    if not serial:
        started = await ctx.execute_activity(
            StartEmulatorActivity(),
            ActivityInput(payload={"runner_url": runner_url, "device_name": runner_id}),
            options,
        )
        serial = started.output["serial"]
        append_cleanup_step_spec(
            run.run_data,
            stop_emulator_spec(runner_url, serial, started.output["clone_name"]),
        )
        logger.info(f"Started emulator {serial} on runner {runner_id}")
    return {"runner_url": runner_url, "serial": serial, "task_queue": options.task_queue}


async def _start_recording(
    ctx: "WorkflowContext",
    run: PipelineRun,
    app_url: str,
    device: Dict[str, Any],
    version_id: str,
) -> None:
    options = run.activity_options.model_copy(deep=True)
    options.task_queue = device["task_queue"]
    started = await ctx.execute_activity(
        StartRecordingActivity(),
        ActivityInput(
            payload={
                "runner_url": device["runner_url"],
                "serial": device["serial"],
                "workflow_id": ctx.info.workflow_id,
            }
        ),
        options,
    )
    recording = started.output
    append_cleanup_step_spec(
        run.run_data,
        stop_recording_spec(
            StopRecordingCleanupPayload(
                runner_url=device["runner_url"],
                emulator_serial=device["serial"],
                adb_process_pid=recording["adb_process_pid"],
                ffmpeg_process_pid=recording["ffmpeg_process_pid"],
                logcat_process_pid=recording["logcat_process_pid"],
                video_path=recording["video_path"],
                run_identifier=run.run_data.get("run_identifier", ""),
                version_id=version_id,
                app_url=app_url,
            )
        ),
    )


async def mobile_setup_hook(ctx: "WorkflowContext", run: PipelineRun) -> None:
    """Prepare an emulator and a recording on every runner the pipeline uses."""
    steps = mobile_steps(run.steps)
    if not steps:
        return

    global_runner_id = str(run.config.get("global_runner_id") or "").strip()
    runner_ids = collect_runner_ids(steps, global_runner_id)
    if runner_ids and not is_semaphore_managed(run.config):
        raise MissingOrInvalidConfigError("mobile-runner pipelines must be started via queue/semaphore")
    app_url = str(run.config.get("app_url") or "").strip()
    if not app_url:
        raise MissingOrInvalidConfigError("missing or invalid app_url in workflow input config")

    devices: Dict[str, Dict[str, Any]] = {}
    versions: Dict[str, str] = {}
    for step in steps:
        payload = decode_mobile_payload(step.with_.values())
        runner_id = payload.runner_id or global_runner_id
        device = devices.get(runner_id)
        if device is None:
            device = await _prepare_device(ctx, run, app_url, runner_id)
            devices[runner_id] = device
        versions.setdefault(runner_id, payload.version_id)

        step.with_.set_payload_value("runner_id", runner_id)
        step.with_.set_payload_value("serial", device["serial"])
        step.with_.config.update(
            {
                "runner_url": device["runner_url"],
                "app_url": app_url,
                "taskqueue": device["task_queue"],
            }
        )

    for runner_id in sorted(devices):
        await _start_recording(ctx, run, app_url, devices[runner_id], versions.get(runner_id, ""))
    logger.info(f"Prepared mobile runners {', '.join(sorted(devices))} for {ctx.info.workflow_id}")


async def report_semaphore_done(ctx: "WorkflowContext", run: PipelineRun) -> None:
    config = run.config
    await ctx.execute_activity(
        ReportSemaphoreDoneActivity(),
        ActivityInput(
            payload={
                "ticket_id": config.get(constants.SEMAPHORE_TICKET_CONFIG_KEY),
                "owner_namespace": config.get(constants.SEMAPHORE_OWNER_NAMESPACE_CONFIG_KEY)
                or config.get("namespace")
                or ctx.info.namespace,
                "leader_runner_id": config.get(constants.SEMAPHORE_LEADER_CONFIG_KEY) or "",
                "required_runner_ids": config.get(constants.SEMAPHORE_RUNNER_IDS_CONFIG_KEY) or [],
                "workflow_id": ctx.info.workflow_id,
                "run_id": ctx.info.run_id,
            }
        ),
        run.activity_options.with_timeout(60),
    )


async def mobile_cleanup_hook(ctx: "WorkflowContext", run: PipelineRun) -> None:
    """Tear down runner resources, then release the run's semaphore ticket."""
    specs = cleanup_step_specs(run.run_data)
    managed = is_semaphore_managed(run.config) and ctx.info.parent_workflow_id is None
    if not specs and not managed:
        return

    try:
        if specs:
            app_url = str(run.config.get("app_url") or "").strip()
            if not app_url:
                raise MissingOrInvalidConfigError("missing or invalid app_url in workflow input config")
            options = build_cleanup_options(run.activity_options)
            errors = await execute_cleanup_specs(
                ctx,
                specs,
                options,
                run.output,
                failure_recorder(options, ctx.info.workflow_id),
            )
            if errors:
                await start_cleanup_verification(ctx, specs, run.run_data)
                raise PipelineExecutionError(
                    f"{len(errors)} mobile automation cleanup step(s) failed",
                    *[str(e) for e in errors],
                )
    finally:
        if managed:
            await report_semaphore_done(ctx, run)


SETUP_HOOKS: List[Hook] = [mobile_setup_hook]
CLEANUP_HOOKS: List[Hook] = [mobile_cleanup_hook]


def default_hooks(
    setup: Optional[Sequence[Hook]] = None, cleanup: Optional[Sequence[Hook]] = None
) -> tuple[List[Hook], List[Hook]]:
    return (
        list(SETUP_HOOKS if setup is None else setup),
        list(CLEANUP_HOOKS if cleanup is None else cleanup),
    )
