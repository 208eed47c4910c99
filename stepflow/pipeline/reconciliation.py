"""Background workflows that retry cleanup steps which still failed.

``CleanupReconciliationWorkflow`` is a singleton loop sweeping PENDING
failed-cleanup records. ``CleanupVerificationWorkflow`` is a one-shot, delayed
re-run of one pipeline run's cleanup steps, started by the cleanup hook when
the saga reported errors.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .. import constants
from ..activities.base import validate_payload
from ..activities.failed_cleanup import (
    DeleteFailedCleanupActivity,
    FetchFailedCleanupsActivity,
    UpdateFailedCleanupActivity,
)
from ..contracts import ActivityInput, WorkflowInput, WorkflowResult
from ..errors import WorkflowAlreadyStartedError
from ..persistence import CleanupStatus, FailedCleanupRecord
from ..runtime.workflow import Workflow
from .cleanup import (
    CleanupStepSpec,
    build_cleanup_options,
    execute_cleanup_specs,
    failure_recorder,
)

if TYPE_CHECKING:
    from ..runtime.clients import ClientRegistry
    from ..runtime.context import WorkflowContext

logger = logging.getLogger(__name__)


class CleanupReconciliationPayload(BaseModel):
    interval_seconds: float = 0
    max_retries: int = 0
    limit: int = 0
    max_iterations: int = 0


class CleanupVerificationPayload(BaseModel):
    workflow_id: str
    run_id: str = ""
    run_identifier: str = ""
    delay_seconds: float = 0
    step_specs: List[CleanupStepSpec] = Field(default_factory=list)


class CleanupReconciliationWorkflow(Workflow):
    name = "Cleanup Reconciliation Workflow"

    async def run(self, ctx: "WorkflowContext", input: WorkflowInput) -> WorkflowResult:
        payload = validate_payload(CleanupReconciliationPayload, input.payload, self.name)
        settings = ctx.clients.config.cleanup if ctx.clients else None
        interval = payload.interval_seconds or (
            settings.reconciliation_interval if settings else constants.RECONCILIATION_INTERVAL
        )
        max_retries = payload.max_retries or (
            settings.max_retries if settings else constants.RECONCILIATION_MAX_RETRIES
        )
        limit = payload.limit or (
            settings.batch_limit if settings else constants.RECONCILIATION_BATCH_LIMIT
        )
        options = build_cleanup_options(ctx.activity_options)

        iterations = reconciled = abandoned = 0
        while True:
            iterations += 1
            try:
                fetched = await ctx.execute_activity(
                    FetchFailedCleanupsActivity(),
                    ActivityInput(
                        payload={
                            "status": CleanupStatus.PENDING.value,
                            "max_retries": max_retries,
                            "limit": limit,
                        }
                    ),
                    options.record,
                )
                records = [FailedCleanupRecord.model_validate(r) for r in fetched.output or []]
            except Exception as exc:
                logger.error(f"Failed to fetch pending cleanups: {exc}")
                records = []

            for record in records:
                outcome = await self._reconcile(ctx, record, max_retries, options)
                if outcome is None:
                    reconciled += 1
                elif outcome is CleanupStatus.ABANDONED:
                    abandoned += 1

            if payload.max_iterations > 0 and iterations >= payload.max_iterations:
                break
            await ctx.sleep(interval)

        return WorkflowResult(
            message=f"reconciliation finished after {iterations} iteration(s)",
            output={"iterations": iterations, "reconciled": reconciled, "abandoned": abandoned},
        )

    async def _reconcile(
        self, ctx: "WorkflowContext", record: FailedCleanupRecord, max_retries: int, options
    ) -> Optional[CleanupStatus]:
        """Retry one record; None means it succeeded and was deleted."""
        spec = CleanupStepSpec(name=record.step_name, payload=record.payload, max_retries=1)
        errors = await execute_cleanup_specs(ctx, [spec], options)
        if not errors:
            try:
                await ctx.execute_activity(
                    DeleteFailedCleanupActivity(),
                    ActivityInput(payload={"record_id": record.id}),
                    options.record,
                )
            except Exception as exc:
                logger.error(f"Failed to delete reconciled cleanup record {record.id}: {exc}")
            logger.info(f"Reconciled cleanup {record.step_name} of {record.workflow_id}")
            return None

        retry_count = record.retry_count + 1
        status = CleanupStatus.ABANDONED if retry_count >= max_retries else CleanupStatus.PENDING
        try:
            await ctx.execute_activity(
                UpdateFailedCleanupActivity(),
                ActivityInput(
                    payload={
                        "record_id": record.id,
                        "status": status.value,
                        "retry_count": retry_count,
                        "error": str(errors[-1]),
                    }
                ),
                options.record,
            )
        except Exception as exc:
            logger.error(f"Failed to update cleanup record {record.id}: {exc}")
        if status is CleanupStatus.ABANDONED:
            logger.warning(
                f"Abandoning cleanup {record.step_name} of {record.workflow_id} after {retry_count} retries"
            )
        return status


class CleanupVerificationWorkflow(Workflow):
    name = "Cleanup Verification Workflow"

    async def run(self, ctx: "WorkflowContext", input: WorkflowInput) -> WorkflowResult:
        payload = validate_payload(CleanupVerificationPayload, input.payload, self.name)
        if payload.delay_seconds > 0:
            await ctx.sleep(payload.delay_seconds)

        options = build_cleanup_options(ctx.activity_options)
        errors = await execute_cleanup_specs(
            ctx,
            payload.step_specs,
            options,
            None,
            failure_recorder(options, payload.workflow_id),
        )
        if errors:
            logger.warning(
                f"Cleanup verification of {payload.workflow_id} left {len(errors)} failed step(s)"
            )
        return WorkflowResult(
            message=f"verified {len(payload.step_specs)} cleanup step(s), {len(errors)} failed",
            output={"failed": len(errors), "steps": len(payload.step_specs)},
            errors=[str(e) for e in errors],
        )


def verification_workflow_id(workflow_id: str, run_id: str) -> str:
    return f"cleanup-verify-{workflow_id}-{run_id}"


async def start_cleanup_verification(
    ctx: "WorkflowContext",
    specs: List[CleanupStepSpec],
    run_data: Dict[str, Any],
    delay_seconds: Optional[float] = None,
) -> None:
    """Start a verification child that outlives the calling run."""
    if delay_seconds is None:
        delay_seconds = (
            ctx.clients.config.cleanup.verification_delay
            if ctx.clients
            else constants.VERIFICATION_DELAY
        )
    payload = CleanupVerificationPayload(
        workflow_id=ctx.info.workflow_id,
        run_id=ctx.info.run_id,
        run_identifier=run_data.get("run_identifier", ""),
        delay_seconds=delay_seconds,
        step_specs=specs,
    )
    workflow_id = verification_workflow_id(ctx.info.workflow_id, ctx.info.run_id)
    try:
        await ctx.start_child_workflow(
            CleanupVerificationWorkflow(),
            WorkflowInput(
                payload=payload.model_dump(mode="json"),
                activity_options=ctx.activity_options,
            ),
            workflow_id=workflow_id,
        )
    except WorkflowAlreadyStartedError:
        logger.info(f"Cleanup verification {workflow_id} already running")
        return
    logger.info(
        f"Started cleanup verification {workflow_id}, first attempt in {delay_seconds}s"
    )


async def start_cleanup_reconciliation(
    clients: "ClientRegistry",
    payload: Optional[CleanupReconciliationPayload] = None,
    namespace: Optional[str] = None,
) -> WorkflowResult:
    """Start the reconciliation loop; an already running loop counts as started."""
    engine = clients.engine(namespace)
    payload = payload or CleanupReconciliationPayload()
    try:
        handle = await engine.start_workflow(
            CleanupReconciliationWorkflow(),
            WorkflowInput(payload=payload.model_dump()),
            workflow_id=constants.RECONCILIATION_WORKFLOW_ID,
        )
    except WorkflowAlreadyStartedError as exc:
        run_id = exc.details[0] if exc.details else ""
        logger.info(f"Cleanup reconciliation already running ({run_id})")
        return WorkflowResult(
            workflow_id=constants.RECONCILIATION_WORKFLOW_ID,
            workflow_run_id=run_id,
            message="cleanup reconciliation already running",
        )
    return WorkflowResult(
        workflow_id=handle.workflow_id,
        workflow_run_id=handle.run_id,
        message="cleanup reconciliation started",
    )
