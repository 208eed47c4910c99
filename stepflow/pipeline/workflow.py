"""The dynamic pipeline workflow.

A pipeline run executes its steps strictly in declared order. Each step's
coerced output lands in the run output under the step id, where later steps
reach it through ``${{ step_id.outputs... }}`` references. Steps whose ``use``
names one of the pipeline's custom checks run as child pipelines.
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from .. import constants
from ..contracts import ActivityOptions, ParentClosePolicy, WorkflowInput, WorkflowResult
from ..errors import (
    MissingOrInvalidConfigError,
    PipelineExecutionError,
    PipelineInputError,
    WorkflowCancelledError,
    WorkflowError,
    WorkflowErrorMetadata,
    extract_output,
)
from ..expressions import ExpressionError, resolve_expressions
from ..runtime.workflow import Workflow
from ..tasks.registry import TaskRequest, get_task
from ..utils.naming import canonify, join_url
from .hooks import Hook, PipelineRun, default_hooks, run_cleanup_hooks, run_setup_hooks
from .models import StepDefinition, StepSpec, WorkflowBlock, WorkflowDefinition
from .options import prepare_activity_options, prepare_workflow_options
from .parser import parse_workflow
from .resolver import merge_configs, resolve_inputs, resolve_subworkflow_inputs

if TYPE_CHECKING:
    from ..runtime.clients import ClientRegistry
    from ..runtime.context import WorkflowContext

logger = logging.getLogger(__name__)

DEBUG_STEP = "debug"


async def execute_step(
    ctx: "WorkflowContext",
    step: StepSpec,
    config: Mapping[str, Any],
    context: Mapping[str, Any],
    base_options: ActivityOptions,
) -> Any:
    """Resolve a step's inputs and dispatch it through the task registry."""
    options = prepare_activity_options(base_options, step.activity_options)
    try:
        payload, step_config = resolve_inputs(step, config, context)
    except ValueError as exc:
        raise PipelineInputError(f"error resolving inputs for step {step.id}: {exc}") from exc
    task = get_task(step.use)
    logger.debug(f"Dispatching step {step.id} as {task.kind} {task.key}")
    return await task.execute(ctx, TaskRequest(step.id, payload, step_config, options))


class PipelineWorkflow(Workflow):
    name = constants.PIPELINE_WORKFLOW_NAME

    def __init__(
        self,
        definition: WorkflowDefinition,
        debug: bool = False,
        parent_run_data: Optional[Dict[str, Any]] = None,
        setup_hooks: Optional[Sequence[Hook]] = None,
        cleanup_hooks: Optional[Sequence[Hook]] = None,
    ) -> None:
        self.definition = definition
        self.debug = debug
        self.parent_run_data = parent_run_data
        self.setup_hooks, self.cleanup_hooks = default_hooks(setup_hooks, cleanup_hooks)

    def _run_data(self, ctx: "WorkflowContext") -> Dict[str, Any]:
        if self.parent_run_data is not None:
            # cleanup specs belong to the run that acquired the resources
            return {
                k: copy.deepcopy(v)
                for k, v in self.parent_run_data.items()
                if k != constants.CLEANUP_STEP_SPECS_KEY
            }
        info = ctx.info
        return {"run_identifier": f"{info.namespace}/{info.workflow_id}/{info.run_id}"}

    async def run(self, ctx: "WorkflowContext", input: WorkflowInput) -> WorkflowResult:
        info = ctx.info
        config = dict(input.config)
        app_url = str(config.get("app_url") or constants.DEFAULT_APP_URL)
        metadata = WorkflowErrorMetadata(
            workflow_name=self.definition.name,
            workflow_id=info.workflow_id,
            run_id=info.run_id,
            namespace=info.namespace,
            run_url=join_url(app_url, "my", "tests", "runs", info.workflow_id, info.run_id),
        )
        run = PipelineRun(
            steps=[s.model_copy(deep=True) for s in self.definition.steps],
            activity_options=ctx.activity_options,
            config=config,
            run_data=self._run_data(ctx),
            output={
                "workflow-id": info.workflow_id,
                "workflow-run-id": info.run_id,
                "result_video_warning": constants.RESULT_VIDEO_WARNING,
            },
        )
        logger.info(f"Running pipeline {self.definition.name} ({len(run.steps)} steps) as {info.workflow_id}")

        errors: List[str] = []
        try:
            try:
                await run_setup_hooks(ctx, run, self.setup_hooks)
            except Exception as exc:
                logger.error(f"Setup hooks of {info.workflow_id} failed: {exc}")
                raise WorkflowError(
                    PipelineExecutionError(f"error running setup hooks: {exc}"),
                    metadata,
                    output=run.output,
                ) from exc
            await self._run_steps(ctx, run, input.payload, errors, metadata)
        finally:
            cleanup_errors = await run_cleanup_hooks(ctx, run, self.cleanup_hooks)

        if errors:
            raise WorkflowError(
                PipelineExecutionError(f"workflow completed with {len(errors)} step errors"),
                metadata,
                errors,
                run.output,
            )
        if cleanup_errors:
            raise WorkflowError(
                PipelineExecutionError(f"workflow completed with {len(cleanup_errors)} cleanup errors"),
                metadata,
                [str(e) for e in cleanup_errors],
                run.output,
            )
        return WorkflowResult(message="workflow completed", output=run.output)

    async def _run_steps(
        self,
        ctx: "WorkflowContext",
        run: PipelineRun,
        payload: Any,
        errors: List[str],
        metadata: WorkflowErrorMetadata,
    ) -> None:
        repository = ctx.engine.repository
        workflow_id = ctx.info.workflow_id
        for step in run.steps:
            if step.use == DEBUG_STEP:
                logger.info(f"[debug {step.id}] {workflow_id} output: {run.output}")
                continue

            context = {"inputs": payload, **run.output}
            await repository.mark_step_started(workflow_id, step.id)
            try:
                result = await self._dispatch(ctx, run, step, context)
            except WorkflowCancelledError as exc:
                await repository.mark_step_completed(workflow_id, step.id, "canceled")
                raise WorkflowError(exc, metadata, errors, run.output) from exc
            except Exception as exc:
                partial = extract_output(exc)
                await repository.mark_step_completed(workflow_id, step.id, "failed", partial)
                logger.error(f"Step {step.id} of {workflow_id} failed: {exc}")
                errors.extend(await self._run_event_steps(ctx, run, step.on_error, context))
                if not step.continue_on_error:
                    raise WorkflowError(
                        PipelineExecutionError(f"error executing step {step.id}: {exc}"),
                        metadata,
                        errors,
                        run.output,
                    ) from exc
                run.output[step.id] = {"outputs": partial}
                errors.append(str(exc))
                continue

            await repository.mark_step_completed(workflow_id, step.id, "completed", result)
            run.output[step.id] = {"outputs": result}
            if step.on_success:
                context = {"inputs": payload, **run.output}
                failed = await self._run_event_steps(ctx, run, step.on_success, context)
                if failed:
                    logger.warning(
                        f"{len(failed)} on_success step(s) of {step.id} failed; the step stays completed"
                    )
            if self.debug:
                logger.info(f"[debug] {workflow_id} after {step.id}: {run.output}")

    async def _dispatch(
        self,
        ctx: "WorkflowContext",
        run: PipelineRun,
        step: StepDefinition,
        context: Dict[str, Any],
    ) -> Any:
        block = self.definition.custom_checks.get(step.use)
        if block is not None:
            return await self._run_custom_check(ctx, run, step, block, context)
        return await execute_step(ctx, step, run.config, context, run.activity_options)

    async def _run_event_steps(
        self,
        ctx: "WorkflowContext",
        run: PipelineRun,
        steps: Sequence[StepSpec],
        context: Dict[str, Any],
    ) -> List[str]:
        errors: List[str] = []
        for event in steps:
            try:
                await execute_step(ctx, event, run.config, context, run.activity_options)
            except Exception as exc:
                logger.error(f"Event step {event.id} failed: {exc}")
                errors.append(str(exc))
        return errors

    async def _run_custom_check(
        self,
        ctx: "WorkflowContext",
        run: PipelineRun,
        step: StepDefinition,
        block: WorkflowBlock,
        context: Dict[str, Any],
    ) -> Any:
        try:
            inputs = resolve_subworkflow_inputs(step, block, context)
        except ValueError as exc:
            raise PipelineInputError(f"error resolving inputs for step {step.id}: {exc}") from exc

        child = PipelineWorkflow(
            block.to_workflow_definition(step.use),
            debug=self.debug,
            parent_run_data=run.run_data,
            setup_hooks=self.setup_hooks,
            cleanup_hooks=self.cleanup_hooks,
        )
        result = await ctx.execute_child_workflow(
            child,
            WorkflowInput(
                payload=inputs,
                config=merge_configs(run.config, block.config),
                activity_options=prepare_activity_options(
                    run.activity_options, step.activity_options
                ),
            ),
            workflow_id=f"{ctx.info.workflow_id}-{canonify(step.id)}",
            parent_close_policy=ParentClosePolicy.TERMINATE,
        )
        child_output = result.output or {}
        if not block.outputs:
            return child_output
        try:
            return resolve_expressions(block.outputs, {"inputs": inputs, **child_output})
        except ExpressionError as exc:
            raise PipelineExecutionError(
                f"error resolving outputs of custom check {step.use}: {exc}"
            ) from exc


def pipeline_workflow_id(name: str) -> str:
    return f"Pipeline-{canonify(name)}-{uuid.uuid4()}"


async def start_pipeline(
    source: str,
    config: Mapping[str, Any],
    memo: Optional[Dict[str, Any]] = None,
    *,
    clients: "ClientRegistry",
) -> WorkflowResult:
    """Parse ``source`` and start it as a pipeline run.

    ``config["namespace"]`` picks the engine. Keys of the definition's own
    ``config`` block only fill gaps; the caller's config wins.
    """
    definition = parse_workflow(source)
    options = prepare_workflow_options(definition.runtime)

    config = dict(config)
    namespace = str(config.get("namespace") or "").strip()
    if not namespace:
        raise MissingOrInvalidConfigError("namespace is required to start a pipeline")
    for key, value in definition.config.items():
        config.setdefault(key, value)
    if definition.global_runner_id:
        config.setdefault("global_runner_id", definition.global_runner_id)

    memo = dict(memo or {})
    memo["test"] = definition.name

    engine = clients.engine(namespace)
    handle = await engine.start_workflow(
        PipelineWorkflow(definition, debug=options.debug),
        WorkflowInput(config=config, activity_options=options.activity_options),
        workflow_id=pipeline_workflow_id(definition.name),
        memo=memo,
        execution_timeout=options.execution_timeout,
    )
    return WorkflowResult(
        workflow_id=handle.workflow_id,
        workflow_run_id=handle.run_id,
        message=f"pipeline {definition.name} started in namespace {namespace}",
    )
