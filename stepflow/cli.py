"""Command line interface for running and inspecting stepflow pipelines."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from . import constants
from .activities.base import validate_payload
from .config import StepflowConfig, load_config
from .contracts import ActivityInput, ActivityOptions, WorkflowInput, WorkflowStatus
from .errors import StepflowError
from .persistence import WorkflowRun, get_cleanup_store, get_repository, get_semaphore_store
from .pipeline.hooks import collect_runner_ids
from .pipeline.parser import parse_workflow
from .pipeline.reconciliation import CleanupReconciliationPayload, CleanupReconciliationWorkflow
from .pipeline.workflow import start_pipeline
from .runtime.clients import ClientRegistry
from .semaphore import (
    EnqueuePipelineRunTicketActivity,
    RunStatus,
    RunStatusView,
    SemaphoreClient,
)
from .tasks import REGISTRY, pipeline_worker_tasks

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5

app = typer.Typer(help="CLI for stepflow pipelines")

pipeline_app = typer.Typer(help="Commands for starting and checking pipelines")
queue_app = typer.Typer(help="Commands for inspecting mobile runner queues")
workflow_app = typer.Typer(help="Commands for inspecting workflow runs")
cleanup_app = typer.Typer(help="Commands for failed cleanup steps")
task_app = typer.Typer(help="Commands for the step task registry")

app.add_typer(pipeline_app, name="pipeline")
app.add_typer(queue_app, name="queue")
app.add_typer(workflow_app, name="workflow")
app.add_typer(cleanup_app, name="cleanup")
app.add_typer(task_app, name="task")

_state: Dict[str, Any] = {}


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(None, "--config-file", help="Path to config.yaml"),
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """stepflow CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    level = (log_level or config.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    _state["config"] = config


def _config() -> StepflowConfig:
    return _state.get("config") or load_config()


def _stores(config: StepflowConfig):
    """Stores for this invocation; the process-wide ones unless a database is configured."""
    if config.database_url:
        return (
            get_repository(config=config),
            get_semaphore_store(config=config),
            get_cleanup_store(config=config),
        )
    return get_repository(), get_semaphore_store(), get_cleanup_store()


def _build_clients(config: StepflowConfig) -> ClientRegistry:
    repository, semaphore_store, cleanup_store = _stores(config)
    return ClientRegistry(
        config=config,
        repository=repository,
        semaphore_store=semaphore_store,
        cleanup_store=cleanup_store,
    )


def _parse_assignments(values: List[str]) -> Dict[str, Any]:
    """Turn ``KEY=VALUE`` options into a dict; values are read as YAML scalars."""
    result: Dict[str, Any] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}")
        result[key.strip()] = yaml.safe_load(value) if value else ""
    return result


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# pipeline


@pipeline_app.command("validate")
def pipeline_validate(file: Path) -> None:
    """
    Parse a pipeline file and report its steps.

    Example:
        stepflow pipeline validate ./pipelines/login.yaml
        # Output: login-check: 3 step(s), 1 custom check(s)
    """
    try:
        definition = parse_workflow(file.read_text())
        runner_ids = collect_runner_ids(definition.steps, definition.global_runner_id)
    except FileNotFoundError:
        _fail(f"File not found: {file}")
    except StepflowError as exc:
        _fail(str(exc))
    typer.echo(
        f"{definition.name}: {len(definition.steps)} step(s), "
        f"{len(definition.custom_checks)} custom check(s)"
    )
    if runner_ids:
        typer.echo(f"Runners: {', '.join(runner_ids)}")


@pipeline_app.command("start")
def pipeline_start(
    file: Path,
    namespace: Optional[str] = typer.Option(None, help="Namespace the run belongs to"),
    config: List[str] = typer.Option([], "--config", "-c", help="Pipeline config KEY=VALUE"),
    ticket_id: Optional[str] = typer.Option(None, help="Ticket id for runner pipelines"),
    max_queue: int = typer.Option(0, help="Reject when a runner queue holds this many tickets"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the run to finish"),
) -> None:
    """
    Start a pipeline.

    Pipelines whose steps need mobile runners are admitted through the runner
    queues; the run starts once every runner has a free slot. Other pipelines
    start immediately. The runtime lives in this process, so with --no-wait
    only the admission is reported.

    Example:
        stepflow pipeline start ./pipelines/login.yaml --namespace acme -c app_url=https://app
    """
    try:
        source = file.read_text()
    except FileNotFoundError:
        _fail(f"File not found: {file}")
    settings = _config()
    pipeline_config = {"app_url": settings.app_url, **_parse_assignments(config)}
    pipeline_config["namespace"] = (
        namespace or pipeline_config.get("namespace") or settings.runtime.default_namespace
    )
    try:
        run = asyncio.run(
            _start(settings, source, pipeline_config, ticket_id, max_queue, wait)
        )
    except StepflowError as exc:
        _fail(str(exc))
    if run is None:
        return
    typer.echo(f"Workflow {run.workflow_id}: {run.status}")
    if run.output is not None:
        _echo_json(run.output)
    if run.status != WorkflowStatus.COMPLETED.value:
        _fail(run.error or f"workflow {run.workflow_id} {run.status}")


async def _start(
    settings: StepflowConfig,
    source: str,
    pipeline_config: Dict[str, Any],
    ticket_id: Optional[str],
    max_queue: int,
    wait: bool,
) -> Optional[WorkflowRun]:
    definition = parse_workflow(source)
    runner_ids = collect_runner_ids(
        definition.steps,
        definition.global_runner_id or str(pipeline_config.get("global_runner_id") or ""),
    )
    clients = _build_clients(settings)
    try:
        if not runner_ids:
            started = await start_pipeline(source, pipeline_config, clients=clients)
            typer.echo(f"Started {started.workflow_id} ({started.workflow_run_id})")
            if not wait:
                return None
            return await _wait_for_workflow(clients, started.workflow_id)

        ticket_id = ticket_id or str(uuid.uuid4())
        owner_namespace = pipeline_config["namespace"]
        engine = clients.engine(settings.semaphore.namespace)
        result = await engine.execute_activity(
            EnqueuePipelineRunTicketActivity(),
            ActivityInput(
                payload={
                    "ticket_id": ticket_id,
                    "owner_namespace": owner_namespace,
                    "runner_ids": runner_ids,
                    "max_pipelines_in_queue": max_queue,
                    "pipeline_identifier": definition.name,
                    "yaml": source,
                    "pipeline_config": pipeline_config,
                    "memo": {"ticket_id": ticket_id},
                }
            ),
            ActivityOptions().with_max_attempts(1),
        )
        output = result.output or {}
        typer.echo(
            f"Ticket {ticket_id}: {output.get('status')} "
            f"(position {output.get('position', 0)}/{output.get('line_len', 0)})"
        )
        if not wait:
            return None
        leader = runner_ids[0]
        return await _wait_for_ticket(clients, leader, owner_namespace, ticket_id)
    finally:
        await clients.close()


async def _find_ticket_run(clients: ClientRegistry, ticket_id: str) -> Optional[WorkflowRun]:
    for run in await clients.repository.list_workflows():
        if (
            run.workflow_name == constants.PIPELINE_WORKFLOW_NAME
            and run.memo.get("ticket_id") == ticket_id
        ):
            return run
    return None


async def _wait_for_ticket(
    clients: ClientRegistry, leader: str, owner_namespace: str, ticket_id: str
) -> WorkflowRun:
    client = SemaphoreClient(clients)
    while True:
        run = await _find_ticket_run(clients, ticket_id)
        if run is not None:
            return await _wait_for_workflow(clients, run.workflow_id)
        view = await client.run_status(leader, owner_namespace, ticket_id)
        if view.status is RunStatus.FAILED:
            raise StepflowError(f"ticket {ticket_id} failed: {view.error_message}")
        if view.status is RunStatus.NOT_FOUND:
            raise StepflowError(f"ticket {ticket_id} left the queue without a run")
        await asyncio.sleep(POLL_INTERVAL)


async def _wait_for_workflow(clients: ClientRegistry, workflow_id: str) -> WorkflowRun:
    while True:
        run = await clients.repository.get_workflow(workflow_id)
        if run is not None and run.status != WorkflowStatus.RUNNING.value:
            return run
        await asyncio.sleep(POLL_INTERVAL)


# ---------------------------------------------------------------------------
# queue


def _echo_view(view: RunStatusView) -> None:
    line = f"{view.runner_id}\t{view.ticket_id}\t{view.status.value}"
    if view.status is RunStatus.QUEUED:
        line += f"\t{view.position}/{view.line_len}"
    elif view.workflow_id:
        line += f"\t{view.workflow_namespace}/{view.workflow_id}"
    if view.error_message:
        line += f"\t{view.error_message}"
    typer.echo(line)


async def _with_client(fn):
    clients = _build_clients(_config())
    try:
        return await fn(SemaphoreClient(clients))
    finally:
        await clients.close()


@queue_app.command("status")
def queue_status(
    runner_id: str,
    ticket_id: str,
    namespace: Optional[str] = typer.Option(None, help="Namespace owning the ticket"),
) -> None:
    """Show where a ticket stands on one runner."""
    owner = namespace or _config().runtime.default_namespace
    view = asyncio.run(_with_client(lambda c: c.run_status(runner_id, owner, ticket_id)))
    _echo_view(view)
    if view.status is RunStatus.NOT_FOUND:
        raise typer.Exit(code=1)


@queue_app.command("list")
def queue_list(runner_id: Optional[str] = typer.Argument(None)) -> None:
    """List active tickets of one runner, or of every known runner."""

    async def _list(client: SemaphoreClient) -> List[RunStatusView]:
        runner_ids = [runner_id] if runner_id else await client.runner_ids()
        views: List[RunStatusView] = []
        for rid in runner_ids:
            views.extend(await client.list_queued(rid))
        return views

    views = asyncio.run(_with_client(_list))
    if not views:
        typer.echo("No queued runs found")
        return
    for view in views:
        _echo_view(view)


@queue_app.command("cancel")
def queue_cancel(
    runner_id: str,
    ticket_id: str,
    namespace: Optional[str] = typer.Option(None, help="Namespace owning the ticket"),
    reason: str = typer.Option("", help="Reason recorded with the cancellation"),
) -> None:
    """Cancel a ticket that has not started yet."""
    owner = namespace or _config().runtime.default_namespace
    view = asyncio.run(
        _with_client(lambda c: c.cancel(runner_id, owner, ticket_id, reason=reason))
    )
    _echo_view(view)
    if view.status is RunStatus.NOT_FOUND:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# task


@task_app.command("list")
def task_list(
    pipeline_pool: bool = typer.Option(
        False, "--pipeline-pool", help="Only tasks the shared pipeline worker pool runs"
    ),
) -> None:
    """List registered step tasks with their kind and the pool that runs them."""
    shared = pipeline_worker_tasks()
    tasks = shared if pipeline_pool else REGISTRY
    for key in sorted(tasks):
        pool = "pipeline" if key in shared else "runner"
        typer.echo(f"{key}\t{tasks[key].kind}\t{pool}")


# ---------------------------------------------------------------------------
# workflow


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflow runs with their current status.

    Example:
        stepflow workflow list
        # Output: Pipeline-login-6f1c...    default    completed
    """
    repo = _stores(_config())[0]
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.workflow_id}\t{wf.namespace}\t{wf.status}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show one workflow run with its step history."""
    repo = _stores(_config())[0]
    wf = asyncio.run(repo.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.workflow_id} ({wf.workflow_name}): {wf.status}")
    if wf.memo:
        typer.echo(f"Memo: {wf.memo}")
    if wf.error:
        typer.echo(f"Error: {wf.error}")
    for step in wf.steps:
        typer.echo(
            f"- {step.step_name}: {step.status}"
            + (
                f" ({step.started_at} -> {step.completed_at})"
                if step.started_at or step.completed_at
                else ""
            )
        )


# ---------------------------------------------------------------------------
# cleanup


@cleanup_app.command("list")
def cleanup_list() -> None:
    """List recorded cleanup failures."""
    store = _stores(_config())[2]
    records = asyncio.run(store.list_records())
    if not records:
        typer.echo("No failed cleanups found")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.workflow_id}\t{record.step_name}\t"
            f"{record.status.value}\t{record.retry_count}\t{record.error}"
        )


@cleanup_app.command("reconcile")
def cleanup_reconcile(
    iterations: int = typer.Option(1, help="Sweeps to run; 0 keeps running"),
    interval: float = typer.Option(0, help="Seconds between sweeps (0 = configured)"),
) -> None:
    """Retry pending cleanup failures."""
    payload = validate_payload(
        CleanupReconciliationPayload,
        {"max_iterations": iterations, "interval_seconds": interval},
        CleanupReconciliationWorkflow.name,
    )

    async def _reconcile():
        clients = _build_clients(_config())
        try:
            return await clients.engine().execute_workflow(
                CleanupReconciliationWorkflow(),
                WorkflowInput(payload=payload.model_dump()),
                workflow_id=constants.RECONCILIATION_WORKFLOW_ID,
            )
        finally:
            await clients.close()

    result = asyncio.run(_reconcile())
    output = result.output or {}
    typer.echo(
        f"Reconciled {output.get('reconciled', 0)}, abandoned {output.get('abandoned', 0)} "
        f"in {output.get('iterations', 0)} sweep(s)"
    )


if __name__ == "__main__":  # pragma: no cover
    app()
