"""In-process workflow engine.

Each workflow run is an asyncio task registered under its workflow id. The
engine persists run lifecycle through a ``WorkflowRepository``, retries
activities according to their ``RetryPolicy`` and routes updates, signals and
queries to running workflow instances.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Dict, Optional, TypeVar

from ..contracts import (
    ActivityInput,
    ActivityOptions,
    ActivityResult,
    WorkflowInput,
    WorkflowResult,
    WorkflowStatus,
)
from ..errors import (
    ActivityTimeoutError,
    StepflowError,
    WorkflowAlreadyStartedError,
    WorkflowCancelledError,
    WorkflowNotFoundError,
)
from ..persistence import InMemoryWorkflowRepository, WorkflowRepository
from ..utils.retry import Sleeper
from .context import ActivityContext, WorkflowContext, WorkflowInfo
from .workflow import Workflow

if TYPE_CHECKING:
    from ..activities.base import Activity
    from .clients import ClientRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkflowHandle:
    """Reference to a started workflow run."""

    def __init__(
        self,
        info: WorkflowInfo,
        workflow: Workflow,
        task: "asyncio.Task[WorkflowResult]",
    ) -> None:
        self.info = info
        self.workflow = workflow
        self._task = task
        self.terminated = False
        self.update_results: Dict[str, Any] = {}

    @property
    def workflow_id(self) -> str:
        return self.info.workflow_id

    @property
    def run_id(self) -> str:
        return self.info.run_id

    def done(self) -> bool:
        return self._task.done()

    @property
    def status(self) -> WorkflowStatus:
        if not self._task.done():
            return WorkflowStatus.RUNNING
        if self._task.cancelled():
            return WorkflowStatus.TERMINATED if self.terminated else WorkflowStatus.CANCELED
        if self._task.exception() is not None:
            return WorkflowStatus.FAILED
        return WorkflowStatus.COMPLETED

    async def result(self) -> WorkflowResult:
        """Wait for the run to finish without tying its lifetime to the caller."""
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                raise WorkflowCancelledError(
                    f"workflow {self.workflow_id} was {self.status.value}"
                ) from None
            raise

    def cancel(self) -> None:
        self._task.cancel()

    def terminate(self) -> None:
        self.terminated = True
        self._task.cancel()


class WorkflowEngine:
    """Runs workflows and activities for a single namespace."""

    def __init__(
        self,
        namespace: str = "default",
        repository: Optional[WorkflowRepository] = None,
        clients: Optional["ClientRegistry"] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.namespace = namespace
        self.repository = repository or InMemoryWorkflowRepository()
        self.clients = clients
        self._sleep = sleep or asyncio.sleep
        self._handles: Dict[str, WorkflowHandle] = {}
        self._background: set[asyncio.Future] = set()

    async def sleep(self, seconds: float) -> None:
        await self._sleep(seconds)

    # ------------------------------------------------------------------
    # Workflows
    async def start_workflow(
        self,
        workflow: Workflow,
        input: WorkflowInput,
        *,
        workflow_id: str,
        memo: Optional[dict[str, Any]] = None,
        execution_timeout: Optional[float] = None,
        parent: Optional[WorkflowInfo] = None,
    ) -> WorkflowHandle:
        existing = self._handles.get(workflow_id)
        if existing is not None and not existing.done():
            raise WorkflowAlreadyStartedError(
                f"workflow {workflow_id} already started", existing.run_id
            )

        info = WorkflowInfo(
            workflow_id=workflow_id,
            run_id=str(uuid.uuid4()),
            namespace=self.namespace,
            workflow_name=workflow.name,
            memo=dict(memo or {}),
            parent_workflow_id=parent.workflow_id if parent else None,
        )
        await self.repository.create_workflow(
            workflow_id,
            info.run_id,
            workflow.name,
            self.namespace,
            input=input.model_dump(mode="json", exclude={"activity_options"}),
            memo=info.memo,
        )
        ctx = WorkflowContext(self, info, input.activity_options)
        task = asyncio.create_task(
            self._run(workflow, ctx, input, execution_timeout),
            name=f"workflow:{workflow_id}",
        )
        handle = WorkflowHandle(info, workflow, task)
        self._handles[workflow_id] = handle
        logger.info(
            f"Started workflow {workflow.name} id={workflow_id} run_id={info.run_id} namespace={self.namespace}"
        )
        return handle

    async def execute_workflow(
        self,
        workflow: Workflow,
        input: WorkflowInput,
        *,
        workflow_id: str,
        memo: Optional[dict[str, Any]] = None,
        execution_timeout: Optional[float] = None,
    ) -> WorkflowResult:
        handle = await self.start_workflow(
            workflow,
            input,
            workflow_id=workflow_id,
            memo=memo,
            execution_timeout=execution_timeout,
        )
        return await handle.result()

    async def _run(
        self,
        workflow: Workflow,
        ctx: WorkflowContext,
        input: WorkflowInput,
        execution_timeout: Optional[float],
    ) -> WorkflowResult:
        info = ctx.info
        try:
            if execution_timeout:
                result = await asyncio.wait_for(
                    workflow.run(ctx, input), execution_timeout
                )
            else:
                result = await workflow.run(ctx, input)
        except asyncio.CancelledError:
            handle = self._handles.get(info.workflow_id)
            status = (
                WorkflowStatus.TERMINATED
                if handle is not None and handle.terminated
                else WorkflowStatus.CANCELED
            )
            logger.info(f"Workflow {info.workflow_id} {status.value}")
            await self.repository.mark_workflow_completed(
                info.workflow_id, status=status.value
            )
            raise
        except Exception as exc:
            logger.error(f"Workflow {info.workflow_id} failed: {exc}")
            await self.repository.mark_workflow_completed(
                info.workflow_id,
                status=WorkflowStatus.FAILED.value,
                output=getattr(exc, "output", None),
                error=str(exc),
            )
            raise

        result.workflow_id = result.workflow_id or info.workflow_id
        result.workflow_run_id = result.workflow_run_id or info.run_id
        await self.repository.mark_workflow_completed(
            info.workflow_id, status=WorkflowStatus.COMPLETED.value, output=result.output
        )
        logger.info(f"Workflow {info.workflow_id} completed")
        return result

    def get_handle(self, workflow_id: str) -> WorkflowHandle:
        """Return the handle of a running workflow."""
        handle = self._handles.get(workflow_id)
        if handle is None or handle.done():
            raise WorkflowNotFoundError(f"workflow {workflow_id} not found")
        return handle

    async def describe(self, workflow_id: str) -> WorkflowStatus:
        handle = self._handles.get(workflow_id)
        if handle is not None:
            return handle.status
        run = await self.repository.get_workflow(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(f"workflow {workflow_id} not found")
        return WorkflowStatus(run.status)

    async def update(
        self, workflow_id: str, name: str, arg: Any, update_id: Optional[str] = None
    ) -> Any:
        """Deliver an update; a repeated ``update_id`` returns the first result."""
        handle = self.get_handle(workflow_id)
        if update_id is not None and update_id in handle.update_results:
            logger.debug(f"Update {update_id} already applied to {workflow_id}")
            return handle.update_results[update_id]
        result = await handle.workflow.handle_update(name, arg)
        if update_id is not None:
            handle.update_results[update_id] = result
        return result

    async def signal(self, workflow_id: str, name: str, arg: Any) -> None:
        await self.get_handle(workflow_id).workflow.handle_signal(name, arg)

    def query(self, workflow_id: str, name: str, *args: Any) -> Any:
        return self.get_handle(workflow_id).workflow.handle_query(name, *args)

    # ------------------------------------------------------------------
    # Activities
    async def execute_activity(
        self,
        activity: "Activity",
        input: ActivityInput,
        options: Optional[ActivityOptions] = None,
        workflow: Optional[WorkflowInfo] = None,
    ) -> ActivityResult:
        """Run ``activity`` with per-attempt timeouts and retries."""
        options = options or ActivityOptions()
        policy = options.retry_policy
        loop = asyncio.get_running_loop()
        deadline = (
            loop.time() + options.schedule_to_close_timeout
            if options.schedule_to_close_timeout
            else None
        )

        attempt = 0
        while True:
            attempt += 1
            timeout = options.start_to_close_timeout
            if deadline is not None:
                remaining = deadline - loop.time()
                timeout = min(timeout, remaining) if timeout else remaining

            ctx = ActivityContext(
                engine=self,
                activity_name=activity.name,
                attempt=attempt,
                options=options,
                workflow=workflow,
            )
            try:
                if timeout is not None and timeout <= 0:
                    raise ActivityTimeoutError(
                        f"activity {activity.name} exceeded its schedule-to-close timeout"
                    )
                return await asyncio.wait_for(activity.execute(ctx, input), timeout)
            except asyncio.TimeoutError:
                error: BaseException = ActivityTimeoutError(
                    f"activity {activity.name} timed out after {timeout}s"
                )
            except Exception as exc:
                error = exc

            if not self._is_retryable(error, options) or (
                policy.maximum_attempts > 0 and attempt >= policy.maximum_attempts
            ):
                logger.error(
                    f"Activity {activity.name} failed after {attempt} attempt(s): {error}"
                )
                raise error

            delay = policy.interval_for(attempt)
            if deadline is not None and loop.time() + delay >= deadline:
                logger.error(
                    f"Activity {activity.name} has no time left to retry: {error}"
                )
                raise error
            logger.warning(
                f"Activity {activity.name} attempt {attempt} failed: {error}; retrying in {delay}s"
            )
            await self._sleep(delay)

    @staticmethod
    def _is_retryable(error: BaseException, options: ActivityOptions) -> bool:
        if isinstance(error, StepflowError) and not error.retryable:
            return False
        return type(error).__name__ not in options.retry_policy.non_retryable_error_types

    # ------------------------------------------------------------------
    # Lifecycle
    async def run_detached(self, awaitable: Awaitable[T]) -> T:
        """Run ``awaitable`` so that cancelling the caller does not cancel it."""
        future = asyncio.ensure_future(awaitable)
        self._background.add(future)
        future.add_done_callback(self._background.discard)
        return await asyncio.shield(future)

    async def shutdown(self) -> None:
        """Cancel running workflows and wait for detached work to finish."""
        running = [h for h in self._handles.values() if not h.done()]
        for handle in running:
            handle.cancel()
        tasks = [h._task for h in running] + list(self._background)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._handles.clear()
