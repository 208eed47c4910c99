"""Execution contexts handed to workflows and activities."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Optional, TypeVar

from ..contracts import (
    ActivityInput,
    ActivityOptions,
    ActivityResult,
    ParentClosePolicy,
    WorkflowInput,
    WorkflowResult,
)

if TYPE_CHECKING:
    from ..activities.base import Activity
    from .clients import ClientRegistry
    from .engine import WorkflowEngine, WorkflowHandle
    from .workflow import Workflow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class WorkflowInfo:
    workflow_id: str
    run_id: str
    namespace: str
    workflow_name: str
    memo: dict[str, Any] = field(default_factory=dict)
    parent_workflow_id: Optional[str] = None


@dataclass
class ActivityContext:
    """What an activity can see of the world while it runs."""

    engine: "WorkflowEngine"
    activity_name: str
    attempt: int = 1
    options: ActivityOptions = field(default_factory=ActivityOptions)
    workflow: Optional[WorkflowInfo] = None

    @property
    def clients(self) -> "ClientRegistry":
        return self.engine.clients

    @property
    def namespace(self) -> str:
        return self.engine.namespace


class WorkflowContext:
    """Handle a running workflow uses to reach activities, children and timers."""

    def __init__(
        self,
        engine: "WorkflowEngine",
        info: WorkflowInfo,
        activity_options: Optional[ActivityOptions] = None,
        detached: bool = False,
    ) -> None:
        self.engine = engine
        self.info = info
        self.activity_options = activity_options or ActivityOptions()
        self.is_detached = detached

    @property
    def clients(self) -> "ClientRegistry":
        return self.engine.clients

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def with_activity_options(self, options: ActivityOptions) -> "WorkflowContext":
        return WorkflowContext(self.engine, self.info, options, self.is_detached)

    def detached(self) -> "WorkflowContext":
        """Return a context whose work survives cancellation of the caller."""
        return WorkflowContext(self.engine, self.info, self.activity_options, True)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, shielding it from cancellation when detached."""
        if self.is_detached:
            return await self.engine.run_detached(awaitable)
        return await awaitable

    async def sleep(self, seconds: float) -> None:
        await self.engine.sleep(seconds)

    async def execute_activity(
        self,
        activity: "Activity",
        input: ActivityInput,
        options: Optional[ActivityOptions] = None,
    ) -> ActivityResult:
        return await self.run(
            self.engine.execute_activity(
                activity, input, options or self.activity_options, workflow=self.info
            )
        )

    async def start_child_workflow(
        self,
        workflow: "Workflow",
        input: WorkflowInput,
        *,
        workflow_id: str,
        namespace: Optional[str] = None,
        memo: Optional[dict[str, Any]] = None,
    ) -> "WorkflowHandle":
        engine = self.engine if namespace is None else self.clients.engine(namespace)
        return await engine.start_workflow(
            workflow,
            input,
            workflow_id=workflow_id,
            memo=memo,
            parent=self.info,
        )

    async def execute_child_workflow(
        self,
        workflow: "Workflow",
        input: WorkflowInput,
        *,
        workflow_id: str,
        parent_close_policy: ParentClosePolicy = ParentClosePolicy.TERMINATE,
        namespace: Optional[str] = None,
        memo: Optional[dict[str, Any]] = None,
    ) -> WorkflowResult:
        handle = await self.start_child_workflow(
            workflow, input, workflow_id=workflow_id, namespace=namespace, memo=memo
        )
        try:
            return await self.run(handle.result())
        except asyncio.CancelledError:
            if parent_close_policy is ParentClosePolicy.TERMINATE:
                logger.info(
                    f"Terminating child {workflow_id} of {self.info.workflow_id}"
                )
                handle.terminate()
            raise
