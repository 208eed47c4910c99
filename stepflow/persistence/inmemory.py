"""In-memory implementations of the stepflow repositories."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from .models import CleanupStatus, FailedCleanupRecord, StepRecord, WorkflowRun
from .repository import FailedCleanupStore, SemaphoreStateStore, WorkflowRepository


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRun] = {}
        self._step_id = 0

    # ------------------------------------------------------------------
    async def create_workflow(
        self,
        workflow_id: str,
        run_id: str,
        workflow_name: str,
        namespace: str,
        input: Any = None,
        memo: dict | None = None,
    ) -> None:
        self._workflows[workflow_id] = WorkflowRun(
            workflow_id=workflow_id,
            run_id=run_id,
            workflow_name=workflow_name,
            namespace=namespace,
            input=input,
            memo=memo or {},
            started_at=_now(),
        )

    async def mark_step_started(self, workflow_id: str, step_name: str) -> None:
        wf = self._workflows.get(workflow_id)
        if not wf:
            return
        # ignore duplicate starts of a step that is still open
        for step in wf.steps:
            if step.step_name == step_name and step.completed_at is None:
                return
        self._step_id += 1
        wf.steps.append(
            StepRecord(
                id=self._step_id,
                workflow_id=workflow_id,
                step_name=step_name,
                started_at=_now(),
            )
        )

    async def mark_step_completed(
        self,
        workflow_id: str,
        step_name: str,
        status: str,
        output: Any = None,
    ) -> None:
        wf = self._workflows.get(workflow_id)
        if not wf:
            return
        for step in wf.steps:
            if step.step_name == step_name and step.completed_at is None:
                step.completed_at = _now()
                step.status = status
                step.output = output
                break

    async def mark_workflow_completed(
        self,
        workflow_id: str,
        status: str = "completed",
        output: Any = None,
        error: str | None = None,
    ) -> None:
        wf = self._workflows.get(workflow_id)
        if wf:
            wf.status = status
            wf.output = output
            wf.error = error
            wf.closed_at = _now()

    async def get_workflow(self, workflow_id: str) -> WorkflowRun | None:
        return self._workflows.get(workflow_id)

    async def list_workflows(self) -> list[WorkflowRun]:
        return list(self._workflows.values())


class InMemorySemaphoreStateStore(SemaphoreStateStore):
    def __init__(self) -> None:
        self._states: Dict[str, dict] = {}

    async def save_state(self, runner_id: str, state: dict) -> None:
        self._states[runner_id] = copy.deepcopy(state)

    async def load_state(self, runner_id: str) -> dict | None:
        state = self._states.get(runner_id)
        return copy.deepcopy(state) if state is not None else None

    async def list_runner_ids(self) -> list[str]:
        return sorted(self._states)


class InMemoryFailedCleanupStore(FailedCleanupStore):
    def __init__(self) -> None:
        self._records: Dict[str, FailedCleanupRecord] = {}

    async def record(self, record: FailedCleanupRecord) -> FailedCleanupRecord:
        for existing in self._records.values():
            if (
                existing.workflow_id == record.workflow_id
                and existing.step_name == record.step_name
                and existing.status == CleanupStatus.PENDING
            ):
                existing.payload = record.payload
                existing.error = record.error
                existing.retry_count = max(existing.retry_count, record.retry_count)
                existing.last_attempt = record.last_attempt or _now()
                return existing.model_copy()

        stored = record.model_copy(
            update={
                "id": record.id or uuid.uuid4().hex,
                "last_attempt": record.last_attempt or _now(),
            }
        )
        self._records[stored.id] = stored
        return stored.model_copy()

    async def fetch_pending(
        self, max_retries: int, limit: int
    ) -> list[FailedCleanupRecord]:
        pending = [
            r.model_copy()
            for r in self._records.values()
            if r.status == CleanupStatus.PENDING and r.retry_count < max_retries
        ]
        pending.sort(key=lambda r: r.last_attempt or _now())
        return pending[:limit] if limit > 0 else pending

    async def update(
        self,
        record_id: str,
        retry_count: int,
        status: CleanupStatus,
        error: str = "",
    ) -> None:
        record = self._records.get(record_id)
        if record is None:
            return
        record.retry_count = retry_count
        record.status = status
        if error:
            record.error = error
        record.last_attempt = _now()

    async def delete(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    async def get(self, record_id: str) -> FailedCleanupRecord | None:
        record = self._records.get(record_id)
        return record.model_copy() if record else None

    async def list_records(self) -> list[FailedCleanupRecord]:
        return [r.model_copy() for r in self._records.values()]
