"""Repository abstractions for stepflow persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import CleanupStatus, FailedCleanupRecord, WorkflowRun


class WorkflowRepository(Protocol):
    """Protocol for workflow run persistence backends."""

    async def create_workflow(
        self,
        workflow_id: str,
        run_id: str,
        workflow_name: str,
        namespace: str,
        input: Any = None,
        memo: dict | None = None,
    ) -> None:
        """Persist a started workflow run."""

    async def mark_step_started(self, workflow_id: str, step_name: str) -> None:
        """Record start of a step."""

    async def mark_step_completed(
        self,
        workflow_id: str,
        step_name: str,
        status: str,
        output: Any = None,
    ) -> None:
        """Record completion of a step."""

    async def mark_workflow_completed(
        self,
        workflow_id: str,
        status: str = "completed",
        output: Any = None,
        error: str | None = None,
    ) -> None:
        """Mark the workflow as closed."""

    async def get_workflow(self, workflow_id: str) -> WorkflowRun | None:
        """Retrieve the latest run of a workflow id."""

    async def list_workflows(self) -> list[WorkflowRun]:
        """Return all persisted workflow runs."""


class SemaphoreStateStore(Protocol):
    """Durable snapshots of per-runner semaphore state."""

    async def save_state(self, runner_id: str, state: dict) -> None:
        """Replace the snapshot for ``runner_id``."""

    async def load_state(self, runner_id: str) -> dict | None:
        """Return the last snapshot, if any."""

    async def list_runner_ids(self) -> list[str]:
        """Return runner ids with a stored snapshot."""


class FailedCleanupStore(Protocol):
    """Storage for cleanup steps that still need to be reconciled."""

    async def record(self, record: FailedCleanupRecord) -> FailedCleanupRecord:
        """Insert a record, or refresh the PENDING one for the same workflow/step."""

    async def fetch_pending(
        self, max_retries: int, limit: int
    ) -> list[FailedCleanupRecord]:
        """Return PENDING records whose retry count is below ``max_retries``."""

    async def update(
        self,
        record_id: str,
        retry_count: int,
        status: CleanupStatus,
        error: str = "",
    ) -> None:
        """Update the retry bookkeeping of a record."""

    async def delete(self, record_id: str) -> None:
        """Remove a reconciled record."""

    async def get(self, record_id: str) -> FailedCleanupRecord | None:
        """Return a record by id."""

    async def list_records(self) -> list[FailedCleanupRecord]:
        """Return every stored record."""
