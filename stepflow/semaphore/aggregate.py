"""Fold per-runner ticket statuses into one pipeline-level view."""

from __future__ import annotations

from typing import Iterable

from pydantic import BaseModel

from .types import RunStatus

_PRIORITY = {
    RunStatus.FAILED: 4,
    RunStatus.CANCELED: 4,
    RunStatus.RUNNING: 3,
    RunStatus.STARTING: 2,
    RunStatus.QUEUED: 1,
    RunStatus.NOT_FOUND: 0,
}


class RunnerStatus(BaseModel):
    runner_id: str
    status: RunStatus
    position: int = 0
    line_len: int = 0
    workflow_id: str = ""
    run_id: str = ""
    workflow_namespace: str = ""
    error_message: str = ""


class AggregateStatus(BaseModel):
    status: RunStatus = RunStatus.NOT_FOUND
    position: int = 0
    line_len: int = 0
    workflow_id: str = ""
    run_id: str = ""
    workflow_namespace: str = ""
    error_message: str = ""


def aggregate_runner_statuses(statuses: Iterable[RunnerStatus]) -> AggregateStatus:
    """Combine runner statuses, the worst status winning.

    Failed and canceled outrank running, which outranks starting and queued.
    Position and line length take the maximum over runners. The run identity
    comes from the first running runner and the error from the first failed one.
    """
    result = AggregateStatus()
    best = -1
    for entry in statuses:
        rank = _PRIORITY.get(entry.status, 0)
        if rank > best:
            best = rank
            result.status = entry.status
        result.position = max(result.position, entry.position)
        result.line_len = max(result.line_len, entry.line_len)
        if entry.status is RunStatus.RUNNING and not result.workflow_id:
            result.workflow_id = entry.workflow_id
            result.run_id = entry.run_id
            result.workflow_namespace = entry.workflow_namespace
        if entry.status is RunStatus.FAILED and not result.error_message:
            result.error_message = entry.error_message
    return result
