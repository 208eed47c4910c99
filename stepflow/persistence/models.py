"""Data models for persisted workflow, semaphore and cleanup state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class StepRecord(BaseModel):
    """Record of an individual pipeline step execution."""

    id: Optional[int] = None
    workflow_id: str
    step_name: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: Optional[str] = None
    output: Optional[Any] = None


class WorkflowRun(BaseModel):
    """Persisted workflow run."""

    workflow_id: str
    run_id: str
    workflow_name: str
    namespace: str
    status: str = "running"
    input: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    memo: dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    steps: list[StepRecord] = Field(default_factory=list)


class CleanupStatus(str, Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    ABANDONED = "ABANDONED"


class FailedCleanupRecord(BaseModel):
    """A cleanup step that exhausted its retries and awaits reconciliation."""

    id: Optional[str] = None
    workflow_id: str
    step_name: str
    payload: Any = None
    retry_count: int = 0
    status: CleanupStatus = CleanupStatus.PENDING
    error: str = ""
    last_attempt: Optional[datetime] = None
