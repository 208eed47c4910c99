"""Core message contracts for stepflow activities and workflows."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from . import constants


class RetryPolicy(BaseModel):
    """Retry policy applied to an activity, with intervals in seconds."""

    maximum_attempts: int = constants.DEFAULT_RETRY_MAX_ATTEMPTS
    initial_interval: float = 5.0
    maximum_interval: float = 60.0
    backoff_coefficient: float = constants.DEFAULT_RETRY_BACKOFF
    non_retryable_error_types: List[str] = Field(default_factory=list)

    def interval_for(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` failed attempts."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)


class ActivityOptions(BaseModel):
    """Resolved activity options (timeouts in seconds)."""

    schedule_to_close_timeout: Optional[float] = 600.0
    start_to_close_timeout: Optional[float] = 300.0
    task_queue: Optional[str] = None
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    def with_max_attempts(self, attempts: int) -> "ActivityOptions":
        options = self.model_copy(deep=True)
        options.retry_policy.maximum_attempts = attempts
        return options

    def with_timeout(self, seconds: float) -> "ActivityOptions":
        options = self.model_copy(deep=True)
        options.start_to_close_timeout = seconds
        options.schedule_to_close_timeout = seconds
        return options


class ActivityInput(BaseModel):
    payload: Any = None
    config: Dict[str, Any] = Field(default_factory=dict)


class ActivityResult(BaseModel):
    output: Any = None
    errors: List[str] = Field(default_factory=list)
    log: List[str] = Field(default_factory=list)


class WorkflowInput(BaseModel):
    payload: Any = None
    config: Dict[str, Any] = Field(default_factory=dict)
    activity_options: Optional[ActivityOptions] = None


class WorkflowResult(BaseModel):
    workflow_id: str = ""
    workflow_run_id: str = ""
    message: str = ""
    output: Any = None
    errors: List[str] = Field(default_factory=list)
    log: List[str] = Field(default_factory=list)


class ParentClosePolicy(str, Enum):
    """What happens to a child workflow when its parent closes."""

    TERMINATE = "terminate"
    ABANDON = "abandon"


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    TERMINATED = "terminated"

    @property
    def closed(self) -> bool:
        return self is not WorkflowStatus.RUNNING
