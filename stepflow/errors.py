"""Error taxonomy shared by activities, workflows and the CLI."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Stable error codes surfaced to callers."""

    PIPELINE_EXECUTION = "CRE-PIPE-EXEC"
    PIPELINE_INPUT = "CRE-PIPE-INPUT"
    PIPELINE_PARSING = "CRE-PIPE-PARSE"
    MISSING_OR_INVALID_CONFIG = "CRE-CONFIG"
    MISSING_OR_INVALID_PAYLOAD = "CRE-PAYLOAD"
    UNEXPECTED_ACTIVITY_OUTPUT = "CRE-ACT-OUTPUT"
    UNEXPECTED_HTTP_STATUS = "CRE-HTTP-STATUS"
    ACTIVITY_TIMEOUT = "CRE-ACT-TIMEOUT"
    SEMAPHORE_INVALID_REQUEST = "mobile-runner-semaphore-invalid-request"
    SEMAPHORE_QUEUE_LIMIT_EXCEEDED = "mobile-runner-semaphore-queue-limit-exceeded"
    WORKFLOW_ALREADY_STARTED = "CRE-WF-STARTED"
    WORKFLOW_NOT_FOUND = "CRE-WF-NOT-FOUND"
    WORKFLOW_CANCELLED = "CRE-WF-CANCELLED"


class StepflowError(Exception):
    """Base error carrying a stable code and optional details."""

    code: ErrorCode = ErrorCode.PIPELINE_EXECUTION
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *details: Any,
        code: Optional[ErrorCode] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = list(details)
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class ActivityFailed(StepflowError):
    """Raised by activities; retried unless ``retryable`` is False."""


class ValidationError(StepflowError):
    """Missing or malformed required fields."""

    code = ErrorCode.MISSING_OR_INVALID_PAYLOAD
    retryable = False


class PayloadValidationError(ValidationError):
    """Payload failed to decode into a task's declared schema."""

    def __init__(self, task: str, field_errors: list[dict[str, Any]]) -> None:
        fields = ", ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}"
            for e in field_errors
        )
        super().__init__(f"invalid payload for {task}: {fields}", field_errors)
        self.task = task
        self.field_errors = field_errors


class MissingOrInvalidConfigError(ValidationError):
    code = ErrorCode.MISSING_OR_INVALID_CONFIG


class InvalidRequestError(ValidationError):
    """A semaphore update was rejected as malformed."""

    code = ErrorCode.SEMAPHORE_INVALID_REQUEST


class QueueLimitExceededError(StepflowError):
    """The runner queue is at or above the requested depth limit."""

    code = ErrorCode.SEMAPHORE_QUEUE_LIMIT_EXCEEDED
    retryable = False


class PipelineExecutionError(StepflowError):
    code = ErrorCode.PIPELINE_EXECUTION


class PipelineInputError(StepflowError):
    code = ErrorCode.PIPELINE_INPUT
    retryable = False


class PipelineParsingError(StepflowError):
    code = ErrorCode.PIPELINE_PARSING
    retryable = False


class UnexpectedActivityOutputError(StepflowError):
    code = ErrorCode.UNEXPECTED_ACTIVITY_OUTPUT
    retryable = False


class ActivityTimeoutError(StepflowError):
    code = ErrorCode.ACTIVITY_TIMEOUT


class WorkflowAlreadyStartedError(StepflowError):
    code = ErrorCode.WORKFLOW_ALREADY_STARTED
    retryable = False


class WorkflowNotFoundError(StepflowError):
    code = ErrorCode.WORKFLOW_NOT_FOUND
    retryable = False


class WorkflowCancelledError(StepflowError):
    code = ErrorCode.WORKFLOW_CANCELLED
    retryable = False


class WorkflowErrorMetadata(BaseModel):
    workflow_name: str
    workflow_id: str
    run_id: str = ""
    namespace: str = ""
    run_url: str = ""


class WorkflowError(StepflowError):
    """Structured failure of a workflow run.

    Wraps the underlying cause and carries the run metadata, any per-step
    error messages collected along the way and the partial output.
    """

    retryable = False

    def __init__(
        self,
        cause: BaseException,
        metadata: WorkflowErrorMetadata,
        errors: Optional[list[str]] = None,
        output: Optional[dict[str, Any]] = None,
    ) -> None:
        message = cause.message if isinstance(cause, StepflowError) else str(cause)
        code = cause.code if isinstance(cause, StepflowError) else None
        super().__init__(message, code=code)
        self.cause = cause
        self.metadata = metadata
        self.errors = list(errors or [])
        self.output = output

    def __str__(self) -> str:
        return (
            f"[{self.code.value}] {self.metadata.workflow_name} "
            f"({self.metadata.workflow_id}): {self.message}"
        )


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, WorkflowNotFoundError)


def is_queue_limit_exceeded(err: BaseException) -> bool:
    return isinstance(err, QueueLimitExceededError)


def extract_output(err: BaseException) -> Any:
    """Return the partial output attached to a failure, if any."""
    if isinstance(err, WorkflowError):
        return err.output
    return None
