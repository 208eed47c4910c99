"""Activities executed by stepflow workflows."""

from .base import Activity, ConfigurableActivity, validate_payload
from .email import SendMailActivity
from .failed_cleanup import (
    DeleteFailedCleanupActivity,
    FetchFailedCleanupsActivity,
    RecordFailedCleanupActivity,
    UpdateFailedCleanupActivity,
)
from .files import CheckFileExistsActivity
from .http import HTTPActivity
from .json_parse import JSONActivity
from .mobile import (
    MobileAutomationWorkflow,
    StartEmulatorActivity,
    StartRecordingActivity,
    StopEmulatorActivity,
    StopRecordingActivity,
)
from .queued_pipeline import CheckWorkflowClosedActivity, StartQueuedPipelineActivity

__all__ = [
    "Activity",
    "CheckFileExistsActivity",
    "CheckWorkflowClosedActivity",
    "ConfigurableActivity",
    "DeleteFailedCleanupActivity",
    "FetchFailedCleanupsActivity",
    "HTTPActivity",
    "JSONActivity",
    "MobileAutomationWorkflow",
    "RecordFailedCleanupActivity",
    "SendMailActivity",
    "StartEmulatorActivity",
    "StartQueuedPipelineActivity",
    "StartRecordingActivity",
    "StopEmulatorActivity",
    "StopRecordingActivity",
    "UpdateFailedCleanupActivity",
    "validate_payload",
]
