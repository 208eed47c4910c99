"""Shared defaults for stepflow pipelines, semaphores and cleanup."""

from __future__ import annotations

DEFAULT_NAMESPACE = "default"
PIPELINE_TASK_QUEUE = "PipelineTaskQueue"
PIPELINE_WORKFLOW_NAME = "Dynamic Pipeline Workflow"

# Pipeline runtime defaults (durations use Go-style strings, e.g. "5m")
DEFAULT_EXECUTION_TIMEOUT = "24h"
DEFAULT_ACTIVITY_SCHEDULE_TIMEOUT = "10m"
DEFAULT_ACTIVITY_START_TIMEOUT = "5m"
DEFAULT_RETRY_MAX_ATTEMPTS = 5
DEFAULT_RETRY_INITIAL_INTERVAL = "5s"
DEFAULT_RETRY_MAX_INTERVAL = "1m"
DEFAULT_RETRY_BACKOFF = 2.0
FALLBACK_DURATION_SECONDS = 300.0

DEFAULT_APP_URL = "http://localhost:8090"

# Admission control
SEMAPHORE_WORKFLOW_NAME = "Mobile Runner Semaphore Workflow"
SEMAPHORE_WORKFLOW_ID_PREFIX = "mobile-runner-semaphore"
SEMAPHORE_DEFAULT_CAPACITY = 1
SEMAPHORE_SAFETY_NET_INTERVAL = 45.0
SEMAPHORE_TICKET_CONFIG_KEY = "mobile_runner_semaphore_ticket_id"
SEMAPHORE_RUNNER_IDS_CONFIG_KEY = "mobile_runner_semaphore_runner_ids"
SEMAPHORE_LEADER_CONFIG_KEY = "mobile_runner_semaphore_leader_runner_id"
SEMAPHORE_OWNER_NAMESPACE_CONFIG_KEY = "mobile_runner_semaphore_owner_namespace"
SEMAPHORE_DISABLED_ENV = "STEPFLOW_SEMAPHORE_DISABLED"
ENQUEUE_UPDATE_PREFIX = "enqueue-run"
ROLLBACK_CANCEL_TIMEOUT = 5.0

# Mobile automation
MOBILE_AUTOMATION_TASK = "mobile-automation"

# Cleanup saga
CLEANUP_STEP_SPECS_KEY = "cleanup_step_specs"
CLEANUP_STOP_EMULATOR = "stop-emulator"
CLEANUP_STOP_RECORDING = "stop-recording"
CLEANUP_DEFAULT_MAX_RETRIES = 3
CLEANUP_EMULATOR_TIMEOUT_SECONDS = 120
CLEANUP_RECORDING_TIMEOUT_SECONDS = 35 * 60

RECONCILIATION_WORKFLOW_ID = "cleanup-reconciliation-manager"
RECONCILIATION_INTERVAL = 300.0
RECONCILIATION_MAX_RETRIES = 10
RECONCILIATION_BATCH_LIMIT = 50
VERIFICATION_DELAY = 60.0

RESULT_VIDEO_WARNING = (
    "Video recordings are limited to 30 minutes. "
    "Tests exceeding this duration may result in an incomplete video."
)
