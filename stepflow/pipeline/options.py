"""Workflow and activity option preparation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .. import constants
from ..contracts import ActivityOptions, RetryPolicy
from .models import ActivityOptionsConfig, RuntimeConfig

logger = logging.getLogger(__name__)

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_SEGMENT_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Optional[str], default: str = "") -> float:
    """Parse a Go-style duration (``"1h30m"``, ``"250ms"``) into seconds.

    An empty value falls back to ``default``; anything unparseable falls back
    to five minutes.
    """
    text = (value or default or "").strip()
    if not text:
        return constants.FALLBACK_DURATION_SECONDS
    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _SEGMENT_RE.match(text, pos)
        if match is None:
            logger.warning(f"Invalid duration {text!r}, using fallback")
            return constants.FALLBACK_DURATION_SECONDS
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    return total


@dataclass
class WorkflowOptions:
    namespace: str = ""
    task_queue: str = constants.PIPELINE_TASK_QUEUE
    execution_timeout: float = 0.0
    activity_options: ActivityOptions = field(default_factory=ActivityOptions)
    debug: bool = False


def _retry_policy(config: ActivityOptionsConfig, base: RetryPolicy) -> RetryPolicy:
    retry = config.retry_policy
    policy = base.model_copy(deep=True)
    if retry.maximum_attempts:
        policy.maximum_attempts = retry.maximum_attempts
    if retry.initial_interval:
        policy.initial_interval = parse_duration(retry.initial_interval)
    if retry.maximum_interval:
        policy.maximum_interval = parse_duration(retry.maximum_interval)
    if retry.backoff_coefficient:
        policy.backoff_coefficient = retry.backoff_coefficient
    return policy


def default_activity_options() -> ActivityOptions:
    return ActivityOptions(
        schedule_to_close_timeout=parse_duration(constants.DEFAULT_ACTIVITY_SCHEDULE_TIMEOUT),
        start_to_close_timeout=parse_duration(constants.DEFAULT_ACTIVITY_START_TIMEOUT),
        retry_policy=RetryPolicy(
            maximum_attempts=constants.DEFAULT_RETRY_MAX_ATTEMPTS,
            initial_interval=parse_duration(constants.DEFAULT_RETRY_INITIAL_INTERVAL),
            maximum_interval=parse_duration(constants.DEFAULT_RETRY_MAX_INTERVAL),
            backoff_coefficient=constants.DEFAULT_RETRY_BACKOFF,
        ),
    )


def prepare_activity_options(
    base: ActivityOptions, overrides: Optional[ActivityOptionsConfig]
) -> ActivityOptions:
    """Layer step-level overrides over ``base`` without touching ``base``."""
    options = base.model_copy(deep=True)
    if overrides is None:
        return options
    if overrides.schedule_to_close_timeout:
        options.schedule_to_close_timeout = parse_duration(overrides.schedule_to_close_timeout)
    if overrides.start_to_close_timeout:
        options.start_to_close_timeout = parse_duration(overrides.start_to_close_timeout)
    options.retry_policy = _retry_policy(overrides, base.retry_policy)
    return options


def prepare_workflow_options(runtime: RuntimeConfig) -> WorkflowOptions:
    return WorkflowOptions(
        namespace=runtime.namespace,
        task_queue=runtime.task_queue or constants.PIPELINE_TASK_QUEUE,
        execution_timeout=parse_duration(
            runtime.execution_timeout, constants.DEFAULT_EXECUTION_TIMEOUT
        ),
        activity_options=prepare_activity_options(
            default_activity_options(), runtime.activity_options
        ),
        debug=runtime.debug,
    )
