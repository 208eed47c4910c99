from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from . import constants


class SemaphoreConfig(BaseModel):
    """Admission control settings."""

    namespace: str = constants.DEFAULT_NAMESPACE
    capacity: int = constants.SEMAPHORE_DEFAULT_CAPACITY
    safety_net_interval: float = constants.SEMAPHORE_SAFETY_NET_INTERVAL


class CleanupConfig(BaseModel):
    """Cleanup reconciliation and verification settings."""

    reconciliation_interval: float = constants.RECONCILIATION_INTERVAL
    max_retries: int = constants.RECONCILIATION_MAX_RETRIES
    batch_limit: int = constants.RECONCILIATION_BATCH_LIMIT
    verification_delay: float = constants.VERIFICATION_DELAY


class RuntimeSettings(BaseModel):
    default_namespace: str = constants.DEFAULT_NAMESPACE


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    app_url: str = constants.DEFAULT_APP_URL
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    semaphore: SemaphoreConfig = SemaphoreConfig()
    cleanup: CleanupConfig = CleanupConfig()
    runtime: RuntimeSettings = RuntimeSettings()


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepflowConfig(**data)
    else:
        config = StepflowConfig()

    env_db_url = os.getenv("STEPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_app_url = os.getenv("STEPFLOW_APP_URL")
    if env_app_url:
        config.app_url = env_app_url
    return config
