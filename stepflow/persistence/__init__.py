"""Persistence layer for stepflow workflows, semaphores and cleanups."""

from __future__ import annotations

import os
from typing import Callable, Optional, TypeVar

from ..config import StepflowConfig, load_config
from .inmemory import (
    InMemoryFailedCleanupStore,
    InMemorySemaphoreStateStore,
    InMemoryWorkflowRepository,
)
from .models import CleanupStatus, FailedCleanupRecord, StepRecord, WorkflowRun
from .repository import FailedCleanupStore, SemaphoreStateStore, WorkflowRepository
from .sqlite import (
    SQLiteFailedCleanupStore,
    SQLiteSemaphoreStateStore,
    SQLiteWorkflowRepository,
)

_repository_instance: WorkflowRepository | None = None
_semaphore_store_instance: SemaphoreStateStore | None = None
_cleanup_store_instance: FailedCleanupStore | None = None

T = TypeVar("T")


def _resolve_database_url(
    database_url: Optional[str], config: Optional[StepflowConfig]
) -> Optional[str]:
    config = config or load_config()
    return (
        database_url
        or os.getenv("STEPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )


def _build(
    database_url: Optional[str],
    in_memory: Callable[[], T],
    sqlite: Callable[[str], T],
) -> T:
    if not database_url:
        return in_memory()
    if database_url.startswith("sqlite://"):
        return sqlite(database_url.replace("sqlite://", "", 1))
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow run repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``STEPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    _repository_instance = _build(
        _resolve_database_url(database_url, config),
        InMemoryWorkflowRepository,
        SQLiteWorkflowRepository,
    )
    return _repository_instance


def get_semaphore_store(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> SemaphoreStateStore:
    """Factory for the semaphore snapshot store, selected like ``get_repository``."""

    global _semaphore_store_instance
    if (
        _semaphore_store_instance is not None
        and database_url is None
        and config is None
    ):
        return _semaphore_store_instance

    _semaphore_store_instance = _build(
        _resolve_database_url(database_url, config),
        InMemorySemaphoreStateStore,
        SQLiteSemaphoreStateStore,
    )
    return _semaphore_store_instance


def get_cleanup_store(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> FailedCleanupStore:
    """Factory for the failed cleanup record store, selected like ``get_repository``."""

    global _cleanup_store_instance
    if _cleanup_store_instance is not None and database_url is None and config is None:
        return _cleanup_store_instance

    _cleanup_store_instance = _build(
        _resolve_database_url(database_url, config),
        InMemoryFailedCleanupStore,
        SQLiteFailedCleanupStore,
    )
    return _cleanup_store_instance


__all__ = [
    "CleanupStatus",
    "FailedCleanupRecord",
    "FailedCleanupStore",
    "InMemoryFailedCleanupStore",
    "InMemorySemaphoreStateStore",
    "InMemoryWorkflowRepository",
    "SQLiteFailedCleanupStore",
    "SQLiteSemaphoreStateStore",
    "SQLiteWorkflowRepository",
    "SemaphoreStateStore",
    "StepRecord",
    "WorkflowRepository",
    "WorkflowRun",
    "get_cleanup_store",
    "get_repository",
    "get_semaphore_store",
]
