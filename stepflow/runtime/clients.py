"""Namespace-keyed registry of workflow engines and shared collaborators."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from ..config import StepflowConfig
from ..persistence import (
    FailedCleanupStore,
    InMemoryFailedCleanupStore,
    InMemorySemaphoreStateStore,
    InMemoryWorkflowRepository,
    SemaphoreStateStore,
    WorkflowRepository,
)
from ..utils.retry import Sleeper
from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Owns one ``WorkflowEngine`` per namespace plus the shared stores.

    Engines are created lazily on first use. ``close`` shuts them all down and
    ``clear`` forgets them, so tests can build an isolated registry, inject
    in-memory stores, a fake HTTP transport or an instant ``sleep``.
    """

    def __init__(
        self,
        config: Optional[StepflowConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        semaphore_store: Optional[SemaphoreStateStore] = None,
        cleanup_store: Optional[FailedCleanupStore] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.config = config or StepflowConfig()
        self.repository = repository or InMemoryWorkflowRepository()
        self.semaphore_store = semaphore_store or InMemorySemaphoreStateStore()
        self.cleanup_store = cleanup_store or InMemoryFailedCleanupStore()
        self.http_transport = http_transport
        self.sleep = sleep
        self._engines: Dict[str, WorkflowEngine] = {}

    def engine(self, namespace: Optional[str] = None) -> WorkflowEngine:
        namespace = namespace or self.config.runtime.default_namespace
        engine = self._engines.get(namespace)
        if engine is None:
            logger.debug(f"Creating workflow engine for namespace {namespace}")
            engine = WorkflowEngine(
                namespace=namespace,
                repository=self.repository,
                clients=self,
                sleep=self.sleep,
            )
            self._engines[namespace] = engine
        return engine

    def namespaces(self) -> list[str]:
        return sorted(self._engines)

    def http_client(self, timeout: float = 30.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.http_transport, timeout=timeout)

    async def close(self) -> None:
        for namespace, engine in list(self._engines.items()):
            logger.debug(f"Shutting down workflow engine for namespace {namespace}")
            await engine.shutdown()
        self.clear()

    def clear(self) -> None:
        self._engines.clear()
