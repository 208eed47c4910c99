"""Base class for workflows run by the stepflow engine."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any

from ..contracts import WorkflowInput, WorkflowResult
from ..errors import StepflowError

if TYPE_CHECKING:
    from .context import WorkflowContext


class Workflow(metaclass=abc.ABCMeta):
    """A long- or short-lived orchestration.

    Subclasses implement ``run``. Workflows that accept updates, signals or
    queries while running override the matching ``handle_*`` method; the engine
    routes calls addressed to the workflow id to the running instance.
    """

    name: str = ""

    @abc.abstractmethod
    async def run(self, ctx: "WorkflowContext", input: WorkflowInput) -> WorkflowResult:
        raise NotImplementedError

    async def handle_update(self, name: str, arg: Any) -> Any:
        raise StepflowError(f"workflow {self.name} does not accept update {name}")

    async def handle_signal(self, name: str, arg: Any) -> None:
        raise StepflowError(f"workflow {self.name} does not accept signal {name}")

    def handle_query(self, name: str, *args: Any) -> Any:
        raise StepflowError(f"workflow {self.name} does not answer query {name}")
