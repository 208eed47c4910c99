"""Base classes for stepflow activities."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Optional, Type, TypeVar

import httpx
import pydantic
from pydantic import BaseModel

from ..contracts import ActivityInput, ActivityResult
from ..errors import PayloadValidationError

if TYPE_CHECKING:
    from ..runtime.context import ActivityContext

PayloadT = TypeVar("PayloadT", bound=BaseModel)
ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_payload(model: Type[ModelT], payload: Any, task: str) -> ModelT:
    """Decode ``payload`` into ``model`` or raise with field-level errors."""
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    try:
        return model.model_validate(payload or {})
    except pydantic.ValidationError as exc:
        raise PayloadValidationError(
            task,
            [{"loc": e["loc"], "msg": e["msg"], "type": e["type"]} for e in exc.errors()],
        ) from None


class Activity(Generic[PayloadT], metaclass=abc.ABCMeta):
    """A single side-effecting unit of work.

    Activities declare the shape of their payload with ``payload_model`` and
    decode it once through ``decode_payload``; business logic only ever sees
    the typed model.
    """

    name: ClassVar[str] = ""
    payload_model: ClassVar[Optional[Type[BaseModel]]] = None

    def decode_payload(self, payload: Any) -> PayloadT:
        """Validate ``payload`` against ``payload_model``.

        Raises:
            PayloadValidationError: with the field-level errors when the
                payload does not match.
        """
        if self.payload_model is None:
            raise TypeError(f"activity {self.name} does not declare a payload model")
        return validate_payload(self.payload_model, payload, self.name)  # type: ignore[return-value]

    @abc.abstractmethod
    async def execute(self, ctx: "ActivityContext", input: ActivityInput) -> ActivityResult:
        raise NotImplementedError

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"<{type(self).__name__} {self.name}>"


class ConfigurableActivity(Activity[PayloadT]):
    """An activity that may rewrite its own input before execution."""

    def configure(self, input: ActivityInput) -> None:
        """Adjust ``input`` in place (no-op by default)."""
        pass


def http_client(ctx: "ActivityContext", timeout: float = 30.0) -> httpx.AsyncClient:
    """Return an HTTP client honoring the transport configured on the registry."""
    if ctx.clients is not None:
        return ctx.clients.http_client(timeout=timeout)
    return httpx.AsyncClient(timeout=timeout)
