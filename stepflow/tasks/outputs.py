"""Coercion of raw activity results into the declared output kind."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel

from ..contracts import ActivityResult
from ..expressions import stringify


class OutputKind(str, Enum):
    MAP = "map"
    STRING = "string"
    BOOL = "bool"
    STRING_LIST = "[]string"
    MAP_LIST = "[]map"
    ANY = "any"


def as_map(value: Any) -> dict[str, Any]:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return value
    return {}


def as_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return stringify(value)


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def as_string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


def as_map_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, (list, tuple)):
        return []
    return [as_map(item) for item in value if isinstance(item, (dict, BaseModel))]


_COERCERS = {
    OutputKind.MAP: as_map,
    OutputKind.STRING: as_string,
    OutputKind.BOOL: as_bool,
    OutputKind.STRING_LIST: as_string_list,
    OutputKind.MAP_LIST: as_map_list,
}


def coerce_output(kind: OutputKind, result: ActivityResult) -> Any:
    """Shape ``result`` for the run context.

    ``any`` passes the whole result envelope through, every other kind
    coerces ``result.output``.
    """
    if kind is OutputKind.ANY:
        return result.model_dump(mode="json")
    return _COERCERS[kind](result.output)
