"""Input resolution for pipeline steps.

Layers a step's config over the pipeline config and resolves every
``${{ ref }}`` found in the step's payload and config against the run context
built by the steps executed so far.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Tuple

from ..expressions import ExpressionError, is_full_ref, resolve_expressions, stringify
from ..tasks.outputs import as_map_list, as_string_list
from .models import StepSpec, TypedValue, WorkflowBlock

logger = logging.getLogger(__name__)

# Payload keys passed through verbatim (unless the value is exactly one reference).
PAYLOAD_EXCLUSIONS: Mapping[str, Tuple[str, ...]] = {"email": ("template",)}


def merge_configs(global_config: Mapping[str, Any], step_config: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``global_config`` overlaid with ``step_config`` (step wins)."""
    merged = dict(global_config)
    merged.update(step_config)
    return merged


def should_skip_in_string(use: str, key: str, value: Any) -> bool:
    """True when ``key`` of a ``use`` step must not be interpolated.

    A value that is exactly one reference is still resolved.
    """
    if key not in PAYLOAD_EXCLUSIONS.get(use, ()):
        return False
    return not is_full_ref(value)


def cast_type(value: Any, type_name: str) -> Any:
    """Cast a resolved payload value to the declared reference type."""
    if type_name in ("", "string"):
        return value if isinstance(value, str) else stringify(value)
    if type_name == "int":
        if isinstance(value, bool):
            raise ValueError(f"cannot cast {value!r} to int")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                raise ValueError(f"cannot cast {value!r} to int") from None
        raise ValueError(f"cannot cast {type(value).__name__} to int")
    if type_name == "map":
        if not isinstance(value, Mapping):
            raise ValueError(f"cannot cast {type(value).__name__} to map")
        return dict(value)
    if type_name == "[]string":
        return as_string_list(value)
    if type_name == "[]map":
        return as_map_list(value)
    if type_name in ("bytes", "[]byte"):
        if isinstance(value, bytes):
            return value
        if isinstance(value, str):
            return value.encode()
        raise ValueError(f"cannot cast {type(value).__name__} to bytes")
    raise ValueError(f"unsupported type: {type_name}")


def _resolve_payload_value(
    use: str, key: str, entry: TypedValue, context: Mapping[str, Any]
) -> Any:
    if should_skip_in_string(use, key, entry.value):
        return entry.value
    resolved = resolve_expressions(entry.value, context)
    if entry.type:
        return cast_type(resolved, entry.type)
    return resolved


def resolve_inputs(
    step: StepSpec, global_config: Mapping[str, Any], context: Mapping[str, Any]
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Resolve a step's payload and merged config.

    Raises:
        ExpressionError: when a whole-value reference cannot be resolved.
        ValueError: when a typed value cannot be cast.
    """
    payload = {
        key: _resolve_payload_value(step.use, key, entry, context)
        for key, entry in step.with_.payload.items()
    }
    step_config = {
        key: resolve_expressions(value, context)
        for key, value in step.with_.config.items()
    }
    return payload, merge_configs(global_config, step_config)


def resolve_subworkflow_inputs(
    step: StepSpec, block: WorkflowBlock, context: Mapping[str, Any]
) -> Dict[str, Any]:
    """Resolve the inputs a custom check declares from the calling step's payload."""
    inputs: Dict[str, Any] = {}
    for name, declaration in block.inputs.items():
        entry = step.with_.payload.get(name)
        if entry is None:
            raise ExpressionError(f"missing payload for subworkflow input {name}")
        value = resolve_expressions(entry.value, context)
        inputs[name] = cast_type(value, entry.type or declaration.type)
    return inputs
