"""Resolution of ``${{ path.to.value[idx] }}`` references.

Everything here is pure: values are resolved against a context tree made of
dicts, lists and scalars, and nothing is mutated. The context a pipeline builds
only grows forward in step order, so references can never form a cycle and no
cycle detection is performed.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

EXPRESSION_RE = re.compile(r"\$\{\{\s*([a-zA-Z0-9_\-\.\[\]]+)\s*\}\}")


class ExpressionError(ValueError):
    """A reference could not be resolved against the context."""


def is_full_ref(value: Any) -> bool:
    """Return True when ``value`` is exactly one reference (ignoring outer whitespace)."""
    if not isinstance(value, str):
        return False
    stripped = value.strip()
    match = EXPRESSION_RE.fullmatch(stripped)
    return match is not None


def parse_part(part: str) -> tuple[str, list[int]]:
    """Split ``addresses[0][1]`` into ``("addresses", [0, 1])``."""
    bracket = part.find("[")
    if bracket == -1:
        return part, []

    key, rest = part[:bracket], part[bracket:]
    indexes: list[int] = []
    while rest:
        if rest[0] != "[":
            raise ExpressionError(f"invalid syntax in part: {part}")
        end = rest.find("]")
        if end == -1:
            raise ExpressionError(f"missing ] in part: {part}")
        raw = rest[1:end]
        try:
            indexes.append(int(raw))
        except ValueError:
            raise ExpressionError(f"invalid index {raw!r} in part: {part}") from None
        rest = rest[end + 1 :]
    return key, indexes


def resolve_ref(ref: str, context: Mapping[str, Any]) -> Any:
    """Walk ``ref`` (e.g. ``user.addresses[0].city``) through ``context``."""
    current: Any = context
    for part in ref.split("."):
        key, indexes = parse_part(part)

        if not isinstance(current, Mapping):
            raise ExpressionError(f"expected map at {part}")
        if key not in current:
            raise ExpressionError(f"ref not found: {ref}")
        current = current[key]

        for idx in indexes:
            if not isinstance(current, (list, tuple)):
                raise ExpressionError(f"expected list at {part} in ref {ref}")
            if idx < 0 or idx >= len(current):
                raise ExpressionError(
                    f"list index out of bounds at {part} in ref {ref}"
                )
            current = current[idx]
    return current


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _interpolate(text: str, context: Mapping[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        try:
            return stringify(resolve_ref(match.group(1), context))
        except ExpressionError as exc:
            return f"ERR({exc})"

    return EXPRESSION_RE.sub(replace, text)


def resolve_expressions(value: Any, context: Mapping[str, Any]) -> Any:
    """Recursively resolve every reference found in ``value``.

    A string that is exactly one reference resolves to the referenced value
    with its native type, and fails hard when the reference cannot be resolved.
    References embedded in a longer string are interpolated; an unresolvable
    embedded reference becomes an inline ``ERR(...)`` marker.
    """
    if isinstance(value, str):
        stripped = value.strip()
        match = EXPRESSION_RE.fullmatch(stripped)
        if match is not None:
            return resolve_ref(match.group(1), context)
        return _interpolate(value, context)
    if isinstance(value, Mapping):
        return {k: resolve_expressions(v, context) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_expressions(v, context) for v in value]
    return value
