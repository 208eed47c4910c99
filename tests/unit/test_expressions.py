"""Reference resolution tests."""

import pytest

from stepflow.expressions import (
    ExpressionError,
    is_full_ref,
    parse_part,
    resolve_expressions,
    resolve_ref,
)

CONTEXT = {
    "inputs": {"name": "Ada"},
    "user": {
        "addresses": [{"city": "Paris"}, {"city": "Oslo"}],
        "matrix": [[1, 2], [3, 4]],
        "active": True,
    },
}


def test_parse_part_with_indexes():
    assert parse_part("addresses") == ("addresses", [])
    assert parse_part("matrix[1][0]") == ("matrix", [1, 0])


@pytest.mark.parametrize("part", ["items[x]", "items[0", "items[0]x"])
def test_parse_part_rejects_bad_syntax(part):
    with pytest.raises(ExpressionError):
        parse_part(part)


def test_resolve_ref_walks_maps_and_lists():
    assert resolve_ref("user.addresses[1].city", CONTEXT) == "Oslo"
    assert resolve_ref("user.matrix[1][0]", CONTEXT) == 3


def test_resolve_ref_errors():
    with pytest.raises(ExpressionError, match="ref not found"):
        resolve_ref("user.missing", CONTEXT)
    with pytest.raises(ExpressionError, match="out of bounds"):
        resolve_ref("user.addresses[5]", CONTEXT)
    with pytest.raises(ExpressionError, match="expected list"):
        resolve_ref("inputs.name[0]", CONTEXT)
    with pytest.raises(ExpressionError, match="expected map"):
        resolve_ref("inputs.name.first", CONTEXT)


def test_full_reference_keeps_native_type():
    assert resolve_expressions("  ${{ user.addresses }} ", CONTEXT) == [
        {"city": "Paris"},
        {"city": "Oslo"},
    ]
    assert resolve_expressions("${{user.active}}", CONTEXT) is True
    assert is_full_ref(" ${{ inputs.name }} ")
    assert not is_full_ref("Hello ${{ inputs.name }}")


def test_embedded_references_are_interpolated():
    text = "Hi ${{ inputs.name }} from ${{ user.addresses[0].city }}, active=${{ user.active }}"
    assert resolve_expressions(text, CONTEXT) == "Hi Ada from Paris, active=true"


def test_embedded_failure_becomes_marker():
    resolved = resolve_expressions("value: ${{ user.nope }}", CONTEXT)
    assert resolved.startswith("value: ERR(")


def test_full_reference_failure_raises():
    with pytest.raises(ExpressionError):
        resolve_expressions("${{ user.nope }}", CONTEXT)


def test_nested_structures_are_resolved():
    value = {"a": ["${{ inputs.name }}", {"b": "${{ user.matrix[0] }}"}], "c": 7}
    assert resolve_expressions(value, CONTEXT) == {"a": ["Ada", {"b": [1, 2]}], "c": 7}
