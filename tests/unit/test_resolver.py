"""Step input resolution tests."""

import pytest

from stepflow.expressions import ExpressionError
from stepflow.pipeline.models import StepSpec, WorkflowBlock
from stepflow.pipeline.resolver import (
    cast_type,
    merge_configs,
    resolve_inputs,
    resolve_subworkflow_inputs,
    should_skip_in_string,
)


def _step(use, with_):
    return StepSpec.model_validate({"id": "s1", "use": use, "with": with_})


def test_merge_configs_step_wins():
    merged = merge_configs({"a": 1, "b": 2}, {"b": 3})
    assert merged == {"a": 1, "b": 3}


def test_flat_keys_and_payload_block_are_merged():
    step = _step("http-request", {"payload": {"url": "x"}, "method": "POST", "config": {"k": "v"}})
    assert step.with_.values() == {"url": "x", "method": "POST"}
    assert step.with_.config == {"k": "v"}


def test_resolve_inputs_against_context():
    step = _step(
        "http-request",
        {
            "url": "https://api/${{ inputs.user }}",
            "body": "${{ fetch.outputs.body }}",
            "config": {"token": "${{ inputs.token }}"},
        },
    )
    context = {"inputs": {"user": "ada", "token": "t0k"}, "fetch": {"outputs": {"body": {"n": 1}}}}
    payload, config = resolve_inputs(step, {"app_url": "https://app", "token": "old"}, context)
    assert payload == {"url": "https://api/ada", "body": {"n": 1}}
    assert config == {"app_url": "https://app", "token": "t0k"}


def test_typed_payload_values_are_cast():
    step = _step(
        "http-request",
        {"count": {"type": "int", "value": "${{ inputs.count }}"}, "label": {"type": "string", "value": 5}},
    )
    payload, _ = resolve_inputs(step, {}, {"inputs": {"count": "42"}})
    assert payload == {"count": 42, "label": "5"}


def test_email_template_is_not_interpolated():
    template = "Hello ${{ inputs.name }}"
    assert should_skip_in_string("email", "template", template)
    assert not should_skip_in_string("email", "template", "${{ inputs.tpl }}")
    assert not should_skip_in_string("email", "subject", template)

    step = _step("email", {"template": template, "subject": "Hi ${{ inputs.name }}"})
    payload, _ = resolve_inputs(step, {}, {"inputs": {"name": "Ada"}})
    assert payload["template"] == template
    assert payload["subject"] == "Hi Ada"


def test_unresolvable_full_reference_fails():
    step = _step("http-request", {"url": "${{ missing.outputs.url }}"})
    with pytest.raises(ExpressionError):
        resolve_inputs(step, {}, {"inputs": {}})


@pytest.mark.parametrize(
    "value,type_name,expected",
    [
        ("7", "int", 7),
        (7.0, "int", 7),
        ({"a": 1}, "map", {"a": 1}),
        (["a", 1, "b"], "[]string", ["a", "b"]),
        ([{"a": 1}, "x"], "[]map", [{"a": 1}]),
        ("raw", "bytes", b"raw"),
        (True, "string", "true"),
        ({"a": 1}, "", '{"a": 1}'),
    ],
)
def test_cast_type(value, type_name, expected):
    assert cast_type(value, type_name) == expected


@pytest.mark.parametrize(
    "value,type_name",
    [("seven", "int"), (True, "int"), ("x", "map"), (3, "bytes"), ("x", "float")],
)
def test_cast_type_rejects(value, type_name):
    with pytest.raises(ValueError):
        cast_type(value, type_name)


def test_subworkflow_inputs_follow_declarations():
    block = WorkflowBlock.model_validate(
        {"inputs": {"name": {"type": "string"}, "retries": {"type": "int"}}, "steps": []}
    )
    step = _step("greet", {"name": "${{ inputs.who }}", "retries": "3", "extra": "ignored"})
    inputs = resolve_subworkflow_inputs(step, block, {"inputs": {"who": "Ada"}})
    assert inputs == {"name": "Ada", "retries": 3}


def test_subworkflow_missing_input_fails():
    block = WorkflowBlock.model_validate({"inputs": {"name": {}}, "steps": []})
    with pytest.raises(ExpressionError, match="missing payload"):
        resolve_subworkflow_inputs(_step("greet", {}), block, {"inputs": {}})
