import pytest

from stepflow import constants
from stepflow.contracts import ActivityResult
from stepflow.errors import PipelineInputError
from stepflow.tasks import (
    PIPELINE_WORKER_DENYLIST,
    REGISTRY,
    ActivityTask,
    ChildWorkflowTask,
    OutputKind,
    coerce_output,
    get_task,
    pipeline_worker_tasks,
)


def test_registry_entries():
    assert set(REGISTRY) == {
        "http-request",
        "json-parse",
        "email",
        "check-file-exists",
        constants.MOBILE_AUTOMATION_TASK,
    }
    assert isinstance(get_task("http-request"), ActivityTask)
    assert get_task("email").output_kind is OutputKind.STRING
    assert get_task("check-file-exists").output_kind is OutputKind.BOOL
    mobile = get_task(constants.MOBILE_AUTOMATION_TASK)
    assert isinstance(mobile, ChildWorkflowTask)
    assert mobile.custom_task_queue


def test_unknown_task():
    with pytest.raises(PipelineInputError, match="unknown step type: nope"):
        get_task("nope")


def test_pipeline_worker_excludes_runner_tasks():
    tasks = pipeline_worker_tasks()
    assert constants.MOBILE_AUTOMATION_TASK in PIPELINE_WORKER_DENYLIST
    assert constants.MOBILE_AUTOMATION_TASK not in tasks
    assert "http-request" in tasks


@pytest.mark.parametrize(
    "kind,output,expected",
    [
        (OutputKind.MAP, {"a": 1}, {"a": 1}),
        (OutputKind.MAP, "text", {}),
        (OutputKind.STRING, None, ""),
        (OutputKind.STRING, {"a": 1}, '{"a": 1}'),
        (OutputKind.BOOL, "yes", True),
        (OutputKind.BOOL, 0, False),
        (OutputKind.STRING_LIST, ["a", 2], ["a"]),
        (OutputKind.MAP_LIST, [{"a": 1}, 3], [{"a": 1}]),
    ],
)
def test_coerce_output(kind, output, expected):
    assert coerce_output(kind, ActivityResult(output=output)) == expected


def test_coerce_any_keeps_envelope():
    result = ActivityResult(output=1, errors=["e"], log=["l"])
    assert coerce_output(OutputKind.ANY, result) == {"output": 1, "errors": ["e"], "log": ["l"]}
