"""In-process workflow engine tests."""

import asyncio

import pytest

from stepflow.activities.base import Activity
from stepflow.contracts import ActivityInput, ActivityOptions, ActivityResult, WorkflowInput, WorkflowResult
from stepflow.errors import (
    ActivityFailed,
    ActivityTimeoutError,
    ValidationError,
    WorkflowAlreadyStartedError,
    WorkflowNotFoundError,
)
from stepflow.persistence import InMemoryWorkflowRepository
from stepflow.runtime import Workflow, WorkflowEngine


async def _no_sleep(seconds):
    return None


class FlakyActivity(Activity):
    name = "flaky"

    def __init__(self, failures, error_factory=lambda: ActivityFailed("boom")):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    async def execute(self, ctx, input):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return ActivityResult(output={"attempt": ctx.attempt})


class SlowActivity(Activity):
    name = "slow"

    async def execute(self, ctx, input):
        await asyncio.sleep(1)
        return ActivityResult()


class CounterWorkflow(Workflow):
    """Waits for a release signal and counts updates."""

    name = "Counter"

    def __init__(self):
        self.count = 0
        self.release = asyncio.Event()

    async def run(self, ctx, input):
        await self.release.wait()
        return WorkflowResult(output={"count": self.count})

    async def handle_update(self, name, arg):
        if name != "add":
            return await super().handle_update(name, arg)
        self.count += arg
        return self.count

    async def handle_signal(self, name, arg):
        self.release.set()

    def handle_query(self, name, *args):
        return self.count


class FailingWorkflow(Workflow):
    name = "Failing"

    async def run(self, ctx, input):
        raise ValidationError("bad input")


@pytest.mark.asyncio
async def test_activity_retries_until_success():
    engine = WorkflowEngine(sleep=_no_sleep)
    activity = FlakyActivity(failures=2)
    result = await engine.execute_activity(activity, ActivityInput())
    assert activity.calls == 3
    assert result.output == {"attempt": 3}


@pytest.mark.asyncio
async def test_activity_gives_up_after_max_attempts():
    engine = WorkflowEngine(sleep=_no_sleep)
    activity = FlakyActivity(failures=10)
    with pytest.raises(ActivityFailed):
        await engine.execute_activity(activity, ActivityInput(), ActivityOptions().with_max_attempts(2))
    assert activity.calls == 2


@pytest.mark.asyncio
async def test_non_retryable_errors_fail_fast():
    engine = WorkflowEngine(sleep=_no_sleep)
    activity = FlakyActivity(failures=10, error_factory=lambda: ValidationError("nope"))
    with pytest.raises(ValidationError):
        await engine.execute_activity(activity, ActivityInput())
    assert activity.calls == 1

    by_name = FlakyActivity(failures=10, error_factory=lambda: KeyError("k"))
    options = ActivityOptions()
    options.retry_policy.non_retryable_error_types = ["KeyError"]
    with pytest.raises(KeyError):
        await engine.execute_activity(by_name, ActivityInput(), options)
    assert by_name.calls == 1


@pytest.mark.asyncio
async def test_activity_timeout():
    engine = WorkflowEngine(sleep=_no_sleep)
    options = ActivityOptions().with_timeout(0.01).with_max_attempts(1)
    with pytest.raises(ActivityTimeoutError):
        await engine.execute_activity(SlowActivity(), ActivityInput(), options)


@pytest.mark.asyncio
async def test_workflow_lifecycle_updates_and_queries():
    repo = InMemoryWorkflowRepository()
    engine = WorkflowEngine(namespace="acme", repository=repo)
    workflow = CounterWorkflow()
    handle = await engine.start_workflow(workflow, WorkflowInput(), workflow_id="wf-1", memo={"k": "v"})

    with pytest.raises(WorkflowAlreadyStartedError) as exc_info:
        await engine.start_workflow(CounterWorkflow(), WorkflowInput(), workflow_id="wf-1")
    assert exc_info.value.details == [handle.run_id]

    assert await engine.update("wf-1", "add", 2, update_id="u1") == 2
    assert await engine.update("wf-1", "add", 2, update_id="u1") == 2
    assert await engine.update("wf-1", "add", 3) == 5
    assert engine.query("wf-1", "count") == 5
    assert (await engine.describe("wf-1")).value == "running"

    await engine.signal("wf-1", "release", None)
    result = await handle.result()
    assert result.output == {"count": 5}
    assert result.workflow_id == "wf-1"
    assert result.workflow_run_id == handle.run_id

    run = await repo.get_workflow("wf-1")
    assert run.status == "completed"
    assert run.namespace == "acme"
    assert run.memo == {"k": "v"}
    with pytest.raises(WorkflowNotFoundError):
        engine.get_handle("wf-1")
    assert (await engine.describe("wf-1")).value == "completed"


@pytest.mark.asyncio
async def test_failed_workflow_is_recorded():
    repo = InMemoryWorkflowRepository()
    engine = WorkflowEngine(repository=repo)
    handle = await engine.start_workflow(FailingWorkflow(), WorkflowInput(), workflow_id="wf-f")
    with pytest.raises(ValidationError):
        await handle.result()
    run = await repo.get_workflow("wf-f")
    assert run.status == "failed"
    assert "bad input" in run.error


@pytest.mark.asyncio
async def test_shutdown_cancels_running_workflows():
    repo = InMemoryWorkflowRepository()
    engine = WorkflowEngine(repository=repo)
    await engine.start_workflow(CounterWorkflow(), WorkflowInput(), workflow_id="wf-c")
    await asyncio.sleep(0)
    await engine.shutdown()
    assert (await repo.get_workflow("wf-c")).status == "canceled"
    with pytest.raises(WorkflowNotFoundError):
        await engine.describe("unknown")
