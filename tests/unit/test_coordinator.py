import asyncio

import pytest

from stepflow.contracts import ActivityInput
from stepflow.errors import (
    PipelineExecutionError,
    QueueLimitExceededError,
    ValidationError,
    WorkflowNotFoundError,
)
from stepflow.semaphore import (
    EnqueuePipelineRunTicketActivity,
    EnqueueRunResponse,
    RunStatus,
    RunStatusView,
    normalize_runner_ids,
    rollback_enqueued_tickets,
)


class FakeSemaphoreClient:
    def __init__(self, fail_on=None, error=None, start_error=None, hang_cancel=False):
        self.started = []
        self.requests = []
        self.canceled = []
        self.fail_on = fail_on
        self.error = error
        self.start_error = start_error
        self.hang_cancel = hang_cancel

    async def ensure_started(self, runner_id, capacity=None):
        if self.start_error is not None:
            raise self.start_error
        self.started.append(runner_id)

    async def enqueue(self, request):
        self.requests.append(request)
        if request.runner_id == self.fail_on:
            raise self.error
        position = 1 if request.runner_id == "r2" else 0
        return EnqueueRunResponse(
            ticket_id=request.ticket_id, status=RunStatus.QUEUED, position=position, line_len=2
        )

    async def cancel(self, runner_id, owner_namespace, ticket_id, reason=""):
        if self.hang_cancel:
            await asyncio.sleep(3600)
        self.canceled.append(runner_id)
        return RunStatusView(ticket_id=ticket_id, status=RunStatus.CANCELED, runner_id=runner_id)


def _payload(**overrides):
    payload = {
        "ticket_id": "t1",
        "owner_namespace": "acme",
        "runner_ids": [" r2", "r1", "", "r2"],
        "leader_runner_id": "",
        "pipeline_identifier": "login-check",
        "yaml": "name: login-check",
        "pipeline_config": {"app_url": "http://app"},
    }
    payload.update(overrides)
    return ActivityInput(payload=payload)


async def _enqueue(client, **overrides):
    activity = EnqueuePipelineRunTicketActivity(client_factory=lambda ctx: client)
    return await activity.execute(None, _payload(**overrides))


def test_normalize_runner_ids():
    assert normalize_runner_ids([" b", "a", "", "  ", "b"]) == ["a", "b"]
    assert normalize_runner_ids(None) == []


@pytest.mark.asyncio
async def test_ticket_is_enqueued_on_every_runner():
    client = FakeSemaphoreClient()
    result = await _enqueue(client)

    assert client.started == ["r1", "r2"]
    assert [r.runner_id for r in client.requests] == ["r1", "r2"]
    first = client.requests[0]
    assert first.required_runner_ids == ["r1", "r2"]
    assert first.leader_runner_id == "r1"
    assert first.enqueued_at is not None
    assert {r.enqueued_at for r in client.requests} == {first.enqueued_at}
    assert first.pipeline_config == {"app_url": "http://app"}

    assert result.output["status"] == "queued"
    assert (result.output["position"], result.output["line_len"]) == (1, 2)
    assert [r["runner_id"] for r in result.output["runners"]] == ["r1", "r2"]


@pytest.mark.asyncio
async def test_explicit_leader_is_kept():
    client = FakeSemaphoreClient()
    await _enqueue(client, leader_runner_id="r2")
    assert {r.leader_runner_id for r in client.requests} == {"r2"}


@pytest.mark.asyncio
async def test_failed_enqueue_rolls_back_including_failing_runner():
    client = FakeSemaphoreClient(fail_on="r2", error=WorkflowNotFoundError("semaphore gone"))
    with pytest.raises(PipelineExecutionError, match="semaphore gone"):
        await _enqueue(client)
    assert client.canceled == ["r1", "r2"]


@pytest.mark.asyncio
async def test_queue_limit_reaches_caller_unchanged():
    client = FakeSemaphoreClient(fail_on="r1", error=QueueLimitExceededError("queue is full"))
    with pytest.raises(QueueLimitExceededError):
        await _enqueue(client)
    assert client.canceled == ["r1"]
    assert [r.runner_id for r in client.requests] == ["r1"]


@pytest.mark.asyncio
async def test_semaphore_start_failure():
    client = FakeSemaphoreClient(start_error=WorkflowNotFoundError("namespace down"))
    with pytest.raises(PipelineExecutionError):
        await _enqueue(client)
    assert client.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"ticket_id": " "},
        {"owner_namespace": ""},
        {"pipeline_identifier": ""},
        {"yaml": "  "},
        {"runner_ids": ["", " "]},
    ],
)
async def test_missing_fields_are_rejected(overrides):
    client = FakeSemaphoreClient()
    with pytest.raises(ValidationError):
        await _enqueue(client, **overrides)
    assert client.started == []


@pytest.mark.asyncio
async def test_rollback_survives_hanging_cancel(caplog):
    client = FakeSemaphoreClient(hang_cancel=True)
    await rollback_enqueued_tickets(client, ["r1", "r2"], "acme", "t1", timeout=0.01)
    assert "failed to rollback run ticket t1 for runner r1" in caplog.text
    assert "failed to rollback run ticket t1 for runner r2" in caplog.text
