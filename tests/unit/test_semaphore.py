"""Runner semaphore admission tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from stepflow.activities.base import Activity
from stepflow.contracts import ActivityResult, WorkflowInput
from stepflow.errors import ActivityFailed, InvalidRequestError, QueueLimitExceededError
from stepflow.semaphore import (
    EnqueueRunRequest,
    MobileRunnerSemaphoreWorkflow,
    RunStatus,
    SemaphoreClient,
    SemaphoreState,
    semaphore_workflow_id,
)
from stepflow.semaphore.types import (
    ENQUEUE_RUN_UPDATE,
    RunTicketState,
    SemaphoreInput,
)

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)
OWNER = "acme"


class FakeStart(Activity):
    """Records which tickets the semaphores started."""

    name = "start-queued-pipeline"

    def __init__(self, fail=False):
        self.started = []
        self.fail = fail

    async def execute(self, ctx, input):
        ticket_id = input.payload["ticket_id"]
        self.started.append(ticket_id)
        if self.fail:
            raise ActivityFailed("pipeline rejected", retryable=False)
        return ActivityResult(
            output={"workflow_id": f"wf-{ticket_id}", "run_id": "run-1", "workflow_namespace": OWNER}
        )


class FakeCheck(Activity):
    name = "check-workflow-closed"

    async def execute(self, ctx, input):
        return ActivityResult(output={"closed": True, "status": "completed"})


def _request(ticket_id, runner_id, required=None, leader=None, minutes=0, max_queue=0):
    required = required or [runner_id]
    return EnqueueRunRequest(
        ticket_id=ticket_id,
        owner_namespace=OWNER,
        enqueued_at=BASE + timedelta(minutes=minutes),
        runner_id=runner_id,
        required_runner_ids=required,
        leader_runner_id=leader or required[0],
        max_pipelines_in_queue=max_queue,
        pipeline_identifier="login-check",
        yaml="name: login-check",
    )


async def _start_semaphore(clients, runner_id, start, capacity=1, **kwargs):
    kwargs.setdefault("safety_net_interval", 3600)
    await clients.engine().start_workflow(
        MobileRunnerSemaphoreWorkflow(start_activity=start, **kwargs),
        WorkflowInput(payload=SemaphoreInput(runner_id=runner_id, capacity=capacity).model_dump()),
        workflow_id=semaphore_workflow_id(runner_id),
    )


async def _wait_status(client, runner_id, ticket_id, status, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        view = await client.run_status(runner_id, OWNER, ticket_id)
        if view.status is status:
            return view
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"{ticket_id} on {runner_id} stuck at {view.status}, expected {status}")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_capacity_holds_second_ticket_until_done(make_clients):
    clients = make_clients(sleep=None)
    start = FakeStart()
    client = SemaphoreClient(clients)
    try:
        await _start_semaphore(clients, "r1", start)
        first = await client.enqueue(_request("t1", "r1", minutes=0))
        assert first.status is RunStatus.QUEUED
        running = await _wait_status(client, "r1", "t1", RunStatus.RUNNING)
        assert running.workflow_id == "wf-t1"
        assert running.workflow_namespace == OWNER

        await client.enqueue(_request("t2", "r1", minutes=1))
        queued = await client.run_status("r1", OWNER, "t2")
        assert (queued.status, queued.position, queued.line_len) == (RunStatus.QUEUED, 0, 1)
        assert [v.ticket_id for v in await client.list_queued("r1")] == ["t1", "t2"]

        done = await client.run_done("r1", OWNER, "t1", workflow_id="wf-t1", run_id="run-1")
        assert done.status is RunStatus.DONE
        await _wait_status(client, "r1", "t2", RunStatus.RUNNING)
        assert (await client.run_done("r1", OWNER, "t1")).status is RunStatus.NOT_FOUND
    finally:
        await clients.close()

    assert start.started == ["t1", "t2"]
    snapshot = await clients.semaphore_store.load_state("r1")
    assert list(snapshot["run_tickets"]) == ["t2"]
    assert snapshot["update_count"] > 0


@pytest.mark.asyncio
async def test_earlier_enqueue_time_goes_first(make_clients):
    clients = make_clients(sleep=None)
    start = FakeStart()
    client = SemaphoreClient(clients)
    try:
        await _start_semaphore(clients, "r1", start)
        await client.enqueue(_request("blocker", "r1", minutes=0))
        await _wait_status(client, "r1", "blocker", RunStatus.RUNNING)
        await client.enqueue(_request("late", "r1", minutes=10))
        early = await client.enqueue(_request("early", "r1", minutes=5))
        assert (early.position, early.line_len) == (0, 2)
        assert (await client.run_status("r1", OWNER, "late")).position == 1

        await client.run_done("r1", OWNER, "blocker")
        await _wait_status(client, "r1", "early", RunStatus.RUNNING)
    finally:
        await clients.close()

    assert start.started == ["blocker", "early"]


@pytest.mark.asyncio
async def test_multi_runner_ticket_starts_once_all_runners_grant(make_clients):
    clients = make_clients(sleep=None)
    start = FakeStart()
    client = SemaphoreClient(clients)
    try:
        await _start_semaphore(clients, "r1", start)
        await _start_semaphore(clients, "r2", start)
        await client.enqueue(_request("t0", "r2"))
        await _wait_status(client, "r2", "t0", RunStatus.RUNNING)

        for runner_id in ("r1", "r2"):
            await client.enqueue(_request("t1", runner_id, required=["r1", "r2"], leader="r1", minutes=1))
        await _wait_status(client, "r1", "t1", RunStatus.STARTING)
        assert (await client.run_status("r2", OWNER, "t1")).status is RunStatus.QUEUED
        assert start.started == ["t0"]

        await client.run_done("r2", OWNER, "t0")
        leader = await _wait_status(client, "r1", "t1", RunStatus.RUNNING)
        follower = await _wait_status(client, "r2", "t1", RunStatus.RUNNING)
        assert leader.workflow_id == follower.workflow_id == "wf-t1"
        assert start.started == ["t0", "t1"]

        await client.run_done("r1", OWNER, "t1")
        await _wait_status(client, "r2", "t1", RunStatus.NOT_FOUND)
    finally:
        await clients.close()


@pytest.mark.asyncio
async def test_queue_limit_and_idempotent_enqueue(make_clients):
    clients = make_clients(sleep=None)
    client = SemaphoreClient(clients)
    try:
        await _start_semaphore(clients, "r1", FakeStart())
        await client.enqueue(_request("t1", "r1"))
        await _wait_status(client, "r1", "t1", RunStatus.RUNNING)
        await client.enqueue(_request("t2", "r1", minutes=1, max_queue=1))

        with pytest.raises(QueueLimitExceededError):
            await client.enqueue(_request("t3", "r1", minutes=2, max_queue=1))

        engine = clients.engine()
        again = await engine.update(
            semaphore_workflow_id("r1"),
            ENQUEUE_RUN_UPDATE,
            _request("t2", "r1", minutes=1, max_queue=1).model_dump(mode="json"),
        )
        assert again.status is RunStatus.QUEUED
        assert (again.position, again.line_len) == (0, 1)
    finally:
        await clients.close()


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(make_clients):
    clients = make_clients(sleep=None)
    engine = clients.engine()
    try:
        await _start_semaphore(clients, "r1", FakeStart())
        workflow_id = semaphore_workflow_id("r1")

        with pytest.raises(InvalidRequestError, match="runner_id must match"):
            await engine.update(workflow_id, ENQUEUE_RUN_UPDATE, _request("t1", "r2").model_dump(mode="json"))
        with pytest.raises(InvalidRequestError, match="leader_runner_id must be included"):
            await engine.update(
                workflow_id,
                ENQUEUE_RUN_UPDATE,
                _request("t1", "r1", leader="r9").model_dump(mode="json"),
            )
        with pytest.raises(InvalidRequestError, match="enqueued_at"):
            payload = _request("t1", "r1").model_dump(mode="json")
            payload["enqueued_at"] = None
            await engine.update(workflow_id, ENQUEUE_RUN_UPDATE, payload)
        with pytest.raises(InvalidRequestError):
            await engine.update(workflow_id, ENQUEUE_RUN_UPDATE, {"max_pipelines_in_queue": "lots"})
        with pytest.raises(InvalidRequestError):
            await engine.update(workflow_id, "CancelRun", {"ticket_id": "t1"})

        await engine.update(workflow_id, ENQUEUE_RUN_UPDATE, _request("t1", "r1").model_dump(mode="json"))
        foreign = _request("t1", "r1").model_dump(mode="json")
        foreign["owner_namespace"] = "other"
        with pytest.raises(InvalidRequestError, match="owner mismatch"):
            await engine.update(workflow_id, ENQUEUE_RUN_UPDATE, foreign)
    finally:
        await clients.close()


@pytest.mark.asyncio
async def test_cancel_queued_and_running_tickets(make_clients):
    clients = make_clients(sleep=None)
    client = SemaphoreClient(clients)
    try:
        await _start_semaphore(clients, "r1", FakeStart())
        await client.enqueue(_request("t1", "r1"))
        await _wait_status(client, "r1", "t1", RunStatus.RUNNING)
        await client.enqueue(_request("t2", "r1", minutes=1))

        canceled = await client.cancel("r1", OWNER, "t2", reason="user request")
        assert canceled.status is RunStatus.CANCELED
        assert (await client.cancel("r1", OWNER, "t2")).status is RunStatus.NOT_FOUND
        assert (await client.cancel("r1", "other", "t1")).status is RunStatus.NOT_FOUND

        running = await client.cancel("r1", OWNER, "t1")
        assert running.status is RunStatus.RUNNING
        state = await client.load_state("r1")
        assert state.run_tickets["t1"].cancel_requested
    finally:
        await clients.close()


@pytest.mark.asyncio
async def test_failed_start_frees_the_slot(make_clients):
    clients = make_clients(sleep=None)
    start = FakeStart(fail=True)
    client = SemaphoreClient(clients)
    try:
        await _start_semaphore(clients, "r1", start)
        await client.enqueue(_request("t1", "r1"))
        await client.enqueue(_request("t2", "r1", minutes=1))
        failed = await _wait_status(client, "r1", "t1", RunStatus.FAILED)
        assert "pipeline rejected" in failed.error_message
        await _wait_status(client, "r1", "t2", RunStatus.FAILED)
    finally:
        await clients.close()

    assert start.started == ["t1", "t2"]


@pytest.mark.asyncio
async def test_safety_net_releases_closed_runs(make_clients):
    clients = make_clients(sleep=None)
    client = SemaphoreClient(clients)
    try:
        await _start_semaphore(
            clients, "r1", FakeStart(), safety_net_interval=0.01, check_activity=FakeCheck()
        )
        await client.enqueue(_request("t1", "r1"))
        await _wait_status(client, "r1", "t1", RunStatus.NOT_FOUND)
    finally:
        await clients.close()


@pytest.mark.asyncio
async def test_semaphore_resumes_from_snapshot(make_clients):
    clients = make_clients(sleep=None)
    start = FakeStart()
    client = SemaphoreClient(clients)
    state = SemaphoreState(
        runner_id="r1",
        run_queue=["t9"],
        run_tickets={"t9": RunTicketState(request=_request("t9", "r1"))},
    )
    await clients.semaphore_store.save_state("r1", state.model_dump(mode="json"))
    try:
        await _start_semaphore(clients, "r1", start)
        await _wait_status(client, "r1", "t9", RunStatus.RUNNING)
    finally:
        await clients.close()

    assert start.started == ["t9"]


@pytest.mark.asyncio
async def test_stopped_semaphore_answers_from_snapshot(make_clients):
    clients = make_clients(sleep=None)
    client = SemaphoreClient(clients)
    state = SemaphoreState(
        runner_id="r1",
        run_queue=["t1", "t2"],
        run_tickets={
            "t1": RunTicketState(request=_request("t1", "r1")),
            "t2": RunTicketState(request=_request("t2", "r1", minutes=1)),
        },
    )
    await clients.semaphore_store.save_state("r1", state.model_dump(mode="json"))

    view = await client.run_status("r1", OWNER, "t2")
    assert (view.status, view.position, view.line_len) == (RunStatus.QUEUED, 1, 2)
    assert (await client.run_status("r1", OWNER, "t3")).status is RunStatus.NOT_FOUND
    assert (await client.run_status("r7", OWNER, "t1")).status is RunStatus.NOT_FOUND

    canceled = await client.cancel("r1", OWNER, "t1")
    assert canceled.status is RunStatus.CANCELED
    assert [v.ticket_id for v in await client.list_queued("r1")] == ["t2"]
    assert await client.runner_ids() == ["r1"]
    assert (await client.run_done("r1", OWNER, "t2")).status is RunStatus.NOT_FOUND
