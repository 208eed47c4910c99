import json

import httpx
import pytest

from stepflow import constants
from stepflow.contracts import ActivityOptions
from stepflow.errors import ValidationError
from stepflow.pipeline.cleanup import (
    CleanupStepSpec,
    append_cleanup_step_spec,
    build_cleanup_options,
    cleanup_step_specs,
    StopRecordingCleanupPayload,
    execute_cleanup_specs,
    failure_recorder,
    stop_emulator_spec,
    stop_recording_spec,
)
from stepflow.runtime import WorkflowContext, WorkflowInfo


def _ctx(clients):
    info = WorkflowInfo(
        workflow_id="wf-1", run_id="run-1", namespace="acme", workflow_name="Dynamic Pipeline Workflow"
    )
    return WorkflowContext(clients.engine("acme"), info)


class StopLog:
    def __init__(self, status=200):
        self.status = status
        self.serials = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/emulator/stop"
        assert set(body) == {"emulator_serial", "clone_name"}
        self.serials.append(body["emulator_serial"])
        return httpx.Response(self.status, json={})


def test_spec_type_is_inferred_from_name():
    assert CleanupStepSpec(name="stop-emulator:emu-1").type == constants.CLEANUP_STOP_EMULATOR
    assert CleanupStepSpec(name="stop-recording").type == constants.CLEANUP_STOP_RECORDING
    assert CleanupStepSpec(name="reboot:emu-1").type == ""


def test_run_data_bookkeeping_skips_malformed_specs():
    run_data = {}
    spec = CleanupStepSpec(name="stop-emulator:emu-1", max_retries=0)
    append_cleanup_step_spec(run_data, spec)
    run_data[constants.CLEANUP_STEP_SPECS_KEY].append({"payload": "no name"})

    specs = cleanup_step_specs(run_data)
    assert [s.name for s in specs] == ["stop-emulator:emu-1"]
    assert specs[0].max_retries == constants.CLEANUP_DEFAULT_MAX_RETRIES


@pytest.mark.asyncio
async def test_specs_run_in_reverse_order(make_clients):
    stops = StopLog()
    clients = make_clients(stops)
    specs = [stop_emulator_spec("http://runner", f"emu-{i}", f"clone-{i}") for i in range(3)]
    try:
        errors = await execute_cleanup_specs(
            _ctx(clients), specs, build_cleanup_options(ActivityOptions())
        )
    finally:
        await clients.close()

    assert errors == []
    assert stops.serials == ["emu-2", "emu-1", "emu-0"]


@pytest.mark.asyncio
async def test_failing_step_retries_then_is_recorded(make_clients):
    stops = StopLog(status=500)
    clients = make_clients(stops)
    options = build_cleanup_options(ActivityOptions())
    spec = stop_emulator_spec("http://runner", "emu-1", "clone-1")
    try:
        errors = await execute_cleanup_specs(
            _ctx(clients), [spec], options, record_failure=failure_recorder(options, "wf-1")
        )
    finally:
        await clients.close()

    assert len(errors) == 1
    assert stops.serials == ["emu-1"] * 3
    records = await clients.cleanup_store.list_records()
    assert len(records) == 1
    assert records[0].step_name == "stop-emulator:emu-1"
    assert records[0].retry_count == 3
    assert records[0].status.value == "PENDING"


@pytest.mark.asyncio
async def test_unbuildable_step_recorded_without_attempts(make_clients):
    stops = StopLog()
    clients = make_clients(stops)
    recorded = []

    async def recorder(ctx, spec, error, attempts):
        recorded.append((spec.name, attempts, isinstance(error, ValidationError)))

    specs = [
        stop_emulator_spec("http://runner", "emu-1", "clone-1"),
        CleanupStepSpec(name="reboot:emu-1"),
        CleanupStepSpec(name="stop-emulator:emu-2", payload={"runner_url": "http://runner"}),
    ]
    try:
        errors = await execute_cleanup_specs(
            _ctx(clients), specs, build_cleanup_options(ActivityOptions()), record_failure=recorder
        )
    finally:
        await clients.close()

    assert len(errors) == 2
    assert all(isinstance(e, ValidationError) for e in errors)
    assert recorded == [
        ("reboot:emu-1", 0, True),
        ("stop-emulator:emu-2", 0, True),
    ]
    assert stops.serials == ["emu-1"]


@pytest.mark.asyncio
async def test_recorder_failures_do_not_stop_the_saga(make_clients):
    stops = StopLog(status=500)
    clients = make_clients(stops)

    async def broken_recorder(ctx, spec, error, attempts):
        raise RuntimeError("store down")

    specs = [
        CleanupStepSpec(
            name="stop-emulator:emu-1",
            payload={"runner_url": "http://runner", "emulator_serial": "emu-1", "clone_name": "c"},
            max_retries=1,
        ),
        CleanupStepSpec(
            name="stop-emulator:emu-2",
            payload={"runner_url": "http://runner", "emulator_serial": "emu-2", "clone_name": "c"},
            max_retries=0,
        ),
    ]
    try:
        errors = await execute_cleanup_specs(
            _ctx(clients), specs, build_cleanup_options(ActivityOptions()), record_failure=broken_recorder
        )
    finally:
        await clients.close()

    assert len(errors) == 2
    assert stops.serials == ["emu-2", "emu-1"]


@pytest.mark.asyncio
async def test_step_failing_twice_then_succeeding_backs_off(make_clients):
    answers = iter([500, 500, 200])
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(answers), json={})

    clients = make_clients(handler, sleep=sleep)
    spec = stop_emulator_spec("http://runner", "emu-1", "clone-1")
    assert spec.max_retries == 3
    try:
        errors = await execute_cleanup_specs(
            _ctx(clients), [spec], build_cleanup_options(ActivityOptions())
        )
    finally:
        await clients.close()

    assert errors == []
    assert delays == [1.0, 2.0]
    assert next(answers, None) is None


@pytest.mark.asyncio
async def test_failing_stop_recording_still_stops_emulator(make_clients):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/recording/stop":
            return httpx.Response(500, json={})
        return httpx.Response(200, json={})

    clients = make_clients(handler)
    specs = [
        stop_emulator_spec("http://runner", "emu-1", "clone-1"),
        stop_recording_spec(
            StopRecordingCleanupPayload(
                runner_url="http://runner",
                emulator_serial="emu-1",
                adb_process_pid=1,
                ffmpeg_process_pid=2,
                logcat_process_pid=3,
                video_path="/videos/run.mp4",
                run_identifier="run-1",
                app_url="http://app",
            )
        ),
    ]
    try:
        errors = await execute_cleanup_specs(
            _ctx(clients), specs, build_cleanup_options(ActivityOptions())
        )
    finally:
        await clients.close()

    assert len(errors) == 1
    assert "recording" in str(errors[0])
    assert calls == ["/recording/stop"] * 3 + ["/emulator/stop"]
