import asyncio
import json

import httpx
import pytest

from stepflow.activities import (
    CheckFileExistsActivity,
    CheckWorkflowClosedActivity,
    HTTPActivity,
    JSONActivity,
    SendMailActivity,
    StartEmulatorActivity,
    StartQueuedPipelineActivity,
)
from stepflow.contracts import ActivityInput, ActivityOptions
from stepflow.errors import (
    ActivityFailed,
    ErrorCode,
    MissingOrInvalidConfigError,
    PayloadValidationError,
    UnexpectedActivityOutputError,
    ValidationError,
)

ONE_ATTEMPT = ActivityOptions().with_max_attempts(1)


async def _execute(clients, activity, payload, options=ONE_ATTEMPT, config=None):
    return await clients.engine().execute_activity(
        activity, ActivityInput(payload=payload, config=config or {}), options
    )


@pytest.mark.asyncio
async def test_http_request_returns_status_headers_and_body(make_clients):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": 7}, headers={"X-Trace": "abc"})

    clients = make_clients(handler)
    try:
        result = await _execute(
            clients,
            HTTPActivity(),
            {
                "method": "post",
                "url": "https://api.example/items",
                "headers": {"Authorization": "Bearer t"},
                "query_params": {"dry": "1"},
                "body": {"name": "widget"},
                "expected_status": 201,
            },
        )
    finally:
        await clients.close()

    assert result.output["status"] == 201
    assert result.output["body"] == {"id": 7}
    assert result.output["headers"]["x-trace"] == "abc"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.params["dry"] == "1"
    assert request.headers["authorization"] == "Bearer t"
    assert json.loads(request.content) == {"name": "widget"}


@pytest.mark.asyncio
async def test_http_request_plain_text_body(make_clients):
    clients = make_clients(lambda request: httpx.Response(200, text="pong"))
    try:
        result = await _execute(clients, HTTPActivity(), {"url": "https://api.example/ping"})
    finally:
        await clients.close()
    assert result.output["body"] == "pong"


@pytest.mark.asyncio
async def test_http_client_errors_are_not_retried(make_clients):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, text="missing")

    clients = make_clients(handler)
    try:
        with pytest.raises(ActivityFailed) as exc_info:
            await _execute(
                clients,
                HTTPActivity(),
                {"url": "https://api.example/x", "expected_status": 200},
                options=ActivityOptions(),
            )
    finally:
        await clients.close()

    assert len(calls) == 1
    assert exc_info.value.code is ErrorCode.UNEXPECTED_HTTP_STATUS
    assert exc_info.value.details[0]["status"] == 404


@pytest.mark.asyncio
async def test_http_server_errors_are_retried(make_clients):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    clients = make_clients(handler)
    try:
        with pytest.raises(ActivityFailed):
            await _execute(
                clients,
                HTTPActivity(),
                {"url": "https://api.example/x", "expected_status": 200},
                options=ActivityOptions().with_max_attempts(3),
            )
    finally:
        await clients.close()
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_json_parse_accepts_both_spellings(make_clients):
    clients = make_clients()
    activity = JSONActivity()
    try:
        aliased = await _execute(clients, activity, {"rawJSON": '{"a": [1, 2]}'})
        plain = await _execute(clients, activity, {"raw_json": "[true]"})
        with pytest.raises(ActivityFailed, match="invalid JSON"):
            await _execute(clients, activity, {"rawJSON": "{"}, options=ActivityOptions())
    finally:
        await clients.close()

    assert aliased.output == {"a": [1, 2]}
    assert plain.output == [True]


@pytest.mark.asyncio
async def test_check_file_exists(make_clients, tmp_path):
    present = tmp_path / "report.txt"
    present.write_text("ok")
    clients = make_clients()
    try:
        found = await _execute(clients, CheckFileExistsActivity(), {"path": str(present)})
        missing = await _execute(clients, CheckFileExistsActivity(), {"path": str(tmp_path / "nope")})
    finally:
        await clients.close()
    assert found.output is True
    assert missing.output is False


def test_email_template_rendered_during_configure(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "mail.local")
    activity = SendMailActivity()
    input = ActivityInput(
        payload={
            "recipient": "ada@example.com",
            "subject": "Run finished",
            "template": "<p>Hi {{ recipient }}, {{ pipeline }} is {{ state }}.</p>",
            "data": {"pipeline": "login-check", "state": "<b>green</b>"},
        }
    )
    activity.configure(input)

    assert input.payload.body == "<p>Hi ada@example.com, login-check is &lt;b&gt;green&lt;/b&gt;.</p>"
    assert input.payload.template is None
    assert input.payload.html is True
    assert input.config["smtp_host"] == "mail.local"


def test_email_template_with_unknown_variable():
    input = ActivityInput(payload={"subject": "s", "template": "Hi {{ nobody }}"})
    with pytest.raises(ValidationError, match="cannot render email template"):
        SendMailActivity().configure(input)


def test_email_body_and_template_are_exclusive():
    with pytest.raises(PayloadValidationError):
        SendMailActivity().decode_payload({"subject": "s", "body": "b", "template": "t"})


@pytest.mark.asyncio
async def test_email_sends_through_smtp(make_clients, monkeypatch):
    sent = []
    monkeypatch.setattr(
        SendMailActivity, "_send", staticmethod(lambda host, port, message: sent.append((host, port, message)))
    )
    clients = make_clients()
    activity = SendMailActivity()
    input = ActivityInput(payload={"subject": "Done", "body": "All green"}, config={"recipient": "ops@example.com"})
    activity.configure(input)
    try:
        result = await clients.engine().execute_activity(activity, input, ONE_ATTEMPT)
        with pytest.raises(MissingOrInvalidConfigError):
            await _execute(clients, activity, {"subject": "Done", "body": "x"})
    finally:
        await clients.close()

    assert result.output == "Email sent successfully"
    host, port, message = sent[0]
    assert message["To"] == "ops@example.com"
    assert message["Subject"] == "Done"
    assert isinstance(port, int)


@pytest.mark.asyncio
async def test_runner_activity_checks_required_output(make_clients):
    clients = make_clients(lambda request: httpx.Response(200, json={"serial": "emu-1"}))
    try:
        with pytest.raises(UnexpectedActivityOutputError, match="clone_name"):
            await _execute(
                clients, StartEmulatorActivity(), {"runner_url": "http://runner", "device_name": "pixel"}
            )
    finally:
        await clients.close()


@pytest.mark.asyncio
async def test_runner_activity_rejects_non_json_body(make_clients):
    clients = make_clients(lambda request: httpx.Response(200, text="<html>proxy error</html>"))
    try:
        with pytest.raises(UnexpectedActivityOutputError, match="non-JSON body") as excinfo:
            await _execute(
                clients, StartEmulatorActivity(), {"runner_url": "http://runner", "device_name": "pixel"}
            )
    finally:
        await clients.close()
    assert excinfo.value.details[0] == "<html>proxy error</html>"


QUEUED_PAYLOAD = {
    "ticket_id": "t1",
    "owner_namespace": "acme",
    "required_runner_ids": ["r1"],
    "leader_runner_id": "r1",
    "pipeline_identifier": "parse-only",
    "yaml": """
name: Parse Only
steps:
  - id: parse
    use: json-parse
    with:
      rawJSON: '{"ok": true}'
""",
    "pipeline_config": {"app_url": "http://app"},
}


class ResultsApi:
    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.bodies = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/pipeline/pipeline-execution-results"
        self.bodies.append(json.loads(request.content))
        return httpx.Response(self.statuses.pop(0) if self.statuses else 201)


async def _wait_closed(clients, workflow_id):
    for _ in range(200):
        run = await clients.repository.get_workflow(workflow_id)
        if run is not None and run.status != "running":
            return run
        await asyncio.sleep(0.01)
    raise AssertionError(f"{workflow_id} did not finish")


@pytest.mark.asyncio
async def test_start_queued_pipeline_registers_result(make_clients):
    api = ResultsApi(503, 500, 201)
    clients = make_clients(api)
    try:
        result = await _execute(clients, StartQueuedPipelineActivity(), QUEUED_PAYLOAD)
        run = await _wait_closed(clients, result.output["workflow_id"])
    finally:
        await clients.close()

    assert result.output["workflow_namespace"] == "acme"
    assert result.output["pipeline_result_created"] is True
    assert len(api.bodies) == 3
    assert api.bodies[0] == {
        "owner": "acme",
        "pipeline_id": "parse-only",
        "workflow_id": result.output["workflow_id"],
        "run_id": result.output["run_id"],
    }
    assert run.status == "completed"
    assert run.namespace == "acme"


@pytest.mark.asyncio
async def test_start_queued_pipeline_result_failure_is_not_fatal(make_clients):
    api = ResultsApi(400)
    clients = make_clients(api)
    try:
        result = await _execute(clients, StartQueuedPipelineActivity(), QUEUED_PAYLOAD)
        await _wait_closed(clients, result.output["workflow_id"])
    finally:
        await clients.close()

    assert result.output["pipeline_result_created"] is False
    assert "400" in result.output["pipeline_result_error"]
    assert len(api.bodies) == 1


@pytest.mark.asyncio
async def test_start_queued_pipeline_requires_app_url(make_clients):
    clients = make_clients()
    payload = dict(QUEUED_PAYLOAD, pipeline_config={})
    try:
        with pytest.raises(MissingOrInvalidConfigError, match="app_url"):
            await _execute(clients, StartQueuedPipelineActivity(), payload)
    finally:
        await clients.close()


@pytest.mark.asyncio
async def test_check_workflow_closed(make_clients):
    clients = make_clients()
    await clients.repository.create_workflow("wf-1", "run-1", "Dynamic Pipeline Workflow", "acme")
    try:
        open_run = await _execute(
            clients, CheckWorkflowClosedActivity(), {"workflow_id": "wf-1", "workflow_namespace": "acme"}
        )
        await clients.repository.mark_workflow_completed("wf-1", "failed")
        closed_run = await _execute(
            clients, CheckWorkflowClosedActivity(), {"workflow_id": "wf-1", "workflow_namespace": "acme"}
        )
        unknown = await _execute(
            clients, CheckWorkflowClosedActivity(), {"workflow_id": "wf-9", "workflow_namespace": "acme"}
        )
    finally:
        await clients.close()

    assert open_run.output == {"closed": False, "status": "running"}
    assert closed_run.output == {"closed": True, "status": "failed"}
    assert unknown.output["closed"] is True
