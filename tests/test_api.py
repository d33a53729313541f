"""End-to-end tests over the HTTP API."""

import json
import time

import pytest
from fastapi.testclient import TestClient

from automation_engine.config import get_testing_config
from automation_engine.core.security_gate import compute_signature
from automation_engine.factory import create_app

API = "/api/v1"


@pytest.fixture
def client(tmp_path):
    config = get_testing_config(database_url=f"sqlite:///{tmp_path / 'engine.db'}")
    with TestClient(create_app(config)) as test_client:
        yield test_client


def register(client, trigger_type, trigger_data, steps=None, workflow_id=None, active=True):
    steps = steps or [{"id": "echo", "type": "action:echo", "data": {}}]
    nodes = [{"id": "trigger", "type": trigger_type, "data": trigger_data}] + steps
    edges = []
    previous = "trigger"
    for step in steps:
        edges.append({"id": f"{previous}-{step['id']}", "source": previous, "target": step["id"]})
        previous = step["id"]

    document = {"name": f"{trigger_type} workflow", "active": active, "nodes": nodes, "edges": edges}
    if workflow_id:
        document["id"] = workflow_id
    response = client.post(f"{API}/workflows", json=document)
    assert response.status_code == 201, response.text
    return response.json()


def wait_for_run(client, run_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        response = client.get(f"{API}/runs/{run_id}")
        if response.status_code == 200 and response.json()["status"] != "RUNNING":
            return response.json()
        time.sleep(0.05)
    pytest.fail(f"Run {run_id} did not finish within {timeout}s")


def step_results(run):
    return {step["node_id"]: step for step in run["steps"]}


class TestFormTriggerEndToEnd:
    def test_form_submission_runs_echo(self, client):
        wf = register(client, "trigger:form", {"formToken": "s3cret"})

        response = client.post(f"{API}/triggers/form/{wf['id']}", json={"name": "Ada", "formToken": "s3cret"})

        assert response.status_code == 202
        body = response.json()
        assert body["accepted"] is True
        run = wait_for_run(client, body["run_id"])
        assert run["status"] == "SUCCEEDED"
        assert [step["node_id"] for step in run["steps"]] == ["trigger", "echo"]
        assert step_results(run)["echo"]["result"] == {"name": "Ada"}

    def test_wrong_token_rejected_without_run(self, client):
        wf = register(client, "trigger:form", {"formToken": "s3cret"})

        response = client.post(f"{API}/triggers/form/{wf['id']}", json={"name": "Ada", "formToken": "nope"})

        assert response.status_code == 401
        detail = response.json()["detail"]
        assert detail["error"] == "UNAUTHORIZED"
        assert detail["message"] == "Authentication failed"
        assert "s3cret" not in response.text
        assert client.get(f"{API}/workflows/{wf['id']}/runs").json()["total"] == 0

    def test_non_string_token_rejected(self, client):
        wf = register(client, "trigger:form", {"formToken": "123"})

        response = client.post(f"{API}/triggers/form/{wf['id']}", json={"name": "Ada", "formToken": 123})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "UNAUTHORIZED"
        assert client.get(f"{API}/workflows/{wf['id']}/runs").json()["total"] == 0

    def test_urlencoded_form_with_query_token(self, client):
        wf = register(client, "trigger:form", {"formToken": "s3cret"})

        response = client.post(f"{API}/triggers/form/{wf['id']}?token=s3cret", data={"city": "Paris"})

        assert response.status_code == 202
        run = wait_for_run(client, response.json()["run_id"])
        assert step_results(run)["echo"]["result"] == {"city": "Paris"}

    def test_inactive_workflow_is_not_found(self, client):
        wf = register(client, "trigger:form", {"formToken": "s3cret"}, active=False)

        response = client.post(f"{API}/triggers/form/{wf['id']}", json={"formToken": "s3cret"})

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "INACTIVE"
        assert client.get(f"{API}/runs").json()["total"] == 0

    def test_unknown_workflow(self, client):
        response = client.post(f"{API}/triggers/form/missing", json={"formToken": "x"})
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NOT_FOUND"

    def test_activation_round_trip(self, client):
        wf = register(client, "trigger:form", {"formToken": "t"}, active=False)

        assert client.post(f"{API}/workflows/{wf['id']}/activate").json()["active"] is True
        assert client.post(f"{API}/triggers/form/{wf['id']}", json={"formToken": "t"}).status_code == 202

        assert client.post(f"{API}/workflows/{wf['id']}/deactivate").json()["active"] is False
        assert client.post(f"{API}/triggers/form/{wf['id']}", json={"formToken": "t"}).status_code == 404


class TestOtherTriggers:
    def test_file_upload(self, client):
        wf = register(client, "trigger:file", {"uploadToken": "up"})

        response = client.post(
            f"{API}/triggers/file/{wf['id']}",
            files={"file": ("orders.csv", b"id,total\n1,9.50\n", "text/csv")},
            data={"uploadToken": "up", "batch": "7"},
        )

        assert response.status_code == 202, response.text
        body = response.json()
        assert body["fileInfo"]["filename"] == "orders.csv"
        assert len(body["fileInfo"]["hash"]) == 64

        run = wait_for_run(client, body["run_id"])
        echoed = step_results(run)["echo"]["result"]
        assert echoed["fields"] == {"batch": "7"}
        assert echoed["file"]["size"] == 16

    def test_file_upload_rejections(self, client):
        wf = register(client, "trigger:file", {"uploadToken": "up", "maxFileSize": 10})
        url = f"{API}/triggers/file/{wf['id']}"
        headers = {"X-Upload-Token": "up"}

        too_big = client.post(url, files={"file": ("a.txt", b"x" * 11, "text/plain")}, headers=headers)
        assert too_big.status_code == 413

        wrong_type = client.post(url, files={"file": ("a.exe", b"MZ", "application/octet-stream")},
                                 headers=headers)
        assert wrong_type.status_code == 415

        missing = client.post(url, data={"note": "no file"}, headers=headers)
        assert missing.status_code == 400
        assert missing.json()["detail"]["error"] == "NO_FILE"

        assert client.get(f"{API}/runs").json()["total"] == 0

    def test_signed_email(self, client):
        wf = register(client, "trigger:email", {"signingSecret": "whsec"})
        raw = json.dumps({"from": "ada@example.com", "to": "in@example.com", "subject": "Hello"}).encode()

        unsigned = client.post(f"{API}/triggers/email/{wf['id']}", content=raw)
        assert unsigned.status_code == 401

        signed = client.post(
            f"{API}/triggers/email/{wf['id']}",
            content=raw,
            headers={"X-Postmark-Signature": compute_signature(raw, "whsec"), "Content-Type": "application/json"},
        )
        assert signed.status_code == 202
        run = wait_for_run(client, signed.json()["run_id"])
        assert step_results(run)["echo"]["result"]["subject"] == "Hello"

    def test_webhook(self, client):
        wf = register(client, "trigger:webhook", {"apiKeyValue": "k", "headerName": "X-Api-Key"})

        assert client.post(f"{API}/triggers/webhook/{wf['id']}", json={"a": 1}).status_code == 401

        response = client.post(f"{API}/triggers/webhook/{wf['id']}", json={"a": 1}, headers={"X-Api-Key": "k"})
        assert response.status_code == 202
        run = wait_for_run(client, response.json()["run_id"])
        assert step_results(run)["echo"]["result"] == {"a": 1}

    def test_wrong_trigger_kind(self, client):
        wf = register(client, "trigger:webhook", {"apiKeyValue": "k"})
        response = client.post(f"{API}/triggers/form/{wf['id']}", json={"formToken": "k"})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "NO_MATCHING_TRIGGER"


class TestRuns:
    def test_cancel_running_run(self, client):
        wf = register(client, "trigger:form", {"formToken": "t"}, steps=[
            {"id": "wait", "type": "action:delay", "data": {"seconds": 5}},
            {"id": "echo", "type": "action:echo", "data": {}},
        ])
        run_id = client.post(f"{API}/triggers/form/{wf['id']}", json={"formToken": "t"}).json()["run_id"]

        response = client.post(f"{API}/runs/{run_id}/cancel")
        assert response.status_code == 202

        run = wait_for_run(client, run_id)
        assert run["status"] == "FAILED"
        assert run["error"]["reason"] == "cancelled"
        assert "echo" not in step_results(run)

        again = client.post(f"{API}/runs/{run_id}/cancel")
        assert again.status_code == 409

    def test_unknown_run(self, client):
        assert client.get(f"{API}/runs/missing").status_code == 404
        assert client.post(f"{API}/runs/missing/cancel").status_code == 404

    def test_list_runs_filters(self, client):
        wf = register(client, "trigger:form", {"formToken": "t"})
        run_ids = [
            client.post(f"{API}/triggers/form/{wf['id']}", json={"formToken": "t", "i": i}).json()["run_id"]
            for i in range(3)
        ]
        for run_id in run_ids:
            wait_for_run(client, run_id)

        page = client.get(f"{API}/runs", params={"status": "succeeded", "page_size": 2}).json()
        assert page["total"] == 3
        assert len(page["items"]) == 2

        assert client.get(f"{API}/runs", params={"status": "bogus"}).status_code == 422


class TestWorkflows:
    def test_invalid_definition(self, client):
        response = client.post(f"{API}/workflows", json={
            "name": "cyclic",
            "nodes": [{"id": "t", "type": "trigger:form"}, {"id": "a", "type": "action:echo"},
                      {"id": "b", "type": "action:echo"}],
            "edges": [{"id": "1", "source": "a", "target": "b"}, {"id": "2", "source": "b", "target": "a"}],
        })
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "INVALID_WORKFLOW"

    def test_invalid_cron_rejected(self, client):
        response = client.post(f"{API}/workflows", json={
            "name": "bad schedule",
            "nodes": [{"id": "t", "type": "trigger:schedule", "data": {"pattern": "every minute"}}],
        })
        assert response.status_code == 422

    def test_get_and_list(self, client):
        wf = register(client, "trigger:form", {"formToken": "t"}, workflow_id="wf-known")
        assert client.get(f"{API}/workflows/wf-known").json()["name"] == wf["name"]
        assert [w["id"] for w in client.get(f"{API}/workflows").json()] == ["wf-known"]
        assert client.get(f"{API}/workflows/nope").status_code == 404
        assert client.get(f"{API}/schedules").json() == []


class TestRunEventsSocket:
    def test_subscribe_and_ping(self, client):
        with client.websocket_connect(f"{API}/ws/runs") as websocket:
            assert websocket.receive_json()["event"] == "connectionEstablished"

            websocket.send_text(json.dumps({"action": "ping"}))
            assert websocket.receive_json()["event"] == "pong"

            websocket.send_text(json.dumps({"action": "subscribe", "workflow_id": "wf-1"}))
            assert websocket.receive_json() == {"event": "subscribed", "runId": None, "workflowId": "wf-1"}

            websocket.send_text("not json")
            assert websocket.receive_json()["event"] == "error"

    def test_receives_run_events(self, client):
        wf = register(client, "trigger:form", {"formToken": "t"}, workflow_id="wf-live")
        with client.websocket_connect(f"{API}/ws/runs") as websocket:
            websocket.receive_json()
            websocket.send_text(json.dumps({"action": "subscribe", "workflow_id": wf["id"]}))
            websocket.receive_json()

            client.post(f"{API}/triggers/form/{wf['id']}", json={"formToken": "t"})

            events = []
            while not events or events[-1]["event"] != "runCompleted":
                events.append(websocket.receive_json())

        assert events[0]["event"] == "runCreated"
        assert [e["nodeId"] for e in events if e["event"] == "stepCompleted"] == ["trigger", "echo"]
        assert events[-1]["status"] == "SUCCEEDED"


class TestHealth:
    def test_liveness_and_basic(self, client):
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/health/live").json()["alive"] is True

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["ready"] is True

    def test_detailed(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        assert {"database", "dispatcher"} <= set(response.json()["checks"])


class TestTestRuns:
    def test_inactive_workflow_can_be_test_run(self, client):
        wf = register(client, "trigger:form", {"formToken": "s3cret"}, active=False)

        response = client.post(f"{API}/workflows/{wf['id']}/test", json={"name": "Ada"})

        assert response.status_code == 202
        run = wait_for_run(client, response.json()["run_id"])
        assert run["status"] == "SUCCEEDED"
        assert step_results(run)["echo"]["result"] == {"name": "Ada"}
        metadata = run["trigger"]["metadata"]
        assert metadata["sourceType"] == "manual"
        assert metadata["extra"] == {"test": True, "triggerType": "trigger:form"}

    def test_empty_body_and_node_selection(self, client):
        wf = register(client, "trigger:webhook", {"apiKeyValue": "k"})

        response = client.post(f"{API}/workflows/{wf['id']}/test", params={"trigger_node_id": "trigger"})
        assert response.status_code == 202
        assert wait_for_run(client, response.json()["run_id"])["status"] == "SUCCEEDED"

        response = client.post(f"{API}/workflows/{wf['id']}/test", params={"trigger_node_id": "echo"})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "NO_MATCHING_TRIGGER"

    def test_rejections_create_no_run(self, client):
        wf = register(client, "trigger:form", {"formToken": "t"})

        missing = client.post(f"{API}/workflows/missing/test", json={})
        assert missing.status_code == 404
        assert missing.json()["detail"]["error"] == "NOT_FOUND"

        for body in (b"[1, 2]", b"not json"):
            response = client.post(f"{API}/workflows/{wf['id']}/test", content=body,
                                   headers={"content-type": "application/json"})
            assert response.status_code == 422
            assert response.json()["detail"]["error"] == "INVALID_PAYLOAD"

        assert client.get(f"{API}/runs").json()["total"] == 0


class TestScheduleStatus:
    def test_disabled_scheduler(self, client):
        body = client.get(f"{API}/schedules/status").json()
        assert body["enabled"] is False
        assert body["running"] is False
        assert body["activeScheduledWorkflows"] == []

    def test_running_scheduler_reports_coverage(self, tmp_path):
        config = get_testing_config(database_url=f"sqlite:///{tmp_path / 'engine.db'}", enable_scheduler=True,
                                    schedule_default_timezone="UTC")
        with TestClient(create_app(config)) as scheduled_client:
            wf = register(scheduled_client, "trigger:schedule", {"pattern": "0 9 * * *"})

            body = scheduled_client.get(f"{API}/schedules/status").json()

        assert body["enabled"] is True
        assert body["running"] is True
        assert body["defaultTimezone"] == "UTC"
        assert body["activeScheduledWorkflows"] == [{
            "workflowId": wf["id"],
            "name": "trigger:schedule workflow",
            "nodeId": "trigger",
            "cronPattern": "0 9 * * *",
            "timezone": "UTC",
            "isScheduled": True,
        }]
