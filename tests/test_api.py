"""Tests for the REST and WebSocket API."""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import edge, review_node, trace_node
from hitl_engine.factory import create_app


REVIEW_FLOW = {
    "name": "api review",
    "nodes": [trace_node("A"), review_node("H"), trace_node("B")],
    "edges": [edge("A", "H"), edge("H", "B", "approve")],
}


@pytest.fixture
def client(test_config, executors):
    config = test_config.model_copy(update={"enable_resume_worker": True, "resume_poll_interval": 0.01})
    with TestClient(create_app(config, executors=executors)) as test_client:
        yield test_client


def wait_for_status(client, execution_id, expected, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(f"/api/v1/executions/{execution_id}").json()
        if body["status"] == expected:
            return body
        time.sleep(0.02)
    pytest.fail(f"Execution {execution_id} never reached {expected}; last status {body['status']}")


def start_paused(client):
    response = client.post("/api/v1/executions", json={"workflow": REVIEW_FLOW, "inputs": {"text": "draft"}})
    assert response.status_code == 202
    execution_id = response.json()["execution_id"]
    wait_for_status(client, execution_id, "waiting_human_review")
    return execution_id


class TestWorkflowEndpoints:

    def test_create_and_fetch_workflow(self, client):
        response = client.post("/api/v1/workflows", json={"workflow": REVIEW_FLOW})

        assert response.status_code == 201
        workflow_id = response.json()["workflow_id"]

        fetched = client.get(f"/api/v1/workflows/{workflow_id}")
        assert fetched.status_code == 200
        assert [node["id"] for node in fetched.json()["nodes"]] == ["A", "H", "B"]
        assert len(client.get("/api/v1/workflows").json()) == 1

    def test_invalid_workflow_is_rejected(self, client):
        response = client.post("/api/v1/workflows", json={"workflow": {
            "name": "broken",
            "nodes": [{"id": "A", "type": "start"}],
            "edges": [{"source": "A", "target": "ghost"}],
        }})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "DefinitionError"

    def test_unknown_workflow(self, client):
        assert client.get("/api/v1/workflows/missing").status_code == 404


class TestExecutionEndpoints:

    def test_run_stored_workflow_to_completion(self, client):
        workflow_id = client.post("/api/v1/workflows", json={"workflow": {
            "nodes": [{"id": "up", "type": "uppercase"}],
        }}).json()["workflow_id"]

        response = client.post("/api/v1/executions", json={"workflow_id": workflow_id, "inputs": {"text": "hi"}})

        assert response.status_code == 202
        body = wait_for_status(client, response.json()["execution_id"], "completed")
        assert body["output"]["text"] == "HI"

    def test_workflow_id_and_inline_workflow_are_exclusive(self, client):
        response = client.post("/api/v1/executions", json={"inputs": {}})

        assert response.status_code == 422

    def test_unknown_workflow_id(self, client):
        response = client.post("/api/v1/executions", json={"workflow_id": "missing"})

        assert response.status_code == 422

    def test_steps_and_listing(self, client):
        execution_id = start_paused(client)

        steps = client.get(f"/api/v1/executions/{execution_id}/steps").json()
        assert [(s["node_id"], s["status"]) for s in steps if s["status"] == "completed"] == [("A", "completed")]

        waiting = client.get("/api/v1/executions", params={"status": "waiting_human_review"}).json()
        assert [record["execution_id"] for record in waiting] == [execution_id]

    def test_unknown_execution(self, client):
        assert client.get("/api/v1/executions/missing").status_code == 404
        assert client.get("/api/v1/executions/missing/steps").status_code == 404

    def test_abort_paused_execution(self, client):
        execution_id = start_paused(client)

        response = client.post(f"/api/v1/executions/{execution_id}/abort", json={"reason": "no longer needed"})

        assert response.status_code == 200
        assert response.json()["status"] == "aborted"
        record = client.get(f"/api/v1/executions/{execution_id}").json()
        assert record["status"] == "aborted"

        again = client.post(f"/api/v1/executions/{execution_id}/abort")
        assert again.status_code == 409


class TestReviewEndpoints:

    def test_complete_task_resumes_execution(self, client):
        execution_id = start_paused(client)

        tasks = client.get("/api/v1/tasks", params={"execution_id": execution_id}).json()
        assert len(tasks) == 1
        task = tasks[0]
        assert task["status"] == "pending"
        assert task["description"] == "Please review draft"

        response = client.post(f"/api/v1/tasks/{task['id']}/complete",
                               json={"actionId": "approve", "feedback": "looks good"})

        assert response.status_code == 202
        assert response.json()["job_id"] is not None
        body = wait_for_status(client, execution_id, "completed")
        assert body["output"]["trace"] == ["A", "B"]

        resolved = client.get(f"/api/v1/tasks/{task['id']}").json()
        assert resolved["status"] == "completed"
        assert resolved["feedback"] == "looks good"

        repeat = client.post(f"/api/v1/tasks/{task['id']}/complete", json={"actionId": "approve"})
        assert repeat.status_code == 200
        assert repeat.json()["job_id"] is None

    def test_double_completion_only_decides_its_own_task(self, client):
        chained = {
            "nodes": [trace_node("A"), review_node("H1"), review_node("H2"), trace_node("B")],
            "edges": [edge("A", "H1"), edge("H1", "H2", "approve"), edge("H2", "B", "approve")],
        }
        response = client.post("/api/v1/executions", json={"workflow": chained})
        execution_id = response.json()["execution_id"]
        wait_for_status(client, execution_id, "waiting_human_review")
        first_task = client.get("/api/v1/tasks", params={"execution_id": execution_id}).json()[0]

        for _ in range(2):
            response = client.post(f"/api/v1/tasks/{first_task['id']}/complete", json={"actionId": "approve"})
            assert response.status_code in (200, 202)

        deadline = time.time() + 5.0
        while len(client.get("/api/v1/tasks", params={"execution_id": execution_id}).json()) < 2:
            assert time.time() < deadline, "second review never opened"
            time.sleep(0.02)
        # Let the worker drain whatever the second request queued
        time.sleep(0.3)

        body = client.get(f"/api/v1/executions/{execution_id}").json()
        assert body["status"] == "waiting_human_review"
        assert body["pause_state"]["node_id"] == "H2"
        tasks = client.get("/api/v1/tasks", params={"execution_id": execution_id}).json()
        assert sorted(task["status"] for task in tasks) == ["completed", "pending"]

    def test_resume_endpoint(self, client):
        execution_id = start_paused(client)

        response = client.post(f"/api/v1/executions/{execution_id}/resume", json={"action_id": "reject"})

        assert response.status_code == 202
        wait_for_status(client, execution_id, "completed")
        task = client.get("/api/v1/tasks", params={"execution_id": execution_id}).json()[0]
        assert task["status"] == "rejected"

    def test_invalid_action_conflicts(self, client):
        execution_id = start_paused(client)

        response = client.post(f"/api/v1/executions/{execution_id}/resume", json={"actionId": "escalate"})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "ResumeError"

    def test_resume_unknown_execution(self, client):
        response = client.post("/api/v1/executions/missing/resume", json={"actionId": "approve"})

        assert response.status_code == 404

    def test_unknown_task(self, client):
        assert client.get("/api/v1/tasks/missing").status_code == 404


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["overall_status"] == "healthy"
        assert set(body["checks"]) == {"database", "workflow_engine", "resume_worker"}

    def test_liveness_and_request_id(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.headers["X-Request-ID"]

    def test_websocket_subscription(self, client):
        with client.websocket_connect("/api/v1/ws/executions/some-execution") as websocket:
            assert websocket.receive_json()["event_type"] == "connection_established"
            confirmed = websocket.receive_json()
            assert confirmed["event_type"] == "subscription_confirmed"

            websocket.send_text("ping")
            assert websocket.receive_text() == "pong"
