"""Tests for resume validation, idempotency and recovery after a restart."""

import asyncio
from typing import List, Optional

import pytest
import requests

from conftest import edge, review_node, trace_node
from hitl_engine.core.engine import WorkflowEngine
from hitl_engine.core.exceptions import ResumeError, TaskServiceError
from hitl_engine.core.graph import WorkflowGraph, load_definition
from hitl_engine.core.step_log import rebuild_completed_nodes
from hitl_engine.core.task_service import HttpTaskService, TaskRequest, TaskService
from hitl_engine.models.core import ExecutionStatusEnum, StepLogEntry, StepStatus, TaskStatus
from hitl_engine.storage.store import SQLDocumentStore


REVIEW_FLOW = {
    "name": "review",
    "nodes": [trace_node("A"), review_node("H", actions=["approve", "reject"]), trace_node("B")],
    "edges": [edge("A", "H"), edge("H", "B", "approve")],
}


class RecordingTaskService(TaskService):
    def __init__(self, external_id: Optional[str] = "ext-1", fail: bool = False):
        self.requests: List[TaskRequest] = []
        self.external_id = external_id
        self.fail = fail

    async def create_task(self, request: TaskRequest) -> Optional[str]:
        self.requests.append(request)
        if self.fail:
            raise TaskServiceError("task service unavailable")
        return self.external_id


def completed_count(engine, execution_id, node_id):
    return len([
        s for s in engine.step_log.entries(execution_id)
        if s.node_id == node_id and s.status == StepStatus.COMPLETED
    ])


@pytest.mark.asyncio
class TestResumeValidation:

    async def test_unknown_execution(self, engine):
        with pytest.raises(ResumeError) as exc_info:
            await engine.resume("does-not-exist", {"action_id": "approve"})

        assert exc_info.value.not_found

    async def test_execution_that_never_paused(self, engine):
        record = await engine.start({"nodes": [trace_node("A")]})

        with pytest.raises(ResumeError) as exc_info:
            await engine.resume(record.execution_id, {"action_id": "approve"})

        assert not exc_info.value.not_found
        assert exc_info.value.details["current_status"] == "completed"

    async def test_action_not_offered_by_task(self, engine, store):
        paused = await engine.start(REVIEW_FLOW)

        with pytest.raises(ResumeError):
            await engine.resume(paused.execution_id, {"action_id": "escalate"})

        # The rejected request left the pause untouched
        assert store.get_execution(paused.execution_id).status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW
        assert store.get_pending_task(paused.execution_id) is not None

    async def test_second_resume_is_a_noop(self, engine):
        paused = await engine.start(REVIEW_FLOW)

        first = await engine.resume(paused.execution_id, {"action_id": "approve"})
        second = await engine.resume(paused.execution_id, {"action_id": "approve"})

        assert first.status == ExecutionStatusEnum.COMPLETED
        assert second.status == ExecutionStatusEnum.COMPLETED
        assert completed_count(engine, paused.execution_id, "B") == 1


@pytest.mark.asyncio
class TestDurableResume:

    async def test_resume_on_fresh_engine_after_restart(self, engine, executors, notifier, test_config, db_url):
        paused = await engine.start(REVIEW_FLOW, {"text": "v1"})
        assert paused.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW

        # A new process: new store, new engine, empty run registry
        restarted_store = SQLDocumentStore(db_url)
        restarted = WorkflowEngine(restarted_store, executors=executors, notifier=notifier, config=test_config)
        try:
            assert paused.execution_id not in restarted.runs

            record = await restarted.resume(paused.execution_id, {"action_id": "approve", "feedback": "ok"})

            assert record.status == ExecutionStatusEnum.COMPLETED
            assert record.output["trace"] == ["A", "B"]
            assert record.output["text"] == "v1"
            assert completed_count(restarted, paused.execution_id, "A") == 1
        finally:
            restarted_store.close()

    async def test_rebuilt_run_keeps_rejection_loop_semantics(self, executors, notifier, test_config, db_url, engine):
        workflow = {
            "nodes": [trace_node("A"), review_node("H"), trace_node("B")],
            "edges": [edge("A", "H"), edge("H", "B", "approve"), edge("H", "A", "reject")],
        }
        paused = await engine.start(workflow)

        restarted_store = SQLDocumentStore(db_url)
        restarted = WorkflowEngine(restarted_store, executors=executors, notifier=notifier, config=test_config)
        try:
            looped = await restarted.resume(paused.execution_id, {"action_id": "reject"})
            assert looped.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW

            done = await restarted.resume(paused.execution_id, {"action_id": "approve"})
            assert done.output["trace"] == ["A", "A", "B"]
        finally:
            restarted_store.close()

    async def test_concurrent_resumes_claim_once(self, engine, executors, notifier, test_config, db_url):
        paused = await engine.start(REVIEW_FLOW)

        other_store = SQLDocumentStore(db_url)
        other = WorkflowEngine(other_store, executors=executors, notifier=notifier, config=test_config)
        try:
            results = await asyncio.gather(
                engine.resume(paused.execution_id, {"action_id": "approve"}),
                other.resume(paused.execution_id, {"action_id": "approve"}),
            )
        finally:
            other_store.close()

        assert {record.status for record in results} <= {
            ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.RUNNING
        }
        assert engine.store.get_execution(paused.execution_id).status == ExecutionStatusEnum.COMPLETED
        assert completed_count(engine, paused.execution_id, "H") == 1
        assert completed_count(engine, paused.execution_id, "B") == 1


def replayed(*steps):
    return [StepLogEntry(execution_id="exec-1", node_id=node_id, status=status) for node_id, status in steps]


class TestStepLogReplay:

    def test_loop_back_clears_the_whole_loop_body(self):
        graph = WorkflowGraph(load_definition({
            "nodes": [trace_node("S"), trace_node("A"), trace_node("X"), review_node("H"), trace_node("B")],
            "edges": [
                edge("S", "A"), edge("A", "H"), edge("A", "X"), edge("X", "H"),
                edge("H", "B", "approve"), edge("H", "A", "reject"),
            ],
        }))
        entries = replayed(
            ("S", StepStatus.STARTED), ("S", StepStatus.COMPLETED),
            ("A", StepStatus.STARTED), ("A", StepStatus.COMPLETED),
            ("X", StepStatus.STARTED), ("X", StepStatus.COMPLETED),
            ("H", StepStatus.STARTED), ("H", StepStatus.WAITING_HUMAN_REVIEW),
            ("H", StepStatus.COMPLETED),
            # Rejected: a new iteration of the loop starts at A
            ("A", StepStatus.STARTED), ("A", StepStatus.COMPLETED),
            ("H", StepStatus.STARTED), ("H", StepStatus.WAITING_HUMAN_REVIEW),
        )

        assert rebuild_completed_nodes(entries, graph) == ["S", "A"]

    def test_without_a_graph_only_the_restarted_node_is_cleared(self):
        entries = replayed(
            ("A", StepStatus.COMPLETED), ("B", StepStatus.COMPLETED),
            ("A", StepStatus.STARTED),
        )

        assert rebuild_completed_nodes(entries) == ["B"]


@pytest.mark.asyncio
class TestTaskService:

    async def test_task_service_receives_request(self, store, executors, test_config):
        service = RecordingTaskService(external_id="ticket-42")
        engine = WorkflowEngine(store, executors=executors, task_service=service, config=test_config)

        paused = await engine.start(REVIEW_FLOW, {"text": "doc"})

        assert len(service.requests) == 1
        request = service.requests[0]
        task = store.get_pending_task(paused.execution_id)
        assert request.task_id == task.id
        assert request.node_id == "H"
        assert request.description == "Please review doc"
        assert request.callback_url.endswith(f"/api/v1/tasks/{task.id}/complete")
        assert [action["id"] for action in request.actions] == ["approve", "reject"]
        assert task.external_id == "ticket-42"

        payload = request.model_dump(by_alias=True)
        assert payload["executionId"] == paused.execution_id
        assert "callbackUrl" in payload

    async def test_loop_back_hint_is_forwarded_but_not_routed(self, store, executors, test_config):
        service = RecordingTaskService()
        engine = WorkflowEngine(store, executors=executors, task_service=service, config=test_config)
        workflow = {
            "nodes": [
                trace_node("A"),
                review_node("H", actions=["approve", {"id": "reject", "loopBackNodeId": "A"}]),
                trace_node("B"),
            ],
            "edges": [edge("A", "H"), edge("H", "B", "approve")],
        }

        paused = await engine.start(workflow)
        reject = service.requests[0].actions[1]
        assert reject["loop_back_node_id"] == "A"

        record = await engine.resume(paused.execution_id, {"action_id": "reject"})

        # No edge fires for reject, so A is not entered again
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.output["trace"] == ["A"]
        assert completed_count(engine, paused.execution_id, "A") == 1

    async def test_task_service_failure_keeps_run_paused(self, store, executors, test_config):
        service = RecordingTaskService(fail=True)
        engine = WorkflowEngine(store, executors=executors, task_service=service, config=test_config)

        paused = await engine.start(REVIEW_FLOW)

        assert paused.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW
        task = store.get_pending_task(paused.execution_id)
        assert task.status == TaskStatus.PENDING
        assert task.external_id is None

        record = await engine.resume(paused.execution_id, {"action_id": "approve"})
        assert record.status == ExecutionStatusEnum.COMPLETED


class FakeResponse:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code
        self.content = b"{}" if body is not None else b""

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.mark.asyncio
class TestHttpTaskService:

    def make_request(self):
        return TaskRequest(
            execution_id="exec-1",
            node_id="H",
            task_id="task-1",
            title="Review",
            description="Check it",
            actions=[{"id": "approve", "label": "Approve"}],
            callback_url="http://engine/api/v1/tasks/task-1/complete",
        )

    async def test_posts_camel_case_payload(self):
        session = FakeSession(FakeResponse({"taskId": "remote-7"}))
        service = HttpTaskService("http://tasks.local/", timeout=3, session=session)

        external_id = await service.create_task(self.make_request())

        assert external_id == "remote-7"
        url, payload, timeout = session.calls[0]
        assert url == "http://tasks.local/tasks"
        assert payload["executionId"] == "exec-1"
        assert payload["callbackUrl"].endswith("/tasks/task-1/complete")
        assert timeout == 3

    async def test_transport_errors_become_task_service_errors(self):
        session = FakeSession(error=requests.ConnectionError("refused"))
        service = HttpTaskService("http://tasks.local", session=session)

        with pytest.raises(TaskServiceError):
            await service.create_task(self.make_request())

    async def test_http_errors_become_task_service_errors(self):
        session = FakeSession(FakeResponse({"error": "nope"}, status_code=500))
        service = HttpTaskService("http://tasks.local", session=session)

        with pytest.raises(TaskServiceError):
            await service.create_task(self.make_request())
