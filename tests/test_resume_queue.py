"""Tests for the durable resume queue and its worker."""

import asyncio

import pytest

from conftest import edge, review_node, trace_node
from hitl_engine.core.resume_queue import ResumeQueue, ResumeWorker
from hitl_engine.models.core import Decision, ExecutionStatusEnum, ResumeJobStatus


FLOW = {
    "nodes": [trace_node("A"), review_node("H"), trace_node("B")],
    "edges": [edge("A", "H"), edge("H", "B", "approve")],
}


@pytest.fixture
def queue(store):
    return ResumeQueue(store)


@pytest.fixture
def worker(engine):
    return ResumeWorker(engine, poll_interval=0.01, max_attempts=2, stale_timeout=60)


@pytest.mark.asyncio
class TestResumeWorker:

    async def test_queued_decision_resumes_the_run(self, engine, queue, worker, store):
        paused = await engine.start(FLOW)

        job = queue.enqueue(paused.execution_id, Decision(action_id="approve", feedback="lgtm"))
        handled = await worker.drain()

        assert handled == 1
        assert queue.get(job.id).status == ResumeJobStatus.DONE
        record = store.get_execution(paused.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.output["trace"] == ["A", "B"]

    async def test_rejected_resume_fails_the_job(self, engine, queue, worker, store):
        paused = await engine.start(FLOW)

        job = queue.enqueue(paused.execution_id, Decision(action_id="escalate"))
        await worker.drain()

        failed = queue.get(job.id)
        assert failed.status == ResumeJobStatus.FAILED
        assert "escalate" in failed.last_error
        assert store.get_execution(paused.execution_id).status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW

    async def test_transient_error_is_retried(self, engine, queue, worker, store, monkeypatch):
        paused = await engine.start(FLOW)
        real_resume = engine.resume
        calls = []

        async def flaky_resume(execution_id, decision):
            calls.append(execution_id)
            if len(calls) == 1:
                raise RuntimeError("database went away")
            return await real_resume(execution_id, decision)

        monkeypatch.setattr(engine, "resume", flaky_resume)
        job = queue.enqueue(paused.execution_id, Decision(action_id="approve"))

        assert await worker.run_once()
        requeued = queue.get(job.id)
        assert requeued.status == ResumeJobStatus.PENDING
        assert requeued.attempts == 1
        assert requeued.last_error == "database went away"

        assert await worker.run_once()
        done = queue.get(job.id)
        assert done.status == ResumeJobStatus.DONE
        assert done.attempts == 2
        assert store.get_execution(paused.execution_id).status == ExecutionStatusEnum.COMPLETED

    async def test_gives_up_after_max_attempts(self, engine, queue, worker, monkeypatch):
        paused = await engine.start(FLOW)

        async def broken_resume(execution_id, decision):
            raise RuntimeError("still broken")

        monkeypatch.setattr(engine, "resume", broken_resume)
        job = queue.enqueue(paused.execution_id, Decision(action_id="approve"))

        assert await worker.drain() == 2

        failed = queue.get(job.id)
        assert failed.status == ResumeJobStatus.FAILED
        assert failed.attempts == 2
        assert failed.last_error == "still broken"

    async def test_empty_queue(self, worker):
        assert not await worker.run_once()
        assert await worker.drain() == 0

    async def test_stale_jobs_are_requeued(self, engine, queue, store):
        paused = await engine.start(FLOW)
        job = queue.enqueue(paused.execution_id, Decision(action_id="approve"))
        store.claim_next_resume_job()

        # Claimed by a worker that never finished it
        assert queue.get(job.id).status == ResumeJobStatus.PROCESSING

        worker = ResumeWorker(engine, poll_interval=0.01, stale_timeout=-1)
        assert worker.requeue_stale() == 1
        assert queue.get(job.id).status == ResumeJobStatus.PENDING

        await worker.drain()
        assert queue.get(job.id).status == ResumeJobStatus.DONE


@pytest.mark.asyncio
class TestWorkerLifecycle:

    async def test_polling_worker_picks_up_jobs(self, engine, queue, worker, store):
        paused = await engine.start(FLOW)

        worker.start()
        assert worker.is_running
        try:
            job = queue.enqueue(paused.execution_id, Decision(action_id="approve"))
            for _ in range(200):
                if queue.get(job.id).status == ResumeJobStatus.DONE:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert not worker.is_running
        assert queue.get(job.id).status == ResumeJobStatus.DONE
        assert store.get_execution(paused.execution_id).status == ExecutionStatusEnum.COMPLETED

    async def test_start_and_stop_are_idempotent(self, worker):
        worker.start()
        worker.start()
        await worker.stop()
        await worker.stop()

        assert not worker.is_running


CHAINED_FLOW = {
    "nodes": [trace_node("A"), review_node("H1"), review_node("H2"), trace_node("B")],
    "edges": [edge("A", "H1"), edge("H1", "H2", "approve"), edge("H2", "B", "approve")],
}


@pytest.mark.asyncio
class TestRedelivery:

    async def test_duplicate_job_does_not_decide_the_next_review(self, engine, queue, worker, store):
        paused = await engine.start(CHAINED_FLOW)
        first_task = store.get_pending_task(paused.execution_id)

        original = queue.enqueue(paused.execution_id, Decision(action_id="approve"))
        duplicate = queue.enqueue(paused.execution_id, Decision(action_id="approve"))

        assert original.decision.task_id == first_task.id
        assert duplicate.decision.task_id == first_task.id
        assert await worker.drain() == 2

        record = store.get_execution(paused.execution_id)
        assert record.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW
        assert record.pause_state.node_id == "H2"
        assert store.get_pending_task(paused.execution_id).node_id == "H2"
        assert queue.get(duplicate.id).status == ResumeJobStatus.DONE

        queue.enqueue(paused.execution_id, Decision(action_id="approve"))
        await worker.drain()
        assert store.get_execution(paused.execution_id).status == ExecutionStatusEnum.COMPLETED

    async def test_requeued_job_after_crash_is_a_noop(self, engine, queue, worker, store):
        paused = await engine.start(CHAINED_FLOW)
        job = queue.enqueue(paused.execution_id, Decision(action_id="approve"))
        await worker.drain()

        # The worker died after resuming but before recording the job as done
        store.mark_resume_job(job.id, ResumeJobStatus.PROCESSING)
        restarted = ResumeWorker(engine, poll_interval=0.01, stale_timeout=-1)
        assert restarted.requeue_stale() == 1
        await restarted.drain()

        record = store.get_execution(paused.execution_id)
        assert record.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW
        assert record.pause_state.node_id == "H2"

    async def test_decision_for_another_execution_task_is_rejected(self, engine, queue, worker, store):
        first = await engine.start(FLOW)
        second = await engine.start(FLOW)
        foreign_task = store.get_pending_task(second.execution_id)

        job = queue.enqueue(first.execution_id, Decision(action_id="approve", task_id=foreign_task.id))
        await worker.drain()

        assert queue.get(job.id).status == ResumeJobStatus.FAILED
        assert store.get_execution(first.execution_id).status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW
        assert store.get_execution(second.execution_id).status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW
