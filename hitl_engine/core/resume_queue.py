"""Durable resume queue and the worker that delivers its jobs to the engine."""

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from ..models.core import Decision, ResumeJob, ResumeJobStatus
from ..storage.store import DocumentStore
from .exceptions import ResumeError
from .logging import RetryLogger, clear_logging_context, get_logger, set_logging_context

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = get_logger(__name__)


class ResumeQueue:
    """Enqueues resume requests in the document store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def enqueue(self, execution_id: str, decision: Decision) -> ResumeJob:
        """Queue ``decision``, bound to the task it resolves.

        An unbound decision is bound to the execution's pending task at
        enqueue time, so delivering the job twice can never decide a task
        created by a later pause.
        """
        if decision.task_id is None:
            pending = self.store.get_pending_task(execution_id)
            if pending is not None:
                decision = decision.model_copy(update={"task_id": pending.id})
        return self.store.enqueue_resume(execution_id, decision)

    def get(self, job_id: int) -> Optional[ResumeJob]:
        return self.store.get_resume_job(job_id)


class ResumeWorker:
    """Polls the resume queue and resumes executions, at least once per job.

    Jobs left in ``processing`` by a crashed worker are requeued when the
    worker starts. A ResumeError fails the job at once; any other error puts
    it back in the queue until ``max_attempts`` deliveries have been made.
    """

    def __init__(
        self,
        engine: "WorkflowEngine",
        poll_interval: float = 0.5,
        max_attempts: int = 3,
        stale_timeout: float = 300.0
    ):
        self.engine = engine
        self.store = engine.store
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.stale_timeout = stale_timeout
        self.retry_logger = RetryLogger("resume_worker")
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def requeue_stale(self) -> int:
        """Return abandoned ``processing`` jobs to the queue."""
        cutoff = datetime.utcnow() - timedelta(seconds=self.stale_timeout)
        return self.store.requeue_stale_resume_jobs(cutoff)

    def start(self) -> None:
        """Requeue stale jobs and begin polling on the running loop."""
        if self.is_running:
            return
        requeued = self.requeue_stale()
        if requeued:
            logger.warning(f"Requeued {requeued} resume jobs abandoned by a previous worker")
        self._stopping.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="resume-worker")
        logger.info("Resume worker started")

    async def stop(self) -> None:
        """Stop polling after the job in hand, if any, finishes."""
        if not self.is_running:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Resume worker stopped")

    async def _poll_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                # Storage hiccups must not kill the worker
                logger.error(f"Resume worker poll failed: {str(e)}", exc_info=True)
                processed = False

            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run_once(self) -> bool:
        """
        Claim and process one job.

        Returns:
            True if a job was claimed, False if the queue was empty
        """
        job = self.store.claim_next_resume_job()
        if job is None:
            return False
        await self.process(job)
        return True

    async def drain(self) -> int:
        """Process jobs until the queue is empty; returns how many were handled."""
        handled = 0
        while await self.run_once():
            handled += 1
        return handled

    async def process(self, job: ResumeJob) -> None:
        """Deliver one claimed job to the engine and record the outcome."""
        set_logging_context(execution_id=job.execution_id, resume_job_id=job.id)
        try:
            record = await self.engine.resume(job.execution_id, job.decision)
        except ResumeError as e:
            logger.warning(f"Resume job {job.id} rejected: {str(e)}")
            self.store.mark_resume_job(job.id, ResumeJobStatus.FAILED, last_error=str(e))
            return
        except Exception as e:
            if job.attempts >= self.max_attempts:
                self.retry_logger.gave_up(f"resume job {job.id}", e, job.attempts)
                self.store.mark_resume_job(job.id, ResumeJobStatus.FAILED, last_error=str(e))
            else:
                self.retry_logger.retrying(f"resume job {job.id}", e, job.attempts, self.max_attempts)
                self.store.mark_resume_job(job.id, ResumeJobStatus.PENDING, last_error=str(e))
            return
        finally:
            clear_logging_context()

        self.store.mark_resume_job(job.id, ResumeJobStatus.DONE)
        logger.info(f"Resume job {job.id} done; execution {job.execution_id} is {record.status.value}")
