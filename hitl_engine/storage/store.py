"""Document store for workflows, executions, step logs, tasks and resume jobs."""

import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import PersistenceError
from ..core.logging import get_logger
from ..models.core import (
    Decision,
    ExecutionRecord,
    ExecutionStatusEnum,
    PauseState,
    ResumeJob,
    ResumeJobStatus,
    StepLogEntry,
    Task,
    TaskAction,
    TaskStatus,
    WorkflowDefinition,
    WorkflowSummary,
)
from .database import create_database_engine, create_session_factory, create_tables
from .models import ExecutionModel, ResumeJobModel, StepLogModel, TaskModel, WorkflowModel

logger = get_logger(__name__)


class DocumentStore(ABC):
    """Persistence interface used by the engine, the resume queue and the API.

    Every method raises PersistenceError when the underlying store fails.
    The conditional updates (pause, claim, finalize, task resolution, job
    claim) return False when the expected prior status no longer holds.
    """

    # Workflows

    @abstractmethod
    def save_workflow(self, definition: WorkflowDefinition) -> str:
        ...

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...

    @abstractmethod
    def list_workflows(self) -> List[WorkflowSummary]:
        ...

    # Executions

    @abstractmethod
    def create_execution(self, execution_id: str, definition: WorkflowDefinition,
                         inputs: Dict[str, Any], state: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        ...

    @abstractmethod
    def checkpoint_execution(self, execution_id: str, state: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def pause_execution(self, execution_id: str, pause_state: PauseState) -> bool:
        ...

    @abstractmethod
    def claim_resume(self, execution_id: str) -> bool:
        ...

    @abstractmethod
    def finalize_execution(self, execution_id: str, status: ExecutionStatusEnum, output: Any = None,
                           error: Optional[Dict[str, Any]] = None,
                           state: Optional[Dict[str, Any]] = None) -> bool:
        ...

    @abstractmethod
    def abort_execution(self, execution_id: str, reason: str) -> bool:
        ...

    @abstractmethod
    def list_executions(self, status: Optional[ExecutionStatusEnum] = None,
                        limit: int = 100) -> List[ExecutionRecord]:
        ...

    # Step log

    @abstractmethod
    def append_step(self, entry: StepLogEntry) -> StepLogEntry:
        ...

    @abstractmethod
    def list_steps(self, execution_id: str) -> List[StepLogEntry]:
        ...

    # Tasks

    @abstractmethod
    def create_task(self, task: Task) -> None:
        ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    def get_pending_task(self, execution_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    def resolve_task(self, task_id: str, status: TaskStatus, result: Dict[str, Any],
                     feedback: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    def set_task_external_id(self, task_id: str, external_id: str) -> None:
        ...

    @abstractmethod
    def list_tasks(self, execution_id: Optional[str] = None,
                   status: Optional[TaskStatus] = None) -> List[Task]:
        ...

    # Resume jobs

    @abstractmethod
    def enqueue_resume(self, execution_id: str, decision: Decision) -> ResumeJob:
        ...

    @abstractmethod
    def claim_next_resume_job(self) -> Optional[ResumeJob]:
        ...

    @abstractmethod
    def mark_resume_job(self, job_id: int, status: ResumeJobStatus,
                        last_error: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def get_resume_job(self, job_id: int) -> Optional[ResumeJob]:
        ...

    @abstractmethod
    def requeue_stale_resume_jobs(self, older_than: datetime) -> int:
        ...


class SQLDocumentStore(DocumentStore):
    """DocumentStore backed by SQLAlchemy."""

    def __init__(self, database_url: str, echo: bool = False, create_schema: bool = True):
        self.database_url = database_url
        self.engine = create_database_engine(database_url, echo=echo)
        self._session_factory = create_session_factory(self.engine)
        if create_schema:
            create_tables(self.engine)
        logger.info(f"SQLDocumentStore initialized for {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def _session(self, operation: str, table: Optional[str] = None) -> Iterator[Session]:
        """Open a session, commit on success and wrap storage errors."""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage operation {operation} failed: {str(e)}")
            raise PersistenceError(
                f"Failed to {operation.replace('_', ' ')}: {str(e)}",
                operation=operation,
                table=table
            ) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def close(self) -> None:
        """Dispose of the connection pool."""
        self.engine.dispose()

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        with self._session("ping") as db:
            db.execute(text("SELECT 1"))
        return True

    # Workflows

    def save_workflow(self, definition: WorkflowDefinition) -> str:
        workflow_id = definition.id or str(uuid.uuid4())
        payload = definition.model_dump(mode="json", by_alias=True, exclude_none=True)
        payload["id"] = workflow_id

        with self._session("save_workflow", "workflows") as db:
            existing = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if existing:
                existing.name = definition.name
                existing.description = definition.description
                existing.definition = payload
            else:
                db.add(WorkflowModel(
                    id=workflow_id,
                    name=definition.name,
                    description=definition.description,
                    definition=payload,
                ))

        logger.info(f"Saved workflow {workflow_id} ({definition.name})")
        return workflow_id

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._session("get_workflow", "workflows") as db:
            model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if not model:
                return None
            return WorkflowDefinition.model_validate(model.definition)

    def list_workflows(self) -> List[WorkflowSummary]:
        with self._session("list_workflows", "workflows") as db:
            models = db.query(WorkflowModel).order_by(WorkflowModel.created_at).all()
            return [
                WorkflowSummary(
                    id=model.id,
                    name=model.name,
                    description=model.description or "",
                    created_at=model.created_at,
                    node_count=len((model.definition or {}).get("nodes", [])),
                )
                for model in models
            ]

    # Executions

    def create_execution(self, execution_id: str, definition: WorkflowDefinition,
                         inputs: Dict[str, Any], state: Dict[str, Any]) -> None:
        with self._session("create_execution", "workflow_executions") as db:
            db.add(ExecutionModel(
                id=execution_id,
                workflow_id=definition.id,
                workflow_name=definition.name,
                definition=definition.model_dump(mode="json", by_alias=True, exclude_none=True),
                status=ExecutionStatusEnum.RUNNING.value,
                inputs=inputs,
                state=state,
                started_at=datetime.utcnow(),
            ))
        logger.debug(f"Created execution record {execution_id}")

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._session("get_execution", "workflow_executions") as db:
            model = db.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
            return self._to_execution_record(model) if model else None

    def checkpoint_execution(self, execution_id: str, state: Dict[str, Any]) -> None:
        with self._session("checkpoint_execution", "workflow_executions") as db:
            db.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status == ExecutionStatusEnum.RUNNING.value,
            ).update({ExecutionModel.state: state}, synchronize_session=False)

    def pause_execution(self, execution_id: str, pause_state: PauseState) -> bool:
        with self._session("pause_execution", "workflow_executions") as db:
            updated = db.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status == ExecutionStatusEnum.RUNNING.value,
            ).update({
                ExecutionModel.status: ExecutionStatusEnum.WAITING_HUMAN_REVIEW.value,
                ExecutionModel.pause_state: pause_state.model_dump(mode="json"),
                ExecutionModel.state: pause_state.state,
                ExecutionModel.paused_at: pause_state.paused_at,
            }, synchronize_session=False)
        return updated == 1

    def claim_resume(self, execution_id: str) -> bool:
        with self._session("claim_resume", "workflow_executions") as db:
            updated = db.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW.value,
            ).update({
                ExecutionModel.status: ExecutionStatusEnum.RUNNING.value,
            }, synchronize_session=False)
        return updated == 1

    def finalize_execution(self, execution_id: str, status: ExecutionStatusEnum, output: Any = None,
                           error: Optional[Dict[str, Any]] = None,
                           state: Optional[Dict[str, Any]] = None) -> bool:
        completed_at = datetime.utcnow()
        with self._session("finalize_execution", "workflow_executions") as db:
            model = db.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status == ExecutionStatusEnum.RUNNING.value,
            ).first()
            if not model:
                return False

            duration_ms = None
            if model.started_at:
                duration_ms = (completed_at - model.started_at).total_seconds() * 1000

            values = {
                ExecutionModel.status: status.value,
                ExecutionModel.output: output,
                ExecutionModel.error: error,
                ExecutionModel.completed_at: completed_at,
                ExecutionModel.duration_ms: duration_ms,
            }
            if state is not None:
                values[ExecutionModel.state] = state

            updated = db.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status == ExecutionStatusEnum.RUNNING.value,
            ).update(values, synchronize_session=False)
        return updated == 1

    def abort_execution(self, execution_id: str, reason: str) -> bool:
        with self._session("abort_execution", "workflow_executions") as db:
            updated = db.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status.in_([
                    ExecutionStatusEnum.RUNNING.value,
                    ExecutionStatusEnum.WAITING_HUMAN_REVIEW.value,
                ]),
            ).update({
                ExecutionModel.status: ExecutionStatusEnum.ABORTED.value,
                ExecutionModel.error: {"message": reason, "type": "Aborted"},
                ExecutionModel.completed_at: datetime.utcnow(),
            }, synchronize_session=False)
        return updated == 1

    def list_executions(self, status: Optional[ExecutionStatusEnum] = None,
                        limit: int = 100) -> List[ExecutionRecord]:
        with self._session("list_executions", "workflow_executions") as db:
            query = db.query(ExecutionModel)
            if status:
                query = query.filter(ExecutionModel.status == status.value)
            models = query.order_by(ExecutionModel.started_at.desc()).limit(limit).all()
            return [self._to_execution_record(model) for model in models]

    @staticmethod
    def _to_execution_record(model: ExecutionModel) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=model.id,
            workflow_id=model.workflow_id,
            workflow_name=model.workflow_name,
            definition=model.definition or {},
            status=ExecutionStatusEnum(model.status),
            inputs=model.inputs or {},
            state=model.state,
            pause_state=PauseState.model_validate(model.pause_state) if model.pause_state else None,
            output=model.output,
            error=model.error,
            started_at=model.started_at,
            paused_at=model.paused_at,
            completed_at=model.completed_at,
            duration_ms=model.duration_ms,
        )

    # Step log

    def append_step(self, entry: StepLogEntry) -> StepLogEntry:
        with self._session("append_step", "step_logs") as db:
            model = StepLogModel(
                execution_id=entry.execution_id,
                node_id=entry.node_id,
                node_type=entry.node_type,
                status=entry.status.value,
                attempt=entry.attempt,
                input=entry.input,
                output=entry.output,
                error=entry.error,
                started_at=entry.started_at,
                finished_at=entry.finished_at,
                duration_ms=entry.duration_ms,
            )
            db.add(model)
            db.flush()
            entry_id = model.id
        return entry.model_copy(update={"id": entry_id})

    def list_steps(self, execution_id: str) -> List[StepLogEntry]:
        with self._session("list_steps", "step_logs") as db:
            models = (
                db.query(StepLogModel)
                .filter(StepLogModel.execution_id == execution_id)
                .order_by(StepLogModel.id)
                .all()
            )
            return [
                StepLogEntry(
                    id=model.id,
                    execution_id=model.execution_id,
                    node_id=model.node_id,
                    node_type=model.node_type,
                    status=model.status,
                    attempt=model.attempt or 1,
                    input=model.input,
                    output=model.output,
                    error=model.error,
                    started_at=model.started_at,
                    finished_at=model.finished_at,
                    duration_ms=model.duration_ms,
                )
                for model in models
            ]

    # Tasks

    def create_task(self, task: Task) -> None:
        with self._session("create_task", "tasks") as db:
            db.add(TaskModel(
                id=task.id,
                execution_id=task.execution_id,
                node_id=task.node_id,
                status=task.status.value,
                title=task.title,
                description=task.description,
                actions=[action.model_dump() for action in task.actions],
                data=task.data,
                created_at=task.created_at,
            ))

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._session("get_task", "tasks") as db:
            model = db.query(TaskModel).filter(TaskModel.id == task_id).first()
            return self._to_task(model) if model else None

    def get_pending_task(self, execution_id: str) -> Optional[Task]:
        with self._session("get_pending_task", "tasks") as db:
            model = (
                db.query(TaskModel)
                .filter(TaskModel.execution_id == execution_id,
                        TaskModel.status == TaskStatus.PENDING.value)
                .order_by(TaskModel.created_at.desc())
                .first()
            )
            return self._to_task(model) if model else None

    def resolve_task(self, task_id: str, status: TaskStatus, result: Dict[str, Any],
                     feedback: Optional[str] = None) -> bool:
        with self._session("resolve_task", "tasks") as db:
            updated = db.query(TaskModel).filter(
                TaskModel.id == task_id,
                TaskModel.status == TaskStatus.PENDING.value,
            ).update({
                TaskModel.status: status.value,
                TaskModel.result: result,
                TaskModel.feedback: feedback,
                TaskModel.completed_at: datetime.utcnow(),
            }, synchronize_session=False)
        return updated == 1

    def set_task_external_id(self, task_id: str, external_id: str) -> None:
        with self._session("set_task_external_id", "tasks") as db:
            db.query(TaskModel).filter(TaskModel.id == task_id).update(
                {TaskModel.external_id: external_id}, synchronize_session=False
            )

    def list_tasks(self, execution_id: Optional[str] = None,
                   status: Optional[TaskStatus] = None) -> List[Task]:
        with self._session("list_tasks", "tasks") as db:
            query = db.query(TaskModel)
            if execution_id:
                query = query.filter(TaskModel.execution_id == execution_id)
            if status:
                query = query.filter(TaskModel.status == status.value)
            return [self._to_task(model) for model in query.order_by(TaskModel.created_at).all()]

    @staticmethod
    def _to_task(model: TaskModel) -> Task:
        return Task(
            id=model.id,
            execution_id=model.execution_id,
            node_id=model.node_id,
            status=TaskStatus(model.status),
            title=model.title or "",
            description=model.description or "",
            actions=[TaskAction.model_validate(action) for action in (model.actions or [])],
            data=model.data or {},
            result=model.result,
            feedback=model.feedback,
            external_id=model.external_id,
            created_at=model.created_at,
            completed_at=model.completed_at,
        )

    # Resume jobs

    def enqueue_resume(self, execution_id: str, decision: Decision) -> ResumeJob:
        with self._session("enqueue_resume", "resume_jobs") as db:
            now = datetime.utcnow()
            model = ResumeJobModel(
                execution_id=execution_id,
                action_id=decision.action_id,
                task_id=decision.task_id,
                feedback=decision.feedback,
                data=decision.data,
                status=ResumeJobStatus.PENDING.value,
                attempts=0,
                enqueued_at=now,
                updated_at=now,
            )
            db.add(model)
            db.flush()
            job = self._to_resume_job(model)
        logger.info(f"Enqueued resume job {job.id} for execution {execution_id}")
        return job

    def claim_next_resume_job(self) -> Optional[ResumeJob]:
        with self._session("claim_next_resume_job", "resume_jobs") as db:
            candidates = (
                db.query(ResumeJobModel)
                .filter(ResumeJobModel.status == ResumeJobStatus.PENDING.value)
                .order_by(ResumeJobModel.id)
                .limit(10)
                .all()
            )
            for candidate in candidates:
                updated = db.query(ResumeJobModel).filter(
                    ResumeJobModel.id == candidate.id,
                    ResumeJobModel.status == ResumeJobStatus.PENDING.value,
                ).update({
                    ResumeJobModel.status: ResumeJobStatus.PROCESSING.value,
                    ResumeJobModel.attempts: ResumeJobModel.attempts + 1,
                    ResumeJobModel.updated_at: datetime.utcnow(),
                }, synchronize_session=False)
                if updated == 1:
                    db.flush()
                    db.refresh(candidate)
                    return self._to_resume_job(candidate)
            return None

    def mark_resume_job(self, job_id: int, status: ResumeJobStatus,
                        last_error: Optional[str] = None) -> None:
        with self._session("mark_resume_job", "resume_jobs") as db:
            db.query(ResumeJobModel).filter(ResumeJobModel.id == job_id).update({
                ResumeJobModel.status: status.value,
                ResumeJobModel.last_error: last_error,
                ResumeJobModel.updated_at: datetime.utcnow(),
            }, synchronize_session=False)

    def get_resume_job(self, job_id: int) -> Optional[ResumeJob]:
        with self._session("get_resume_job", "resume_jobs") as db:
            model = db.query(ResumeJobModel).filter(ResumeJobModel.id == job_id).first()
            return self._to_resume_job(model) if model else None

    def requeue_stale_resume_jobs(self, older_than: datetime) -> int:
        with self._session("requeue_stale_resume_jobs", "resume_jobs") as db:
            updated = db.query(ResumeJobModel).filter(
                ResumeJobModel.status == ResumeJobStatus.PROCESSING.value,
                ResumeJobModel.updated_at <= older_than,
            ).update({
                ResumeJobModel.status: ResumeJobStatus.PENDING.value,
                ResumeJobModel.updated_at: datetime.utcnow(),
            }, synchronize_session=False)
        if updated:
            logger.warning(f"Requeued {updated} stale resume jobs")
        return updated

    @staticmethod
    def _to_resume_job(model: ResumeJobModel) -> ResumeJob:
        return ResumeJob(
            id=model.id,
            execution_id=model.execution_id,
            decision=Decision(
                action_id=model.action_id,
                feedback=model.feedback,
                data=model.data or {},
                task_id=model.task_id,
            ),
            status=ResumeJobStatus(model.status),
            attempts=model.attempts or 0,
            last_error=model.last_error,
            enqueued_at=model.enqueued_at,
            updated_at=model.updated_at,
        )
