"""FastAPI REST endpoints for the human-in-the-loop workflow engine."""

from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.engine import WorkflowEngine
from ..core.exceptions import (
    DefinitionError,
    WorkflowEngineError,
    create_error_response
)
from ..core.graph import load_definition, validate_definition
from ..core.middleware import status_code_for_error
from ..core.notifications import Notifier
from ..core.resume_queue import ResumeQueue
from ..models.core import (
    Decision,
    ExecutionRecord,
    ExecutionStatusEnum,
    StepLogEntry,
    Task,
    TaskStatus,
    WorkflowDefinition,
    WorkflowSummary,
)
from ..core.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_engine: Optional[WorkflowEngine] = None
_resume_queue: Optional[ResumeQueue] = None
_notifier: Optional[Notifier] = None


def init_dependencies(
    engine: WorkflowEngine,
    resume_queue: ResumeQueue,
    notifier: Optional[Notifier] = None
):
    """Initialize the global dependencies."""
    global _engine, _resume_queue, _notifier
    _engine = engine
    _resume_queue = resume_queue
    _notifier = notifier or engine.notifier


def get_engine() -> WorkflowEngine:
    """Dependency to get the workflow engine."""
    if _engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow engine not initialized"
        )
    return _engine


def get_resume_queue() -> ResumeQueue:
    """Dependency to get the resume queue."""
    if _resume_queue is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Resume queue not initialized"
        )
    return _resume_queue


def _raise_for_error(e: Exception, action: str):
    """Translate an error raised while handling a request into an HTTPException."""
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, WorkflowEngineError):
        logger.warning(f"Workflow engine error while {action}: {str(e)}")
        raise HTTPException(
            status_code=status_code_for_error(e),
            detail=create_error_response(e)
        )
    logger.error(f"Unexpected error while {action}: {str(e)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request/Response models
class CreateWorkflowRequest(BaseModel):
    """Request model for storing a workflow definition."""
    workflow: Dict[str, Any] = Field(..., description="Workflow definition with nodes and edges")


class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Unique identifier of the stored workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class StartExecutionRequest(BaseModel):
    """Request model for starting an execution."""
    workflow_id: Optional[str] = Field(None, description="ID of a stored workflow to run")
    workflow: Optional[Dict[str, Any]] = Field(None, description="Inline workflow definition to run")
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Initial execution context")
    execution_id: Optional[str] = Field(None, description="Caller-chosen execution ID")


class StartExecutionResponse(BaseModel):
    """Response model for a started execution."""
    execution_id: str = Field(..., description="Unique identifier for the execution")
    message: str = Field(..., description="Success message")
    status: str = Field(..., description="Initial execution status")


class DecisionRequest(BaseModel):
    """A reviewer's decision on a paused execution."""
    action_id: str = Field(..., alias="actionId", description="ID of the chosen task action")
    feedback: Optional[str] = Field(None, description="Free-text reviewer feedback")
    data: Dict[str, Any] = Field(default_factory=dict, description="Extra data merged into the decision")

    model_config = {"populate_by_name": True}

    def to_decision(self, task_id: Optional[str] = None) -> Decision:
        return Decision(action_id=self.action_id, feedback=self.feedback, data=self.data, task_id=task_id)


class ResumeResponse(BaseModel):
    """Response model for an accepted resume request."""
    execution_id: str = Field(..., description="Execution being resumed")
    message: str = Field(..., description="Outcome message")
    job_id: Optional[int] = Field(None, description="Resume queue job ID, when a job was enqueued")
    status: str = Field(..., description="Execution status when the request was handled")


class AbortRequest(BaseModel):
    """Request model for aborting an execution."""
    reason: str = Field("Aborted by user", description="Reason recorded on the execution")


def _enqueue_decision(execution_id: str, decision: Decision, engine: WorkflowEngine,
                      queue: ResumeQueue) -> JSONResponse:
    task = engine.coordinator.check_resumable(execution_id, decision)
    record = engine.store.get_execution(execution_id)
    current_status = record.status.value if record else "unknown"

    if task is None:
        response = ResumeResponse(
            execution_id=execution_id,
            message="Review already resolved; nothing to resume",
            status=current_status
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump())

    # Bind the job to this task so a redelivery cannot decide a later pause
    if decision.task_id is None:
        decision = decision.model_copy(update={"task_id": task.id})
    job = queue.enqueue(execution_id, decision)
    logger.info(f"Queued resume job {job.id} for execution {execution_id} ('{decision.action_id}')")
    response = ResumeResponse(
        execution_id=execution_id,
        message="Resume queued",
        job_id=job.id,
        status=current_status
    )
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=response.model_dump())


# Workflow endpoints

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a workflow definition",
    description="Validate a workflow definition and store it for later executions"
)
async def create_workflow(
    request: CreateWorkflowRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> CreateWorkflowResponse:
    """
    Store a workflow definition.

    Raises:
        HTTPException: 422 if the definition is malformed or structurally invalid
    """
    try:
        known_types = engine.executors.node_types()
        definition = load_definition(request.workflow, known_node_types=known_types)
        warnings = validate_definition(definition, known_types).warnings
        workflow_id = engine.store.save_workflow(definition)

        logger.info(f"Stored workflow '{definition.name}' with ID: {workflow_id}")
        return CreateWorkflowResponse(
            workflow_id=workflow_id,
            message=f"Workflow '{definition.name}' created successfully",
            validation_warnings=warnings
        )
    except Exception as e:
        _raise_for_error(e, "creating the workflow")


@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    summary="List stored workflows"
)
async def list_workflows(engine: WorkflowEngine = Depends(get_engine)) -> List[WorkflowSummary]:
    try:
        return engine.store.list_workflows()
    except Exception as e:
        _raise_for_error(e, "listing workflows")


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a stored workflow definition"
)
async def get_workflow(workflow_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowDefinition:
    try:
        definition = engine.store.get_workflow(workflow_id)
    except Exception as e:
        _raise_for_error(e, "retrieving the workflow")

    if definition is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "WorkflowNotFound",
                "message": f"Workflow with ID '{workflow_id}' not found",
                "details": {"workflow_id": workflow_id}
            }
        )
    return definition


# Execution endpoints

@router.post(
    "/executions",
    response_model=StartExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow execution",
    description="Start an execution of a stored or inline workflow; it runs in the background"
)
async def start_execution(
    request: StartExecutionRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> StartExecutionResponse:
    """
    Start a workflow execution.

    Exactly one of ``workflow_id`` and ``workflow`` must be given.

    Raises:
        HTTPException: 422 if the workflow is unknown or invalid
    """
    try:
        if (request.workflow_id is None) == (request.workflow is None):
            raise DefinitionError("Provide exactly one of 'workflow_id' and 'workflow'")

        workflow = request.workflow_id if request.workflow_id is not None else request.workflow
        run = engine.launch(workflow, request.inputs, request.execution_id)

        logger.info(f"Started execution {run.execution_id}")
        return StartExecutionResponse(
            execution_id=run.execution_id,
            message="Workflow execution started successfully",
            status=ExecutionStatusEnum.RUNNING.value
        )
    except Exception as e:
        _raise_for_error(e, "starting the execution")


@router.get(
    "/executions",
    response_model=List[ExecutionRecord],
    summary="List executions"
)
async def list_executions(
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of results"),
    engine: WorkflowEngine = Depends(get_engine)
) -> List[ExecutionRecord]:
    try:
        return engine.store.list_executions(status=status_filter, limit=limit)
    except Exception as e:
        _raise_for_error(e, "listing executions")


def _require_execution(engine: WorkflowEngine, execution_id: str) -> ExecutionRecord:
    record = engine.store.get_execution(execution_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "ExecutionNotFound",
                "message": f"Execution with ID '{execution_id}' not found",
                "details": {"execution_id": execution_id}
            }
        )
    return record


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionRecord,
    summary="Get execution status",
    description="Retrieve the persisted status, output and pause state of an execution"
)
async def get_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> ExecutionRecord:
    try:
        return _require_execution(engine, execution_id)
    except Exception as e:
        _raise_for_error(e, "retrieving the execution")


@router.get(
    "/executions/{execution_id}/steps",
    response_model=List[StepLogEntry],
    summary="Get the step log of an execution"
)
async def get_execution_steps(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> List[StepLogEntry]:
    try:
        _require_execution(engine, execution_id)
        return engine.step_log.entries(execution_id)
    except Exception as e:
        _raise_for_error(e, "retrieving the step log")


@router.post(
    "/executions/{execution_id}/abort",
    summary="Abort an execution",
    description="Stop a running execution before its next node, or cancel a paused one"
)
async def abort_execution(
    execution_id: str,
    request: Optional[AbortRequest] = None,
    engine: WorkflowEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        record = _require_execution(engine, execution_id)
        reason = request.reason if request else "Aborted by user"
        aborted = await engine.abort_execution(execution_id, reason)
    except Exception as e:
        _raise_for_error(e, "aborting the execution")

    if not aborted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "ExecutionNotAbortable",
                "message": f"Execution '{execution_id}' is already {record.status.value}",
                "details": {"execution_id": execution_id, "current_status": record.status.value}
            }
        )

    return {
        "execution_id": execution_id,
        "message": "Execution aborted",
        "status": ExecutionStatusEnum.ABORTED.value
    }


@router.post(
    "/executions/{execution_id}/resume",
    response_model=ResumeResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume a paused execution",
    description="Queue a reviewer decision for an execution waiting on human review"
)
async def resume_execution(
    execution_id: str,
    request: DecisionRequest,
    engine: WorkflowEngine = Depends(get_engine),
    queue: ResumeQueue = Depends(get_resume_queue)
):
    """
    Resume a paused execution.

    Returns 202 once the decision is queued, or 200 when the review was
    already resolved by an earlier request.

    Raises:
        HTTPException: 404 for an unknown execution, 409 if it is not
            waiting for review or the action is not offered
    """
    try:
        return _enqueue_decision(execution_id, request.to_decision(), engine, queue)
    except Exception as e:
        _raise_for_error(e, "resuming the execution")


# Task endpoints

@router.get(
    "/tasks",
    response_model=List[Task],
    summary="List review tasks"
)
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status", description="Filter by task status"),
    execution_id: Optional[str] = Query(None, description="Filter by execution ID"),
    engine: WorkflowEngine = Depends(get_engine)
) -> List[Task]:
    try:
        return engine.store.list_tasks(execution_id=execution_id, status=status_filter)
    except Exception as e:
        _raise_for_error(e, "listing tasks")


def _require_task(engine: WorkflowEngine, task_id: str) -> Task:
    task = engine.store.get_task(task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "TaskNotFound",
                "message": f"Task with ID '{task_id}' not found",
                "details": {"task_id": task_id}
            }
        )
    return task


@router.get(
    "/tasks/{task_id}",
    response_model=Task,
    summary="Get a review task"
)
async def get_task(task_id: str, engine: WorkflowEngine = Depends(get_engine)) -> Task:
    try:
        return _require_task(engine, task_id)
    except Exception as e:
        _raise_for_error(e, "retrieving the task")


@router.post(
    "/tasks/{task_id}/complete",
    response_model=ResumeResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Complete a review task",
    description="Record a reviewer decision on a task and queue the execution's resume"
)
async def complete_task(
    task_id: str,
    request: DecisionRequest,
    engine: WorkflowEngine = Depends(get_engine),
    queue: ResumeQueue = Depends(get_resume_queue)
):
    try:
        task = _require_task(engine, task_id)
        if task.status != TaskStatus.PENDING:
            # A later pause may be waiting on a newer task; this one is settled
            record = _require_execution(engine, task.execution_id)
            response = ResumeResponse(
                execution_id=task.execution_id,
                message=f"Task already {task.status.value}; nothing to resume",
                status=record.status.value
            )
            return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump())
        return _enqueue_decision(task.execution_id, request.to_decision(task_id=task.id), engine, queue)
    except Exception as e:
        _raise_for_error(e, "completing the task")


# WebSocket endpoint for execution events

@router.websocket("/ws/executions/{execution_id}")
async def execution_events(websocket: WebSocket, execution_id: str):
    """
    Stream the events of one execution.

    Server messages carry ``event_type``, ``execution_id``, ``timestamp`` and
    ``data``. A text message of ``ping`` is answered with ``pong``.
    """
    if _notifier is None:
        await websocket.close(code=1011, reason="Event streaming not available")
        return

    connection_id = None
    try:
        connection_id = await _notifier.connect(websocket)
        await _notifier.subscribe(connection_id, execution_id)
        logger.info(f"WebSocket client {connection_id} watching execution {execution_id}")

        while True:
            message = await websocket.receive_text()
            if message.strip().lower() == "ping":
                await websocket.send_text("pong")

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {str(e)}")
    finally:
        if connection_id:
            await _notifier.disconnect(connection_id)
