"""Pause and resume protocol for human review nodes."""

import uuid
from datetime import datetime
from typing import Optional, Tuple

from ..models.core import (
    Decision,
    ExecutionState,
    ExecutionStatusEnum,
    NodeDefinition,
    PauseState,
    PendingReview,
    Success,
    Task,
    TaskStatus,
    WorkflowDefinition,
)
from ..storage.store import DocumentStore
from .exceptions import PersistenceError, ResumeError
from .executors import parse_actions, render_template
from .graph import WorkflowGraph
from .logging import get_logger
from .notifications import Notifier, WORKFLOW_PAUSED, WORKFLOW_RESUMED
from .runs import RunContext, RunRegistry
from .step_log import StepLog
from .task_service import NullTaskService, TaskRequest, TaskService

logger = get_logger(__name__)

REJECT_ACTION = "reject"


class PauseResumeCoordinator:
    """Suspends runs at human review nodes and brings them back."""

    def __init__(
        self,
        store: DocumentStore,
        step_log: StepLog,
        notifier: Notifier,
        task_service: Optional[TaskService] = None,
        callback_base_url: Optional[str] = None
    ):
        self.store = store
        self.step_log = step_log
        self.notifier = notifier
        self.task_service = task_service or NullTaskService()
        self.callback_base_url = callback_base_url.rstrip("/") if callback_base_url else None

    async def pause(self, run: RunContext, node: NodeDefinition, result: PendingReview,
                    started_at: datetime) -> Task:
        """
        Suspend the run at ``node``.

        Creates the pending task, records the waiting step, then persists the
        pause snapshot with a single conditional write. The task service and
        the pause notification come last; a task service failure is logged
        and the run stays paused.

        Args:
            run: The run being suspended
            node: The human review node
            result: What the node asked the reviewer for
            started_at: When the node's step started

        Returns:
            Task: The pending review task

        Raises:
            PersistenceError: If the snapshot write loses its compare-and-set
        """
        state = run.state
        actions = result.actions or parse_actions(node.config.get("actions"))
        title = render_template(result.title or node.config.get("title") or f"Review: {node.id}", state.context)
        description = render_template(
            result.instructions or node.config.get("instructions") or "Human review required",
            state.context
        )

        task = Task(
            id=str(uuid.uuid4()),
            execution_id=run.execution_id,
            node_id=node.id,
            title=title,
            description=description,
            actions=actions,
            data=result.task_payload,
        )
        self.store.create_task(task)

        self.step_log.waiting(run.execution_id, node, {
            "task_id": task.id,
            "title": task.title,
            "actions": [action.id for action in task.actions],
        }, started_at)

        state.node_results[node.id] = result
        state.status = ExecutionStatusEnum.WAITING_HUMAN_REVIEW
        pause_state = PauseState(
            node_id=node.id,
            context=dict(state.context),
            state=state.snapshot(),
            task_id=task.id,
        )
        state.pause_state = pause_state

        if not self.store.pause_execution(run.execution_id, pause_state):
            raise PersistenceError(
                f"Could not persist pause for execution {run.execution_id}: "
                "execution is no longer running",
                operation="pause_execution",
                table="workflow_executions"
            )

        logger.info(f"Execution {run.execution_id} paused at node {node.id} (task {task.id})")

        await self._create_external_task(task)

        await self.notifier.publish(run.execution_id, WORKFLOW_PAUSED, {
            "node_id": node.id,
            "task_id": task.id,
            "title": task.title,
            "actions": [action.model_dump() for action in task.actions],
        })
        return task

    async def _create_external_task(self, task: Task) -> None:
        callback_url = None
        if self.callback_base_url:
            callback_url = f"{self.callback_base_url}/api/v1/tasks/{task.id}/complete"
        request = TaskRequest(
            execution_id=task.execution_id,
            node_id=task.node_id,
            task_id=task.id,
            title=task.title,
            description=task.description,
            actions=[action.model_dump() for action in task.actions],
            callback_url=callback_url,
        )
        try:
            external_id = await self.task_service.create_task(request)
        except Exception as e:
            logger.error(f"Task service failed for task {task.id}; run stays paused: {str(e)}")
            return
        if external_id:
            self.store.set_task_external_id(task.id, external_id)

    def check_resumable(self, execution_id: str, decision: Decision) -> Optional[Task]:
        """
        Validate a resume request without claiming it.

        A decision bound to a task (``decision.task_id``) only ever resolves
        that task. Once the task is settled, redelivering the decision is a
        no-op even if the execution has since paused on a newer task.

        Returns:
            The pending task the decision resolves, or None when the pause
            was already resolved and the request is a no-op

        Raises:
            ResumeError: If the execution is unknown, never paused, the bound
                task belongs elsewhere, or the action is not one the task offers
        """
        record = self.store.get_execution(execution_id)
        if record is None:
            raise ResumeError(f"Execution {execution_id} not found", execution_id=execution_id, not_found=True)

        if decision.task_id is not None:
            bound = self.store.get_task(decision.task_id)
            if bound is None or bound.execution_id != execution_id:
                raise ResumeError(
                    f"Task {decision.task_id} does not belong to execution {execution_id}",
                    execution_id=execution_id,
                    current_status=record.status.value,
                    not_found=bound is None
                )
            if bound.status != TaskStatus.PENDING:
                logger.info(f"Task {bound.id} already {bound.status.value}; "
                            f"decision for execution {execution_id} ignored")
                return None

        if record.status != ExecutionStatusEnum.WAITING_HUMAN_REVIEW:
            decided = [t for t in self.store.list_tasks(execution_id=execution_id) if t.status != TaskStatus.PENDING]
            if decided:
                logger.info(f"Resume for execution {execution_id} already handled; status is {record.status.value}")
                return None
            raise ResumeError(
                f"Execution {execution_id} is not waiting for human review",
                execution_id=execution_id,
                current_status=record.status.value
            )

        task = self.store.get_pending_task(execution_id)
        if task is None or record.pause_state is None:
            raise ResumeError(
                f"Execution {execution_id} has no pending review task",
                execution_id=execution_id,
                current_status=record.status.value
            )
        if decision.task_id is not None and decision.task_id != task.id:
            logger.info(f"Decision for task {decision.task_id} does not match pending task {task.id}; ignored")
            return None

        if not task.has_action(decision.action_id):
            raise ResumeError(
                f"Action '{decision.action_id}' is not valid for task {task.id}; "
                f"expected one of {[a.id for a in task.actions]}",
                execution_id=execution_id,
                current_status=record.status.value
            )
        return task

    def claim(self, execution_id: str, decision: Decision,
              runs: RunRegistry) -> Optional[Tuple[RunContext, Task]]:
        """
        Claim a paused execution for resumption.

        Returns:
            The run and the resolved task, or None when another caller already
            resumed the execution

        Raises:
            ResumeError: See ``check_resumable``
        """
        task = self.check_resumable(execution_id, decision)
        if task is None:
            return None

        if not self.store.claim_resume(execution_id):
            logger.info(f"Lost resume claim for execution {execution_id}; another worker has it")
            return None

        run = runs.get(execution_id)
        if run is None:
            run = self._rebuild_run(execution_id)
            runs.register(run)
        else:
            logger.debug(f"Resuming execution {execution_id} from in-memory state")

        run.state.status = ExecutionStatusEnum.RUNNING
        run.state.pause_state = None

        status = TaskStatus.REJECTED if decision.action_id == REJECT_ACTION else TaskStatus.COMPLETED
        resolved = self.store.resolve_task(
            task.id, status,
            result={"action_id": decision.action_id, "data": decision.data},
            feedback=decision.feedback
        )
        if not resolved:
            logger.warning(f"Task {task.id} was already resolved when execution {execution_id} resumed")

        return run, task

    def _rebuild_run(self, execution_id: str) -> RunContext:
        """Reconstruct a run from its pause snapshot and step log after a restart."""
        record = self.store.get_execution(execution_id)
        if record is None or record.pause_state is None:
            raise ResumeError(f"Execution {execution_id} has no pause snapshot", execution_id=execution_id)

        graph = WorkflowGraph(WorkflowDefinition.model_validate(record.definition))
        state = ExecutionState.model_validate(record.pause_state.state)
        state.completed_nodes = self.step_log.completed_nodes(execution_id, graph)

        logger.info(f"Rebuilt execution {execution_id} from snapshot "
                    f"({len(state.completed_nodes)} completed nodes)")
        return RunContext(graph, state)

    async def apply_decision(self, run: RunContext, node: NodeDefinition, decision: Decision,
                             task: Task) -> Success:
        """Record the decision as the paused node's own result."""
        state = run.state
        result = decision.as_result()
        state.node_results[node.id] = result
        state.merge_result(node.id, result)
        state.mark_completed(node.id)

        paused_at = task.created_at or datetime.utcnow()
        self.step_log.completed(run.execution_id, node, {
            "action_id": decision.action_id,
            "feedback": decision.feedback,
        }, paused_at)

        await self.notifier.publish(run.execution_id, WORKFLOW_RESUMED, {
            "node_id": node.id,
            "task_id": task.id,
            "action_id": decision.action_id,
        })
        return result
