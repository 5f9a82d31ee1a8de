"""Traversal engine for workflow executions."""

import asyncio
import traceback
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

from ..config import AppConfig, get_config
from ..models.core import (
    Decision,
    ExecutionRecord,
    ExecutionState,
    ExecutionStatusEnum,
    Failure,
    NodeDefinition,
    PendingReview,
    Success,
    TaskStatus,
    WorkflowDefinition,
)
from ..storage.store import DocumentStore
from .conditions import edges_that_fire
from .coordinator import PauseResumeCoordinator
from .exceptions import (
    DefinitionError,
    ExecutorError,
    LoopLimitError,
    PersistenceError,
)
from .executors import ExecutorRegistry, NodeResultType
from .graph import WorkflowGraph, load_definition
from .logging import clear_logging_context, get_logger, set_logging_context
from .notifications import (
    EXECUTION_ABORTED,
    EXECUTION_COMPLETED,
    EXECUTION_STARTED,
    NODE_COMPLETED,
    NODE_FAILED,
    Notifier,
)
from .retry import RetryPolicy, execute_with_retry
from .runs import RunContext, RunRegistry
from .step_log import StepLog
from .task_service import TaskService

logger = get_logger(__name__)


class TraversalOutcome(str, Enum):
    """How a traversal call ended."""
    COMPLETED = "completed"
    PAUSED = "paused"
    ABORTED = "aborted"


class FrontierEntry(NamedTuple):
    """A node ready to run, and whether it was reached through a back edge."""
    node_id: str
    via_back_edge: bool = False


def _dedupe(frontier: List[FrontierEntry]) -> List[FrontierEntry]:
    """Keep the first occurrence of each node; a back edge anywhere wins."""
    order: List[str] = []
    via_back: Dict[str, bool] = {}
    for entry in frontier:
        if entry.node_id not in via_back:
            order.append(entry.node_id)
            via_back[entry.node_id] = entry.via_back_edge
        else:
            via_back[entry.node_id] = via_back[entry.node_id] or entry.via_back_edge
    return [FrontierEntry(node_id, via_back[node_id]) for node_id in order]


def _error_payload(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, ExecutorError) and error.cause is not None:
        stack = error.stack
        error_type = type(error.cause).__name__
    else:
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        error_type = type(error).__name__
    return {"message": str(error), "type": error_type, "stack": stack}


class WorkflowEngine:
    """Runs workflow definitions, pausing at human review nodes.

    The engine owns a RunRegistry of the runs it is currently driving. Every
    traversal call receives its RunContext explicitly; nothing is shared
    between engines except the document store.
    """

    def __init__(
        self,
        store: DocumentStore,
        executors: Optional[ExecutorRegistry] = None,
        notifier: Optional[Notifier] = None,
        task_service: Optional[TaskService] = None,
        config: Optional[AppConfig] = None
    ):
        """Initialize the workflow engine.

        Args:
            store: Document store for definitions, executions, steps and tasks
            executors: Registry mapping node types to step executors
            notifier: Event publisher; a private one is created when omitted
            task_service: External task service called when a run pauses
            config: Engine settings; the global configuration when omitted
        """
        self.store = store
        self.executors = executors or ExecutorRegistry()
        self.notifier = notifier or Notifier()
        self.config = config or get_config()
        self.runs = RunRegistry()
        self.step_log = StepLog(store)
        self.coordinator = PauseResumeCoordinator(
            store,
            self.step_log,
            self.notifier,
            task_service=task_service,
            callback_base_url=self.config.callback_base_url,
        )
        logger.info("WorkflowEngine initialized")

    # Starting runs

    def prepare(
        self,
        workflow: Union[WorkflowDefinition, Dict[str, Any], str],
        inputs: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None
    ) -> RunContext:
        """
        Validate the definition and create the execution record.

        Args:
            workflow: Inline definition, its mapping form, or a stored workflow id
            inputs: Initial run context
            execution_id: Optional caller-chosen execution id

        Returns:
            RunContext: The registered run, not yet traversed

        Raises:
            DefinitionError: If the definition is unknown or invalid
            PersistenceError: If the execution record cannot be written
        """
        if isinstance(workflow, str):
            stored = self.store.get_workflow(workflow)
            if stored is None:
                raise DefinitionError(f"Workflow {workflow} not found", workflow_name=workflow)
            workflow = stored

        definition = load_definition(workflow, known_node_types=self.executors.node_types())
        execution_id = execution_id or str(uuid.uuid4())
        inputs = dict(inputs or {})

        state = ExecutionState(
            execution_id=execution_id,
            workflow_id=definition.id,
            context=dict(inputs),
        )
        self.store.create_execution(execution_id, definition, inputs, state.snapshot())

        run = RunContext(WorkflowGraph(definition), state)
        self.runs.register(run)
        logger.info(f"Prepared execution {execution_id} for workflow '{definition.name}'")
        return run

    async def start(
        self,
        workflow: Union[WorkflowDefinition, Dict[str, Any], str],
        inputs: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None
    ) -> ExecutionRecord:
        """Create a run and drive it until it completes, fails, pauses or aborts."""
        run = self.prepare(workflow, inputs, execution_id)
        return await self.run(run)

    def launch(
        self,
        workflow: Union[WorkflowDefinition, Dict[str, Any], str],
        inputs: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None
    ) -> RunContext:
        """Create a run and drive it in a background task on the running loop."""
        run = self.prepare(workflow, inputs, execution_id)
        run.task = asyncio.create_task(self.run(run), name=f"execution-{run.execution_id}")
        run.task.add_done_callback(self._log_background_failure)
        return run

    @staticmethod
    def _log_background_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background execution {task.get_name()} ended with an error: {str(error)}",
                         exc_info=error)

    async def run(self, run: RunContext) -> ExecutionRecord:
        """Traverse a prepared run from its start nodes."""
        await self.notifier.publish(run.execution_id, EXECUTION_STARTED, {
            "workflow_id": run.state.workflow_id,
            "workflow_name": run.graph.definition.name,
        })
        frontier = [FrontierEntry(node.id) for node in run.graph.start_nodes]
        return await self._drive(run, frontier)

    async def _drive(self, run: RunContext, frontier: List[FrontierEntry]) -> ExecutionRecord:
        """Traverse and settle the run's final state for this leg."""
        execution_id = run.execution_id
        set_logging_context(execution_id=execution_id)
        try:
            outcome = await self.traverse(run, frontier)
        except PersistenceError as e:
            # Leave the record in its last persisted state
            logger.error(f"Execution {execution_id} stopped on a storage failure: {str(e)}")
            self.runs.release(execution_id)
            raise
        except (ExecutorError, LoopLimitError) as e:
            logger.error(f"Execution {execution_id} failed: {str(e)}")
            self.complete_execution_sync(execution_id, ExecutionStatusEnum.FAILED, error=e)
            await self._publish_completed(execution_id)
            return self._require_record(execution_id)
        except Exception as e:
            logger.error(f"Unexpected error in execution {execution_id}: {str(e)}", exc_info=True)
            self.complete_execution_sync(execution_id, ExecutionStatusEnum.FAILED, error=e)
            await self._publish_completed(execution_id)
            return self._require_record(execution_id)
        finally:
            clear_logging_context()

        if outcome == TraversalOutcome.COMPLETED:
            await self.complete_execution(execution_id, ExecutionStatusEnum.COMPLETED)
        elif outcome == TraversalOutcome.ABORTED:
            self.runs.release(execution_id)
            logger.info(f"Execution {execution_id} stopped after abort")
        else:
            logger.info(f"Execution {execution_id} is waiting for human review")

        return self._require_record(execution_id)

    def _require_record(self, execution_id: str) -> ExecutionRecord:
        record = self.store.get_execution(execution_id)
        if record is None:
            raise PersistenceError(f"Execution {execution_id} disappeared from the store",
                                   operation="get_execution", table="workflow_executions")
        return record

    # Traversal

    async def traverse(self, run: RunContext, frontier: List[FrontierEntry]) -> TraversalOutcome:
        """
        Depth-first walk from ``frontier``.

        Siblings run sequentially and each node's successors are explored
        fully before the next sibling starts. A human review node halts the
        whole walk.

        Args:
            run: The run being traversed
            frontier: Nodes ready to run, in order

        Returns:
            TraversalOutcome: COMPLETED, PAUSED or ABORTED

        Raises:
            ExecutorError: If a node's executor keeps raising past its retries
            LoopLimitError: If a node is entered more than max_node_visits times
            PersistenceError: If a store write fails
        """
        state = run.state

        for entry in _dedupe(frontier):
            if run.abort_requested:
                return TraversalOutcome.ABORTED

            node = run.graph.node(entry.node_id)

            # A back edge into a finished loop header starts a new iteration of the loop
            if entry.via_back_edge and state.is_completed(node.id):
                body = run.graph.loop_body(node.id)
                logger.debug(f"Looping back to node {node.id}; running {sorted(body)} again")
                for body_node in body:
                    state.clear_completed(body_node)

            if state.is_completed(node.id):
                continue

            visits = state.visit_counts.get(node.id, 0) + 1
            state.visit_counts[node.id] = visits
            if visits > self.config.max_node_visits:
                raise LoopLimitError(
                    f"Node '{node.id}' entered {visits} times; limit is {self.config.max_node_visits}",
                    node_id=node.id,
                    limit=self.config.max_node_visits
                )

            result, started_at, attempts = await self._execute_node(run, node)

            if isinstance(result, PendingReview):
                if run.abort_requested:
                    return TraversalOutcome.ABORTED
                await self.coordinator.pause(run, node, result, started_at)
                return TraversalOutcome.PAUSED

            self._record_result(run, node, result, started_at, attempts)
            await self.notifier.publish(run.execution_id, NODE_COMPLETED, {
                "node_id": node.id,
                "node_type": node.type,
                "kind": result.kind,
                "output": result.output if isinstance(result, Success) else None,
                "error": result.error if isinstance(result, Failure) else None,
            })
            self.store.checkpoint_execution(run.execution_id, state.snapshot())

            next_entries = [
                FrontierEntry(edge.target, run.graph.is_back_edge(edge))
                for edge in edges_that_fire(run.graph.outgoing(node.id), result)
            ]
            outcome = await self.traverse(run, next_entries)
            if outcome != TraversalOutcome.COMPLETED:
                return outcome

        return TraversalOutcome.COMPLETED

    async def _execute_node(self, run: RunContext, node: NodeDefinition) -> Tuple[NodeResultType, datetime, int]:
        """Run one node through its retry policy.

        Returns:
            The node result, when its step started, and the attempts used
        """
        execution_id = run.execution_id
        set_logging_context(execution_id=execution_id, node_id=node.id)
        started = self.step_log.started(execution_id, node, run.state.context)

        async def record_failure(attempt: int, error: BaseException) -> None:
            message = f"{type(error).__name__}: {str(error)}"
            self.step_log.failed(execution_id, node, message, started.started_at, attempt=attempt)
            await self.notifier.publish(execution_id, NODE_FAILED, {
                "node_id": node.id,
                "attempt": attempt,
                "error": message,
            })

        policy = self._retry_policy(node)
        outcome = await execute_with_retry(
            self._invoke_executor, policy, node, dict(run.state.context),
            operation=f"node {node.id}",
            on_failure=record_failure
        )

        if not outcome.ok:
            raise ExecutorError(
                f"Node '{node.id}' failed after {outcome.attempts} attempt(s): {str(outcome.error)}",
                node_id=node.id,
                execution_id=execution_id,
                attempts=outcome.attempts,
                cause=outcome.error
            )

        result = outcome.result
        if not isinstance(result, (Success, Failure, PendingReview)):
            result = Success(output=result)
        run.state.node_results[node.id] = result
        return result, started.started_at, outcome.attempts

    async def _invoke_executor(self, node: NodeDefinition, context: Dict[str, Any]):
        executor = self.executors.get(node.type)
        timeout = node.config.get("timeout")
        if timeout:
            return await asyncio.wait_for(executor.execute(node, context), timeout=float(timeout))
        return await executor.execute(node, context)

    def _retry_policy(self, node: NodeDefinition) -> RetryPolicy:
        retry_enabled = node.config.get("retry_on_failure", node.config.get("retryOnFailure", True))
        max_retries = node.max_retries
        if max_retries is None:
            max_retries = self.config.default_max_retries
        if not retry_enabled:
            max_retries = 0
        retry_delay = node.retry_delay
        if retry_delay is None:
            retry_delay = self.config.default_retry_delay
        return RetryPolicy(max_retries=max_retries, retry_delay=retry_delay)

    def _record_result(self, run: RunContext, node: NodeDefinition, result: Union[Success, Failure],
                       started_at: datetime, attempts: int) -> None:
        state = run.state
        state.merge_result(node.id, result)
        state.mark_completed(node.id)
        if node.is_terminal and isinstance(result, Success) and result.output is not None:
            state.final_output = result.output

        if isinstance(result, Failure):
            self.step_log.completed(run.execution_id, node, None, started_at,
                                    attempt=attempts, error=result.error)
        else:
            self.step_log.completed(run.execution_id, node, result.output, started_at,
                                    attempt=attempts)

    # Resume

    async def resume(self, execution_id: str, decision: Union[Decision, Dict[str, Any]]) -> ExecutionRecord:
        """
        Continue a paused execution with a human decision.

        The paused node is not executed again: the decision becomes its result
        and traversal continues from the edges that decision fires. Resuming an
        execution whose pause was already resolved is a no-op.

        Args:
            execution_id: Execution to resume
            decision: The reviewer's decision

        Returns:
            ExecutionRecord: The execution after this leg of traversal

        Raises:
            ResumeError: If the execution is unknown, never paused, or the
                action is not offered by its task
        """
        if not isinstance(decision, Decision):
            decision = Decision.model_validate(decision)

        claimed = self.coordinator.claim(execution_id, decision, self.runs)
        if claimed is None:
            return self._require_record(execution_id)

        run, task = claimed
        set_logging_context(execution_id=execution_id, node_id=task.node_id)
        try:
            node = run.graph.node(task.node_id)
            result = await self.coordinator.apply_decision(run, node, decision, task)
            self.store.checkpoint_execution(execution_id, run.state.snapshot())
        finally:
            clear_logging_context()

        logger.info(f"Resuming execution {execution_id} after '{decision.action_id}' on node {node.id}")
        next_entries = [
            FrontierEntry(edge.target, run.graph.is_back_edge(edge))
            for edge in edges_that_fire(run.graph.outgoing(node.id), result)
        ]
        return await self._drive(run, next_entries)

    # Completion and abort

    def complete_execution_sync(
        self,
        execution_id: str,
        status: ExecutionStatusEnum,
        result: Any = None,
        error: Optional[BaseException] = None
    ) -> bool:
        """Finalize the execution record; see ``complete_execution``."""
        record = self.store.get_execution(execution_id)
        if record is None:
            logger.warning(f"Cannot complete unknown execution {execution_id}")
            return False
        if record.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW:
            logger.info(f"Execution {execution_id} is waiting for human review; not completing")
            return False

        run = self.runs.get(execution_id)
        output = result
        if output is None and run is not None:
            output = run.state.final_output if run.state.final_output is not None else dict(run.state.context)

        error_payload = _error_payload(error) if error is not None else None
        state_snapshot = None
        if run is not None:
            run.state.status = status
            run.state.error = error_payload
            state_snapshot = run.state.snapshot()

        finalized = self.store.finalize_execution(
            execution_id, status, output=output, error=error_payload, state=state_snapshot
        )
        self.runs.release(execution_id)

        if finalized:
            logger.info(f"Execution {execution_id} finished with status {status.value}")
        return finalized

    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatusEnum,
        result: Any = None,
        error: Optional[BaseException] = None
    ) -> bool:
        """
        Set a terminal status on the execution.

        A no-op returning False while the execution waits for human review.
        Output defaults to the terminal node's output, then to the context.

        Returns:
            True if this call finalized the execution
        """
        finalized = self.complete_execution_sync(execution_id, status, result=result, error=error)
        if finalized:
            await self._publish_completed(execution_id)
        return finalized

    async def _publish_completed(self, execution_id: str) -> None:
        record = self.store.get_execution(execution_id)
        if record is None:
            return
        await self.notifier.publish(execution_id, EXECUTION_COMPLETED, {
            "status": record.status.value,
            "output": record.output,
            "error": record.error,
            "duration_ms": record.duration_ms,
        })

    async def abort_execution(self, execution_id: str, reason: str = "Aborted by user") -> bool:
        """
        Stop an execution.

        A running execution stops before its next node; an in-flight executor
        call is not interrupted. A paused execution is never resumed afterwards.

        Returns:
            True if the execution was running or paused and is now aborted
        """
        run = self.runs.get(execution_id)
        if run is not None:
            run.request_abort(reason)

        aborted = self.store.abort_execution(execution_id, reason)
        if not aborted:
            logger.info(f"Execution {execution_id} was not running or paused; nothing to abort")
            return False

        pending = self.store.get_pending_task(execution_id)
        if pending is not None:
            self.store.resolve_task(pending.id, TaskStatus.REJECTED,
                                    result={"aborted": True, "reason": reason})

        if run is not None and run.state.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW:
            self.runs.release(execution_id)
        if run is not None:
            run.state.status = ExecutionStatusEnum.ABORTED

        logger.info(f"Execution {execution_id} aborted: {reason}")
        await self.notifier.publish(execution_id, EXECUTION_ABORTED, {"reason": reason})
        return True

    async def shutdown(self) -> None:
        """Cancel background runs this engine launched."""
        for execution_id in self.runs.active_ids():
            run = self.runs.get(execution_id)
            if run is not None and run.task is not None and not run.task.done():
                run.task.cancel()
        logger.info("WorkflowEngine shut down")
