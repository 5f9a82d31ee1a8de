"""Append-only audit trail of node execution attempts."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import NodeDefinition, StepLogEntry, StepStatus
from ..storage.store import DocumentStore
from .graph import WorkflowGraph
from .logging import get_logger

logger = get_logger(__name__)


def rebuild_completed_nodes(entries: Iterable[StepLogEntry],
                            graph: Optional[WorkflowGraph] = None) -> List[str]:
    """
    Recompute the completed node list by replaying step entries in order.

    A ``completed`` entry marks its node completed. A later ``started`` entry
    for a completed node can only come from a back edge, so it clears the
    node again, together with the rest of its loop body when ``graph`` is given.
    """
    completed: List[str] = []
    for entry in entries:
        if entry.status == StepStatus.COMPLETED:
            if entry.node_id in completed:
                completed.remove(entry.node_id)
            completed.append(entry.node_id)
        elif entry.status == StepStatus.STARTED and entry.node_id in completed:
            body = graph.loop_body(entry.node_id) if graph is not None else {entry.node_id}
            completed = [node_id for node_id in completed if node_id not in body]
    return completed


class StepLog:
    """Writes step entries for one store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def started(self, execution_id: str, node: NodeDefinition, context: Dict[str, Any]) -> StepLogEntry:
        return self.store.append_step(StepLogEntry(
            execution_id=execution_id,
            node_id=node.id,
            node_type=node.type,
            status=StepStatus.STARTED,
            input=dict(context),
        ))

    def completed(self, execution_id: str, node: NodeDefinition, output: Any,
                  started_at: datetime, attempt: int = 1, error: Optional[str] = None) -> StepLogEntry:
        # A reported Failure still completes the node; its message rides along
        return self._finish(execution_id, node, StepStatus.COMPLETED, started_at,
                            attempt=attempt, output=output, error=error)

    def failed(self, execution_id: str, node: NodeDefinition, error: str,
               started_at: datetime, attempt: int = 1) -> StepLogEntry:
        return self._finish(execution_id, node, StepStatus.FAILED, started_at,
                            attempt=attempt, error=error)

    def waiting(self, execution_id: str, node: NodeDefinition, payload: Dict[str, Any],
                started_at: datetime) -> StepLogEntry:
        return self._finish(execution_id, node, StepStatus.WAITING_HUMAN_REVIEW, started_at,
                            output=payload)

    def _finish(self, execution_id: str, node: NodeDefinition, status: StepStatus,
                started_at: datetime, attempt: int = 1, output: Any = None,
                error: Optional[str] = None) -> StepLogEntry:
        finished_at = datetime.utcnow()
        entry = self.store.append_step(StepLogEntry(
            execution_id=execution_id,
            node_id=node.id,
            node_type=node.type,
            status=status,
            attempt=attempt,
            output=output,
            error=error,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=(finished_at - started_at).total_seconds() * 1000,
        ))
        logger.debug(f"Step {node.id} {status.value} (attempt {attempt})")
        return entry

    def entries(self, execution_id: str) -> List[StepLogEntry]:
        return self.store.list_steps(execution_id)

    def completed_nodes(self, execution_id: str, graph: Optional[WorkflowGraph] = None) -> List[str]:
        return rebuild_completed_nodes(self.entries(execution_id), graph)
