"""In-memory handles for runs owned by one engine instance."""

import asyncio
from typing import Dict, List, Optional

from ..models.core import ExecutionState
from .graph import WorkflowGraph


class RunContext:
    """Everything traversal needs for one run, passed explicitly to each call."""

    def __init__(self, graph: WorkflowGraph, state: ExecutionState):
        self.graph = graph
        self.state = state
        self.abort_requested = False
        self.abort_reason: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def execution_id(self) -> str:
        return self.state.execution_id

    def request_abort(self, reason: str) -> None:
        self.abort_requested = True
        self.abort_reason = reason

    def __repr__(self) -> str:
        return f"RunContext(execution_id={self.execution_id!r}, status={self.state.status.value!r})"


class RunRegistry:
    """Runs this process currently holds, addressed by execution id."""

    def __init__(self):
        self._runs: Dict[str, RunContext] = {}

    def register(self, run: RunContext) -> None:
        self._runs[run.execution_id] = run

    def get(self, execution_id: str) -> Optional[RunContext]:
        return self._runs.get(execution_id)

    def release(self, execution_id: str) -> Optional[RunContext]:
        return self._runs.pop(execution_id, None)

    def active_ids(self) -> List[str]:
        return list(self._runs)

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)
