"""Core Pydantic models for the workflow engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Annotated


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    RUNNING = "running"
    WAITING_HUMAN_REVIEW = "waiting_human_review"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatusEnum.COMPLETED,
            ExecutionStatusEnum.FAILED,
            ExecutionStatusEnum.ABORTED,
        )


class StepStatus(str, Enum):
    """Status of a single StepLog entry."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_HUMAN_REVIEW = "waiting_human_review"


class TaskStatus(str, Enum):
    """Lifecycle of a human review task."""
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ResumeJobStatus(str, Enum):
    """Lifecycle of a queued resume job."""
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class ConditionKind(str, Enum):
    """Kinds of structured edge conditions."""
    SUCCESS = "success"
    FAILURE = "failure"
    OUTPUT_EQUALS = "output_equals"
    OUTPUT_CONTAINS = "output_contains"
    PATH = "path"


HUMAN_REVIEW_NODE_TYPES = ("human_review", "humanReview", "hitl", "human-in-the-loop")
TERMINAL_NODE_TYPES = ("end", "output")


class ValidationResult(BaseModel):
    """Result of workflow definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Node type, used to select the step executor")
    config: Dict[str, Any] = Field(default_factory=dict, description="Executor configuration")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID is a non-empty identifier."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not re.match(r'^[a-zA-Z0-9_.:-]+$', id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, '_', '-', '.' and ':'")
        return id_value.strip()

    @field_validator('type')
    @classmethod
    def validate_type(cls, node_type):
        if not node_type or not node_type.strip():
            raise ValueError("Node type cannot be empty")
        return node_type.strip()

    @property
    def is_human_review(self) -> bool:
        return self.type in HUMAN_REVIEW_NODE_TYPES

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_NODE_TYPES

    @property
    def max_retries(self) -> Optional[int]:
        value = self.config.get("max_retries", self.config.get("maxRetries"))
        return int(value) if value is not None else None

    @property
    def retry_delay(self) -> Optional[float]:
        value = self.config.get("retry_delay", self.config.get("retryDelay"))
        return float(value) if value is not None else None

    @property
    def label(self) -> str:
        return self.config.get("title") or self.config.get("label") or self.id


class EdgeCondition(BaseModel):
    """Structured predicate over the source node's result."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: str = Field(..., alias="type", description="Condition kind")
    value: Any = Field(None, description="Comparison value")


class EdgeDefinition(BaseModel):
    """Directed transition between two nodes."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, description="Edge identifier, matched by 'path' conditions")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    condition: Optional[Union[str, EdgeCondition]] = Field(None, description="Condition for edge traversal")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('condition', mode='before')
    @classmethod
    def normalize_condition(cls, condition):
        """Treat empty strings and empty objects as 'no condition'."""
        if condition == "" or condition == {}:
            return None
        return condition


class WorkflowDefinition(BaseModel):
    """Complete definition of a workflow graph."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, description="Workflow ID, when stored")
    name: str = Field("workflow", description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    nodes: List[NodeDefinition] = Field(..., description="Nodes in declaration order")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges in declaration order")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]


# Node results


class Success(BaseModel):
    """A node that ran and produced output."""
    kind: Literal["success"] = "success"
    output: Any = None
    decision: Optional[str] = None
    selected_action: Optional[str] = None
    next_path: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Failure(BaseModel):
    """A node that ran and reported failure without raising."""
    kind: Literal["failure"] = "failure"
    error: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskAction(BaseModel):
    """An action a reviewer can take on a task.

    ``loop_back_node_id`` is display data for the task service (which step a
    reject sends the work back to). Routing always follows the graph's edges.
    """
    id: str
    label: str
    loop_back_node_id: Optional[str] = Field(None, description="Node the action loops back to, for display only")


DEFAULT_REVIEW_ACTIONS = [
    TaskAction(id="approve", label="Approve"),
    TaskAction(id="reject", label="Reject"),
]


class PendingReview(BaseModel):
    """A node that cannot complete until a human decides."""
    kind: Literal["pending_review"] = "pending_review"
    title: Optional[str] = None
    instructions: Optional[str] = None
    actions: List[TaskAction] = Field(default_factory=list)
    task_payload: Dict[str, Any] = Field(default_factory=dict)


NodeResult = Annotated[Union[Success, Failure, PendingReview], Field(discriminator="kind")]


class Decision(BaseModel):
    """A human decision delivered for a paused node."""
    model_config = ConfigDict(populate_by_name=True)

    action_id: str = Field(..., alias="actionId", description="Chosen action id")
    feedback: Optional[str] = Field(None, description="Reviewer feedback")
    data: Dict[str, Any] = Field(default_factory=dict, description="Extra reviewer data")
    task_id: Optional[str] = Field(None, alias="taskId", description="Task this decision resolves, when bound")

    @field_validator('action_id')
    @classmethod
    def validate_action_id(cls, action_id):
        if not action_id or not action_id.strip():
            raise ValueError("Action id cannot be empty")
        return action_id.strip()

    def as_result(self) -> Success:
        """Express the decision as the paused node's own result."""
        metadata: Dict[str, Any] = {"feedback": self.feedback}
        if self.data:
            metadata["data"] = self.data
        return Success(
            output=self.action_id,
            decision=self.action_id,
            selected_action=self.action_id,
            metadata=metadata,
        )


# Execution state


class PauseState(BaseModel):
    """Durable snapshot taken when a run suspends for human review."""
    node_id: str
    reason: str = "human_review_required"
    context: Dict[str, Any] = Field(default_factory=dict)
    state: Dict[str, Any] = Field(default_factory=dict, description="Full ExecutionState dump")
    task_id: Optional[str] = None
    paused_at: datetime = Field(default_factory=datetime.utcnow)


class ExecutionState(BaseModel):
    """Mutable per-run record, owned by the traversal engine while running."""
    execution_id: str
    workflow_id: Optional[str] = None
    status: ExecutionStatusEnum = ExecutionStatusEnum.RUNNING
    completed_nodes: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    node_results: Dict[str, NodeResult] = Field(default_factory=dict)
    visit_counts: Dict[str, int] = Field(default_factory=dict)
    final_output: Any = None
    pause_state: Optional[PauseState] = None
    error: Optional[Dict[str, Any]] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)

    def is_completed(self, node_id: str) -> bool:
        return node_id in self.completed_nodes

    def mark_completed(self, node_id: str) -> None:
        if node_id not in self.completed_nodes:
            self.completed_nodes.append(node_id)

    def clear_completed(self, node_id: str) -> None:
        if node_id in self.completed_nodes:
            self.completed_nodes.remove(node_id)

    def merge_result(self, node_id: str, result: Union[Success, Failure]) -> None:
        """Thread a node's result into the accumulated context."""
        if isinstance(result, Failure):
            self.context[f"{node_id}.error"] = result.error
            return
        output = result.output
        if isinstance(output, dict):
            self.context.update(output)
        elif output is not None:
            self.context[node_id] = output
            self.context[f"{node_id}.output"] = output

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe dump of everything needed to resume, minus the pause marker."""
        return self.model_dump(mode="json", exclude={"pause_state"})


class Task(BaseModel):
    """Human-facing work item for a paused HITL node."""
    id: str
    execution_id: str
    node_id: str
    status: TaskStatus = TaskStatus.PENDING
    title: str = ""
    description: str = ""
    actions: List[TaskAction] = Field(default_factory=lambda: list(DEFAULT_REVIEW_ACTIONS))
    data: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    feedback: Optional[str] = None
    external_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    def has_action(self, action_id: str) -> bool:
        return any(action.id == action_id for action in self.actions)


class StepLogEntry(BaseModel):
    """Append-only record of one node-execution attempt."""
    id: Optional[int] = None
    execution_id: str
    node_id: str
    node_type: Optional[str] = None
    status: StepStatus
    attempt: int = 1
    input: Optional[Dict[str, Any]] = None
    output: Any = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None


class ExecutionRecord(BaseModel):
    """Persisted view of a run, as returned by the document store."""
    execution_id: str
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    definition: Dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatusEnum
    inputs: Dict[str, Any] = Field(default_factory=dict)
    state: Optional[Dict[str, Any]] = None
    pause_state: Optional[PauseState] = None
    output: Any = None
    error: Optional[Dict[str, Any]] = None
    started_at: datetime
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None


class ResumeJob(BaseModel):
    """A queued resume request."""
    id: int
    execution_id: str
    decision: Decision
    status: ResumeJobStatus = ResumeJobStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: datetime
    updated_at: Optional[datetime] = None


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow."""
    id: str
    name: str
    description: str
    created_at: datetime
    node_count: int

    @model_validator(mode='after')
    def validate_counts(self):
        if self.node_count < 0:
            raise ValueError("Node count cannot be negative")
        return self
