"""Data models for the workflow engine."""

from .core import (
    ExecutionStatusEnum,
    StepStatus,
    TaskStatus,
    ResumeJobStatus,
    NodeDefinition,
    EdgeDefinition,
    EdgeCondition,
    WorkflowDefinition,
    Success,
    Failure,
    PendingReview,
    TaskAction,
    NodeResult,
    Decision,
    PauseState,
    ExecutionState,
    Task,
    StepLogEntry,
    ExecutionRecord,
    ResumeJob,
    WorkflowSummary,
    ValidationResult,
)

__all__ = [
    "ExecutionStatusEnum",
    "StepStatus",
    "TaskStatus",
    "ResumeJobStatus",
    "NodeDefinition",
    "EdgeDefinition",
    "EdgeCondition",
    "WorkflowDefinition",
    "Success",
    "Failure",
    "PendingReview",
    "TaskAction",
    "NodeResult",
    "Decision",
    "PauseState",
    "ExecutionState",
    "Task",
    "StepLogEntry",
    "ExecutionRecord",
    "ResumeJob",
    "WorkflowSummary",
    "ValidationResult",
]
