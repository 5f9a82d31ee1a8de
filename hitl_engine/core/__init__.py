"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    DefinitionError,
    ExecutorError,
    LoopLimitError,
    ResumeError,
    PersistenceError,
    ConfigurationError,
    TaskServiceError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "DefinitionError",
    "ExecutorError",
    "LoopLimitError",
    "ResumeError",
    "PersistenceError",
    "ConfigurationError",
    "TaskServiceError",
    "setup_logging",
    "get_logger",
]
