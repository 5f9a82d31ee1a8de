"""SQLAlchemy database models for the workflow engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Float, ForeignKey, Index
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Database model for stored workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    definition = Column(JSON, nullable=False)  # Complete node/edge definition
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("ExecutionModel", back_populates="workflow")


class ExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=True)
    workflow_name = Column(String)
    definition = Column(JSON, nullable=False)  # Graph the run was started with
    status = Column(String, nullable=False)  # running, waiting_human_review, completed, failed, aborted
    inputs = Column(JSON)
    state = Column(JSON)  # Latest ExecutionState checkpoint
    pause_state = Column(JSON)
    output = Column(JSON)
    error = Column(JSON)
    started_at = Column(DateTime, default=datetime.utcnow)
    paused_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Float)

    workflow = relationship("WorkflowModel", back_populates="executions")
    steps = relationship("StepLogModel", back_populates="execution")
    tasks = relationship("TaskModel", back_populates="execution")


class StepLogModel(Base):
    """Database model for per-attempt node execution records."""
    __tablename__ = "step_logs"
    __table_args__ = (
        Index("idx_step_logs_execution", "execution_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    node_id = Column(String, nullable=False)
    node_type = Column(String)
    status = Column(String, nullable=False)  # started, completed, failed, waiting_human_review
    attempt = Column(Integer, default=1)
    input = Column(JSON)
    output = Column(JSON)
    error = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime)
    duration_ms = Column(Float)

    execution = relationship("ExecutionModel", back_populates="steps")


class TaskModel(Base):
    """Database model for human review tasks."""
    __tablename__ = "tasks"
    __table_args__ = (
        Index("idx_tasks_execution_status", "execution_id", "status"),
    )

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    node_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # pending, completed, rejected
    title = Column(String)
    description = Column(Text)
    actions = Column(JSON)
    data = Column(JSON)
    result = Column(JSON)
    feedback = Column(Text)
    external_id = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    execution = relationship("ExecutionModel", back_populates="tasks")


class ResumeJobModel(Base):
    """Database model for queued resume requests."""
    __tablename__ = "resume_jobs"
    __table_args__ = (
        Index("idx_resume_jobs_status", "status", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, nullable=False)
    action_id = Column(String, nullable=False)
    task_id = Column(String)
    feedback = Column(Text)
    data = Column(JSON)
    status = Column(String, nullable=False)  # pending, processing, done, failed
    attempts = Column(Integer, default=0)
    last_error = Column(Text)
    enqueued_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
