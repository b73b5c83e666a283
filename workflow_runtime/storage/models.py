"""SQLAlchemy database models for the workflow runtime."""

from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, ForeignKey
from sqlalchemy.orm import relationship
from ..models.core import utcnow
from .database import Base


class WorkflowModel(Base):
    """Database model for stored workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    definition = Column(JSON, nullable=False)  # Nodes and edges as authored
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    executions = relationship("ExecutionModel", back_populates="workflow")


class ExecutionModel(Base):
    """Database model for workflow runs."""
    __tablename__ = "executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    status = Column(String, nullable=False, index=True)  # pending, running, completed, failed, cancelled
    trigger_data = Column(JSON)
    variables = Column(JSON)  # Final variable snapshot
    node_outputs = Column(JSON)  # Final node output snapshot
    execution_metadata = Column(JSON)
    last_node_id = Column(String)
    error_message = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)  # Run attempts started so far
    max_attempts = Column(Integer)  # Attempt budget when the run was queued with its own
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    workflow = relationship("WorkflowModel", back_populates="executions")
    node_executions = relationship("NodeExecutionModel", back_populates="execution")
    logs = relationship("ExecutionLogModel", back_populates="execution")


class NodeExecutionModel(Base):
    """Database model for a single node visit inside a run."""
    __tablename__ = "node_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    status = Column(String, nullable=False)  # running, completed, failed
    input_data = Column(JSON)
    output_data = Column(JSON)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True))

    execution = relationship("ExecutionModel", back_populates="node_executions")


class ExecutionLogModel(Base):
    """Database model for execution log entries."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow)
    node_id = Column(String)
    level = Column(String, nullable=False, default="info")
    event_type = Column(String, nullable=False)  # workflow_start, node_complete, node_error, etc.
    message = Column(Text, nullable=False)

    execution = relationship("ExecutionModel", back_populates="logs")
