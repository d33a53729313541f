"""SQLAlchemy database models for the automation engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Integer, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Stored workflow documents (read-only to the engine)."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    schedule = Column(String)
    owner = Column(String)
    definition = Column(JSON, nullable=False)  # nodes and edges
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WorkflowRunModel(Base):
    """Database model for workflow runs."""
    __tablename__ = "workflow_runs"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)  # RUNNING, SUCCEEDED, FAILED
    trigger_snapshot = Column(JSON)
    error = Column(JSON)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime)
    step_count = Column(Integer, nullable=False, default=0, server_default="0")

    steps = relationship(
        "StepModel",
        back_populates="run",
        order_by="StepModel.id",
        cascade="all, delete-orphan",
    )


class StepModel(Base):
    """Append-only step log; insertion order is completion order."""
    __tablename__ = "run_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False)
    node_id = Column(String, nullable=False)
    node_type = Column(String)
    status = Column(String, nullable=False)  # success, error, timeout, skipped
    result = Column(JSON)
    error = Column(JSON)
    started_at = Column(DateTime)
    completed_at = Column(DateTime, nullable=False)

    run = relationship("WorkflowRunModel", back_populates="steps")
