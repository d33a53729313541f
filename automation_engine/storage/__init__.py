"""Database models and storage layer."""

from .database import Base, get_db, create_tables, drop_tables, configure_database
from .models import WorkflowModel, WorkflowRunModel, StepModel

__all__ = [
    "Base",
    "get_db",
    "create_tables",
    "drop_tables",
    "configure_database",
    "WorkflowModel",
    "WorkflowRunModel",
    "StepModel",
]
