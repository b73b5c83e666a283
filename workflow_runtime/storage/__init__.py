"""Database models and storage layer."""

from .database import (
    Base,
    SessionLocal,
    get_db,
    get_database_engine,
    configure_database,
    reset_database_engine,
    create_tables,
    drop_tables,
)
from .models import WorkflowModel, ExecutionModel, NodeExecutionModel, ExecutionLogModel

__all__ = [
    "Base",
    "SessionLocal",
    "get_db",
    "get_database_engine",
    "configure_database",
    "reset_database_engine",
    "create_tables",
    "drop_tables",
    "WorkflowModel",
    "ExecutionModel",
    "NodeExecutionModel",
    "ExecutionLogModel",
]
