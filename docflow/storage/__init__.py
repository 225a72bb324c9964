"""Database models and storage layer."""

from .database import Base, get_database_engine, get_session_factory, reset_database_engine, create_tables, drop_tables
from .models import WorkflowModel, ExecutionModel
from .repository import WorkflowRepository, ExecutionStore

__all__ = [
    "Base",
    "get_session_factory",
    "get_database_engine",
    "reset_database_engine",
    "create_tables",
    "drop_tables",
    "WorkflowModel",
    "ExecutionModel",
    "WorkflowRepository",
    "ExecutionStore",
]
