"""Persistence layer for workflow executions and step events."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagaflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    ExecutionPage,
    ExecutionStats,
    StepEventStatus,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStepEvent,
)
from .postgres import PostgresWorkflowRepository
from .repository import (
    DuplicateRecordError,
    IdempotencyClaim,
    OptimisticLockError,
    WorkflowRepository,
)
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``SAGAFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SAGAFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "DuplicateRecordError",
    "ExecutionPage",
    "ExecutionStats",
    "IdempotencyClaim",
    "InMemoryWorkflowRepository",
    "OptimisticLockError",
    "PostgresWorkflowRepository",
    "SQLiteWorkflowRepository",
    "StepEventStatus",
    "WorkflowExecution",
    "WorkflowExecutionStatus",
    "WorkflowRepository",
    "WorkflowStepEvent",
    "get_repository",
]
