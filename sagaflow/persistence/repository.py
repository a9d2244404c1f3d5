"""Repository abstraction for execution and step-event persistence."""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol

from .models import (
    ExecutionPage,
    ExecutionStats,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStepEvent,
)


class DuplicateRecordError(Exception):
    """A unique constraint rejected an insert."""


class OptimisticLockError(Exception):
    """The stored row changed since it was read."""


class IdempotencyClaim(Protocol):
    """Row-locked view of the execution owning an idempotency key.

    Obtained from :meth:`WorkflowRepository.idempotency_claim`; writes made
    through it commit when the surrounding ``async with`` block exits
    cleanly.
    """

    existing: Optional[WorkflowExecution]

    async def save(self, execution: WorkflowExecution) -> None:
        """Update the locked row."""

    async def insert(self, execution: WorkflowExecution) -> None:
        """Insert a new row, raising ``DuplicateRecordError`` on a lost race."""


class WorkflowRepository(Protocol):
    """Protocol for execution-state persistence backends."""

    # executions ---------------------------------------------------------
    async def insert_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution record."""

    async def update_execution(self, execution: WorkflowExecution) -> None:
        """Persist changes to an existing execution record."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def find_executions_by_workflow(
        self, workflow_name: str, page: int = 0, size: int = 20
    ) -> ExecutionPage:
        """Return a page of executions for ``workflow_name``, newest first."""

    async def find_executions_by_status(
        self, status: WorkflowExecutionStatus, since: datetime | None = None
    ) -> list[WorkflowExecution]:
        """Return executions in ``status``, optionally created after ``since``."""

    async def find_executions_by_correlation_id(
        self, correlation_id: str
    ) -> list[WorkflowExecution]:
        """Return executions sharing a correlation id, oldest first."""

    async def find_child_executions(
        self, parent_execution_id: str
    ) -> list[WorkflowExecution]:
        """Return executions linked to a parent, oldest first."""

    async def count_executions_by_status(
        self, workflow_name: str, since: datetime
    ) -> list[ExecutionStats]:
        """Count executions per status created at or after ``since``."""

    async def find_by_idempotency_key(
        self, idempotency_key: str, workflow_name: str
    ) -> WorkflowExecution | None:
        """Lookup without locking."""

    def idempotency_claim(
        self, idempotency_key: str, workflow_name: str
    ) -> AsyncContextManager[IdempotencyClaim]:
        """Lock the row for ``(idempotency_key, workflow_name)`` for update."""

    # step events --------------------------------------------------------
    async def insert_step_event(self, event: WorkflowStepEvent) -> None:
        """Insert a RUNNING step row, ``DuplicateRecordError`` if it exists."""

    async def get_step_event(
        self, execution_id: str, step_index: int
    ) -> WorkflowStepEvent | None:
        """Retrieve a step row by its unique key."""

    async def update_step_event(self, event: WorkflowStepEvent) -> None:
        """Compare-and-set on ``event.version``.

        Raises ``OptimisticLockError`` when the stored version differs. On
        success ``event.version`` is incremented.
        """

    async def list_step_events(self, execution_id: str) -> list[WorkflowStepEvent]:
        """Return all step rows for an execution ordered by step index."""

    async def find_stale_running_steps(
        self, threshold: datetime
    ) -> list[WorkflowStepEvent]:
        """Return RUNNING step rows started before ``threshold``."""
