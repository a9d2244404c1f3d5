"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional, Tuple

from .models import (
    ExecutionPage,
    ExecutionStats,
    StepEventStatus,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStepEvent,
)
from .repository import DuplicateRecordError, OptimisticLockError, WorkflowRepository


class _InMemoryClaim:
    def __init__(self, repo: "InMemoryWorkflowRepository", existing: Optional[WorkflowExecution]) -> None:
        self._repo = repo
        self.existing = existing

    async def save(self, execution: WorkflowExecution) -> None:
        await self._repo.update_execution(execution)

    async def insert(self, execution: WorkflowExecution) -> None:
        await self._repo.insert_execution(execution)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so concurrent writers see the same conflicts a database would raise.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}
        self._idempotency_index: Dict[Tuple[str, str], str] = {}
        self._steps: Dict[Tuple[str, int], WorkflowStepEvent] = {}
        self._lock = asyncio.Lock()
        self._key_locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            if execution.id in self._executions:
                raise DuplicateRecordError(f"Execution id already exists: {execution.id}")
            if execution.idempotency_key:
                key = (execution.idempotency_key, execution.workflow_name)
                if key in self._idempotency_index:
                    raise DuplicateRecordError(
                        f"Idempotency key already exists: {execution.idempotency_key}"
                    )
                self._idempotency_index[key] = execution.id
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def update_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            if execution.id not in self._executions:
                return
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def find_executions_by_workflow(
        self, workflow_name: str, page: int = 0, size: int = 20
    ) -> ExecutionPage:
        matching = sorted(
            (e for e in self._executions.values() if e.workflow_name == workflow_name),
            key=lambda e: e.created_at,
            reverse=True,
        )
        start = page * size
        return ExecutionPage(
            items=[e.model_copy(deep=True) for e in matching[start : start + size]],
            page=page,
            size=size,
            total=len(matching),
        )

    async def find_executions_by_status(
        self, status: WorkflowExecutionStatus, since: datetime | None = None
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._executions.values(), key=lambda e: e.created_at)
            if e.status == status and (since is None or e.created_at > since)
        ]

    async def find_executions_by_correlation_id(
        self, correlation_id: str
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._executions.values(), key=lambda e: e.created_at)
            if e.correlation_id == correlation_id
        ]

    async def find_child_executions(
        self, parent_execution_id: str
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._executions.values(), key=lambda e: e.created_at)
            if e.parent_execution_id == parent_execution_id
        ]

    async def count_executions_by_status(
        self, workflow_name: str, since: datetime
    ) -> list[ExecutionStats]:
        counts = Counter(
            e.status
            for e in self._executions.values()
            if e.workflow_name == workflow_name and e.created_at >= since
        )
        return [ExecutionStats(status=s, count=c) for s, c in counts.items()]

    async def find_by_idempotency_key(
        self, idempotency_key: str, workflow_name: str
    ) -> WorkflowExecution | None:
        execution_id = self._idempotency_index.get((idempotency_key, workflow_name))
        if execution_id is None:
            return None
        return await self.get_execution(execution_id)

    @asynccontextmanager
    async def idempotency_claim(
        self, idempotency_key: str, workflow_name: str
    ) -> AsyncIterator[_InMemoryClaim]:
        async with self._key_locks[(idempotency_key, workflow_name)]:
            existing = await self.find_by_idempotency_key(idempotency_key, workflow_name)
            yield _InMemoryClaim(self, existing)

    # ------------------------------------------------------------------
    # Step events
    async def insert_step_event(self, event: WorkflowStepEvent) -> None:
        key = (event.execution_id, event.step_index)
        async with self._lock:
            if key in self._steps:
                raise DuplicateRecordError(
                    f"Step event already exists: {event.execution_id}:{event.step_index}"
                )
            self._steps[key] = event.model_copy(deep=True)

    async def get_step_event(
        self, execution_id: str, step_index: int
    ) -> WorkflowStepEvent | None:
        event = self._steps.get((execution_id, step_index))
        return event.model_copy(deep=True) if event else None

    async def update_step_event(self, event: WorkflowStepEvent) -> None:
        key = (event.execution_id, event.step_index)
        async with self._lock:
            stored = self._steps.get(key)
            if stored is None or stored.version != event.version:
                raise OptimisticLockError(
                    f"Step event {event.execution_id}:{event.step_index} was modified concurrently"
                )
            event.version += 1
            self._steps[key] = event.model_copy(deep=True)

    async def list_step_events(self, execution_id: str) -> list[WorkflowStepEvent]:
        return [
            e.model_copy(deep=True)
            for (exec_id, _), e in sorted(self._steps.items(), key=lambda kv: kv[0][1])
            if exec_id == execution_id
        ]

    async def find_stale_running_steps(
        self, threshold: datetime
    ) -> list[WorkflowStepEvent]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._steps.values(), key=lambda e: e.started_at)
            if e.status == StepEventStatus.RUNNING and e.started_at < threshold
        ]
