"""Execution record lifecycle on top of a workflow repository."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncContextManager, Optional, Type, TypeVar

from .errors import ExecutionNotFoundError, IllegalExecutionStateError
from .persistence.models import (
    RETRYABLE_STATUSES,
    ExecutionPage,
    ExecutionStats,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStepEvent,
    utcnow,
)
from .persistence.repository import (
    DuplicateRecordError,
    IdempotencyClaim,
    WorkflowRepository,
)
from .serde import deserialize_data, serialize_data

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CREATE_ATTEMPTS = 3


class WorkflowExecutionService:
    """Create, transition and query execution records.

    Every transition reloads the record, applies the change and writes it
    back. A record that was cancelled while its run was still in flight keeps
    its CANCELLED status when the run later completes or fails.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def create_execution(
        self,
        workflow_name: str,
        input_data: Any,
        parent_execution_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        max_retries: int = 3,
        timeout_seconds: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> WorkflowExecution:
        last_error: Optional[Exception] = None
        for attempt in range(1, _CREATE_ATTEMPTS + 1):
            execution = WorkflowExecution(
                workflow_name=workflow_name,
                input_data=serialize_data(input_data),
                parent_execution_id=parent_execution_id,
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
                max_retries=max_retries,
                timeout_seconds=timeout_seconds,
            )
            try:
                await self.repository.insert_execution(execution)
            except DuplicateRecordError as e:
                if idempotency_key is not None:
                    raise
                last_error = e
                logger.warning(
                    f"Execution id collision on attempt {attempt} for workflow {workflow_name}; retrying with new id"
                )
                continue
            logger.info(f"Created workflow execution: {execution.id} for workflow: {workflow_name}")
            return execution

        raise last_error or RuntimeError(
            f"Failed to create workflow execution for {workflow_name}"
        )

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        await self.repository.update_execution(execution)
        return execution

    async def complete_execution(
        self, execution_id: str, output_data: Any = None, result_id: Optional[str] = None
    ) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status == WorkflowExecutionStatus.CANCELLED:
            logger.warning(f"Execution {execution_id} was cancelled; not marking it completed")
            return execution
        execution.mark_completed(serialize_data(output_data), result_id)
        return await self.update_execution(execution)

    async def fail_execution(self, execution_id: str, error: BaseException) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status == WorkflowExecutionStatus.CANCELLED:
            logger.warning(f"Execution {execution_id} was cancelled; not marking it failed")
            return execution
        execution.mark_failed(error)
        return await self.update_execution(execution)

    async def compensate_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status != WorkflowExecutionStatus.FAILED:
            logger.warning(
                f"Execution {execution_id} is {execution.status.value}; not marking it compensated"
            )
            return execution
        execution.mark_compensated()
        return await self.update_execution(execution)

    async def retry_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if not execution.can_retry():
            raise IllegalExecutionStateError(
                f"Execution {execution_id} cannot be retried "
                f"(status={execution.status.value}, retries={execution.retry_count}/{execution.max_retries})"
            )
        execution.increment_retry()
        return await self.update_execution(execution)

    async def pause_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status != WorkflowExecutionStatus.RUNNING:
            raise IllegalExecutionStateError(
                f"Only RUNNING executions can be paused; {execution_id} is {execution.status.value}"
            )
        execution.pause()
        return await self.update_execution(execution)

    async def resume_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status != WorkflowExecutionStatus.PAUSED:
            raise IllegalExecutionStateError(
                f"Only PAUSED executions can be resumed; {execution_id} is {execution.status.value}"
            )
        execution.resume()
        return await self.update_execution(execution)

    async def cancel_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.is_terminal():
            raise IllegalExecutionStateError(
                f"Execution {execution_id} already finished with status {execution.status.value}"
            )
        execution.cancel()
        return await self.update_execution(execution)

    # ------------------------------------------------------------------
    # Queries
    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return execution

    async def find_executions_by_workflow(
        self, workflow_name: str, page: int = 0, size: int = 20
    ) -> ExecutionPage:
        return await self.repository.find_executions_by_workflow(workflow_name, page, size)

    async def find_executions_by_status(
        self, status: WorkflowExecutionStatus, since: Optional[datetime] = None
    ) -> list[WorkflowExecution]:
        return await self.repository.find_executions_by_status(status, since)

    async def find_executions_by_correlation_id(self, correlation_id: str) -> list[WorkflowExecution]:
        return await self.repository.find_executions_by_correlation_id(correlation_id)

    async def find_child_executions(self, parent_execution_id: str) -> list[WorkflowExecution]:
        return await self.repository.find_child_executions(parent_execution_id)

    async def get_statistics(self, workflow_name: str, since: datetime) -> list[ExecutionStats]:
        return await self.repository.count_executions_by_status(workflow_name, since)

    async def list_step_events(self, execution_id: str) -> list[WorkflowStepEvent]:
        return await self.repository.list_step_events(execution_id)

    def find_by_idempotency_key_for_update(
        self, idempotency_key: str, workflow_name: str
    ) -> AsyncContextManager[IdempotencyClaim]:
        """Row-locking read; use as ``async with``."""
        return self.repository.idempotency_claim(idempotency_key, workflow_name)

    async def find_timed_out_executions(self, now: Optional[datetime] = None) -> list[WorkflowExecution]:
        now = now or utcnow()
        running = await self.repository.find_executions_by_status(WorkflowExecutionStatus.RUNNING)
        return [e for e in running if e.deadline() is not None and e.deadline() < now]

    async def find_retryable_executions(self, since: datetime) -> list[WorkflowExecution]:
        candidates: list[WorkflowExecution] = []
        for status in sorted(RETRYABLE_STATUSES, key=lambda s: s.value):
            candidates.extend(await self.repository.find_executions_by_status(status, since))
        return [e for e in candidates if e.can_retry()]

    async def handle_timeout_executions(self, now: Optional[datetime] = None) -> list[WorkflowExecution]:
        """Mark RUNNING executions past their deadline as TIMEOUT."""
        timed_out = []
        for execution in await self.find_timed_out_executions(now):
            execution.mark_timed_out()
            timed_out.append(await self.update_execution(execution))
        if timed_out:
            logger.warning(f"Marked {len(timed_out)} executions as timed out")
        return timed_out

    @staticmethod
    def deserialize(raw: Optional[str], data_type: Type[T]) -> Optional[T]:
        return deserialize_data(raw, data_type)
