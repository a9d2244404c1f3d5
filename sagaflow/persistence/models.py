"""Data models for persisted execution state."""

from __future__ import annotations

import traceback
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    COMPENSATED = "COMPENSATED"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    CLEANED_UP = "CLEANED_UP"


TERMINAL_STATUSES = frozenset(
    {
        WorkflowExecutionStatus.COMPLETED,
        WorkflowExecutionStatus.FAILED,
        WorkflowExecutionStatus.COMPENSATED,
        WorkflowExecutionStatus.CANCELLED,
        WorkflowExecutionStatus.TIMEOUT,
        WorkflowExecutionStatus.CLEANED_UP,
    }
)

RETRYABLE_STATUSES = frozenset(
    {WorkflowExecutionStatus.FAILED, WorkflowExecutionStatus.COMPENSATED}
)

# Failed rows an idempotent request may take over again.
CLAIMABLE_STATUSES = frozenset(
    {
        WorkflowExecutionStatus.FAILED,
        WorkflowExecutionStatus.CLEANED_UP,
        WorkflowExecutionStatus.COMPENSATED,
        WorkflowExecutionStatus.TIMEOUT,
    }
)


class WorkflowExecution(BaseModel):
    """Audit record of one engine invocation. Never hard-deleted."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    status: WorkflowExecutionStatus = WorkflowExecutionStatus.RUNNING
    input_data: Optional[str] = None
    output_data: Optional[str] = None
    result_id: Optional[str] = None
    correlation_id: Optional[str] = None
    parent_execution_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    timeout_seconds: Optional[float] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    error_stack_trace: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    # Start of the current run; reset whenever the record goes back to RUNNING.
    run_started_at: datetime = Field(default_factory=utcnow)

    def mark_completed(self, output_data: Optional[str] = None, result_id: Optional[str] = None) -> None:
        self.status = WorkflowExecutionStatus.COMPLETED
        self.output_data = output_data
        self.result_id = result_id
        self.completed_at = utcnow()
        self._touch()

    def mark_failed(self, error: BaseException) -> None:
        self.status = WorkflowExecutionStatus.FAILED
        self.error_message = str(error) or type(error).__name__
        self.error_type = type(error).__name__
        self.error_stack_trace = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
        self.completed_at = utcnow()
        self._touch()

    def mark_compensated(self) -> None:
        self.status = WorkflowExecutionStatus.COMPENSATED
        self.completed_at = utcnow()
        self._touch()

    def mark_timed_out(self) -> None:
        self.status = WorkflowExecutionStatus.TIMEOUT
        self.error_message = f"Workflow execution timed out after {self.timeout_seconds} seconds"
        self.error_type = "WorkflowTimeoutError"
        self.completed_at = utcnow()
        self._touch()

    def mark_cleaned_up(self) -> None:
        self.status = WorkflowExecutionStatus.CLEANED_UP
        self.completed_at = utcnow()
        self._touch()

    def pause(self) -> None:
        self.status = WorkflowExecutionStatus.PAUSED
        self._touch()

    def resume(self) -> None:
        self.status = WorkflowExecutionStatus.RUNNING
        self.run_started_at = utcnow()
        self._touch()

    def cancel(self) -> None:
        self.status = WorkflowExecutionStatus.CANCELLED
        self.completed_at = utcnow()
        self._touch()

    def increment_retry(self) -> None:
        self.retry_count += 1
        self.status = WorkflowExecutionStatus.RUNNING
        self.completed_at = None
        self.error_message = None
        self.error_type = None
        self.error_stack_trace = None
        self.run_started_at = utcnow()
        self._touch()

    def can_retry(self) -> bool:
        return self.status in RETRYABLE_STATUSES and self.retry_count < self.max_retries

    def can_retry_after_failure(self) -> bool:
        """Whether an idempotent claim may reset this row to RUNNING."""
        return self.status in CLAIMABLE_STATUSES

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def deadline(self) -> Optional[datetime]:
        if self.timeout_seconds is None:
            return None
        return self.run_started_at + timedelta(seconds=self.timeout_seconds)

    def duration_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.created_at).total_seconds() * 1000)

    def _touch(self) -> None:
        self.updated_at = utcnow()


class StepEventStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WorkflowStepEvent(BaseModel):
    """Persisted lifecycle of one step; unique per (execution_id, step_index)."""

    execution_id: str
    workflow_name: str
    step_name: str
    step_index: int
    total_steps: Optional[int] = None
    status: StepEventStatus = StepEventStatus.RUNNING
    input_data: Optional[str] = None
    output_data: Optional[str] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 0

    def mark_completed(self, output_data: Optional[str], duration_ms: int) -> None:
        self.status = StepEventStatus.COMPLETED
        self.output_data = output_data
        self.duration_ms = duration_ms
        self.completed_at = utcnow()

    def mark_failed(self, error_message: Optional[str], error_type: Optional[str], duration_ms: int) -> None:
        self.status = StepEventStatus.FAILED
        self.error_message = error_message
        self.error_type = error_type
        self.duration_ms = duration_ms
        self.completed_at = utcnow()

    def is_terminal(self) -> bool:
        return self.status != StepEventStatus.RUNNING


class ExecutionStats(BaseModel):
    """Execution count for one status."""

    status: WorkflowExecutionStatus
    count: int


class ExecutionPage(BaseModel):
    """A page of executions, newest first."""

    items: List[WorkflowExecution] = Field(default_factory=list)
    page: int = 0
    size: int = 20
    total: int = 0

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total + self.size - 1) // self.size
