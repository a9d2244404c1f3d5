"""Exception types raised by the sagaflow engine."""

from __future__ import annotations

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""


class WorkflowNotFoundError(WorkflowError):
    """No workflow is registered under the requested name."""


class WorkflowTypeError(WorkflowError, TypeError):
    """Call-site type tokens do not match the registered ones."""


class WorkflowLockError(WorkflowError):
    """The distributed lock for an execution could not be acquired."""

    def __init__(self, message: str, lock_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.lock_key = lock_key


class WorkflowTimeoutError(WorkflowError):
    """A workflow body exceeded its timeout."""


class ExecutionNotFoundError(WorkflowError):
    """No execution record exists for the given id."""


class IllegalExecutionStateError(WorkflowError):
    """The execution is not in a state that allows the requested transition."""


class CompensationError(WorkflowError):
    """One or more compensating actions failed."""

    def __init__(self, message: str, errors: Optional[List[BaseException]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class IdempotencyError(WorkflowError):
    """Base class for idempotency-key signals."""

    def __init__(self, message: str, idempotency_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.idempotency_key = idempotency_key


class IdempotentCompletedError(IdempotencyError):
    """A previous execution with the same key already completed."""

    def __init__(
        self,
        execution_id: str,
        output_data: Optional[str] = None,
        result_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Execution {execution_id} already completed", idempotency_key
        )
        self.execution_id = execution_id
        self.output_data = output_data
        self.result_id = result_id


class IdempotentInProgressError(IdempotencyError):
    """An execution with the same key is still running."""

    def __init__(self, execution_id: str, idempotency_key: Optional[str] = None) -> None:
        super().__init__(f"Execution {execution_id} is already in progress", idempotency_key)
        self.execution_id = execution_id


class IdempotentConflictError(IdempotencyError):
    """A concurrent request won the race to insert the same key."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            f"Concurrent execution claimed idempotency key: {idempotency_key}",
            idempotency_key,
        )


__all__ = [
    "WorkflowError",
    "WorkflowNotFoundError",
    "WorkflowTypeError",
    "WorkflowLockError",
    "WorkflowTimeoutError",
    "ExecutionNotFoundError",
    "IllegalExecutionStateError",
    "CompensationError",
    "IdempotencyError",
    "IdempotentCompletedError",
    "IdempotentInProgressError",
    "IdempotentConflictError",
]
