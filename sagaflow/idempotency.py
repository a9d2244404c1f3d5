"""Idempotent claim of an execution row keyed by (idempotency_key, workflow_name)."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .errors import (
    IdempotentCompletedError,
    IdempotentConflictError,
    IdempotentInProgressError,
)
from .persistence.models import WorkflowExecution, WorkflowExecutionStatus
from .persistence.repository import DuplicateRecordError
from .serde import serialize_data
from .service import WorkflowExecutionService

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """At most one successful execution per idempotency key.

    ``claim`` locks the row for the key and then:

    * COMPLETED: raises :class:`IdempotentCompletedError` with the cached output.
    * FAILED, CLEANED_UP, COMPENSATED or TIMEOUT: resets the row to RUNNING,
      bumps ``retry_count``, takes the input and options of this request and
      returns it.
    * any other status: raises :class:`IdempotentInProgressError`.
    * no row: inserts a RUNNING row. Losing the insert race to a concurrent
      request raises :class:`IdempotentConflictError`.

    This is independent of the engine's distributed lock.
    """

    def __init__(self, service: WorkflowExecutionService) -> None:
        self.service = service

    async def claim(
        self,
        idempotency_key: str,
        workflow_name: str,
        input_data: Any = None,
        correlation_id: Optional[str] = None,
        parent_execution_id: Optional[str] = None,
        max_retries: int = 3,
        timeout_seconds: Optional[float] = None,
    ) -> WorkflowExecution:
        async with self.service.find_by_idempotency_key_for_update(
            idempotency_key, workflow_name
        ) as claim:
            existing = claim.existing
            if existing is not None:
                if existing.status == WorkflowExecutionStatus.COMPLETED:
                    logger.info(f"Idempotent hit: returning cached result for {idempotency_key}")
                    raise IdempotentCompletedError(
                        existing.id,
                        output_data=existing.output_data,
                        result_id=existing.result_id,
                        idempotency_key=idempotency_key,
                    )
                if existing.can_retry_after_failure():
                    logger.info(
                        f"Retrying after previous {existing.status.value} for {idempotency_key}"
                    )
                    existing.increment_retry()
                    # The new run follows this request, not the one that failed.
                    existing.input_data = serialize_data(input_data)
                    existing.max_retries = max_retries
                    existing.timeout_seconds = timeout_seconds
                    await claim.save(existing)
                    return existing
                logger.warning(f"Workflow already in progress: {existing.id} ({existing.status.value})")
                raise IdempotentInProgressError(existing.id, idempotency_key)

            execution = WorkflowExecution(
                workflow_name=workflow_name,
                input_data=serialize_data(input_data),
                idempotency_key=idempotency_key,
                correlation_id=correlation_id,
                parent_execution_id=parent_execution_id,
                max_retries=max_retries,
                timeout_seconds=timeout_seconds,
            )
            try:
                await claim.insert(execution)
            except DuplicateRecordError:
                logger.warning(f"Lost idempotency race for {idempotency_key}")
                raise IdempotentConflictError(idempotency_key)
            logger.info(
                f"Claimed idempotency key {idempotency_key} for {workflow_name} (execution={execution.id})"
            )
            return execution
