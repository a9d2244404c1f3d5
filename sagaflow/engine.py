"""Workflow engine: registration, locking, timeout, compensation and retry."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from .config import EngineConfig, SagaflowConfig, load_config
from .context import WorkflowContext
from .errors import (
    IdempotentCompletedError,
    IllegalExecutionStateError,
    WorkflowLockError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
    WorkflowTypeError,
)
from .events.publisher import WorkflowEventPublisher
from .idempotency import IdempotencyGuard
from .locks import LockStore, get_lock_store
from .locks.inmemory import InMemoryLockStore
from .metrics import WorkflowMetrics, get_default_metrics
from .persistence import get_repository
from .persistence.inmemory import InMemoryWorkflowRepository
from .persistence.models import (
    ExecutionPage,
    ExecutionStats,
    WorkflowExecution,
    WorkflowStepEvent,
)
from .persistence.repository import WorkflowRepository
from .result import Failure, Success, WorkflowResult
from .serde import deserialize_data
from .service import WorkflowExecutionService
from .transports import get_broadcast_channel, get_durable_sink
from .workflow import Workflow

logger = logging.getLogger(__name__)

I = TypeVar("I")
O = TypeVar("O")


class WorkflowOptions(BaseModel):
    """Per-call overrides; ``None`` falls back to the engine configuration.

    Without ``lock_key`` each execution locks a key of its own, so concurrent
    calls never contend. Pass a business-entity key such as ``"order:42"`` to
    serialize work on that entity.
    """

    parent_execution_id: Optional[str] = None
    correlation_id: Optional[str] = None
    max_retries: Optional[int] = None
    timeout_seconds: Optional[float] = None
    lock_key: Optional[str] = None
    idempotency_key: Optional[str] = None


class WorkflowInfo(BaseModel):
    name: str
    input_type: str
    output_type: str


class _Registration(Generic[I, O]):
    def __init__(self, workflow: Workflow[I, O], input_type: Type[I], output_type: Type[O]) -> None:
        self.workflow = workflow
        self.input_type = input_type
        self.output_type = output_type


def _type_name(tp: Any) -> str:
    return getattr(tp, "__name__", None) or str(tp)


class WorkflowEngine:
    """Run registered workflows with locking, timeout and compensation.

    Each call creates a RUNNING execution record, takes the distributed lock,
    runs the workflow body under one timeout and records the outcome:

    * ``Success``: COMPLETED.
    * returned ``Failure``, raised exception or timeout: FAILED, then the
      workflow's ``compensate`` runs and a clean compensation moves the
      record to COMPENSATED. Compensation errors are logged and the record
      stays FAILED.

    The lock is released on every branch. Failing to take it raises
    :class:`WorkflowLockError` after marking the record FAILED; it is never
    retried internally.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        lock_store: Optional[LockStore] = None,
        event_publisher: Optional[WorkflowEventPublisher] = None,
        metrics: Optional[WorkflowMetrics] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.repository = repository if repository is not None else InMemoryWorkflowRepository()
        self.lock_store = lock_store if lock_store is not None else InMemoryLockStore()
        self.event_publisher = (
            event_publisher
            if event_publisher is not None
            else WorkflowEventPublisher(repository=self.repository)
        )
        self.metrics = metrics if metrics is not None else get_default_metrics()
        self.config = config or EngineConfig()
        self.service = WorkflowExecutionService(self.repository)
        self.idempotency = IdempotencyGuard(self.service)
        self._workflows: Dict[str, _Registration[Any, Any]] = {}

    @classmethod
    def from_config(
        cls,
        config: Optional[SagaflowConfig] = None,
        metrics: Optional[WorkflowMetrics] = None,
    ) -> "WorkflowEngine":
        """Wire repository, lock store, event sinks and metrics from configuration."""
        config = config or load_config()
        repository = get_repository(config=config)
        publisher = WorkflowEventPublisher(
            durable_sink=get_durable_sink(config=config),
            broadcast_channel=get_broadcast_channel(config=config),
            repository=repository,
            durable_topic=config.events.durable_topic,
            broadcast_topic=config.events.broadcast_topic,
        )
        return cls(
            repository=repository,
            lock_store=get_lock_store(config=config),
            event_publisher=publisher,
            metrics=metrics,
            config=config.engine,
        )

    # ------------------------------------------------------------------
    # Registration
    def register_workflow(
        self, workflow: Workflow[I, O], input_type: Type[I], output_type: Type[O]
    ) -> None:
        if workflow.name in self._workflows:
            logger.warning(f"Replacing registered workflow: {workflow.name}")
        self._workflows[workflow.name] = _Registration(workflow, input_type, output_type)
        logger.info(
            f"Registered workflow: {workflow.name} "
            f"({_type_name(input_type)} -> {_type_name(output_type)})"
        )

    def list_workflows(self) -> List[WorkflowInfo]:
        return [
            WorkflowInfo(
                name=name,
                input_type=_type_name(reg.input_type),
                output_type=_type_name(reg.output_type),
            )
            for name, reg in self._workflows.items()
        ]

    def _registration(self, name: str) -> _Registration[Any, Any]:
        registration = self._workflows.get(name)
        if registration is None:
            raise WorkflowNotFoundError(f"Workflow not found: {name}")
        return registration

    # ------------------------------------------------------------------
    # Execution
    async def execute(
        self,
        name: str,
        input: I,
        input_type: Type[I],
        output_type: Type[O],
        context: Optional[WorkflowContext] = None,
        options: Optional[WorkflowOptions] = None,
    ) -> WorkflowResult[O]:
        """Run the workflow registered under ``name``.

        Raises:
            WorkflowNotFoundError: nothing is registered under ``name``.
            WorkflowTypeError: ``input_type``/``output_type`` differ from the
                registered types.
            WorkflowLockError: the lock could not be acquired.
            IdempotentInProgressError, IdempotentConflictError: another
                execution holds ``options.idempotency_key``.
        """
        registration = self._registration(name)
        if registration.input_type != input_type or registration.output_type != output_type:
            raise WorkflowTypeError(
                f"Type mismatch for workflow {name}: registered "
                f"{_type_name(registration.input_type)} -> {_type_name(registration.output_type)}, "
                f"called with {_type_name(input_type)} -> {_type_name(output_type)}"
            )
        return await self.execute_workflow(registration.workflow, input, context, options)

    async def execute_workflow(
        self,
        workflow: Workflow[I, O],
        input: I,
        context: Optional[WorkflowContext] = None,
        options: Optional[WorkflowOptions] = None,
    ) -> WorkflowResult[O]:
        """Run a workflow instance directly, registered or not."""
        context = context or WorkflowContext()
        options = options or WorkflowOptions()
        max_retries = options.max_retries if options.max_retries is not None else self.config.max_retries
        timeout_seconds = options.timeout_seconds or self.config.default_timeout_seconds

        if options.idempotency_key:
            try:
                execution = await self.idempotency.claim(
                    options.idempotency_key,
                    workflow.name,
                    input_data=input,
                    correlation_id=options.correlation_id,
                    parent_execution_id=options.parent_execution_id,
                    max_retries=max_retries,
                    timeout_seconds=timeout_seconds,
                )
            except IdempotentCompletedError as e:
                return Success(self._cached_output(workflow.name, e.output_data))
        else:
            execution = await self.service.create_execution(
                workflow_name=workflow.name,
                input_data=input,
                parent_execution_id=options.parent_execution_id,
                correlation_id=options.correlation_id,
                max_retries=max_retries,
                timeout_seconds=timeout_seconds,
            )

        return await self._run(workflow, input, execution, context, options.lock_key)

    def _cached_output(self, workflow_name: str, output_data: Optional[str]) -> Any:
        registration = self._workflows.get(workflow_name)
        output_type = registration.output_type if registration is not None else Any
        return deserialize_data(output_data, output_type)

    async def _run(
        self,
        workflow: Workflow[I, O],
        input: I,
        execution: WorkflowExecution,
        context: WorkflowContext,
        lock_key: Optional[str] = None,
        origin_id: Optional[str] = None,
    ) -> WorkflowResult[O]:
        execution_id = execution.id
        effective_lock_key = lock_key or f"workflow:lock:{workflow.name}:{execution_id}"

        context.execution_id = execution_id
        context.workflow_name = workflow.name
        context.correlation_id = execution.correlation_id
        context.parent_execution_id = execution.parent_execution_id
        context.total_steps = workflow.total_steps
        context.event_publisher = self.event_publisher

        logger.info(
            f"Starting workflow: {workflow.name} (execution: {execution_id}) "
            f"with lockKey={effective_lock_key}, correlationId={execution.correlation_id}"
        )
        start = time.monotonic()
        self.metrics.record_started(workflow.name)
        await self.event_publisher.publish_workflow_started(
            execution_id,
            workflow.name,
            input,
            correlation_id=execution.correlation_id,
            parent_execution_id=execution.parent_execution_id,
        )

        await self._acquire_lock(workflow, execution_id, effective_lock_key, start, origin_id)
        try:
            timeout = execution.timeout_seconds or self.config.default_timeout_seconds
            try:
                result = await asyncio.wait_for(workflow.execute(input, context), timeout)
            except asyncio.TimeoutError:
                error = WorkflowTimeoutError(
                    f"Workflow execution timed out after {timeout} seconds: {execution_id}"
                )
                logger.error(f"Workflow timed out: {workflow.name} (execution: {execution_id})")
                result = await self._fail(workflow, execution_id, error, context, start, "timeout")
            except Exception as e:
                logger.error(
                    f"Workflow failed: {workflow.name} (execution: {execution_id})", exc_info=True
                )
                result = await self._fail(workflow, execution_id, e, context, start, "failed")
            else:
                if isinstance(result, Success):
                    await self._complete(workflow, execution_id, result, context, start)
                elif isinstance(result, Failure):
                    logger.warning(
                        f"Workflow failed with business logic error: {workflow.name} "
                        f"(execution: {execution_id}) - {result.error}"
                    )
                    result = await self._fail(
                        workflow, execution_id, result.error, context, start, "failed"
                    )
                else:
                    error = IllegalExecutionStateError(
                        f"Workflow returned unexpected result {type(result).__name__}"
                    )
                    logger.error(f"{error} (execution: {execution_id})")
                    result = await self._fail(workflow, execution_id, error, context, start, "failed")
        finally:
            await self._release_lock(effective_lock_key)

        if origin_id is not None:
            await self._mirror_to_origin(origin_id, result)
        return result

    async def _acquire_lock(
        self,
        workflow: Workflow[Any, Any],
        execution_id: str,
        lock_key: str,
        start: float,
        origin_id: Optional[str],
    ) -> None:
        try:
            acquired = await self.lock_store.set_if_absent_with_expiry(
                lock_key, execution_id, self.config.lock_timeout_seconds
            )
            cause: Optional[Exception] = None
        except Exception as e:
            acquired = False
            cause = e
        if acquired:
            return

        error = WorkflowLockError(
            f"Could not acquire lock for workflow execution: {execution_id}", lock_key
        )
        logger.warning(f"{error} (lockKey={lock_key})")
        await self.service.fail_execution(execution_id, error)
        duration = time.monotonic() - start
        self.metrics.record_failed(workflow.name, duration)
        await self.event_publisher.publish_workflow_failed(
            execution_id, workflow.name, error, int(duration * 1000)
        )
        if origin_id is not None:
            await self._mirror_to_origin(origin_id, Failure(error))
        if cause is not None:
            raise error from cause
        raise error

    async def _release_lock(self, lock_key: str) -> None:
        try:
            await self.lock_store.delete(lock_key)
        except Exception:
            logger.error(f"Failed to release workflow lock {lock_key}", exc_info=True)

    async def _complete(
        self,
        workflow: Workflow[Any, Any],
        execution_id: str,
        result: Success[Any],
        context: WorkflowContext,
        start: float,
    ) -> None:
        await self.service.complete_execution(execution_id, result.data)
        duration = time.monotonic() - start
        self.metrics.record_completed(workflow.name, duration)
        await self.event_publisher.publish_workflow_completed(
            execution_id,
            workflow.name,
            result.data,
            int(duration * 1000),
            correlation_id=context.correlation_id,
        )
        logger.info(f"Workflow completed successfully: {workflow.name} (execution: {execution_id})")

    async def _fail(
        self,
        workflow: Workflow[Any, Any],
        execution_id: str,
        error: BaseException,
        context: WorkflowContext,
        start: float,
        outcome: str,
    ) -> Failure[Any]:
        await self.service.fail_execution(execution_id, error)
        duration = time.monotonic() - start
        await self.event_publisher.publish_workflow_failed(
            execution_id,
            workflow.name,
            error,
            int(duration * 1000),
            correlation_id=context.correlation_id,
        )
        await self._compensate(workflow, execution_id, context)
        if outcome == "timeout":
            self.metrics.record_timeout(workflow.name, duration)
        else:
            self.metrics.record_failed(workflow.name, duration)
        return Failure(error)

    async def _compensate(
        self, workflow: Workflow[Any, Any], execution_id: str, context: WorkflowContext
    ) -> None:
        try:
            await workflow.compensate(context)
            await self.service.compensate_execution(execution_id)
            logger.info(
                f"Compensation completed for workflow: {workflow.name} (execution: {execution_id})"
            )
        except Exception:
            logger.error(
                f"Compensation failed for workflow: {workflow.name} (execution: {execution_id})",
                exc_info=True,
            )

    async def _mirror_to_origin(self, origin_id: str, result: WorkflowResult[Any]) -> None:
        if isinstance(result, Success):
            await self.service.complete_execution(origin_id, result.data)
        elif isinstance(result, Failure):
            await self.service.fail_execution(origin_id, result.error)

    # ------------------------------------------------------------------
    # Operations on existing executions
    async def retry_execution(self, execution_id: str) -> WorkflowResult[Any]:
        """Re-run a FAILED or COMPENSATED execution with retry budget left.

        The original record goes back to RUNNING with ``retry_count``
        incremented; the re-run gets a new execution linked through
        ``parent_execution_id`` and the original mirrors its outcome. The
        re-run has no budget of its own, so retry the original, not the re-run.
        """
        execution = await self.service.get_execution(execution_id)
        if not execution.can_retry():
            raise IllegalExecutionStateError(
                f"Execution {execution_id} cannot be retried "
                f"(status={execution.status.value}, retries={execution.retry_count}/{execution.max_retries})"
            )
        registration = self._registration(execution.workflow_name)
        input = self.service.deserialize(execution.input_data, registration.input_type)
        await self.service.retry_execution(execution_id)
        logger.info(
            f"Retrying workflow execution: {execution_id} "
            f"(attempt {execution.retry_count + 1}/{execution.max_retries})"
        )
        return await self._run_linked(registration, input, execution)

    async def pause_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.service.pause_execution(execution_id)
        logger.info(f"Paused workflow execution: {execution_id}")
        return execution

    async def resume_execution(self, execution_id: str) -> WorkflowResult[Any]:
        """Restart a PAUSED execution from its stored input."""
        execution = await self.service.resume_execution(execution_id)
        registration = self._registration(execution.workflow_name)
        input = self.service.deserialize(execution.input_data, registration.input_type)
        logger.info(f"Resumed workflow execution: {execution_id}")
        return await self._run_linked(registration, input, execution)

    async def _run_linked(
        self, registration: _Registration[Any, Any], input: Any, origin: WorkflowExecution
    ) -> WorkflowResult[Any]:
        # The retry budget lives on the origin; a child run is never retried itself.
        child = await self.service.create_execution(
            workflow_name=origin.workflow_name,
            input_data=input,
            parent_execution_id=origin.id,
            correlation_id=origin.correlation_id,
            max_retries=0,
            timeout_seconds=origin.timeout_seconds,
        )
        return await self._run(
            registration.workflow, input, child, WorkflowContext(), origin_id=origin.id
        )

    async def cancel_execution(self, execution_id: str) -> WorkflowExecution:
        """Mark an execution CANCELLED. An in-flight run is not interrupted."""
        execution = await self.service.cancel_execution(execution_id)
        logger.info(f"Cancelled workflow execution: {execution_id}")
        return execution

    # ------------------------------------------------------------------
    # Introspection
    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        return await self.service.get_execution(execution_id)

    async def get_step_events(self, execution_id: str) -> List[WorkflowStepEvent]:
        return await self.service.list_step_events(execution_id)

    async def get_workflow_executions(
        self, workflow_name: str, page: int = 0, size: int = 20
    ) -> ExecutionPage:
        return await self.service.find_executions_by_workflow(workflow_name, page, size)

    async def get_workflow_statistics(
        self, workflow_name: str, since: datetime
    ) -> List[ExecutionStats]:
        return await self.service.get_statistics(workflow_name, since)

    async def find_executions_by_correlation_id(self, correlation_id: str) -> List[WorkflowExecution]:
        return await self.service.find_executions_by_correlation_id(correlation_id)

    async def find_child_executions(self, execution_id: str) -> List[WorkflowExecution]:
        return await self.service.find_child_executions(execution_id)

    async def is_healthy(self) -> bool:
        try:
            return bool(await self.lock_store.ping())
        except Exception:
            logger.error("Workflow engine health check failed", exc_info=True)
            return False
