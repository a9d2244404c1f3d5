"""Dual-sink publisher for workflow lifecycle events."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..persistence.models import StepEventStatus, WorkflowStepEvent
from ..persistence.repository import (
    DuplicateRecordError,
    OptimisticLockError,
    WorkflowRepository,
)
from ..serde import serialize_data
from ..transports.base import BroadcastChannel, DurableSink
from .models import (
    StepCompletedEvent,
    StepFailedEvent,
    StepProgressEvent,
    StepStartedEvent,
    WorkflowCompletedEvent,
    WorkflowEvent,
    WorkflowFailedEvent,
    WorkflowStartedEvent,
    to_envelope,
)

logger = logging.getLogger(__name__)

DURABLE_TOPIC = "workflow-events"
BROADCAST_TOPIC = "/topic/workflows"


def _step_key(execution_id: str, step_index: int) -> str:
    return f"{execution_id}:{step_index}"


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class WorkflowEventPublisher:
    """Publish lifecycle events to a durable sink and a broadcast channel.

    Step started/completed/failed events are also persisted as step rows in
    ``repository`` when one is given. Nothing here ever raises into the
    workflow: sink and persistence failures are logged and dropped.

    Persistence rules:

    * A started event for an existing ``(execution_id, step_index)`` row reuses
      that row instead of failing.
    * The first terminal status written for a row wins. A concurrent writer
      that loses the version check is logged and its update discarded.
    * Progress events are broadcast only.
    """

    def __init__(
        self,
        durable_sink: Optional[DurableSink] = None,
        broadcast_channel: Optional[BroadcastChannel] = None,
        repository: Optional[WorkflowRepository] = None,
        durable_topic: str = DURABLE_TOPIC,
        broadcast_topic: str = BROADCAST_TOPIC,
    ) -> None:
        self.durable_sink = durable_sink
        self.broadcast_channel = broadcast_channel
        self.repository = repository
        self.durable_topic = durable_topic
        self.broadcast_topic = broadcast_topic
        self._in_progress: Dict[str, WorkflowStepEvent] = {}

    # ------------------------------------------------------------------
    # Sinks
    async def publish(self, event: WorkflowEvent) -> None:
        """Send ``event`` to both sinks."""
        try:
            envelope = to_envelope(event)
            await self._publish_durable(event.execution_id, envelope)
            await self._publish_broadcast(envelope)
            step = f" step={event.step_name}" if hasattr(event, "step_name") else ""
            logger.debug(
                f"Published workflow event: {event.event_type} for {event.workflow_name}{step} "
                f"(execution={event.execution_id})"
            )
        except Exception:
            logger.error(f"Failed to publish workflow event: {event.event_type}", exc_info=True)

    async def _publish_durable(self, partition_key: str, envelope: Dict[str, Any]) -> None:
        if self.durable_sink is None:
            return
        try:
            await self.durable_sink.publish(self.durable_topic, partition_key, envelope)
        except Exception as e:
            logger.warning(f"Failed to publish workflow event to durable sink: {e}")

    async def _publish_broadcast(self, envelope: Dict[str, Any]) -> None:
        if self.broadcast_channel is None:
            return
        try:
            await self.broadcast_channel.broadcast(self.broadcast_topic, envelope)
        except Exception as e:
            logger.warning(f"Failed to broadcast workflow event: {e}")

    # ------------------------------------------------------------------
    # Workflow events
    async def publish_workflow_started(
        self,
        execution_id: str,
        workflow_name: str,
        input: Any,
        correlation_id: Optional[str] = None,
        parent_execution_id: Optional[str] = None,
    ) -> None:
        await self.publish(
            WorkflowStartedEvent(
                execution_id=execution_id,
                workflow_name=workflow_name,
                input=serialize_data(input),
                correlation_id=correlation_id,
                parent_execution_id=parent_execution_id,
            )
        )

    async def publish_workflow_completed(
        self,
        execution_id: str,
        workflow_name: str,
        output: Any,
        duration_ms: int,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self.publish(
            WorkflowCompletedEvent(
                execution_id=execution_id,
                workflow_name=workflow_name,
                output=serialize_data(output),
                duration_ms=duration_ms,
                correlation_id=correlation_id,
            )
        )

    async def publish_workflow_failed(
        self,
        execution_id: str,
        workflow_name: str,
        error: BaseException,
        duration_ms: int,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self.publish(
            WorkflowFailedEvent(
                execution_id=execution_id,
                workflow_name=workflow_name,
                error=_error_message(error),
                error_type=type(error).__name__,
                duration_ms=duration_ms,
                correlation_id=correlation_id,
            )
        )

    # ------------------------------------------------------------------
    # Step events
    async def publish_step_started(
        self,
        execution_id: str,
        workflow_name: str,
        step_name: str,
        step_index: int,
        total_steps: Optional[int],
        step_input: Any,
        correlation_id: Optional[str] = None,
    ) -> None:
        serialized_input = serialize_data(step_input)
        if self.repository is not None:
            await self._persist_step_started(
                WorkflowStepEvent(
                    execution_id=execution_id,
                    workflow_name=workflow_name,
                    step_name=step_name,
                    step_index=step_index,
                    total_steps=total_steps,
                    input_data=serialized_input,
                )
            )

        await self.publish(
            StepStartedEvent(
                execution_id=execution_id,
                workflow_name=workflow_name,
                step_name=step_name,
                step_index=step_index,
                total_steps=total_steps,
                input=serialized_input,
                correlation_id=correlation_id,
            )
        )

    async def publish_step_completed(
        self,
        execution_id: str,
        workflow_name: str,
        step_name: str,
        step_index: int,
        total_steps: Optional[int],
        output: Any,
        duration_ms: int,
        correlation_id: Optional[str] = None,
    ) -> None:
        serialized_output = serialize_data(output)
        if self.repository is not None:
            await self._finalize_step(
                execution_id,
                workflow_name,
                step_name,
                step_index,
                StepEventStatus.COMPLETED,
                lambda row: row.mark_completed(serialized_output, duration_ms),
            )

        await self.publish(
            StepCompletedEvent(
                execution_id=execution_id,
                workflow_name=workflow_name,
                step_name=step_name,
                step_index=step_index,
                total_steps=total_steps,
                output=serialized_output,
                duration_ms=duration_ms,
                correlation_id=correlation_id,
            )
        )

    async def publish_step_failed(
        self,
        execution_id: str,
        workflow_name: str,
        step_name: str,
        step_index: int,
        total_steps: Optional[int],
        error: BaseException,
        duration_ms: int,
        correlation_id: Optional[str] = None,
    ) -> None:
        message = _error_message(error)
        error_type = type(error).__name__
        if self.repository is not None:
            await self._finalize_step(
                execution_id,
                workflow_name,
                step_name,
                step_index,
                StepEventStatus.FAILED,
                lambda row: row.mark_failed(message, error_type, duration_ms),
            )

        await self.publish(
            StepFailedEvent(
                execution_id=execution_id,
                workflow_name=workflow_name,
                step_name=step_name,
                step_index=step_index,
                total_steps=total_steps,
                error=message,
                error_type=error_type,
                duration_ms=duration_ms,
                correlation_id=correlation_id,
            )
        )

    async def publish_step_progress(
        self,
        execution_id: str,
        workflow_name: str,
        step_name: str,
        step_index: int,
        total_steps: Optional[int],
        progress_current: int,
        progress_total: int,
        progress_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Broadcast-only; progress is never persisted or sent to the durable sink."""
        try:
            event = StepProgressEvent(
                execution_id=execution_id,
                workflow_name=workflow_name,
                step_name=step_name,
                step_index=step_index,
                total_steps=total_steps,
                progress_current=progress_current,
                progress_total=progress_total,
                progress_message=progress_message,
                correlation_id=correlation_id,
            )
            await self._publish_broadcast(to_envelope(event))
        except Exception:
            logger.error(f"Failed to publish step progress for execution {execution_id}", exc_info=True)
            return
        logger.debug(
            f"Published step progress: {workflow_name}/{step_name} "
            f"{progress_current}/{progress_total} ({event.progress_percent}%) "
            f"(execution={execution_id})"
        )

    # ------------------------------------------------------------------
    # Step persistence
    async def _persist_step_started(self, row: WorkflowStepEvent) -> None:
        key = _step_key(row.execution_id, row.step_index)
        try:
            await self.repository.insert_step_event(row)
            self._in_progress[key] = row
            logger.debug(
                f"Persisted step started event: {row.workflow_name}/{row.step_name} "
                f"(execution={row.execution_id})"
            )
        except DuplicateRecordError:
            existing = await self._lookup(row.execution_id, row.step_index)
            if existing is not None:
                self._in_progress[key] = existing
                logger.info(
                    f"Step event already exists (idempotent): {row.workflow_name}/{row.step_name} "
                    f"(execution={row.execution_id})"
                )
            else:
                logger.warning(f"Unique constraint violation but row not found: {key}")
        except Exception as e:
            logger.warning(f"Failed to persist step started event: {e}")

    async def _lookup(self, execution_id: str, step_index: int) -> Optional[WorkflowStepEvent]:
        try:
            return await self.repository.get_step_event(execution_id, step_index)
        except Exception as e:
            logger.warning(f"Failed to load step event {_step_key(execution_id, step_index)}: {e}")
            return None

    async def _finalize_step(
        self,
        execution_id: str,
        workflow_name: str,
        step_name: str,
        step_index: int,
        target: StepEventStatus,
        apply: Callable[[WorkflowStepEvent], None],
    ) -> None:
        key = _step_key(execution_id, step_index)
        label = f"{workflow_name}/{step_name} (execution={execution_id})"
        try:
            row = self._in_progress.pop(key, None)
            if row is None:
                row = await self._lookup(execution_id, step_index)
                if row is not None:
                    logger.info(f"Fallback lookup for step {target.value}: {label}")
            if row is None:
                logger.warning(f"No step event found for {target.value} (in-memory or store): {key}")
                return

            if row.status == target:
                logger.info(f"Step already {target.value} (idempotent): {label}")
                return
            if row.status != StepEventStatus.RUNNING:
                logger.warning(
                    f"Received {target.value} for already {row.status.value} step (anomaly): {label}"
                )
                return

            apply(row)
            try:
                await self.repository.update_step_event(row)
                logger.debug(f"Persisted step {target.value} event: {label}")
            except OptimisticLockError:
                latest = await self._lookup(execution_id, step_index)
                if latest is not None and latest.status == target:
                    logger.info(f"Step already {target.value} (optimistic race): {label}")
                elif latest is not None and latest.is_terminal():
                    logger.warning(
                        f"{target.value} lost to {latest.status.value} (optimistic race): {label}"
                    )
                else:
                    logger.warning(f"Optimistic lock on {target.value} but latest state unknown: {key}")
        except Exception as e:
            logger.warning(f"Failed to persist step {target.value} event: {e}")
