"""Per-invocation execution context shared by a workflow and its steps."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import CompensationError

if TYPE_CHECKING:
    from .events.publisher import WorkflowEventPublisher

logger = logging.getLogger(__name__)

CompensationFn = Callable[[], Awaitable[None]]


class WorkflowContext:
    """Transient state for one engine call.

    Holds the execution identifiers, a string-keyed metadata map, the ordered
    list of executed step names and the compensation stack. The engine fills
    in the identifiers and the event publisher before the workflow runs; the
    context is discarded once the call returns.
    """

    def __init__(self) -> None:
        self.execution_id: Optional[str] = None
        self.workflow_name: Optional[str] = None
        self.correlation_id: Optional[str] = None
        self.parent_execution_id: Optional[str] = None
        self.total_steps: Optional[int] = None
        self.event_publisher: Optional[WorkflowEventPublisher] = None

        self._metadata: Dict[str, Any] = {}
        self._executed_steps: List[str] = []
        self._compensations: List[Tuple[str, CompensationFn]] = []
        self._current_step: Optional[Tuple[str, int]] = None

    # ------------------------------------------------------------------
    # Metadata
    def add_metadata(self, key: str, value: Any) -> None:
        self._metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self._metadata.get(key, default)

    @property
    def metadata(self) -> Dict[str, Any]:
        return dict(self._metadata)

    def record_step(self, step_name: str) -> None:
        self._executed_steps.append(step_name)

    @property
    def executed_steps(self) -> List[str]:
        return list(self._executed_steps)

    # ------------------------------------------------------------------
    # Step lifecycle events
    async def record_step_start(self, step_name: str, step_input: Any) -> int:
        """Publish a step-started event and return the step index."""
        step_index = len(self._executed_steps)
        self._current_step = (step_name, step_index)
        if self.event_publisher is not None and self.execution_id:
            await self.event_publisher.publish_step_started(
                execution_id=self.execution_id,
                workflow_name=self.workflow_name or "",
                step_name=step_name,
                step_index=step_index,
                total_steps=self.total_steps,
                step_input=step_input,
                correlation_id=self.correlation_id,
            )
        return step_index

    async def record_step_complete(
        self, step_name: str, step_index: int, output: Any, duration_ms: int
    ) -> None:
        self._current_step = None
        if self.event_publisher is not None and self.execution_id:
            await self.event_publisher.publish_step_completed(
                execution_id=self.execution_id,
                workflow_name=self.workflow_name or "",
                step_name=step_name,
                step_index=step_index,
                total_steps=self.total_steps,
                output=output,
                duration_ms=duration_ms,
                correlation_id=self.correlation_id,
            )

    async def record_step_failed(
        self, step_name: str, step_index: int, error: BaseException, duration_ms: int
    ) -> None:
        self._current_step = None
        if self.event_publisher is not None and self.execution_id:
            await self.event_publisher.publish_step_failed(
                execution_id=self.execution_id,
                workflow_name=self.workflow_name or "",
                step_name=step_name,
                step_index=step_index,
                total_steps=self.total_steps,
                error=error,
                duration_ms=duration_ms,
                correlation_id=self.correlation_id,
            )

    async def report_progress(
        self, current: int, total: int, message: Optional[str] = None
    ) -> None:
        """Broadcast sub-step progress for the step currently running."""
        if self.event_publisher is None or not self.execution_id:
            return
        if self._current_step is None:
            logger.debug(f"Progress reported outside of a step (execution={self.execution_id})")
            return
        step_name, step_index = self._current_step
        await self.event_publisher.publish_step_progress(
            execution_id=self.execution_id,
            workflow_name=self.workflow_name or "",
            step_name=step_name,
            step_index=step_index,
            total_steps=self.total_steps,
            progress_current=current,
            progress_total=total,
            progress_message=message,
            correlation_id=self.correlation_id,
        )

    # ------------------------------------------------------------------
    # Compensation stack
    def push_compensation(self, step_name: str, compensation: CompensationFn) -> None:
        self._compensations.append((step_name, compensation))

    @property
    def pending_compensations(self) -> List[str]:
        return [name for name, _ in self._compensations]

    async def run_compensations(self) -> None:
        """Run registered compensations in reverse order, each at most once.

        Every compensation is attempted even if an earlier one fails; failures
        are collected and raised together as :class:`CompensationError`.
        """
        errors: List[BaseException] = []
        while self._compensations:
            step_name, compensation = self._compensations.pop()
            try:
                await compensation()
                logger.info(
                    f"Compensated step {step_name} (execution={self.execution_id})"
                )
            except Exception as e:
                logger.error(
                    f"Compensation failed for step {step_name} (execution={self.execution_id}): {e}",
                    exc_info=True,
                )
                errors.append(e)
        if errors:
            raise CompensationError(
                f"{len(errors)} compensation(s) failed for execution {self.execution_id}",
                errors,
            )
