"""Step abstraction: a forward action with an optional compensating action."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from .context import WorkflowContext

logger = logging.getLogger(__name__)

I = TypeVar("I")
O = TypeVar("O")
T = TypeVar("T")

StepExecuteFn = Callable[[Any, WorkflowContext], Awaitable[Any]]
StepCompensateFn = Callable[[Any, Any, Any, WorkflowContext], Awaitable[None]]

COMPENSATION_METADATA_PREFIX = "compensation:"


@dataclass
class StepResponse(Generic[T]):
    """Step output plus optional data needed to undo the step later."""

    data: T
    compensation_data: Any = None

    @classmethod
    def of(cls, data: T, compensation_data: Any = None) -> "StepResponse[T]":
        return cls(data, compensation_data)


class WorkflowStep(Generic[I, O]):
    """Invocable unit that emits started/completed/failed events.

    Use :func:`create_step` rather than instantiating this directly.
    """

    def __init__(
        self,
        name: str,
        execute: StepExecuteFn,
        compensate: Optional[StepCompensateFn] = None,
    ) -> None:
        self.name = name
        self._execute = execute
        self._compensate = compensate

    @property
    def has_compensation(self) -> bool:
        return self._compensate is not None

    async def invoke(self, step_input: I, context: WorkflowContext) -> O:
        """Run the step and return its payload.

        Exceptions are re-raised after the failed event is emitted; the
        enclosing workflow decides whether to compensate.
        """
        logger.info(f"Executing step: {self.name}")
        step_index = await context.record_step_start(self.name, step_input)
        start = time.monotonic()

        try:
            raw = await self._execute(step_input, context)
        except BaseException as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            await context.record_step_failed(self.name, step_index, e, duration_ms)
            logger.error(f"Step failed: {self.name} after {duration_ms}ms: {e}")
            raise

        response = raw if isinstance(raw, StepResponse) else StepResponse(raw)
        duration_ms = int((time.monotonic() - start) * 1000)

        await context.record_step_complete(self.name, step_index, response.data, duration_ms)
        context.record_step(self.name)

        if response.compensation_data is not None:
            context.add_metadata(
                f"{COMPENSATION_METADATA_PREFIX}{self.name}", response.compensation_data
            )
        if self._compensate is not None:
            compensate = self._compensate

            async def _undo() -> None:
                await compensate(step_input, response.data, response.compensation_data, context)

            context.push_compensation(self.name, _undo)

        logger.info(f"Step completed: {self.name} in {duration_ms}ms")
        return response.data

    __call__ = invoke


def create_step(
    name: str,
    execute: StepExecuteFn,
    compensate: Optional[StepCompensateFn] = None,
) -> WorkflowStep[Any, Any]:
    """Build a step from a forward action and an optional compensation.

    Args:
        name: Step name used in events and logs.
        execute: ``async (input, context)`` returning a value or a
            :class:`StepResponse` carrying compensation data.
        compensate: ``async (input, output, compensation_data, context)``.
            Must be idempotent. Registered on the context's compensation
            stack only after the step succeeds.
    """
    return WorkflowStep(name, execute, compensate)


async def parallel(*calls: Callable[[], Awaitable[T]]) -> List[T]:
    """Run independent awaitables concurrently.

    Step indices follow start order, not completion order, and a failure in
    one call does not stop the others from pushing compensations. Only use
    this for read-only or independent side effects.
    """
    return list(await asyncio.gather(*(call() for call in calls)))
