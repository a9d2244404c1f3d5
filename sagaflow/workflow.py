"""Workflow contract executed by the engine."""

from __future__ import annotations

import abc
from typing import Generic, Optional, TypeVar

from .context import WorkflowContext
from .result import WorkflowResult

I = TypeVar("I")
O = TypeVar("O")


class Workflow(Generic[I, O], metaclass=abc.ABCMeta):
    """A named, side-effecting business operation.

    ``name`` is used for registration, lock-key templating and extension
    matching, so it must stay stable. ``execute`` returns ``Failure`` for
    expected business failures instead of raising.
    """

    name: str
    total_steps: Optional[int] = None

    @abc.abstractmethod
    async def execute(self, input: I, context: WorkflowContext) -> WorkflowResult[O]:
        raise NotImplementedError

    async def compensate(self, context: WorkflowContext) -> None:
        """Undo partial effects of a failed run.

        Runs whatever compensations the executed steps registered on the
        context, which is a no-op when none did.
        """
        await context.run_compensations()
