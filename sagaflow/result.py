"""Two-case result type returned by workflows and the engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class WorkflowResult(Generic[T]):
    """Either ``Success(data)`` or ``Failure(error)``.

    Workflows return ``Failure`` for expected business failures instead of
    raising. The engine compensates both a returned ``Failure`` and a raised
    exception, but logs the former as a warning.
    """

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def get_or_none(self) -> Optional[T]:
        if isinstance(self, Success):
            return self.data
        return None

    def get_or_raise(self) -> T:
        if isinstance(self, Failure):
            raise self.error
        return self.data  # type: ignore[attr-defined]

    @staticmethod
    def success(data: T) -> "Success[T]":
        return Success(data)

    @staticmethod
    def failure(error: BaseException) -> "Failure":
        return Failure(error)


@dataclass(frozen=True)
class Success(WorkflowResult[T]):
    data: T


@dataclass(frozen=True)
class Failure(WorkflowResult[T]):
    error: BaseException
