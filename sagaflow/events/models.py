"""Workflow and step lifecycle event payloads.

Each event shape is its own model tagged by ``event_type``; ``WorkflowEvent``
is the discriminated union over all of them. Envelopes are serialized with
camelCase keys (``eventType``, ``executionId`` ...).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from ..persistence.models import utcnow


class ExecutionEventStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    COMPENSATING = "COMPENSATING"
    COMPENSATED = "COMPENSATED"


class _EventBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    execution_id: str
    workflow_name: str
    status: ExecutionEventStatus
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: Optional[str] = None
    parent_execution_id: Optional[str] = None


class _StepEventBase(_EventBase):
    step_name: str
    step_index: int
    total_steps: Optional[int] = None


class WorkflowStartedEvent(_EventBase):
    event_type: Literal["WORKFLOW_STARTED"] = "WORKFLOW_STARTED"
    status: ExecutionEventStatus = ExecutionEventStatus.RUNNING
    input: Optional[str] = None


class WorkflowCompletedEvent(_EventBase):
    event_type: Literal["WORKFLOW_COMPLETED"] = "WORKFLOW_COMPLETED"
    status: ExecutionEventStatus = ExecutionEventStatus.COMPLETED
    output: Optional[str] = None
    duration_ms: int


class WorkflowFailedEvent(_EventBase):
    event_type: Literal["WORKFLOW_FAILED"] = "WORKFLOW_FAILED"
    status: ExecutionEventStatus = ExecutionEventStatus.FAILED
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: int


class StepStartedEvent(_StepEventBase):
    event_type: Literal["STEP_STARTED"] = "STEP_STARTED"
    status: ExecutionEventStatus = ExecutionEventStatus.RUNNING
    input: Optional[str] = None


class StepCompletedEvent(_StepEventBase):
    event_type: Literal["STEP_COMPLETED"] = "STEP_COMPLETED"
    status: ExecutionEventStatus = ExecutionEventStatus.COMPLETED
    output: Optional[str] = None
    duration_ms: int


class StepFailedEvent(_StepEventBase):
    event_type: Literal["STEP_FAILED"] = "STEP_FAILED"
    status: ExecutionEventStatus = ExecutionEventStatus.FAILED
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: int


class StepProgressEvent(_StepEventBase):
    """Sub-step progress. Broadcast to live observers only, never persisted."""

    event_type: Literal["STEP_PROGRESS"] = "STEP_PROGRESS"
    status: ExecutionEventStatus = ExecutionEventStatus.RUNNING
    progress_current: int
    progress_total: int
    progress_message: Optional[str] = None

    @property
    def progress_percent(self) -> int:
        if self.progress_total <= 0:
            return 0
        return int(self.progress_current * 100 / self.progress_total)


WorkflowEvent = Annotated[
    Union[
        WorkflowStartedEvent,
        WorkflowCompletedEvent,
        WorkflowFailedEvent,
        StepStartedEvent,
        StepCompletedEvent,
        StepFailedEvent,
        StepProgressEvent,
    ],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter[WorkflowEvent] = TypeAdapter(WorkflowEvent)


def to_envelope(event: WorkflowEvent) -> Dict[str, Any]:
    """Return the JSON-ready camelCase envelope for ``event``."""
    envelope = event.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(event, StepProgressEvent):
        envelope["progressPercent"] = event.progress_percent
    return envelope


def parse_event(envelope: Dict[str, Any]) -> WorkflowEvent:
    """Rebuild the concrete event model from an envelope."""
    return _event_adapter.validate_python(envelope)
