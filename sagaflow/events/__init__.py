"""Workflow lifecycle events."""

from __future__ import annotations

from .models import (
    ExecutionEventStatus,
    StepCompletedEvent,
    StepFailedEvent,
    StepProgressEvent,
    StepStartedEvent,
    WorkflowCompletedEvent,
    WorkflowEvent,
    WorkflowFailedEvent,
    WorkflowStartedEvent,
    parse_event,
    to_envelope,
)
from .publisher import BROADCAST_TOPIC, DURABLE_TOPIC, WorkflowEventPublisher

__all__ = [
    "BROADCAST_TOPIC",
    "DURABLE_TOPIC",
    "ExecutionEventStatus",
    "StepCompletedEvent",
    "StepFailedEvent",
    "StepProgressEvent",
    "StepStartedEvent",
    "WorkflowCompletedEvent",
    "WorkflowEvent",
    "WorkflowEventPublisher",
    "WorkflowFailedEvent",
    "WorkflowStartedEvent",
    "parse_event",
    "to_envelope",
]
