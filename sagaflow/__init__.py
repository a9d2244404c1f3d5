"""sagaflow: saga-style workflow execution with compensation, locking and event streaming."""

from .context import WorkflowContext
from .engine import WorkflowEngine, WorkflowInfo, WorkflowOptions
from .errors import (
    CompensationError,
    ExecutionNotFoundError,
    IdempotentCompletedError,
    IdempotentConflictError,
    IdempotentInProgressError,
    IllegalExecutionStateError,
    WorkflowError,
    WorkflowLockError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
    WorkflowTypeError,
)
from .events import WorkflowEventPublisher
from .extensions import (
    AFTER_ALL,
    BEFORE_ALL,
    AfterAll,
    AfterStep,
    BeforeAll,
    BeforeStep,
    ExtensibleWorkflow,
    ExtensionRegistry,
    WorkflowCustomizer,
    WorkflowStepProvider,
)
from .idempotency import IdempotencyGuard
from .locks import get_lock_store
from .maintenance import WorkflowMaintenance
from .metrics import WorkflowMetrics
from .persistence import get_repository
from .result import Failure, Success, WorkflowResult
from .steps import StepResponse, WorkflowStep, create_step, parallel
from .transports import get_broadcast_channel, get_durable_sink
from .workflow import Workflow

__version__ = "0.1.0"
__all__ = [
    "AFTER_ALL",
    "BEFORE_ALL",
    "AfterAll",
    "AfterStep",
    "BeforeAll",
    "BeforeStep",
    "CompensationError",
    "ExecutionNotFoundError",
    "ExtensibleWorkflow",
    "ExtensionRegistry",
    "Failure",
    "IdempotencyGuard",
    "IdempotentCompletedError",
    "IdempotentConflictError",
    "IdempotentInProgressError",
    "IllegalExecutionStateError",
    "StepResponse",
    "Success",
    "Workflow",
    "WorkflowContext",
    "WorkflowCustomizer",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowEventPublisher",
    "WorkflowInfo",
    "WorkflowLockError",
    "WorkflowMaintenance",
    "WorkflowMetrics",
    "WorkflowNotFoundError",
    "WorkflowOptions",
    "WorkflowResult",
    "WorkflowStep",
    "WorkflowStepProvider",
    "WorkflowTimeoutError",
    "WorkflowTypeError",
    "create_step",
    "get_broadcast_channel",
    "get_durable_sink",
    "get_lock_store",
    "get_repository",
    "parallel",
]
