"""Prometheus instruments for workflow executions."""

from __future__ import annotations

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0)


class WorkflowMetrics:
    """Execution counters and a duration histogram tagged by workflow name.

    Instruments are registered on ``registry`` once per instance, so use
    :func:`get_default_metrics` for the global registry and a fresh
    ``CollectorRegistry`` per instance everywhere else.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.registry = registry
        self.started = Counter(
            "workflow_executions_started_total",
            "Total number of workflow executions started",
            ["workflow"],
            registry=registry,
        )
        self.completed = Counter(
            "workflow_executions_completed_total",
            "Total number of workflow executions that completed successfully",
            ["workflow"],
            registry=registry,
        )
        self.failed = Counter(
            "workflow_executions_failed_total",
            "Total number of workflow executions that failed",
            ["workflow"],
            registry=registry,
        )
        self.timeout = Counter(
            "workflow_executions_timeout_total",
            "Total number of workflow executions that exceeded their timeout",
            ["workflow"],
            registry=registry,
        )
        self.duration = Histogram(
            "workflow_execution_duration_seconds",
            "Workflow execution duration in seconds",
            ["workflow", "status"],
            buckets=DURATION_BUCKETS,
            registry=registry,
        )

    def record_started(self, workflow: str) -> None:
        self.started.labels(workflow=workflow).inc()

    def record_completed(self, workflow: str, duration_seconds: float) -> None:
        self.completed.labels(workflow=workflow).inc()
        self.duration.labels(workflow=workflow, status="completed").observe(duration_seconds)

    def record_failed(self, workflow: str, duration_seconds: float) -> None:
        self.failed.labels(workflow=workflow).inc()
        self.duration.labels(workflow=workflow, status="failed").observe(duration_seconds)

    def record_timeout(self, workflow: str, duration_seconds: float) -> None:
        self.timeout.labels(workflow=workflow).inc()
        self.duration.labels(workflow=workflow, status="timeout").observe(duration_seconds)


_default_metrics: WorkflowMetrics | None = None


def get_default_metrics() -> WorkflowMetrics:
    """Return the process-wide instance bound to the global registry."""
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()
    return _default_metrics
