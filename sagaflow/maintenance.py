"""Periodic maintenance sweeps over execution and step records."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from .config import MaintenanceConfig
from .engine import WorkflowEngine
from .persistence.models import WorkflowExecution, WorkflowStepEvent, utcnow
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class WorkflowMaintenance:
    """Timeout, stale-step and auto-retry sweeps. Records are never deleted."""

    def __init__(self, engine: WorkflowEngine, config: Optional[MaintenanceConfig] = None) -> None:
        self.engine = engine
        self.config = config or MaintenanceConfig()

    async def handle_timed_out_executions(self) -> List[WorkflowExecution]:
        """Mark RUNNING executions whose deadline passed as TIMEOUT.

        These are runs the engine lost track of, e.g. after a crash; a live
        run past its timeout is already failed by the engine itself.
        """
        timed_out = await self.engine.service.handle_timeout_executions()
        if timed_out:
            logger.info(f"Handled {len(timed_out)} timed out workflow executions")
        return timed_out

    async def detect_stale_running_steps(self) -> List[WorkflowStepEvent]:
        threshold_minutes = self.config.stale_step_threshold_minutes
        now = utcnow()
        stale = await self.engine.repository.find_stale_running_steps(
            now - timedelta(minutes=threshold_minutes)
        )
        if stale:
            logger.warning(
                f"Found {len(stale)} stale RUNNING steps (threshold: {threshold_minutes}m): "
                + ", ".join(f"{s.workflow_name}/{s.step_name} (execution={s.execution_id})" for s in stale)
            )
            for step in stale:
                stuck_minutes = int((now - step.started_at).total_seconds() // 60)
                logger.warning(
                    f"Stale step: workflow={step.workflow_name}, step={step.step_name}, "
                    f"executionId={step.execution_id}, stepIndex={step.step_index}, "
                    f"startedAt={step.started_at.isoformat()}, stuckFor={stuck_minutes}m"
                )
        return stale

    async def auto_retry_failed_executions(self) -> List[str]:
        """Retry recent failures that still have budget; return the retried ids."""
        since = utcnow() - timedelta(minutes=self.config.retry_window_minutes)
        retryable = await self.engine.service.find_retryable_executions(since)
        logger.info(f"Found {len(retryable)} retryable executions")

        retried = []
        for execution in retryable:
            try:
                await self.engine.retry_execution(execution.id)
            except Exception as e:
                logger.warning(f"Failed to auto-retry execution {execution.id}: {e}")
                continue
            retried.append(execution.id)
            logger.info(f"Auto-retried execution: {execution.id}")
        return retried

    async def run_once(self, auto_retry: bool = True) -> None:
        await self.handle_timed_out_executions()
        await self.detect_stale_running_steps()
        if auto_retry:
            await self.auto_retry_failed_executions()

    async def run_forever(self, interval: Optional[float] = None, auto_retry: bool = True) -> None:
        """Run the sweeps every ``interval`` seconds until cancelled.

        A failing sweep is logged and the next pass backs off exponentially.
        Pass ``auto_retry=False`` when the engine has no registered workflows.
        """
        interval = interval if interval is not None else self.config.interval_seconds
        failures = 0
        while True:
            try:
                await self.run_once(auto_retry)
                failures = 0
                delay = interval
            except Exception:
                failures += 1
                delay = max(interval, compute_backoff(failures))
                logger.error(
                    f"Workflow maintenance sweep failed (attempt {failures}); next run in {delay:.1f}s",
                    exc_info=True,
                )
            await asyncio.sleep(delay)
