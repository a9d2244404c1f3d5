"""Idempotency keys: cached results, in-progress detection and insert races."""

import asyncio
from datetime import timedelta

import pytest
from conftest import EchoWorkflow, FlakyWorkflow, OrderInput, OrderResult, SlowWorkflow, make_engine

from sagaflow import (
    Failure,
    IdempotencyGuard,
    IdempotentCompletedError,
    IdempotentConflictError,
    IdempotentInProgressError,
    Success,
    WorkflowMaintenance,
    WorkflowOptions,
)
from sagaflow.persistence import InMemoryWorkflowRepository, WorkflowExecutionStatus
from sagaflow.persistence.models import utcnow
from sagaflow.service import WorkflowExecutionService


class BlindRepository(InMemoryWorkflowRepository):
    """Never sees existing rows, as if another process inserted after our read."""

    async def find_by_idempotency_key(self, idempotency_key, workflow_name):
        return None


@pytest.mark.asyncio
async def test_completed_key_returns_cached_output(engine):
    workflow = EchoWorkflow()
    engine.register_workflow(workflow, OrderInput, OrderResult)
    options = WorkflowOptions(idempotency_key="order-1")

    first = await engine.execute("order.echo", OrderInput(order_id="1"), OrderInput, OrderResult, options=options)
    second = await engine.execute("order.echo", OrderInput(order_id="1"), OrderInput, OrderResult, options=options)

    assert isinstance(second, Success)
    assert second.data == first.data
    assert isinstance(second.data, OrderResult)
    assert workflow.calls == 1
    assert (await engine.get_workflow_executions("order.echo")).total == 1


@pytest.mark.asyncio
async def test_concurrent_requests_with_same_key():
    engine = make_engine()
    workflow = SlowWorkflow(delay=0.3)
    engine.register_workflow(workflow, OrderInput, OrderResult)
    options = WorkflowOptions(idempotency_key="order-2")

    results = await asyncio.gather(
        engine.execute("order.slow", OrderInput(order_id="2"), OrderInput, OrderResult, options=options),
        engine.execute("order.slow", OrderInput(order_id="2"), OrderInput, OrderResult, options=options),
        return_exceptions=True,
    )

    assert len([r for r in results if isinstance(r, Success)]) == 1
    in_progress = [r for r in results if isinstance(r, IdempotentInProgressError)]
    assert len(in_progress) == 1
    assert in_progress[0].idempotency_key == "order-2"
    assert workflow.calls == 1


@pytest.mark.asyncio
async def test_failed_key_is_claimed_again(engine):
    workflow = FlakyWorkflow(failures=1)
    engine.register_workflow(workflow, OrderInput, OrderResult)
    options = WorkflowOptions(idempotency_key="order-3")

    first = await engine.execute("order.flaky", OrderInput(order_id="3"), OrderInput, OrderResult, options=options)
    second = await engine.execute("order.flaky", OrderInput(order_id="3"), OrderInput, OrderResult, options=options)

    assert isinstance(first, Failure)
    assert isinstance(second, Success)
    page = await engine.get_workflow_executions("order.flaky")
    assert page.total == 1
    execution = page.items[0]
    assert execution.status == WorkflowExecutionStatus.COMPLETED
    assert execution.retry_count == 1
    assert execution.error_message is None


@pytest.mark.asyncio
async def test_same_key_is_scoped_per_workflow(engine):
    engine.register_workflow(EchoWorkflow(), OrderInput, OrderResult)
    engine.register_workflow(FlakyWorkflow(failures=0), OrderInput, OrderResult)
    options = WorkflowOptions(idempotency_key="shared")

    await engine.execute("order.echo", OrderInput(order_id="4"), OrderInput, OrderResult, options=options)
    result = await engine.execute("order.flaky", OrderInput(order_id="4"), OrderInput, OrderResult, options=options)

    assert isinstance(result, Success)
    assert result.data.status == "recovered"


@pytest.mark.asyncio
async def test_guard_signals_each_status():
    repo = InMemoryWorkflowRepository()
    guard = IdempotencyGuard(WorkflowExecutionService(repo))

    execution = await guard.claim("key-1", "wf", input_data={"a": 1})
    assert execution.status == WorkflowExecutionStatus.RUNNING

    with pytest.raises(IdempotentInProgressError):
        await guard.claim("key-1", "wf")

    execution.mark_completed('{"done": true}', result_id="res-1")
    await repo.update_execution(execution)

    with pytest.raises(IdempotentCompletedError) as exc_info:
        await guard.claim("key-1", "wf")
    assert exc_info.value.execution_id == execution.id
    assert exc_info.value.output_data == '{"done": true}'
    assert exc_info.value.result_id == "res-1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status",
    [
        WorkflowExecutionStatus.FAILED,
        WorkflowExecutionStatus.COMPENSATED,
        WorkflowExecutionStatus.TIMEOUT,
        WorkflowExecutionStatus.CLEANED_UP,
    ],
)
async def test_guard_reclaims_failed_rows(status):
    repo = InMemoryWorkflowRepository()
    guard = IdempotencyGuard(WorkflowExecutionService(repo))
    execution = await guard.claim("key-2", "wf")
    execution.status = status
    await repo.update_execution(execution)

    reclaimed = await guard.claim("key-2", "wf")

    assert reclaimed.id == execution.id
    assert reclaimed.status == WorkflowExecutionStatus.RUNNING
    assert reclaimed.retry_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status", [WorkflowExecutionStatus.PAUSED, WorkflowExecutionStatus.CANCELLED]
)
async def test_guard_treats_paused_and_cancelled_as_in_progress(status):
    repo = InMemoryWorkflowRepository()
    guard = IdempotencyGuard(WorkflowExecutionService(repo))
    execution = await guard.claim("key-3", "wf")
    execution.status = status
    await repo.update_execution(execution)

    with pytest.raises(IdempotentInProgressError):
        await guard.claim("key-3", "wf")


@pytest.mark.asyncio
async def test_lost_insert_race_raises_conflict():
    repo = BlindRepository()
    guard = IdempotencyGuard(WorkflowExecutionService(repo))
    await guard.claim("key-4", "wf")

    with pytest.raises(IdempotentConflictError) as exc_info:
        await guard.claim("key-4", "wf")
    assert exc_info.value.idempotency_key == "key-4"


@pytest.mark.asyncio
async def test_reclaimed_row_takes_new_request():
    repo = InMemoryWorkflowRepository()
    guard = IdempotencyGuard(WorkflowExecutionService(repo))
    execution = await guard.claim(
        "key-5", "wf", input_data={"amount": 1}, max_retries=1, timeout_seconds=10
    )
    execution.mark_failed(RuntimeError("boom"))
    await repo.update_execution(execution)

    reclaimed = await guard.claim(
        "key-5", "wf", input_data={"amount": 2}, max_retries=5, timeout_seconds=90
    )

    stored = await repo.get_execution(execution.id)
    assert reclaimed.id == execution.id
    assert stored.input_data == '{"amount":2}'
    assert stored.max_retries == 5
    assert stored.timeout_seconds == 90
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_reclaimed_old_row_is_not_timed_out_mid_run():
    engine = make_engine()
    workflow = SlowWorkflow(delay=0.3)
    engine.register_workflow(workflow, OrderInput, OrderResult)
    options = WorkflowOptions(idempotency_key="order-9", timeout_seconds=60)

    old = await engine.service.create_execution(
        workflow_name="order.slow",
        input_data=OrderInput(order_id="9"),
        idempotency_key="order-9",
        timeout_seconds=60,
    )
    old.mark_failed(RuntimeError("gateway down"))
    old.created_at = utcnow() - timedelta(minutes=10)
    old.run_started_at = old.created_at
    await engine.repository.update_execution(old)

    first = asyncio.create_task(
        engine.execute("order.slow", OrderInput(order_id="9"), OrderInput, OrderResult, options=options)
    )
    await asyncio.sleep(0.05)

    assert await WorkflowMaintenance(engine).handle_timed_out_executions() == []
    with pytest.raises(IdempotentInProgressError):
        await engine.execute("order.slow", OrderInput(order_id="9"), OrderInput, OrderResult, options=options)
    assert (await engine.get_execution(old.id)).status == WorkflowExecutionStatus.RUNNING

    result = await first
    assert isinstance(result, Success)
    stored = await engine.get_execution(old.id)
    assert stored.status == WorkflowExecutionStatus.COMPLETED
    assert stored.retry_count == 1
    assert workflow.calls == 1
